"""Tests for the pipeline service: wiring, submission gating and hook swaps."""
import asyncio

import pytest

from render_worker.pipeline.models import (
    BeatType,
    InsufficientCreditsError,
    PlanNotReadyError,
    RenderTier,
    RunState,
    VariantStatus,
)
from render_worker.pipeline.orchestrator import RenderPipelineService
from render_worker.pipeline.quality_gate import QualityGate
from render_worker.pipeline.store import InMemoryRunRepository


@pytest.fixture
def validated(service, plan_dict):
    result = service.validate_plan(plan_dict)
    assert result.valid
    return result.normalized_plan


class TestValidatePlan:
    def test_normalized_plan_is_stored(self, service, plan_dict):
        plan_dict["beats"].reverse()
        service.validate_plan(plan_dict)
        stored = service.get_plan("plan-1")
        assert stored.is_validated is True
        assert stored.beats[0].type == BeatType.HOOK

    def test_invalid_plan_is_stored_unvalidated(self, service, plan_dict):
        plan_dict["targetDuration"] = 30
        service.validate_plan(plan_dict)
        assert service.get_plan("plan-1").is_validated is False

    def test_schema_failure_stores_nothing(self, service, plan_dict):
        plan_dict["beats"] = plan_dict["beats"][:2]
        service.validate_plan(plan_dict)
        with pytest.raises(LookupError):
            service.get_plan("plan-1")

    def test_metrics(self, service, plan_dict, metrics):
        service.validate_plan(plan_dict)
        assert metrics.counter("plans.validated") == 1


class TestSubmitRender:
    def test_preview_sets_variant_previewing(self, service, validated, stores):
        run = asyncio.run(service.submit_render("plan-1", RenderTier.PREVIEW, "user-1"))
        assert run.state == RunState.RUNNING
        assert stores.variants.get("variant-1").status == VariantStatus.PREVIEWING

    def test_final_needs_credits(self, service, validated, stores):
        with pytest.raises(InsufficientCreditsError):
            asyncio.run(service.submit_render("plan-1", RenderTier.FINAL, "broke-user"))

    def test_preview_is_free(self, service, validated):
        run = asyncio.run(service.submit_render("plan-1", RenderTier.PREVIEW, "broke-user"))
        assert run.credit_cost == 0

    def test_unvalidated_plan_cannot_render(self, service, plan_dict):
        plan_dict["targetDuration"] = 30
        service.validate_plan(plan_dict)
        with pytest.raises(PlanNotReadyError):
            asyncio.run(service.submit_render("plan-1", RenderTier.PREVIEW, "user-1"))

    def test_unknown_plan(self, service):
        with pytest.raises(LookupError):
            asyncio.run(service.submit_render("missing", RenderTier.PREVIEW, "user-1"))


class TestSwapHook:
    def test_swap_replaces_hook_and_renders_preview(self, service, validated, provider):
        run = asyncio.run(service.swap_hook("plan-1", "Cold drinks all day long", "user-1"))

        plan = service.get_plan("plan-1")
        hook = plan.beat(BeatType.HOOK)
        assert plan.hook_text == "Cold drinks all day long"
        assert plan.version == 2
        assert hook.voice_over.text == "Cold drinks all day long"
        assert hook.overlays[0].text == "Cold drinks all day long"
        assert run.tier == RenderTier.PREVIEW
        assert run.credit_cost == 1
        assert "Cold drinks all day long" in provider.requests[-1].prompt

    def test_long_hook_overlay_is_capped(self, service, validated):
        asyncio.run(service.swap_hook("plan-1", "Your drinks stay ice cold for a full day", "user-1"))
        hook = service.get_plan("plan-1").beat(BeatType.HOOK)
        assert hook.overlays[0].text == "Your drinks stay ice cold for"

    def test_hook_overlay_cap_keeps_prices_whole(self, service, validated):
        asyncio.run(service.swap_hook("plan-1", "Cold drinks all summer for $19", "user-1"))
        hook = service.get_plan("plan-1").beat(BeatType.HOOK)
        assert hook.overlays[0].text == "Cold drinks all summer for"

    def test_swapped_hook_is_softened(self, service, validated):
        asyncio.run(service.swap_hook("plan-1", "Instant cold drinks", "user-1"))
        assert service.get_plan("plan-1").hook_text == "Quick cold drinks"

    def test_swap_needs_a_credit(self, service, validated):
        with pytest.raises(InsufficientCreditsError):
            asyncio.run(service.swap_hook("plan-1", "Cold drinks all day", "broke-user"))

    def test_too_fast_hook_is_trimmed_not_rejected(self, service, validated):
        line = " ".join(["cold"] * 20)
        asyncio.run(service.swap_hook("plan-1", line, "user-1"))
        hook = service.get_plan("plan-1").beat(BeatType.HOOK)
        assert len(hook.voice_over.text.split()) == 12


class TestFromEnv:
    @pytest.fixture(autouse=True)
    def _bare_env(self, monkeypatch):
        for name in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY"):
            monkeypatch.delenv(name, raising=False)

    def test_defaults_to_in_memory_without_qa(self):
        service = RenderPipelineService.from_env()
        assert isinstance(service.stores.runs, InMemoryRunRepository)
        assert service.handler.quality_gate is None
        assert service.handler.overlay_fallback is not None

    def test_gemini_key_enables_quality_gate(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "test-key")
        service = RenderPipelineService.from_env()
        assert isinstance(service.handler.quality_gate, QualityGate)
