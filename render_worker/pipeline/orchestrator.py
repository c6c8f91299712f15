"""
RenderPipelineService: wires the render-orchestration pipeline together.

  PlanValidator → RenderDispatcher → (async) CallbackHandler → QualityGate
      → OverlayFallback | RetryPolicy → RenderDispatcher | terminal

Routes and the app lifespan talk to this service only.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ..metrics import MetricsCollector
from .callbacks import CallbackHandler
from .dispatcher import TIER_CREDIT_COST, RenderDispatcher
from .models import (
    BeatType,
    CallbackResponse,
    InsufficientCreditsError,
    Plan,
    PlanNotReadyError,
    PlanValidationResult,
    ProviderCallback,
    QualityValidationRecord,
    QuickValidationResult,
    RenderTier,
    Run,
    VariantStatus,
)
from .overlay_fallback import FFmpegOverlayRenderer, OverlayFallback
from .plan_validator import PlanValidator, truncate_words
from .quality_gate import QualityGate, advisory_checks_from_env
from .retry_policy import RetryPolicy
from .store import Stores
from .sweeper import StaleRunSweeper

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

RENDER_MAX_RETRIES = int(os.getenv("RENDER_MAX_RETRIES", "3"))
HOOK_SWAP_CREDIT_COST = 1

TIER_VARIANT_STATUS = {
    RenderTier.PREVIEW: VariantStatus.PREVIEWING,
    RenderTier.FINAL: VariantStatus.FINALIZING,
}


class RenderPipelineService:
    """
    Usage:
        service = RenderPipelineService.from_env()

        result = service.validate_plan(plan_json)
        run = await service.submit_render(result.normalized_plan.id, RenderTier.PREVIEW, user_id)
        ...
        await service.handle_callback(ProviderCallback(run_id=run.id, status="succeeded", artifact_url=url))
    """

    def __init__(
        self,
        stores: Stores,
        dispatcher: RenderDispatcher,
        handler: CallbackHandler,
        metrics: MetricsCollector,
        validator: Optional[PlanValidator] = None,
        sweeper: Optional[StaleRunSweeper] = None,
    ):
        self.stores = stores
        self.dispatcher = dispatcher
        self.handler = handler
        self.metrics = metrics
        self.validator = validator or PlanValidator()
        self.sweeper = sweeper or StaleRunSweeper(stores.runs, handler)

    @classmethod
    def build(
        cls,
        stores: Stores,
        metrics: MetricsCollector,
        dispatcher: RenderDispatcher,
        quality_gate: Optional[QualityGate] = None,
        overlay_fallback: Optional[OverlayFallback] = None,
        max_retries: int = RENDER_MAX_RETRIES,
    ) -> "RenderPipelineService":
        handler = CallbackHandler(
            stores,
            dispatcher,
            metrics,
            retry_policy=RetryPolicy(max_retries),
            quality_gate=quality_gate,
            overlay_fallback=overlay_fallback,
        )
        dispatcher.set_completion_sink(handler)
        return cls(stores, dispatcher, handler, metrics)

    @classmethod
    def from_env(cls) -> "RenderPipelineService":
        """Production wiring: Supabase when configured, Gemini QA when a key is set."""
        metrics = MetricsCollector()
        if os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
            stores = Stores.supabase()
        else:
            logger.warning("Supabase not configured, using in-memory stores")
            stores = Stores.in_memory()

        quality_gate = None
        if os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"):
            from .vision import GeminiQualityChecker, GeminiTextDetector

            quality_gate = QualityGate(
                GeminiQualityChecker(),
                GeminiTextDetector(),
                stores.validations,
                advisory=advisory_checks_from_env(),
            )
        else:
            logger.warning("No Gemini key, renders will be accepted without quality gating")

        dispatcher = RenderDispatcher(stores.runs, metrics)
        return cls.build(
            stores,
            metrics,
            dispatcher,
            quality_gate=quality_gate,
            overlay_fallback=OverlayFallback(FFmpegOverlayRenderer()),
        )

    # ── Plans ────────────────────────────────────────────────────────────

    def validate_plan(self, candidate: Any) -> PlanValidationResult:
        result = self.validator.validate(candidate)
        self.metrics.inc_counter("plans.validated" if result.valid else "plans.rejected")
        if result.normalized_plan is not None:
            self.stores.plans.put(result.normalized_plan)
        return result

    def quick_validate(self, candidate: Any) -> QuickValidationResult:
        return self.validator.quick_validate(candidate)

    def get_plan(self, plan_id: str) -> Plan:
        plan = self.stores.plans.get(plan_id)
        if plan is None:
            raise LookupError(f"Plan {plan_id} not found")
        return plan

    # ── Renders ──────────────────────────────────────────────────────────

    def _require_credits(self, user_id: Optional[str], cost: int):
        if not user_id or cost <= 0:
            return
        balance = self.stores.credits.balance(user_id)
        if balance < cost:
            raise InsufficientCreditsError(
                f"Insufficient credits: {cost} required, {balance} available"
            )

    async def submit_render(
        self, plan_id: str, tier: RenderTier, user_id: Optional[str] = None
    ) -> Run:
        plan = self.get_plan(plan_id)
        self._require_credits(user_id, TIER_CREDIT_COST[tier])
        self.stores.variants.set_status(plan.variant_id, TIER_VARIANT_STATUS[tier])
        return await self.dispatcher.submit(plan, tier, user_id=user_id)

    async def swap_hook(self, plan_id: str, new_hook_line: str, user_id: Optional[str] = None) -> Run:
        """Replace the hook line, re-validate the plan and render a new preview."""
        plan = self.get_plan(plan_id)
        self._require_credits(user_id, HOOK_SWAP_CREDIT_COST)

        max_words = plan.effective_constraints.max_overlay_words
        hook = plan.beat(BeatType.HOOK)
        if hook.voice_over is not None:
            hook.voice_over.text = new_hook_line
        if hook.overlays:
            hook.overlays[0].text = truncate_words(new_hook_line, max_words, marker="")
        plan.hook_text = new_hook_line
        plan.hook_id = None
        plan.version += 1
        plan.updated_at = datetime.now(timezone.utc)

        result = self.validate_plan(plan)
        if not result.valid:
            raise PlanNotReadyError(f"Hook swap produced an invalid plan: {'; '.join(result.errors)}")

        logger.info(f"Hook swapped on plan {plan_id} (v{result.normalized_plan.version}): {new_hook_line!r}")
        self.stores.variants.set_status(plan.variant_id, VariantStatus.PREVIEWING)
        return await self.dispatcher.submit(
            result.normalized_plan,
            RenderTier.PREVIEW,
            user_id=user_id,
            credit_cost=HOOK_SWAP_CREDIT_COST,
        )

    async def handle_callback(self, callback: ProviderCallback) -> CallbackResponse:
        return await self.handler.handle(callback)

    def get_run(self, run_id: str) -> Run:
        run = self.stores.runs.get(run_id)
        if run is None:
            raise LookupError(f"Run {run_id} not found")
        return run

    def list_validations(self, run_id: str) -> list[QualityValidationRecord]:
        self.get_run(run_id)
        return self.stores.validations.list_by_run(run_id)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def resume(self) -> int:
        resumed = await self.dispatcher.resume_pending()
        if resumed:
            logger.info(f"Resumed {resumed} in-flight run(s) from a previous session")
        return resumed
