"""Tests for the stale-run sweeper."""
import asyncio
from datetime import datetime, timedelta, timezone

from render_worker.pipeline.models import EngineTag, FailureCategory, RenderTier, Run, RunState
from render_worker.pipeline.sweeper import StaleRunSweeper

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _put(stores, tier=RenderTier.PREVIEW, age_seconds=0, state=RunState.RUNNING) -> Run:
    return stores.runs.put(Run(
        variant_id="variant-1",
        plan_id="plan-1",
        tier=tier,
        engine=EngineTag.VEO_FAST if tier == RenderTier.PREVIEW else EngineTag.VEO_3,
        state=state,
        seed=1,
        created_at=NOW - timedelta(seconds=age_seconds),
    ))


def _sweeper(service, stores) -> StaleRunSweeper:
    return StaleRunSweeper(stores.runs, service.handler, now=lambda: NOW)


class TestSweep:
    def test_stale_preview_is_timed_out(self, service, stores):
        run = _put(stores, age_seconds=601)
        timed_out = asyncio.run(_sweeper(service, stores).sweep())

        assert timed_out == [run.id]
        failed = stores.runs.get(run.id)
        assert failed.state == RunState.FAILED
        assert failed.failure_category == FailureCategory.TIMEOUT
        assert failed.error == "Render timed out after 600s without a provider result"

    def test_fresh_runs_are_left_alone(self, service, stores):
        preview = _put(stores, age_seconds=300)
        final = _put(stores, tier=RenderTier.FINAL, age_seconds=900)
        assert asyncio.run(_sweeper(service, stores).sweep()) == []
        assert stores.runs.get(preview.id).state == RunState.RUNNING
        assert stores.runs.get(final.id).state == RunState.RUNNING

    def test_final_tier_has_longer_limit(self, service, stores):
        final = _put(stores, tier=RenderTier.FINAL, age_seconds=1201)
        assert asyncio.run(_sweeper(service, stores).sweep()) == [final.id]

    def test_queued_runs_are_swept_too(self, service, stores):
        run = _put(stores, age_seconds=700, state=RunState.QUEUED)
        assert asyncio.run(_sweeper(service, stores).sweep()) == [run.id]

    def test_terminal_runs_are_ignored(self, service, stores):
        _put(stores, age_seconds=5000, state=RunState.SUCCEEDED)
        assert asyncio.run(_sweeper(service, stores).sweep()) == []

    def test_timeout_goes_through_retry_policy(self, service, stores, plan_dict):
        service.validate_plan(plan_dict)
        run = _put(stores, age_seconds=601)
        asyncio.run(_sweeper(service, stores).sweep())

        retries = stores.runs.list_by_retry_of(run.id)
        assert len(retries) == 1
        assert retries[0].is_free_retry is True
