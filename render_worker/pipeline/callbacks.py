"""
CallbackHandler: drives a Run to completion from provider notifications.

Inbound notifications come from the provider webhook, from the dispatcher's
poll loop and from the stale-run sweeper. All of them go through
complete_run() / fail_run(), which move the Run with a compare-and-set
transition: a duplicate or late notification finds the Run already terminal
and is acknowledged without re-applying side effects (credit charge, QA,
retry creation).

Success path:
  1. Run → succeeded, artifact recorded
  2. Charge the retry chain once, on its first success, keyed by the root run id
  3. Quality Gate (skipped when the plan is missing)
  4. Overlay burn-in when overlay text was not detected; original kept on failure
  5. RetryPolicy when the gate failed
  6. Variant → ready (or retrying)
"""

import logging
from typing import Optional

from ..metrics import MetricsCollector
from .dispatcher import RenderDispatcher
from .models import (
    BeatType,
    CallbackResponse,
    FailureCategory,
    Plan,
    PlanNotReadyError,
    ProviderCallback,
    RenderTier,
    RetryDecision,
    Run,
    RunState,
    VariantStatus,
)
from .overlay_fallback import OverlayFallback, overlays_for_burn_in
from .quality_gate import QualityGate, expected_overlays
from .retry_policy import RetryPolicy, categorize_error
from .storage import render_key
from .store import Stores

logger = logging.getLogger(__name__)

IN_FLIGHT = (RunState.QUEUED, RunState.RUNNING)
SUCCESS_STATUSES = {"succeeded", "success", "completed"}
FAILURE_STATUSES = {"failed", "fail", "error"}


class CallbackHandler:
    def __init__(
        self,
        stores: Stores,
        dispatcher: RenderDispatcher,
        metrics: MetricsCollector,
        retry_policy: Optional[RetryPolicy] = None,
        quality_gate: Optional[QualityGate] = None,
        overlay_fallback: Optional[OverlayFallback] = None,
    ):
        self.stores = stores
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.retry_policy = retry_policy or RetryPolicy()
        self.quality_gate = quality_gate
        self.overlay_fallback = overlay_fallback

    # ── Entry point ──────────────────────────────────────────────────────

    async def handle(self, callback: ProviderCallback) -> CallbackResponse:
        """
        Apply one provider notification.

        Raises ValueError when runId is missing and LookupError when it is unknown.
        """
        if not callback.run_id:
            raise ValueError("runId is required")
        if self.stores.runs.get(callback.run_id) is None:
            raise LookupError(f"Run {callback.run_id} not found")

        status = (callback.status or "").lower()
        self.metrics.inc_counter("callbacks.received")

        if status in SUCCESS_STATUSES:
            if not callback.artifact_url:
                return await self.fail_run(
                    callback.run_id, "Provider reported success without an artifact URL"
                )
            return await self.complete_run(callback.run_id, callback.artifact_url)
        if status in FAILURE_STATUSES:
            return await self.fail_run(callback.run_id, callback.error or "Provider reported failure")

        logger.info(f"[{callback.run_id}] ignoring non-terminal callback status '{callback.status}'")
        return CallbackResponse(success=True, message=f"Status '{callback.status}' acknowledged")

    def _already_terminal(self, run_id: str) -> CallbackResponse:
        current = self.stores.runs.get(run_id)
        if current is None:
            raise LookupError(f"Run {run_id} not found")
        logger.info(f"[{run_id}] duplicate or late callback ignored (run is {current.state.value})")
        self.metrics.inc_counter("callbacks.duplicate")
        return CallbackResponse(
            success=True,
            message=f"Run already {current.state.value}",
            artifact_url=current.artifact_url,
        )

    # ── Failure ──────────────────────────────────────────────────────────

    async def fail_run(
        self, run_id: str, error: str, category: Optional[FailureCategory] = None
    ) -> CallbackResponse:
        category = category or categorize_error(error)
        run = self.stores.runs.transition(
            run_id, IN_FLIGHT, RunState.FAILED,
            error=error,
            failure_category=category,
            response_payload={"error": error},
        )
        if run is None:
            return self._already_terminal(run_id)

        logger.warning(f"[{run_id}] running → failed ({category.value}): {error}")
        self.metrics.inc_counter("runs.failed")
        self.metrics.inc_counter(f"errors.{category.value}")
        self.metrics.record_error("callback", category.value, error, run_id)
        self.metrics.record_outcome(success=False)

        self.stores.variants.set_status(run.variant_id, VariantStatus.ERROR, error=error)

        decision = self.retry_policy.evaluate(run, error=error)
        retry = await self._maybe_retry(run, decision)
        if retry is not None:
            self.stores.variants.set_status(run.variant_id, VariantStatus.RETRYING)
        elif decision.max_retries_reached:
            logger.error(f"[{run_id}] retries exhausted, surfacing failure: {error}")
            self.stores.variants.set_status(
                run.variant_id, VariantStatus.ERROR,
                error=f"{error} (automatic retries exhausted, reshoot required)",
            )

        return CallbackResponse(
            success=True,
            message="Failure recorded",
            retry_run_id=retry.id if retry else None,
        )

    # ── Success ──────────────────────────────────────────────────────────

    async def complete_run(self, run_id: str, artifact_url: str) -> CallbackResponse:
        run = self.stores.runs.transition(
            run_id, IN_FLIGHT, RunState.SUCCEEDED,
            artifact_url=artifact_url,
            response_payload={"artifact_url": artifact_url},
        )
        if run is None:
            return self._already_terminal(run_id)

        logger.info(f"[{run_id}] running → succeeded: {artifact_url}")
        self.metrics.inc_counter("runs.succeeded")
        self.metrics.record_outcome(success=True)
        self._charge(run)

        plan = self.stores.plans.get(run.plan_id)
        if plan is None or self.quality_gate is None:
            reason = "plan unavailable" if plan is None else "no quality gate configured"
            logger.warning(f"[{run_id}] skipping quality gate ({reason}), accepting artifact as-is")
            self.stores.variants.set_status(run.variant_id, VariantStatus.READY, video_url=artifact_url)
            return CallbackResponse(success=True, message="Render accepted without QA", artifact_url=artifact_url)

        try:
            summary = await self.quality_gate.evaluate(
                artifact_url,
                self._reference_assets(plan, run),
                expected_overlays(plan, run.cost_seconds),
                run_id=run.id,
                brand=plan.brand,
            )
        except Exception as e:
            logger.error(f"[{run_id}] quality gate failed, accepting artifact as-is: {e}", exc_info=True)
            self.metrics.record_error("quality_gate", "exception", str(e), run_id)
            self.stores.variants.set_status(run.variant_id, VariantStatus.READY, video_url=artifact_url)
            return CallbackResponse(success=True, message="Render accepted, QA unavailable", artifact_url=artifact_url)

        payload = dict(run.response_payload)
        payload["qa"] = {
            "overall_score": summary.overall_score,
            "overall_passed": summary.overall_passed,
            "eligible_for_free_retry": summary.eligible_for_free_retry,
            "retry_recommendation": summary.retry_recommendation,
        }

        final_url = artifact_url
        burned_in = False
        if summary.overlay_check is not None and summary.overlay_check.needs_burn_in:
            final_url, burned_in = await self._burn_in(run, plan, artifact_url, payload)

        self.stores.runs.update(run_id, artifact_url=final_url, response_payload=payload)

        retry = None
        if not summary.overall_passed:
            self.metrics.inc_counter("qa.failed")
            decision = self.retry_policy.evaluate(run, quality=summary)
            retry = await self._maybe_retry(run, decision)
            if retry is None:
                logger.warning(
                    f"[{run_id}] quality {summary.overall_score} below threshold, "
                    f"accepting degraded artifact: {decision.reason}"
                )
        else:
            self.metrics.inc_counter("qa.passed")

        status = VariantStatus.RETRYING if retry else VariantStatus.READY
        self.stores.variants.set_status(run.variant_id, status, video_url=final_url)

        return CallbackResponse(
            success=True,
            message="Render accepted" if summary.overall_passed else "Render accepted with quality warnings",
            artifact_url=final_url,
            qa_passed=summary.overall_passed,
            burned_in=burned_in,
            retry_run_id=retry.id if retry else None,
        )

    # ── Helpers ──────────────────────────────────────────────────────────

    def _chain_root(self, run: Run) -> Run:
        root, seen = run, {run.id}
        while root.retry_of and root.retry_of not in seen:
            parent = self.stores.runs.get(root.retry_of)
            if parent is None:
                break
            seen.add(parent.id)
            root = parent
        return root

    def _charge(self, run: Run):
        # A free retry carries no cost of its own; the chain pays the root's price once.
        root = self._chain_root(run)
        user_id = root.user_id or run.user_id
        if not user_id or root.credit_cost <= 0:
            return
        charged = self.stores.credits.charge(user_id, root.credit_cost, key=root.id)
        if charged:
            self.metrics.inc_counter("credits.charged", root.credit_cost)

    @staticmethod
    def _reference_assets(plan: Plan, run: Run):
        if run.tier == RenderTier.PREVIEW:
            return plan.beat(BeatType.HOOK).asset_refs
        return plan.selected_assets

    async def _burn_in(self, run: Run, plan: Plan, artifact_url: str, payload: dict) -> tuple[str, bool]:
        if self.overlay_fallback is None:
            logger.warning(f"[{run.id}] overlays missing and no burn-in renderer configured")
            return artifact_url, False

        result = await self.overlay_fallback.burn_in(
            artifact_url,
            overlays_for_burn_in(plan, run.cost_seconds),
            logo_url=plan.brand.logo_url,
            output_key=render_key(run.variant_id, run.id),
        )
        if result.success and result.output_url:
            logger.info(f"[{run.id}] overlays burned in: {result.output_url}")
            self.metrics.inc_counter("qa.burn_in")
            payload["original_artifact_url"] = artifact_url
            payload["burned_in"] = True
            return result.output_url, True

        logger.warning(f"[{run.id}] burn-in failed, keeping original artifact: {result.error}")
        self.metrics.inc_counter("qa.burn_in_failed")
        self.metrics.record_error("overlay_fallback", "burn_in", result.error or "", run.id)
        payload["burn_in_error"] = result.error
        return artifact_url, False

    async def _maybe_retry(self, run: Run, decision: RetryDecision) -> Optional[Run]:
        if not decision.should_retry:
            return None

        existing = self.stores.runs.list_by_retry_of(run.id)
        if existing:
            logger.info(f"[{run.id}] retry already created ({existing[0].id}), not creating another")
            return existing[0]

        plan = self.stores.plans.get(run.plan_id)
        if plan is None:
            logger.warning(f"[{run.id}] cannot retry, plan {run.plan_id} is gone")
            return None

        logger.info(
            f"[{run.id}] retrying ({decision.failure_category.value}, "
            f"strategy={decision.strategy.value if decision.strategy else 'none'}, "
            f"seed={decision.recommended_seed}, free={decision.is_free_retry})"
        )
        self.metrics.inc_counter("runs.retried")
        try:
            return await self.dispatcher.submit(
                plan,
                run.tier,
                user_id=run.user_id,
                retry_of=run,
                seed=decision.recommended_seed,
                instruction_hint=decision.revision_hint,
                free=decision.is_free_retry,
            )
        except PlanNotReadyError as e:
            logger.warning(f"[{run.id}] retry not dispatched: {e}")
            return None
