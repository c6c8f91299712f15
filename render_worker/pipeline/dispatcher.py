"""
RenderDispatcher: turns a validated Plan into a provider render Run.

Tiers:
  preview: 8s, no audio, hook-beat assets, veo_fast
  final: full target duration, narration audio, all selected assets, veo_3

Dispatch modes (DISPATCH_MODE):
  callback: submit and return; the provider calls /webhooks/provider
  poll: submit, then poll inline with a bounded number of polls
  background: submit, return, and poll in an asyncio task

Provider errors never escape submit(): the Run comes back failed instead.
Completion (success, failure, poll timeout) is always routed through the
completion sink (the CallbackHandler) so every path shares one idempotent
state machine.
"""

import os
import time
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol
from urllib.parse import urlencode

from ..metrics import MetricsCollector
from ..provider_factory import ProviderFactory, RenderProvider
from .models import (
    BeatType,
    EngineTag,
    FailureCategory,
    Plan,
    PlanNotReadyError,
    RenderRequest,
    RenderTier,
    Run,
    RunState,
)
from .retry_policy import categorize_error
from .store import RunRepository

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

DISPATCH_MODE = os.getenv("DISPATCH_MODE", "callback")
CALLBACK_BASE_URL = os.getenv("KIE_CALLBACK_BASE_URL", "")
CALLBACK_TOKEN = os.getenv("CALLBACK_TOKEN", "")
POLL_INTERVAL = float(os.getenv("PROVIDER_POLL_INTERVAL", "10"))
MAX_POLLS = int(os.getenv("PROVIDER_MAX_POLLS", "120"))

DEFAULT_SEED = 341991
PREVIEW_SECONDS = 8
MAX_REFERENCE_IMAGES = 3

TIER_ENGINES = {
    RenderTier.PREVIEW: EngineTag.VEO_FAST,
    RenderTier.FINAL: EngineTag.VEO_3,
}
TIER_CREDIT_COST = {
    RenderTier.PREVIEW: 0,
    RenderTier.FINAL: 1,
}


class CompletionSink(Protocol):
    async def complete_run(self, run_id: str, artifact_url: str) -> object: ...
    async def fail_run(
        self, run_id: str, error: str, category: Optional[FailureCategory] = None
    ) -> object: ...


# ── Request compilation ──────────────────────────────────────────────────────

def _overlay_lines(plan: Plan, until: float) -> list[str]:
    lines = []
    for beat in plan.beats:
        for o in beat.overlays:
            if o.start_time < until:
                lines.append(
                    f'On-screen text "{o.text}" at {o.position.value.replace("_", " ")} '
                    f"from {o.start_time:g}s to {min(o.end_time, until):g}s."
                )
    return lines


def compile_request(
    plan: Plan,
    tier: RenderTier,
    seed: int,
    instruction_hint: Optional[str] = None,
) -> RenderRequest:
    """Build the provider request for one tier of a plan."""
    hook = plan.beat(BeatType.HOOK)
    brand = f"Brand: {plan.brand.name}, {plan.brand.style} style, primary color {plan.brand.primary_color}."

    if tier == RenderTier.PREVIEW:
        duration = min(PREVIEW_SECONDS, plan.target_duration)
        lines = [hook.prompt or hook.visual_style, brand]
        lines += _overlay_lines(plan, duration)
        image_urls = [a.url for a in hook.asset_refs]
        audio, audio_url = False, None
    else:
        duration = plan.target_duration
        lines = [
            f"[{b.start_time:g}-{b.end_time:g}s {b.type.value}] {b.prompt or b.visual_style}"
            for b in plan.beats
        ]
        lines.append(brand)
        lines += _overlay_lines(plan, duration)
        image_urls = [a.url for a in plan.selected_assets]
        audio, audio_url = True, plan.narration_audio_url

    if instruction_hint:
        lines.append(f"Revision: {instruction_hint}")

    return RenderRequest(
        prompt="\n".join(line for line in lines if line),
        engine=TIER_ENGINES[tier],
        image_urls=image_urls[:MAX_REFERENCE_IMAGES],
        aspect_ratio=plan.aspect_ratio,
        duration=duration,
        seed=seed,
        audio=audio,
        audio_url=audio_url,
    )


def default_seed(plan: Plan) -> int:
    for beat in plan.beats:
        if beat.seed:
            return beat.seed
    return DEFAULT_SEED


def _chain_seed(run: Run) -> int:
    return run.original_seed if run.original_seed is not None else run.seed


# ═════════════════════════════════════════════════════════════════════════════
# RenderDispatcher
# ═════════════════════════════════════════════════════════════════════════════

class RenderDispatcher:
    def __init__(
        self,
        runs: RunRepository,
        metrics: MetricsCollector,
        provider_for: Callable[[EngineTag], RenderProvider] = ProviderFactory.get_provider,
        mode: str = DISPATCH_MODE,
        callback_base_url: str = CALLBACK_BASE_URL,
        callback_token: str = CALLBACK_TOKEN,
        poll_interval: float = POLL_INTERVAL,
        max_polls: int = MAX_POLLS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if mode not in ("callback", "poll", "background"):
            raise ValueError(f"Unknown dispatch mode: {mode}")
        self.runs = runs
        self.metrics = metrics
        self.provider_for = provider_for
        self.mode = mode
        self.callback_base_url = callback_base_url.rstrip("/")
        self.callback_token = callback_token
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep
        self._sink: Optional[CompletionSink] = None
        self._tasks: set[asyncio.Task] = set()

    def set_completion_sink(self, sink: CompletionSink):
        self._sink = sink

    def _callback_url(self, run_id: str) -> Optional[str]:
        if not self.callback_base_url:
            return None
        params = {"runId": run_id}
        if self.callback_token:
            params["token"] = self.callback_token
        return f"{self.callback_base_url}/webhooks/provider?{urlencode(params)}"

    # ── Submit ───────────────────────────────────────────────────────────

    async def submit(
        self,
        plan: Plan,
        tier: RenderTier,
        user_id: Optional[str] = None,
        retry_of: Optional[Run] = None,
        seed: Optional[int] = None,
        instruction_hint: Optional[str] = None,
        free: bool = False,
        credit_cost: Optional[int] = None,
    ) -> Run:
        """
        Create a Run for ``plan`` at ``tier`` and hand it to the provider.

        Raises PlanNotReadyError for an unvalidated plan or a final render
        without narration audio. Provider failures are returned as a failed Run.
        """
        if not plan.is_validated:
            raise PlanNotReadyError(f"Plan {plan.id} has not passed validation")
        if tier == RenderTier.FINAL and not plan.narration_audio_url:
            raise PlanNotReadyError(f"Plan {plan.id} has no narration audio for a final render")

        if seed is None:
            seed = retry_of.seed if retry_of else default_seed(plan)
        request = compile_request(plan, tier, seed, instruction_hint)
        cost = TIER_CREDIT_COST[tier] if credit_cost is None else credit_cost

        run = Run(
            variant_id=plan.variant_id,
            plan_id=plan.id,
            user_id=user_id or (retry_of.user_id if retry_of else None),
            tier=tier,
            engine=request.engine,
            seed=seed,
            cost_seconds=request.duration,
            credit_cost=0 if free else cost,
            retry_of=retry_of.id if retry_of else None,
            retry_count=retry_of.retry_count + 1 if retry_of else 0,
            original_seed=_chain_seed(retry_of) if retry_of else seed,
            is_free_retry=free,
        )
        request.callback_url = self._callback_url(run.id)
        run.request_payload = request.model_dump(mode="json", by_alias=True)

        self.runs.put(run)
        self.metrics.inc_counter("runs.submitted")
        self.metrics.inc_counter(f"runs.submitted.{tier.value}")
        logger.info(
            f"[{run.id}] queued {tier.value} render for plan {plan.id} "
            f"(engine={run.engine.value}, seed={seed}, retry_of={run.retry_of})"
        )

        self.runs.transition(run.id, [RunState.QUEUED], RunState.RUNNING)
        logger.info(f"[{run.id}] queued → running")

        provider = self.provider_for(run.engine)
        started = time.time()
        try:
            job_id = await provider.submit(request)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            category = categorize_error(error)
            if category != FailureCategory.TIMEOUT:
                category = FailureCategory.API_ERROR
            logger.error(f"[{run.id}] provider submission failed ({category.value}): {error}")
            self.metrics.record_error("dispatcher", category.value, error, run.id)
            await self._fail(run.id, f"Provider submission failed: {error}", category)
            return self.runs.get(run.id)
        finally:
            self.metrics.record_latency("provider.submit", (time.time() - started) * 1000)

        run = self.runs.update(run.id, provider_job_id=job_id)
        logger.info(f"[{run.id}] provider job {job_id} started")

        if self.mode == "poll":
            await self.poll_until_done(run.id)
            return self.runs.get(run.id)
        if self.mode == "background":
            self._spawn_poll(run.id)
        return run

    # ── Polling ──────────────────────────────────────────────────────────

    def _spawn_poll(self, run_id: str):
        task = asyncio.create_task(self.poll_until_done(run_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def poll_until_done(self, run_id: str):
        """Poll the provider until the run finishes or ``max_polls`` is exceeded."""
        run = self.runs.get(run_id)
        if run is None or run.is_terminal or not run.provider_job_id:
            return
        provider = self.provider_for(run.engine)

        for attempt in range(1, self.max_polls + 1):
            try:
                status = await provider.poll(run.provider_job_id)
            except Exception as e:
                logger.warning(f"[{run_id}] poll {attempt}/{self.max_polls} failed: {e}")
                status = None

            if status is not None and status.status == "succeeded" and status.artifact_url:
                await self._complete(run_id, status.artifact_url)
                return
            if status is not None and status.status == "failed":
                await self._fail(run_id, status.error or "Provider reported failure")
                return

            current = self.runs.get(run_id)
            if current is None or current.is_terminal:
                # completed by a provider callback meanwhile
                return
            await self._sleep(self.poll_interval)

        logger.warning(f"[{run_id}] no result after {self.max_polls} polls")
        await self._fail(
            run_id,
            f"Render timed out after {self.max_polls} polls",
            FailureCategory.TIMEOUT,
        )

    async def resume_pending(self) -> int:
        """Resume polling for runs left in flight by a previous process."""
        if self.mode == "callback":
            return 0
        resumed = 0
        for run in self.runs.list_by_state([RunState.RUNNING]):
            if run.provider_job_id:
                logger.info(f"[{run.id}] resuming poll for provider job {run.provider_job_id}")
                self._spawn_poll(run.id)
                resumed += 1
        return resumed

    async def wait_idle(self):
        """Wait for background poll tasks (used at shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Completion routing ───────────────────────────────────────────────

    async def _complete(self, run_id: str, artifact_url: str):
        if self._sink is not None:
            await self._sink.complete_run(run_id, artifact_url)
        else:
            self.runs.transition(
                run_id, [RunState.QUEUED, RunState.RUNNING], RunState.SUCCEEDED, artifact_url=artifact_url
            )

    async def _fail(self, run_id: str, error: str, category: Optional[FailureCategory] = None):
        if self._sink is not None:
            await self._sink.fail_run(run_id, error, category)
        else:
            self.runs.transition(
                run_id,
                [RunState.QUEUED, RunState.RUNNING],
                RunState.FAILED,
                error=error,
                failure_category=category or categorize_error(error),
            )
