"""
Stale-run sweeper.

Runs still queued/running past their tier timeout (preview 10 min, final
20 min) are failed with a timeout error through the CallbackHandler, so the
RetryPolicy applies exactly as for a provider failure callback.
"""

import os
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .callbacks import CallbackHandler
from .models import FailureCategory, RenderTier, RunState
from .store import RunRepository

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

PREVIEW_TIMEOUT_SECONDS = int(os.getenv("PREVIEW_TIMEOUT_SECONDS", "600"))
FINAL_TIMEOUT_SECONDS = int(os.getenv("FINAL_TIMEOUT_SECONDS", "1200"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))


class StaleRunSweeper:
    def __init__(
        self,
        runs: RunRepository,
        handler: CallbackHandler,
        preview_timeout: int = PREVIEW_TIMEOUT_SECONDS,
        final_timeout: int = FINAL_TIMEOUT_SECONDS,
        interval: int = SWEEP_INTERVAL_SECONDS,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.runs = runs
        self.handler = handler
        self.timeouts = {
            RenderTier.PREVIEW: preview_timeout,
            RenderTier.FINAL: final_timeout,
        }
        self.interval = interval
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def sweep(self) -> list[str]:
        """Fail every stale in-flight run; returns the ids that were timed out."""
        now = self._now()
        timed_out = []
        for run in self.runs.list_by_state([RunState.QUEUED, RunState.RUNNING]):
            limit = self.timeouts[run.tier]
            age = (now - run.created_at).total_seconds()
            if age <= limit:
                continue
            logger.warning(f"[{run.id}] {run.tier.value} run stale after {age:.0f}s (limit {limit}s)")
            await self.handler.fail_run(
                run.id,
                f"Render timed out after {limit}s without a provider result",
                FailureCategory.TIMEOUT,
            )
            timed_out.append(run.id)
        return timed_out

    async def run_forever(self):
        logger.info(f"Stale-run sweeper started (every {self.interval}s)")
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Stale-run sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
