"""
Retry decisions for failed or low-quality renders.

categorize_error() and derive_seed() are pure so they can be unit-tested in
isolation; RetryPolicy.evaluate() is a pure function of (run, error, quality).
"""

import re
from typing import Optional

from .models import (
    FailureCategory,
    QualitySummary,
    RetryDecision,
    RetryStrategy,
    Run,
    ValidationType,
)
from .quality_gate import FAILURE_THRESHOLDS

# ── Config ───────────────────────────────────────────────────────────────────

DEFAULT_MAX_RETRIES = 3
SEED_STEP = 1000
LOW_SCORE_THRESHOLD = 60

MOTION_DEFECT_TYPES = (ValidationType.MOTION_SMOOTHNESS, ValidationType.GLITCH_DETECTION)

_SERVER_ERROR = re.compile(r"\b5\d\d\b")


def categorize_error(message: Optional[str]) -> FailureCategory:
    """Classify a provider error message by inspecting its text."""
    if not message:
        return FailureCategory.OTHER
    text = message.lower()
    if "timeout" in text or "timed out" in text:
        return FailureCategory.TIMEOUT
    if (
        "network" in text
        or "fetch" in text
        or "connection" in text
        or "econnreset" in text
        or _SERVER_ERROR.search(text)
    ):
        return FailureCategory.API_ERROR
    if "cancelled" in text or "canceled" in text:
        return FailureCategory.USER_CANCELLED
    return FailureCategory.OTHER


def derive_seed(seed: int, retry_count: int) -> int:
    """Deterministic seed for the next retry: seed + (retry_count + 1) * 1000."""
    return seed + (retry_count + 1) * SEED_STEP


def _has_motion_defects(quality: QualitySummary) -> bool:
    for v in quality.validations:
        if v.validation_type in MOTION_DEFECT_TYPES:
            if v.score < FAILURE_THRESHOLDS[v.validation_type]:
                return True
    return False


class RetryPolicy:
    """
    Decides whether a Run should be re-rendered automatically.

    Rules, first match wins:
      1. retry budget exhausted              → stop
      2. transport error (api_error/timeout) → free retry, same seed
      3. addressable quality failure         → free retry, strategy by defect
      4. anything else                       → no retry
    """

    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES):
        self.max_retries = max_retries

    def evaluate(
        self,
        run: Run,
        error: Optional[str] = None,
        quality: Optional[QualitySummary] = None,
    ) -> RetryDecision:
        category = categorize_error(error) if error else (
            FailureCategory.QUALITY_VALIDATION if quality is not None else FailureCategory.OTHER
        )

        if run.retry_count >= self.max_retries:
            return RetryDecision(
                should_retry=False,
                reason=f"Maximum retries ({self.max_retries}) reached",
                failure_category=category,
                max_retries_reached=True,
            )

        if error and category in (FailureCategory.API_ERROR, FailureCategory.TIMEOUT):
            return RetryDecision(
                should_retry=True,
                is_free_retry=True,
                reason=f"Transient provider failure ({category.value}): {error}",
                failure_category=category,
                strategy=RetryStrategy.SAME_SEED,
                recommended_seed=run.seed,
            )

        if quality is not None and quality.eligible_for_free_retry:
            return self._quality_retry(run, quality)

        return RetryDecision(
            should_retry=False,
            reason="Failure is not eligible for automatic retry",
            failure_category=category,
        )

    @staticmethod
    def _quality_retry(run: Run, quality: QualitySummary) -> RetryDecision:
        if _has_motion_defects(quality):
            strategy = RetryStrategy.NEW_SEED
        elif quality.overall_score < LOW_SCORE_THRESHOLD:
            strategy = RetryStrategy.NEW_SEED if run.retry_count == 0 else RetryStrategy.REVISED_INSTRUCTION
        else:
            strategy = RetryStrategy.SAME_SEED

        if strategy == RetryStrategy.NEW_SEED:
            base = run.original_seed if run.original_seed is not None else run.seed
            seed = derive_seed(base, run.retry_count)
        else:
            seed = run.seed
        hint = None
        if strategy == RetryStrategy.REVISED_INSTRUCTION:
            hint = quality.retry_recommendation or "Keep the product clearly visible in every shot."

        return RetryDecision(
            should_retry=True,
            is_free_retry=True,
            reason=f"Quality score {quality.overall_score} below threshold: {quality.retry_recommendation}",
            failure_category=FailureCategory.QUALITY_VALIDATION,
            strategy=strategy,
            recommended_seed=seed,
            revision_hint=hint,
        )
