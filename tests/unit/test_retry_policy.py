"""Tests for retry decisions and error categorization."""
import pytest

from render_worker.pipeline.models import (
    EngineTag,
    FailureCategory,
    QualitySummary,
    RenderTier,
    RetryStrategy,
    Run,
    ValidationResult,
    ValidationType,
)
from render_worker.pipeline.retry_policy import RetryPolicy, categorize_error, derive_seed


def _run(retry_count: int = 0, seed: int = 341991, original_seed=None) -> Run:
    return Run(
        variant_id="variant-1",
        plan_id="plan-1",
        tier=RenderTier.PREVIEW,
        engine=EngineTag.VEO_FAST,
        seed=seed,
        retry_count=retry_count,
        original_seed=original_seed,
    )


def _quality(score: int, validations: list, eligible: bool = True, recommendation: str = "Fix it") -> QualitySummary:
    return QualitySummary(
        overall_passed=score >= 70,
        overall_score=score,
        validations=[
            ValidationResult(validation_type=t, passed=s >= 70, score=s) for t, s in validations
        ],
        eligible_for_free_retry=eligible,
        retry_recommendation=recommendation,
    )


class TestCategorizeError:
    @pytest.mark.parametrize("message,expected", [
        ("Request timeout after 60s", FailureCategory.TIMEOUT),
        ("upstream timed out", FailureCategory.TIMEOUT),
        ("Network unreachable", FailureCategory.API_ERROR),
        ("Failed to fetch", FailureCategory.API_ERROR),
        ("Connection reset by peer", FailureCategory.API_ERROR),
        ("read ECONNRESET", FailureCategory.API_ERROR),
        ("Kie returned 503 Service Unavailable", FailureCategory.API_ERROR),
        ("Job cancelled by user", FailureCategory.USER_CANCELLED),
        ("Prompt rejected: sensitive content", FailureCategory.OTHER),
        ("HTTP 400 bad request", FailureCategory.OTHER),
        ("", FailureCategory.OTHER),
        (None, FailureCategory.OTHER),
    ])
    def test_categorize(self, message, expected):
        assert categorize_error(message) == expected


class TestDeriveSeed:
    def test_first_retry(self):
        assert derive_seed(341991, 0) == 342991

    def test_second_retry(self):
        assert derive_seed(341991, 1) == 343991


class TestRetryPolicy:
    def test_low_product_presence_gets_new_seed(self):
        quality = _quality(55, [(ValidationType.PRODUCT_PRESENCE, 40)])
        decision = RetryPolicy().evaluate(_run(retry_count=0), quality=quality)

        assert decision.should_retry is True
        assert decision.is_free_retry is True
        assert decision.strategy == RetryStrategy.NEW_SEED
        assert decision.recommended_seed == 342991
        assert decision.failure_category == FailureCategory.QUALITY_VALIDATION

    def test_low_score_on_later_retry_revises_instruction(self):
        quality = _quality(55, [(ValidationType.PRODUCT_PRESENCE, 40)], recommendation="Show the bottle")
        decision = RetryPolicy().evaluate(_run(retry_count=1), quality=quality)

        assert decision.strategy == RetryStrategy.REVISED_INSTRUCTION
        assert decision.revision_hint == "Show the bottle"
        assert decision.recommended_seed == 341991

    def test_motion_defect_always_gets_new_seed(self):
        quality = _quality(65, [(ValidationType.MOTION_SMOOTHNESS, 30)])
        decision = RetryPolicy().evaluate(_run(retry_count=2), quality=quality)
        assert decision.strategy == RetryStrategy.NEW_SEED
        assert decision.recommended_seed == 341991 + 3000

    def test_new_seed_is_derived_from_the_chain_original_seed(self):
        quality = _quality(65, [(ValidationType.MOTION_SMOOTHNESS, 30)])
        run = _run(retry_count=1, seed=342991, original_seed=341991)
        decision = RetryPolicy().evaluate(run, quality=quality)
        assert decision.recommended_seed == 343991

    def test_moderate_failure_keeps_seed(self):
        quality = _quality(65, [(ValidationType.TEXT_LEGIBILITY, 45)])
        decision = RetryPolicy().evaluate(_run(), quality=quality)
        assert decision.strategy == RetryStrategy.SAME_SEED
        assert decision.recommended_seed == 341991

    def test_ineligible_quality_failure_is_not_retried(self):
        quality = _quality(65, [(ValidationType.PRODUCT_PRESENCE, 65)], eligible=False)
        decision = RetryPolicy().evaluate(_run(), quality=quality)
        assert decision.should_retry is False
        assert decision.max_retries_reached is False

    @pytest.mark.parametrize("error", ["Request timeout", "Network error", "Kie returned 502"])
    def test_transport_errors_retry_free_with_same_seed(self, error):
        decision = RetryPolicy().evaluate(_run(seed=77), error=error)
        assert decision.should_retry is True
        assert decision.is_free_retry is True
        assert decision.strategy == RetryStrategy.SAME_SEED
        assert decision.recommended_seed == 77

    def test_other_errors_are_not_retried(self):
        decision = RetryPolicy().evaluate(_run(), error="Prompt rejected: sensitive content")
        assert decision.should_retry is False
        assert decision.failure_category == FailureCategory.OTHER

    @pytest.mark.parametrize("kwargs", [
        {"error": "Network error"},
        {"error": "Prompt rejected"},
        {"quality": _quality(20, [(ValidationType.PRODUCT_PRESENCE, 10)])},
        {},
    ])
    def test_exhausted_budget_stops_regardless_of_failure(self, kwargs):
        decision = RetryPolicy().evaluate(_run(retry_count=3), **kwargs)
        assert decision.should_retry is False
        assert decision.max_retries_reached is True

    def test_custom_budget(self):
        decision = RetryPolicy(max_retries=1).evaluate(_run(retry_count=1), error="Network error")
        assert decision.max_retries_reached is True
