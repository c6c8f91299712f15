"""
Post-render Quality Gate.

Scores a finished artifact before its variant is declared ready:

  Battery (mean → overall score):  product presence, text legibility, color consistency
  Advisory (optional):             motion smoothness, glitch detection
  Overlay presence (OCR-style):    expected overlay strings vs detected text

The scoring and text-detection models are injected (QualityChecker /
TextDetector); vision.py has the Gemini-backed implementations.
Every individual check is persisted, even when the gate passes.
"""

import os
import re
import logging
from typing import Iterable, Optional, Protocol

from pydantic import BaseModel, Field

from .models import (
    AssetRef,
    Brand,
    ExpectedOverlay,
    OverlayCheckResult,
    Plan,
    QualitySummary,
    QualityValidationRecord,
    ValidationResult,
    ValidationType,
)

logger = logging.getLogger(__name__)

# ── Thresholds ───────────────────────────────────────────────────────────────

OVERALL_PASS_SCORE = 70
OVERLAY_CONFIDENCE_OK = 0.9
OVERLAY_MATCH_SIMILARITY = 0.8

BATTERY = (
    ValidationType.PRODUCT_PRESENCE,
    ValidationType.TEXT_LEGIBILITY,
    ValidationType.COLOR_CONSISTENCY,
)
ADVISORY = (
    ValidationType.MOTION_SMOOTHNESS,
    ValidationType.GLITCH_DETECTION,
)

# A dimension "passes" on its own at this score
PASS_THRESHOLDS = {
    ValidationType.PRODUCT_PRESENCE: 70,
    ValidationType.TEXT_LEGIBILITY: 70,
    ValidationType.COLOR_CONSISTENCY: 65,
    ValidationType.MOTION_SMOOTHNESS: 70,
    ValidationType.GLITCH_DETECTION: 70,
}

# Below these a failure is specific enough to earn a free retry
FAILURE_THRESHOLDS = {
    ValidationType.PRODUCT_PRESENCE: 60,
    ValidationType.TEXT_LEGIBILITY: 50,
    ValidationType.COLOR_CONSISTENCY: 60,
    ValidationType.MOTION_SMOOTHNESS: 50,
    ValidationType.GLITCH_DETECTION: 60,
}

RECOMMENDATIONS = {
    ValidationType.PRODUCT_PRESENCE: (
        "Product not clearly visible. Recommend reshoot with better reference image or adjusted prompt."
    ),
    ValidationType.TEXT_LEGIBILITY: "Text overlays have legibility issues. Check contrast and positioning.",
    ValidationType.COLOR_CONSISTENCY: (
        "Color inconsistency detected. Ensure brand colors are maintained throughout."
    ),
    ValidationType.MOTION_SMOOTHNESS: (
        "Jittery or unnatural motion detected. Try a different seed or adjust camera instructions."
    ),
    ValidationType.GLITCH_DETECTION: "Visual glitches or artifacts detected. Automatic retry recommended.",
}
GENERAL_RECOMMENDATION = "General quality below threshold. Review all aspects."


def advisory_checks_from_env() -> tuple[ValidationType, ...]:
    """Parse QA_ADVISORY_CHECKS (comma list) into advisory dimensions."""
    raw = os.getenv("QA_ADVISORY_CHECKS", "")
    wanted = {part.strip() for part in raw.split(",") if part.strip()}
    return tuple(t for t in ADVISORY if t.value in wanted)


# ── Collaborator contracts ───────────────────────────────────────────────────

class DimensionScore(BaseModel):
    score: int = Field(..., ge=0, le=100)
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    details: dict = Field(default_factory=dict)


class QualityChecker(Protocol):
    async def check(
        self,
        dimension: ValidationType,
        artifact_url: str,
        reference_assets: list[AssetRef],
        brand: Optional[Brand] = None,
    ) -> DimensionScore: ...


class TextDetector(Protocol):
    async def detect_text(self, artifact_url: str, start_time: float, end_time: float) -> list[str]: ...


# ── Text matching ────────────────────────────────────────────────────────────

def normalize_text(text: str) -> str:
    text = re.sub(r"[^\w\s%$€£.]", " ", text.lower())
    text = text.replace("...", " ")
    return " ".join(text.split()).strip(" .")


def text_similarity(expected: str, detected: str) -> float:
    """1.0 exact, 0.9 containment, otherwise word-set overlap (Jaccard)."""
    a, b = normalize_text(expected), normalize_text(detected)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return 0.9
    words_a, words_b = set(a.split()), set(b.split())
    return len(words_a & words_b) / len(words_a | words_b)


def expected_overlays(plan: Plan, render_duration: Optional[float] = None) -> list[ExpectedOverlay]:
    """Plan overlays that fall inside the rendered window, clipped to it."""
    result = []
    for overlay in plan.all_overlays():
        if render_duration is not None and overlay.start_time >= render_duration:
            continue
        end = overlay.end_time if render_duration is None else min(overlay.end_time, render_duration)
        result.append(ExpectedOverlay(
            text=overlay.text,
            start_time=overlay.start_time,
            end_time=end,
            position=overlay.position,
        ))
    return result


# ═════════════════════════════════════════════════════════════════════════════
# QualityGate
# ═════════════════════════════════════════════════════════════════════════════

class QualityGate:
    """
    Usage:
        gate = QualityGate(GeminiQualityChecker(), GeminiTextDetector(), stores.validations)
        summary = await gate.evaluate(url, plan.selected_assets, expected_overlays(plan), run_id=run.id)
    """

    def __init__(
        self,
        checker: QualityChecker,
        detector: TextDetector,
        repository=None,
        advisory: Iterable[ValidationType] = (),
        validator_service: str = "render-quality-gate",
        validator_version: str = "1.0.0",
    ):
        self.checker = checker
        self.detector = detector
        self.repository = repository
        self.advisory = tuple(advisory)
        self.validator_service = validator_service
        self.validator_version = validator_version

    async def evaluate(
        self,
        artifact_url: str,
        reference_assets: list[AssetRef],
        overlays: list[ExpectedOverlay],
        run_id: Optional[str] = None,
        brand: Optional[Brand] = None,
    ) -> QualitySummary:
        tag = f"[{run_id}] " if run_id else ""
        logger.info(f"{tag}Quality gate: {artifact_url} ({len(overlays)} expected overlay(s))")

        battery: list[ValidationResult] = []
        for dimension in BATTERY:
            battery.append(await self._score(dimension, artifact_url, reference_assets, brand))

        advisory: list[ValidationResult] = []
        for dimension in self.advisory:
            advisory.append(await self._score(dimension, artifact_url, reference_assets, brand))

        overlay_check = await self.check_overlays(artifact_url, overlays)
        overlay_validation = self._overlay_validation(overlay_check)

        overall_score = round(sum(v.score for v in battery) / len(battery))
        overall_passed = overall_score >= OVERALL_PASS_SCORE

        addressable = [
            v for v in battery + advisory
            if v.score < FAILURE_THRESHOLDS[v.validation_type]
        ]
        eligible = not overall_passed and bool(addressable)

        recommendation = ""
        if addressable:
            worst = min(addressable, key=lambda v: v.score)
            recommendation = RECOMMENDATIONS[worst.validation_type]
        elif not overall_passed:
            recommendation = GENERAL_RECOMMENDATION

        validations = battery + advisory + [overlay_validation]
        if run_id and self.repository is not None:
            for v in validations:
                self.repository.put(QualityValidationRecord(
                    run_id=run_id,
                    validator_service=self.validator_service,
                    validator_version=self.validator_version,
                    **v.model_dump(),
                ))

        logger.info(
            f"{tag}Quality gate result: score={overall_score}, passed={overall_passed}, "
            f"free_retry={eligible}, overlays_ok={overlay_check.ok}"
        )
        return QualitySummary(
            overall_passed=overall_passed,
            overall_score=overall_score,
            validations=validations,
            eligible_for_free_retry=eligible,
            retry_recommendation=recommendation,
            overlay_check=overlay_check,
        )

    async def _score(
        self,
        dimension: ValidationType,
        artifact_url: str,
        reference_assets: list[AssetRef],
        brand: Optional[Brand],
    ) -> ValidationResult:
        result = await self.checker.check(dimension, artifact_url, reference_assets, brand)
        return ValidationResult(
            validation_type=dimension,
            passed=result.score >= PASS_THRESHOLDS[dimension],
            score=result.score,
            issues=result.issues,
            suggestions=result.suggestions,
            details=result.details,
        )

    async def check_overlays(self, artifact_url: str, overlays: list[ExpectedOverlay]) -> OverlayCheckResult:
        """Compare expected overlay strings against text detected in their time windows."""
        if not overlays:
            return OverlayCheckResult(ok=True, confidence=1.0, details=["No overlays expected"])

        found: list[str] = []
        missing: list[str] = []
        for expected in overlays:
            try:
                detected = await self.detector.detect_text(artifact_url, expected.start_time, expected.end_time)
            except Exception as e:
                logger.error(f"Text detection failed for overlay '{expected.text}': {e}")
                return OverlayCheckResult(
                    ok=False,
                    confidence=0.0,
                    missing=[o.text for o in overlays],
                    details=["Text detection failed", str(e)],
                )
            best = max((text_similarity(expected.text, d) for d in detected), default=0.0)
            if best >= OVERLAY_MATCH_SIMILARITY:
                found.append(expected.text)
            else:
                missing.append(expected.text)

        confidence = len(found) / len(overlays)
        ok = confidence >= OVERLAY_CONFIDENCE_OK
        return OverlayCheckResult(
            ok=ok,
            confidence=confidence,
            found=found,
            missing=missing,
            details=[
                f"Found {len(found)}/{len(overlays)} overlays",
                f"Confidence: {confidence * 100:.1f}%",
                "QA passed" if ok else "QA failed - burn-in required",
            ],
        )

    @staticmethod
    def _overlay_validation(check: OverlayCheckResult) -> ValidationResult:
        return ValidationResult(
            validation_type=ValidationType.OVERLAY_PRESENCE,
            passed=check.ok,
            score=round(check.confidence * 100),
            issues=[f'Overlay "{text}" not detected' for text in check.missing],
            suggestions=[] if check.ok else ["Burn overlays into the video"],
            details={"found": check.found, "missing": check.missing, "confidence": check.confidence},
        )
