"""
Pre-flight Plan Validation.

Validates and normalizes a candidate content plan before any paid provider
work starts. Runs in a fixed order:

  1. Schema: pydantic; failure is terminal, nothing is repaired
  2. Beat order: reorder to hook → demo → proof → cta (warning)
  3. Overlay words: truncate to maxOverlayWords with "..." (warning)
  4. Voice-over WPS: truncate to floor(duration * maxWPS) words (warning)
  5. Claims: soften forbidden terms with fixed synonyms (one warning)
  6. Timing: hard errors, never repaired
  7. Asset count: at least 3 selected assets (hard error)
  8. Mark the plan validated when no errors remain
"""

import math
import re
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from .models import (
    Beat,
    Constraints,
    Plan,
    PlanValidationResult,
    QuickValidationResult,
    default_constraints,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

TIMING_TOLERANCE = 0.1   # seconds
MIN_SELECTED_ASSETS = 3

CLAIM_SYNONYMS = {
    "cure": "help with",
    "treat": "support",
    "diagnose": "identify",
    "prevent": "help reduce",
    "guarantee": "designed to",
    "miracle": "amazing",
    "instant": "quick",
    "overnight": "fast",
    "revolutionary": "innovative",
}
FALLBACK_SYNONYM = "improve"


# ── Pure helpers ─────────────────────────────────────────────────────────────

_PRICE_OR_PERCENT = re.compile(r"([$€£¥])?(\d[\d.,]*)(%)?(\W*)")


def _units(word: str) -> list[str]:
    # "$20" and "50%" read as two words: the sign and the number
    m = _PRICE_OR_PERCENT.fullmatch(word)
    if m is None or not (m.group(1) or m.group(3)):
        return [word]
    units = [g for g in m.group(1, 2, 3) if g]
    units[-1] += m.group(4)
    return units


def count_words(text: str) -> int:
    return sum(len(_units(w)) for w in text.split())


def truncate_words(text: str, max_words: int, marker: str = "...") -> str:
    """
    Keep as many leading words as fit in ``max_words`` and append ``marker``.

    A price or percentage counts as two words and is never split; if it
    does not fit whole it is dropped.
    """
    if count_words(text) <= max_words:
        return text
    if max_words <= 0:
        return ""
    kept: list[str] = []
    used = 0
    for word in text.split():
        size = len(_units(word))
        if used + size > max_words:
            break
        kept.append(word)
        used += size
    if not kept:
        return ""
    return " ".join(kept) + marker


def _claim_pattern(term: str) -> re.Pattern:
    # whole word, tolerating simple inflections (guarantees, cured, treated)
    return re.compile(rf"\b{re.escape(term)}(?:s|es|d|ed)?\b", re.IGNORECASE)


def soften_claims(text: str, forbidden: list[str]) -> tuple[str, list[str]]:
    """
    Replace every forbidden term in ``text`` with its safer synonym.

    Returns the softened text and the list of terms that were found.
    """
    found: list[str] = []
    for term in forbidden:
        pattern = _claim_pattern(term)
        if not pattern.search(text):
            continue
        synonym = CLAIM_SYNONYMS.get(term.lower(), FALLBACK_SYNONYM)

        def _replace(match: re.Match, synonym: str = synonym) -> str:
            if match.group(0)[0].isupper():
                return synonym[0].upper() + synonym[1:]
            return synonym

        text = pattern.sub(_replace, text)
        found.append(term.lower())
    return text, found


def _order_label(beats: list[Beat]) -> str:
    return "[" + ", ".join(b.type.value for b in beats) + "]"


# ═════════════════════════════════════════════════════════════════════════════
# PlanValidator
# ═════════════════════════════════════════════════════════════════════════════

class PlanValidator:
    """
    Validates a candidate plan and returns a normalized copy.

    Usage:
        validator = PlanValidator()
        result = validator.validate(plan_json)
        if result.valid:
            store.put(result.normalized_plan)
    """

    def __init__(self, constraints: Optional[Constraints] = None):
        self.default_constraints = constraints or default_constraints()

    def _constraints_for(self, plan: Plan) -> Constraints:
        return plan.constraints or self.default_constraints

    # ── Step 1: schema ───────────────────────────────────────────────────

    @staticmethod
    def _parse(candidate: Any) -> tuple[Optional[Plan], list[str]]:
        if isinstance(candidate, Plan):
            return candidate.model_copy(deep=True), []
        try:
            return Plan.model_validate(candidate), []
        except ValidationError as e:
            errors = []
            for err in e.errors():
                loc = ".".join(str(part) for part in err["loc"]) or "plan"
                errors.append(f"{loc}: {err['msg']}")
            return None, errors

    # ── Full validation ──────────────────────────────────────────────────

    def validate(self, candidate: Any) -> PlanValidationResult:
        plan, errors = self._parse(candidate)
        if plan is None:
            logger.warning(f"Plan rejected by schema validation: {len(errors)} error(s)")
            return PlanValidationResult(valid=False, errors=errors)

        constraints = self._constraints_for(plan)
        warnings: list[str] = []
        changed = False

        changed |= self._enforce_beat_order(plan, constraints, warnings)
        changed |= self._enforce_overlay_words(plan, constraints, warnings)
        changed |= self._enforce_voice_over_wps(plan, constraints, warnings)

        if self._soften_forbidden_claims(plan, constraints, warnings):
            changed = True
            # softened phrases can be longer than the terms they replace
            self._enforce_overlay_words(plan, constraints, warnings)
            self._enforce_voice_over_wps(plan, constraints, warnings)

        errors.extend(self._timing_errors(plan, constraints))

        if len(plan.selected_assets) < MIN_SELECTED_ASSETS:
            errors.append(
                f"At least {MIN_SELECTED_ASSETS} selected assets are required "
                f"(got {len(plan.selected_assets)})"
            )

        plan.is_validated = not errors
        plan.validation_errors = list(errors)
        if changed:
            plan.updated_at = datetime.now(timezone.utc)

        logger.info(
            f"[{plan.id}] plan validation: valid={plan.is_validated}, "
            f"errors={len(errors)}, warnings={len(warnings)}"
        )
        for w in warnings:
            logger.warning(f"[{plan.id}] {w}")

        return PlanValidationResult(
            valid=plan.is_validated,
            errors=errors,
            warnings=warnings,
            normalized_plan=plan,
        )

    def quick_validate(self, candidate: Any) -> QuickValidationResult:
        """Beat-order, overlay-length and voice-over pace checks, without repair."""
        plan, errors = self._parse(candidate)
        if plan is None:
            return QuickValidationResult(valid=False, errors=errors)

        constraints = self._constraints_for(plan)
        expected = list(constraints.require_beat_order)
        actual = [b.type for b in plan.beats]
        if actual != expected:
            errors.append(
                f"Beat order {_order_label(plan.beats)} does not match required order "
                f"[{', '.join(t.value for t in expected)}]"
            )

        for beat in plan.beats:
            for overlay in beat.overlays:
                words = count_words(overlay.text)
                if words > constraints.max_overlay_words:
                    errors.append(
                        f'Overlay "{overlay.text}" in {beat.type.value} beat has {words} words '
                        f"(max {constraints.max_overlay_words})"
                    )
            vo = beat.voice_over
            if vo is not None and vo.end_time > vo.start_time:
                wps = count_words(vo.text) / (vo.end_time - vo.start_time)
                if wps > constraints.max_voice_over_wps:
                    errors.append(
                        f"Voice-over in {beat.type.value} beat runs at {wps:.2f} words/sec "
                        f"(max {constraints.max_voice_over_wps})"
                    )

        return QuickValidationResult(valid=not errors, errors=errors)

    # ── Step 2: beat order ───────────────────────────────────────────────

    @staticmethod
    def _enforce_beat_order(plan: Plan, constraints: Constraints, warnings: list[str]) -> bool:
        rank = {beat_type: i for i, beat_type in enumerate(constraints.require_beat_order)}
        changed = False

        ordered = sorted(plan.beats, key=lambda b: rank[b.type])
        if [b.type for b in ordered] != [b.type for b in plan.beats]:
            warnings.append(
                f"Beats reordered from {_order_label(plan.beats)} to {_order_label(ordered)}"
            )
            plan.beats = ordered
            changed = True

        for i, beat in enumerate(plan.beats):
            if beat.order != i:
                beat.order = i
                changed = True
        return changed

    # ── Step 3: overlay word limit ───────────────────────────────────────

    @staticmethod
    def _enforce_overlay_words(plan: Plan, constraints: Constraints, warnings: list[str]) -> bool:
        max_words = constraints.max_overlay_words
        changed = False
        for beat in plan.beats:
            for overlay in beat.overlays:
                if count_words(overlay.text) <= max_words:
                    continue
                truncated = truncate_words(overlay.text, max_words)
                warnings.append(
                    f'Overlay in {beat.type.value} beat truncated from "{overlay.text}" '
                    f'to "{truncated}"'
                )
                overlay.text = truncated
                changed = True
        return changed

    # ── Step 4: voice-over pace ──────────────────────────────────────────

    @staticmethod
    def _enforce_voice_over_wps(plan: Plan, constraints: Constraints, warnings: list[str]) -> bool:
        max_wps = constraints.max_voice_over_wps
        changed = False
        for beat in plan.beats:
            vo = beat.voice_over
            if vo is None:
                continue
            duration = vo.end_time - vo.start_time
            if duration <= 0:
                continue  # reported by the timing checks
            words = count_words(vo.text)
            if words / duration <= max_wps:
                continue
            allowed = math.floor(duration * max_wps + 1e-9)
            truncated = truncate_words(vo.text, allowed, marker="")
            warnings.append(
                f"Voice-over in {beat.type.value} beat truncated from {words} to {count_words(truncated)} words "
                f"({words / duration:.2f} > {max_wps} words/sec)"
            )
            vo.text = truncated
            changed = True
        return changed

    # ── Step 5: forbidden claims ─────────────────────────────────────────

    @staticmethod
    def _soften_forbidden_claims(plan: Plan, constraints: Constraints, warnings: list[str]) -> bool:
        forbidden = constraints.forbidden_claims
        softened: list[str] = []

        def _apply(text: str) -> str:
            new_text, found = soften_claims(text, forbidden)
            for term in found:
                if term not in softened:
                    softened.append(term)
            return new_text

        plan.hook_text = _apply(plan.hook_text)
        for beat in plan.beats:
            for overlay in beat.overlays:
                overlay.text = _apply(overlay.text)
            if beat.voice_over is not None:
                beat.voice_over.text = _apply(beat.voice_over.text)

        if softened:
            warnings.append(f"Softened forbidden claims: {', '.join(softened)}")
        return bool(softened)

    # ── Step 6: timing ───────────────────────────────────────────────────

    @staticmethod
    def _timing_errors(plan: Plan, constraints: Constraints) -> list[str]:
        tol = TIMING_TOLERANCE
        errors: list[str] = []

        for beat in plan.beats:
            label = f"{beat.type.value} beat"
            span = beat.end_time - beat.start_time

            if beat.start_time < 0:
                errors.append(f"{label} starts before 0s ({beat.start_time})")
            if abs(span - beat.duration) > tol:
                errors.append(
                    f"{label} window {beat.start_time}-{beat.end_time}s does not match "
                    f"declared duration {beat.duration}s"
                )
            if not (constraints.min_beat_duration - tol <= beat.duration <= constraints.max_beat_duration + tol):
                errors.append(
                    f"{label} duration {beat.duration}s outside "
                    f"{constraints.min_beat_duration}-{constraints.max_beat_duration}s"
                )

            for overlay in beat.overlays:
                if overlay.start_time >= overlay.end_time:
                    errors.append(f'Overlay "{overlay.text}" in {label} has an empty time window')
                if overlay.start_time < beat.start_time - tol or overlay.end_time > beat.end_time + tol:
                    errors.append(
                        f'Overlay "{overlay.text}" ({overlay.start_time}-{overlay.end_time}s) '
                        f"lies outside its {label} ({beat.start_time}-{beat.end_time}s)"
                    )

            vo = beat.voice_over
            if vo is not None:
                if vo.start_time >= vo.end_time:
                    errors.append(f"Voice-over in {label} has an empty time window")
                if vo.start_time < beat.start_time - tol or vo.end_time > beat.end_time + tol:
                    errors.append(
                        f"Voice-over ({vo.start_time}-{vo.end_time}s) lies outside its {label} "
                        f"({beat.start_time}-{beat.end_time}s)"
                    )

        for prev, nxt in zip(plan.beats, plan.beats[1:]):
            gap = nxt.start_time - prev.end_time
            if abs(gap) > tol:
                kind = "Gap" if gap > 0 else "Overlap"
                errors.append(
                    f"{kind} of {abs(gap):.2f}s between {prev.type.value} and {nxt.type.value} beats"
                )

        last = plan.beats[-1]
        if abs(last.end_time - plan.target_duration) > tol:
            errors.append(
                f"Last beat ends at {last.end_time}s but target duration is {plan.target_duration}s"
            )
        return errors

