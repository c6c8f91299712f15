"""
Pydantic models and enums for the render-orchestration pipeline.

Plan JSON is exchanged in camelCase (startTime, hookText, ...); the models
accept either camelCase or snake_case and serialize with camelCase aliases.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


HEX_COLOR = r"^#[0-9A-Fa-f]{6}$"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Errors ───────────────────────────────────────────────────────────────────

class InvalidTransitionError(ValueError):
    """A Run was asked to move to a state its state machine does not allow."""


class PlanNotReadyError(ValueError):
    """The plan cannot be rendered yet (not validated, missing narration)."""


class InsufficientCreditsError(ValueError):
    pass


# ── Enums ────────────────────────────────────────────────────────────────────

class BeatType(str, Enum):
    HOOK = "hook"
    DEMO = "demo"
    PROOF = "proof"
    CTA = "cta"


REQUIRED_BEAT_ORDER = [BeatType.HOOK, BeatType.DEMO, BeatType.PROOF, BeatType.CTA]


class OverlayPosition(str, Enum):
    TOP_LEFT = "top_left"
    TOP = "top"
    TOP_RIGHT = "top_right"
    CENTER_LEFT = "center_left"
    CENTER = "center"
    CENTER_RIGHT = "center_right"
    BOTTOM_LEFT = "bottom_left"
    BOTTOM = "bottom"
    BOTTOM_RIGHT = "bottom_right"


class FontSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    XLARGE = "xlarge"


class OverlayAnimation(str, Enum):
    FADE = "fade"
    SLIDE_UP = "slide_up"
    SLIDE_DOWN = "slide_down"
    ZOOM = "zoom"
    NONE = "none"


class CameraMovement(str, Enum):
    STATIC = "static"
    PAN = "pan"
    ZOOM = "zoom"
    TILT = "tilt"
    DOLLY = "dolly"
    DYNAMIC = "dynamic"


class RenderTier(str, Enum):
    PREVIEW = "preview"
    FINAL = "final"


class EngineTag(str, Enum):
    VEO_FAST = "veo_fast"
    VEO_3 = "veo_3"


class RunState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.QUEUED: frozenset({RunState.RUNNING, RunState.SUCCEEDED, RunState.FAILED}),
    RunState.RUNNING: frozenset({RunState.SUCCEEDED, RunState.FAILED}),
    RunState.SUCCEEDED: frozenset(),
    RunState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({RunState.SUCCEEDED, RunState.FAILED})


class FailureCategory(str, Enum):
    API_ERROR = "api_error"
    TIMEOUT = "timeout"
    QUALITY_VALIDATION = "quality_validation"
    USER_CANCELLED = "user_cancelled"
    OTHER = "other"


class RetryStrategy(str, Enum):
    SAME_SEED = "same_seed"
    NEW_SEED = "new_seed"
    REVISED_INSTRUCTION = "revised_instruction"


class ValidationType(str, Enum):
    PRODUCT_PRESENCE = "product_presence"
    TEXT_LEGIBILITY = "text_legibility"
    COLOR_CONSISTENCY = "color_consistency"
    OVERLAY_PRESENCE = "overlay_presence"
    MOTION_SMOOTHNESS = "motion_smoothness"
    GLITCH_DETECTION = "glitch_detection"


class VariantStatus(str, Enum):
    DRAFT = "draft"
    PREVIEWING = "previewing"
    FINALIZING = "finalizing"
    RETRYING = "retrying"
    READY = "ready"
    ERROR = "error"


# ── Plan ─────────────────────────────────────────────────────────────────────

class Brand(CamelModel):
    name: str
    primary_color: str = Field(..., pattern=HEX_COLOR)
    secondary_color: Optional[str] = Field(None, pattern=HEX_COLOR)
    accent_color: Optional[str] = Field(None, pattern=HEX_COLOR)
    logo_url: Optional[str] = None
    style: str = Field("modern", pattern=r"^(modern|elegant|playful|bold)$")


class AssetRef(CamelModel):
    id: str
    url: str = Field(..., min_length=1)
    type: str = Field("unknown", pattern=r"^(product|lifestyle|detail|unknown)$")
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)


class Overlay(CamelModel):
    text: str
    start_time: float = Field(..., ge=0)
    end_time: float = Field(..., ge=0)
    position: OverlayPosition = OverlayPosition.CENTER
    font_size: FontSize = FontSize.LARGE
    style: str = Field("bold", pattern=r"^(bold|normal|italic)$")
    color: str = Field("#FFFFFF", pattern=HEX_COLOR)
    background_color: Optional[str] = Field(None, pattern=HEX_COLOR)
    animation: OverlayAnimation = OverlayAnimation.FADE


class VoiceOver(CamelModel):
    text: str
    start_time: float = Field(..., ge=0)
    end_time: float = Field(..., ge=0)
    voice: str = Field("professional", pattern=r"^(professional|casual|energetic|calm)$")
    speed: float = Field(1.0, ge=0.5, le=2.0)
    pitch: float = Field(1.0, ge=0.5, le=2.0)


class Beat(CamelModel):
    id: str = Field(default_factory=_new_id)
    type: BeatType
    order: int = Field(0, ge=0, le=3)
    start_time: float = Field(..., ge=0)
    end_time: float = Field(..., ge=0)
    duration: float = Field(..., gt=0)

    asset_refs: list[AssetRef] = Field(..., min_length=1, max_length=3)
    visual_style: str = Field("", max_length=500)
    camera_movement: CameraMovement = CameraMovement.DYNAMIC

    voice_over: Optional[VoiceOver] = None
    music_volume: float = Field(0.3, ge=0, le=1)

    overlays: list[Overlay] = Field(default_factory=list, max_length=3)

    prompt: str = Field("", max_length=2000)
    seed: Optional[int] = Field(None, gt=0)


DEFAULT_FORBIDDEN_CLAIMS = [
    "cure", "treat", "diagnose", "prevent", "guarantee",
    "miracle", "instant", "overnight", "revolutionary",
]


class Constraints(CamelModel):
    max_overlay_words: int = Field(6, gt=0)
    max_voice_over_wps: float = Field(2.5, gt=0, alias="maxVoiceOverWPS")
    forbidden_claims: list[str] = Field(default_factory=lambda: list(DEFAULT_FORBIDDEN_CLAIMS))
    require_beat_order: list[BeatType] = Field(default_factory=lambda: list(REQUIRED_BEAT_ORDER))
    min_beat_duration: float = Field(4, gt=0)
    max_beat_duration: float = Field(8, gt=0)
    total_duration: float = Field(24, gt=0)

    @field_validator("require_beat_order")
    @classmethod
    def _order_is_permutation(cls, value: list[BeatType]) -> list[BeatType]:
        if sorted(value) != sorted(REQUIRED_BEAT_ORDER) or len(set(value)) != len(value):
            raise ValueError("requireBeatOrder must list hook, demo, proof and cta exactly once")
        return value


def default_constraints() -> Constraints:
    """The library-wide constraint set used when a Plan carries none."""
    return Constraints()


class Plan(CamelModel):
    id: str = Field(default_factory=_new_id)
    variant_id: str
    concept_type: str = Field("pov", pattern=r"^(pov|question|before_after)$")

    aspect_ratio: str = Field("9:16", pattern=r"^(9:16|16:9|1:1)$")
    target_duration: float = Field(24, gt=0)
    format: str = Field("mp4", pattern=r"^(mp4|mov|webm)$")
    resolution: str = Field("1080p", pattern=r"^(720p|1080p|4k)$")
    fps: int = Field(30, gt=0)

    beats: list[Beat] = Field(..., min_length=4, max_length=4)
    brand: Brand
    selected_assets: list[AssetRef] = Field(..., max_length=5)
    constraints: Optional[Constraints] = None

    hook_id: Optional[str] = None
    hook_text: str
    narration_audio_url: Optional[str] = None

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    version: int = Field(1, ge=1)

    is_validated: bool = False
    validation_errors: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _one_beat_per_type(self) -> "Plan":
        types = [b.type for b in self.beats]
        if sorted(types) != sorted(REQUIRED_BEAT_ORDER):
            raise ValueError("beats must contain exactly one hook, demo, proof and cta beat")
        return self

    @property
    def effective_constraints(self) -> Constraints:
        return self.constraints or default_constraints()

    def beat(self, beat_type: BeatType) -> Beat:
        return next(b for b in self.beats if b.type == beat_type)

    def all_overlays(self) -> list[Overlay]:
        return [o for b in self.beats for o in b.overlays]


class PlanValidationResult(CamelModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    normalized_plan: Optional[Plan] = None


class QuickValidationResult(CamelModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


# ── Variant ──────────────────────────────────────────────────────────────────

class Variant(CamelModel):
    id: str
    user_id: Optional[str] = None
    status: VariantStatus = VariantStatus.DRAFT
    video_url: Optional[str] = None
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)


# ── Run ──────────────────────────────────────────────────────────────────────

class Run(CamelModel):
    id: str = Field(default_factory=_new_id)
    variant_id: str
    plan_id: str
    user_id: Optional[str] = None
    tier: RenderTier
    engine: EngineTag
    state: RunState = RunState.QUEUED

    request_payload: dict[str, Any] = Field(default_factory=dict)
    response_payload: dict[str, Any] = Field(default_factory=dict)
    provider_job_id: Optional[str] = None
    artifact_url: Optional[str] = None

    seed: int
    cost_seconds: float = 0
    credit_cost: int = 0

    retry_of: Optional[str] = None
    retry_count: int = 0
    original_seed: Optional[int] = None   # seed of the first run in the retry chain
    is_free_retry: bool = False

    failure_category: Optional[FailureCategory] = None
    error: Optional[str] = None

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, new_state: RunState) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self.state]

    def transition_to(self, new_state: RunState, **changes: Any) -> "Run":
        """Return a copy of the run in ``new_state``; illegal moves raise."""
        if not self.can_transition(new_state):
            raise InvalidTransitionError(
                f"Run {self.id}: {self.state.value} → {new_state.value} is not allowed"
            )
        return self.model_copy(update={**changes, "state": new_state, "updated_at": _now()})


# ── Quality ──────────────────────────────────────────────────────────────────

class ValidationResult(CamelModel):
    validation_type: ValidationType
    passed: bool
    score: int = Field(..., ge=0, le=100)
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class QualityValidationRecord(ValidationResult):
    id: str = Field(default_factory=_new_id)
    run_id: str
    validator_service: str = "render-quality-gate"
    validator_version: str = "1.0.0"
    created_at: datetime = Field(default_factory=_now)


class ExpectedOverlay(CamelModel):
    text: str
    start_time: float
    end_time: float
    position: OverlayPosition = OverlayPosition.CENTER


class OverlayCheckResult(CamelModel):
    ok: bool
    confidence: float
    found: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    details: list[str] = Field(default_factory=list)

    @property
    def needs_burn_in(self) -> bool:
        return not self.ok


class QualitySummary(CamelModel):
    overall_passed: bool
    overall_score: int
    validations: list[ValidationResult] = Field(default_factory=list)
    eligible_for_free_retry: bool = False
    retry_recommendation: str = ""
    overlay_check: Optional[OverlayCheckResult] = None


class RetryDecision(CamelModel):
    should_retry: bool
    is_free_retry: bool = False
    reason: str = ""
    failure_category: FailureCategory = FailureCategory.OTHER
    max_retries_reached: bool = False
    strategy: Optional[RetryStrategy] = None
    recommended_seed: Optional[int] = None
    revision_hint: Optional[str] = None


# ── Provider callback / API request models ───────────────────────────────────

class ProviderCallback(CamelModel):
    run_id: Optional[str] = None
    status: Optional[str] = None
    artifact_url: Optional[str] = None
    error: Optional[str] = None


class CallbackResponse(CamelModel):
    success: bool
    message: str
    artifact_url: Optional[str] = None
    qa_passed: Optional[bool] = None
    burned_in: bool = False
    retry_run_id: Optional[str] = None


class SubmitRenderRequest(CamelModel):
    plan_id: str
    tier: RenderTier = RenderTier.PREVIEW
    user_id: Optional[str] = None


class SwapHookRequest(CamelModel):
    plan_id: str
    new_hook_line: str = Field(..., min_length=1)
    user_id: Optional[str] = None


# ── Provider contract ────────────────────────────────────────────────────────

class RenderRequest(CamelModel):
    prompt: str
    engine: EngineTag
    image_urls: list[str] = Field(default_factory=list)
    aspect_ratio: str = "9:16"
    duration: float
    seed: int
    audio: bool = False
    audio_url: Optional[str] = None
    callback_url: Optional[str] = None


class ProviderStatus(CamelModel):
    status: str   # succeeded | failed | pending
    artifact_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("succeeded", "failed")
