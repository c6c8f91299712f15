"""Shared test fixtures for the render worker."""
import copy
from typing import Optional

import pytest

from render_worker.metrics import MetricsCollector
from render_worker.pipeline.dispatcher import RenderDispatcher
from render_worker.pipeline.models import ProviderStatus, RenderRequest, ValidationType
from render_worker.pipeline.orchestrator import RenderPipelineService
from render_worker.pipeline.overlay_fallback import OverlayFallback
from render_worker.pipeline.quality_gate import DimensionScore, QualityGate
from render_worker.pipeline.store import Stores


# ─────────────────────────────────────────────────────────────────────────────
# Plan factory
# ─────────────────────────────────────────────────────────────────────────────

def _asset(n: int) -> dict:
    return {"id": f"asset-{n}", "url": f"https://cdn.test/assets/{n}.jpg", "type": "product"}


def _beat(beat_type: str, order: int, start: float, end: float, **extra) -> dict:
    beat = {
        "type": beat_type,
        "order": order,
        "startTime": start,
        "endTime": end,
        "duration": end - start,
        "assetRefs": [_asset(order + 1)],
        "visualStyle": f"{beat_type} shot, bright kitchen",
        "prompt": f"A {beat_type} shot of the bottle on a kitchen counter",
        "overlays": [],
    }
    beat.update(extra)
    return beat


BASE_PLAN = {
    "id": "plan-1",
    "variantId": "variant-1",
    "conceptType": "pov",
    "aspectRatio": "9:16",
    "targetDuration": 24,
    "beats": [
        _beat(
            "hook", 0, 0, 6,
            overlays=[{"text": "Stop scrolling now", "startTime": 0.5, "endTime": 3}],
            voiceOver={"text": "Meet the bottle that keeps drinks cold", "startTime": 0, "endTime": 5},
        ),
        _beat("demo", 1, 6, 12),
        _beat("proof", 2, 12, 18),
        _beat(
            "cta", 3, 18, 24,
            overlays=[{"text": "Shop now", "startTime": 19, "endTime": 23, "position": "bottom"}],
        ),
    ],
    "brand": {"name": "Chill", "primaryColor": "#112233"},
    "selectedAssets": [_asset(1), _asset(2), _asset(3)],
    "hookText": "Meet the bottle that keeps drinks cold",
    "narrationAudioUrl": "https://cdn.test/audio/narration.mp3",
}


@pytest.fixture
def plan_dict() -> dict:
    """A valid plan in camelCase wire format; mutate freely."""
    return copy.deepcopy(BASE_PLAN)


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeProvider:
    """Records submissions; poll() plays back queued statuses, then 'pending'."""

    def __init__(self):
        self.requests: list[RenderRequest] = []
        self.statuses: list[ProviderStatus] = []
        self.fail_with: Optional[Exception] = None
        self.polls = 0

    async def submit(self, request: RenderRequest) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.requests.append(request)
        return f"job-{len(self.requests)}"

    async def poll(self, job_id: str) -> ProviderStatus:
        self.polls += 1
        if self.statuses:
            return self.statuses.pop(0)
        return ProviderStatus(status="pending")


class FakeChecker:
    def __init__(self, scores: Optional[dict] = None, default: int = 90):
        self.scores = dict(scores or {})
        self.default = default
        self.calls: list[ValidationType] = []

    async def check(self, dimension, artifact_url, reference_assets, brand=None) -> DimensionScore:
        self.calls.append(dimension)
        return DimensionScore(score=self.scores.get(dimension, self.default))


class FakeDetector:
    def __init__(self, texts: Optional[list[str]] = None, error: Optional[Exception] = None):
        self.texts = list(texts or [])
        self.error = error

    async def detect_text(self, artifact_url, start_time, end_time) -> list[str]:
        if self.error is not None:
            raise self.error
        return list(self.texts)


class FakeRenderer:
    def __init__(self, output_url: str = "https://cdn.test/renders/burned.mp4", error: Optional[Exception] = None):
        self.output_url = output_url
        self.error = error
        self.graphs: list[str] = []
        self.keys: list[str] = []

    async def render(self, input_url, filter_graph, logo_url, output_key) -> str:
        self.graphs.append(filter_graph)
        self.keys.append(output_key)
        if self.error is not None:
            raise self.error
        return self.output_url


async def _no_sleep(seconds: float):
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Wired pipeline
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def checker() -> FakeChecker:
    return FakeChecker()


@pytest.fixture
def detector() -> FakeDetector:
    return FakeDetector(texts=["Stop scrolling now", "Shop now"])


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def stores() -> Stores:
    return Stores.in_memory(balances={"user-1": 5})


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


def make_dispatcher(stores, metrics, provider, mode="callback", max_polls=5) -> RenderDispatcher:
    return RenderDispatcher(
        stores.runs,
        metrics,
        provider_for=lambda engine: provider,
        mode=mode,
        callback_base_url="https://worker.test",
        callback_token="",
        poll_interval=0,
        max_polls=max_polls,
        sleep=_no_sleep,
    )


@pytest.fixture
def service(stores, metrics, provider, checker, detector, renderer) -> RenderPipelineService:
    dispatcher = make_dispatcher(stores, metrics, provider)
    gate = QualityGate(checker, detector, stores.validations)
    return RenderPipelineService.build(
        stores,
        metrics,
        dispatcher,
        quality_gate=gate,
        overlay_fallback=OverlayFallback(renderer),
        max_retries=3,
    )


@pytest.fixture
def dispatcher_factory(stores, metrics, provider):
    def _factory(mode: str = "callback", max_polls: int = 5) -> RenderDispatcher:
        return make_dispatcher(stores, metrics, provider, mode=mode, max_polls=max_polls)
    return _factory
