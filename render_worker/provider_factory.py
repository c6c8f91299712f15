import asyncio
from typing import Protocol

from . import kie
from .pipeline.models import EngineTag, ProviderStatus, RenderRequest


class RenderProvider(Protocol):
    async def submit(self, request: RenderRequest) -> str: ...
    async def poll(self, job_id: str) -> ProviderStatus: ...


class KieRenderProvider:
    """Async adapter over the blocking Kie.ai client."""

    async def submit(self, request: RenderRequest) -> str:
        response = await asyncio.to_thread(
            kie.generate_video,
            request.prompt,
            request.engine.value,
            image_urls=request.image_urls,
            aspect_ratio=request.aspect_ratio,
            duration=request.duration,
            seed=request.seed,
            audio=request.audio,
            audio_url=request.audio_url,
            callback_url=request.callback_url,
        )
        return kie.extract_task_id(response)

    async def poll(self, job_id: str) -> ProviderStatus:
        status_data = await asyncio.to_thread(kie.get_task_status, job_id)
        status, url, error = kie.normalize_status(status_data)
        return ProviderStatus(status=status, artifact_url=url, error=error)


class ProviderFactory:
    _providers: dict = {}

    @staticmethod
    def get_provider(engine: EngineTag) -> RenderProvider:
        # Both Veo tiers are served by Kie.ai
        if engine not in ProviderFactory._providers:
            ProviderFactory._providers[engine] = KieRenderProvider()
        return ProviderFactory._providers[engine]
