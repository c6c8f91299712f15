import os
import time
import asyncio
import logging
import contextlib
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from .auth_middleware import WorkerAuthMiddleware
from .rate_limiter import InMemoryRateLimiter, RedisRateLimiter
from .pipeline import RenderPipelineService, plans_router, render_router, webhook_router
from .pipeline.models import RunState

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            import redis
            _redis_client = redis.from_url(redis_url, decode_responses=False)
            try:
                _redis_client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e}; falling back to in-memory rate limiting")
                _redis_client = None
    return _redis_client


def build_rate_limiter():
    r = get_redis()
    if r is not None:
        return RedisRateLimiter(r)
    return InMemoryRateLimiter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Render worker starting up...")
    app.state.started_at = time.time()
    if getattr(app.state, "service", None) is None:
        app.state.service = RenderPipelineService.from_env()
    if getattr(app.state, "rate_limiter", None) is None:
        app.state.rate_limiter = build_rate_limiter()

    service: RenderPipelineService = app.state.service
    app.state.service.metrics.set_gauge("start_time", app.state.started_at)

    # Pick up runs left in flight by a previous process
    await service.resume()
    sweeper_task = asyncio.create_task(service.sweeper.run_forever())

    yield

    logger.info("Render worker shutting down...")
    sweeper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper_task


def create_app(service: RenderPipelineService = None, rate_limiter=None) -> FastAPI:
    app = FastAPI(title="Render Worker", lifespan=lifespan)
    app.state.service = service
    app.state.rate_limiter = rate_limiter
    app.add_middleware(WorkerAuthMiddleware)

    app.include_router(plans_router)
    app.include_router(render_router)
    app.include_router(webhook_router)

    @app.get("/health")
    def health_check():
        """Verify worker is running and env vars are configured."""
        gemini_key = os.environ.get("GEMINI_API_KEY", "") or os.environ.get("GOOGLE_API_KEY", "")
        return {
            "status": "ok",
            "gemini_api_key_set": bool(gemini_key),
            "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
            "kie_api_key_set": bool(os.environ.get("KIE_API_KEY")),
            "redis_configured": bool(os.environ.get("REDIS_URL")),
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all worker metrics."""
        svc: RenderPipelineService = app.state.service
        if svc is None:
            return {}
        in_flight = svc.stores.runs.list_by_state([RunState.QUEUED, RunState.RUNNING])
        svc.metrics.set_gauge("runs_in_flight", len(in_flight))
        limiter = app.state.rate_limiter
        if hasattr(limiter, "active"):
            svc.metrics.set_gauge("active_submissions", limiter.active)
        return svc.metrics.snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("render_worker.main:app", host="0.0.0.0", port=port, reload=True)
