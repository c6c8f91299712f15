"""
Render Orchestration Pipeline

Turns a four-beat ad plan into a finished vertical video:
  Plan validation → render dispatch → provider callback → quality gate
  → overlay burn-in fallback | bounded retries
"""

from .orchestrator import RenderPipelineService
from .routes import plans_router, render_router, webhook_router
from .models import RenderTier, RunState, VariantStatus

__all__ = [
    "RenderPipelineService",
    "plans_router",
    "render_router",
    "webhook_router",
    "RenderTier",
    "RunState",
    "VariantStatus",
]
