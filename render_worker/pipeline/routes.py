"""
FastAPI routes for the render pipeline.

Plan Endpoints:
  POST /plans/validate: full validation + normalization, stores the plan
  POST /plans/quick-validate: checks only, nothing stored
  GET  /plans/{id}: stored (normalized) plan

Render Endpoints:
  POST /render/submit: start a preview or final render
  POST /render/swap-hook: replace the hook line and render a new preview
  GET  /render/{run_id}: run status
  GET  /render/{run_id}/validations: persisted quality checks for a run

Webhook Endpoints:
  POST /webhooks/provider: provider completion / failure notification
"""

import os
import json
import logging
import secrets
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import ValidationError

from .models import (
    CallbackResponse,
    InsufficientCreditsError,
    Plan,
    PlanNotReadyError,
    PlanValidationResult,
    ProviderCallback,
    QualityValidationRecord,
    QuickValidationResult,
    Run,
    SubmitRenderRequest,
    SwapHookRequest,
)
from .orchestrator import RenderPipelineService

logger = logging.getLogger(__name__)


def get_service(request: Request) -> RenderPipelineService:
    return request.app.state.service


def _check_rate_limit(request: Request, user_id: Optional[str]):
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return
    allowed, _, retry_after = limiter.check(user_id or "anonymous")
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after}s.",
            headers={"Retry-After": str(retry_after)},
        )


def _render_errors(e: Exception) -> HTTPException:
    if isinstance(e, InsufficientCreditsError):
        return HTTPException(status_code=402, detail=str(e))
    if isinstance(e, PlanNotReadyError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, LookupError):
        return HTTPException(status_code=404, detail=str(e))
    logger.error(f"Render request failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Plans Router
# ═════════════════════════════════════════════════════════════════════════════

plans_router = APIRouter(prefix="/plans", tags=["plans"])


@plans_router.post("/validate", response_model=PlanValidationResult)
async def validate_plan(
    candidate: Any = Body(...),
    service: RenderPipelineService = Depends(get_service),
):
    """Validate and normalize a plan. Rejections come back as data with valid=false."""
    return service.validate_plan(candidate)


@plans_router.post("/quick-validate", response_model=QuickValidationResult)
async def quick_validate_plan(
    candidate: Any = Body(...),
    service: RenderPipelineService = Depends(get_service),
):
    return service.quick_validate(candidate)


@plans_router.get("/{plan_id}", response_model=Plan)
async def get_plan(plan_id: str, service: RenderPipelineService = Depends(get_service)):
    try:
        return service.get_plan(plan_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Render Router
# ═════════════════════════════════════════════════════════════════════════════

render_router = APIRouter(prefix="/render", tags=["render"])


@render_router.post("/submit", response_model=Run)
async def submit_render(
    body: SubmitRenderRequest,
    request: Request,
    service: RenderPipelineService = Depends(get_service),
):
    """
    Start a render for a validated plan.

    Errors:
      - 400: Plan not validated / final render without narration audio
      - 402: Insufficient credits
      - 404: Unknown plan
      - 429: Rate limit exceeded
      - 503: Too many submissions in progress
    """
    _check_rate_limit(request, body.user_id)
    limiter = getattr(request.app.state, "rate_limiter", None)
    guard = hasattr(limiter, "acquire_slot")
    if guard and not limiter.acquire_slot():
        raise HTTPException(
            status_code=503,
            detail=f"Server at capacity ({limiter.max_concurrent} concurrent submissions). Try again shortly.",
        )
    try:
        return await service.submit_render(body.plan_id, body.tier, body.user_id)
    except Exception as e:
        raise _render_errors(e)
    finally:
        if guard:
            limiter.release_slot()


@render_router.post("/swap-hook", response_model=Run)
async def swap_hook(
    body: SwapHookRequest,
    request: Request,
    service: RenderPipelineService = Depends(get_service),
):
    """Replace the hook line and render a fresh preview (costs 1 credit)."""
    _check_rate_limit(request, body.user_id)
    try:
        return await service.swap_hook(body.plan_id, body.new_hook_line, body.user_id)
    except Exception as e:
        raise _render_errors(e)


@render_router.get("/{run_id}", response_model=Run)
async def get_run(run_id: str, service: RenderPipelineService = Depends(get_service)):
    try:
        return service.get_run(run_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@render_router.get("/{run_id}/validations", response_model=list[QualityValidationRecord])
async def get_run_validations(run_id: str, service: RenderPipelineService = Depends(get_service)):
    try:
        return service.list_validations(run_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Webhook Router
# ═════════════════════════════════════════════════════════════════════════════

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _callback_from_payload(body: dict, query_run_id: Optional[str]) -> ProviderCallback:
    """
    Accept both our own callback shape and Kie's native one:
      {"runId", "status", "artifactUrl", "error"}
      {"code": 200, "msg": "...", "data": {"taskId", "info": {"resultUrls": [...]}}}
    """
    if "status" not in body and isinstance(body.get("data"), dict):
        data = body["data"]
        info = data.get("info") or data.get("response") or {}
        if not isinstance(info, dict):
            info = {}
        urls = info.get("resultUrls") or data.get("resultUrls") or []
        if isinstance(urls, str):
            urls = json.loads(urls) if urls.startswith("[") else [urls]
        ok = body.get("code") == 200
        body = {
            "runId": body.get("runId"),
            "status": "succeeded" if ok else "failed",
            "artifactUrl": urls[0] if ok and urls else None,
            "error": None if ok else (body.get("msg") or "Provider reported failure"),
        }

    callback = ProviderCallback.model_validate(body)
    if not callback.run_id and query_run_id:
        callback.run_id = query_run_id
    return callback


@webhook_router.post("/provider", response_model=CallbackResponse)
async def provider_callback(
    request: Request,
    run_id: Optional[str] = Query(None, alias="runId"),
    token: Optional[str] = Query(None),
    service: RenderPipelineService = Depends(get_service),
):
    """
    Provider completion notification.

    Always 200 for a known run, even when the payload reports a failure.
    Errors:
      - 400: runId missing or malformed payload
      - 401: bad callback token
      - 404: unknown runId
    """
    expected_token = getattr(request.app.state, "callback_token", None)
    if expected_token is None:
        expected_token = os.getenv("CALLBACK_TOKEN", "")
    if expected_token and not secrets.compare_digest(token or "", expected_token):
        raise HTTPException(status_code=401, detail="Invalid callback token")

    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    try:
        callback = _callback_from_payload(body, run_id)
    except (ValidationError, ValueError) as e:
        logger.warning(f"Malformed provider callback: {e}")
        raise HTTPException(status_code=400, detail="Malformed callback payload")
    if not callback.run_id:
        raise HTTPException(status_code=400, detail="runId is required")

    try:
        return await service.handle_callback(callback)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"[{callback.run_id}] callback handling failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
