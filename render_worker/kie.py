"""
Kie.ai Veo client.

Thin synchronous REST wrapper: submit a render, read a task record, and
normalize Kie's several status shapes into succeeded / failed / pending.
Retries 429 / 5xx with exponential backoff + jitter.
"""

import os
import time
import random
import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

KIE_API_KEY = os.environ.get("KIE_API_KEY", "")
KIE_API_BASE = os.environ.get("KIE_API_BASE", "https://api.kie.ai/api/v1")

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 5
BASE_DELAY = 2.0       # seconds, doubled each attempt: 2, 4, 8, 16, 32
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}
REQUEST_TIMEOUT = 60

# Engine tag → Kie.ai model name
ENGINE_MODELS = {
    "veo_fast": "veo3_fast",
    "veo_3": "veo3",
}

SUCCEEDED = "succeeded"
FAILED = "failed"
PENDING = "pending"

_FAILED_STATUSES = {"GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR", "fail"}


class KieError(Exception):
    """Kie.ai answered, but not with something we can use."""


def _request_with_backoff(method: str, url: str, **kwargs) -> requests.Response:
    """HTTP request with exponential backoff on 429 / 5xx and connection errors."""
    headers = kwargs.pop("headers", {})
    headers.setdefault("Authorization", f"Bearer {KIE_API_KEY}")
    kwargs.setdefault("timeout", REQUEST_TIMEOUT)

    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.request(method, url, headers=headers, **kwargs)
        except requests.exceptions.RequestException as e:
            if attempt >= MAX_RETRIES:
                raise
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"Kie.ai request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e} "
                f"- retrying in {delay:.1f}s"
            )
            time.sleep(delay)
            continue

        if response.status_code not in RETRYABLE_STATUS_CODES:
            response.raise_for_status()
            return response

        if attempt >= MAX_RETRIES:
            response.raise_for_status()

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            delay = int(retry_after)
        else:
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
        logger.warning(
            f"Kie.ai {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1} "
            f"- retrying in {delay:.1f}s (url={url})"
        )
        time.sleep(delay)

    raise KieError(f"Request to {url} failed after {MAX_RETRIES + 1} attempts")


def generate_video(
    prompt: str,
    engine: str,
    image_urls: Optional[list[str]] = None,
    aspect_ratio: str = "9:16",
    duration: Optional[float] = None,
    seed: Optional[int] = None,
    audio: bool = False,
    audio_url: Optional[str] = None,
    callback_url: Optional[str] = None,
) -> dict:
    """
    Starts a Veo render on Kie.ai and returns the raw response.

    With reference images the request uses REFERENCE_2_VIDEO mode so Veo
    anchors on the product shots instead of inventing one.
    """
    url = f"{KIE_API_BASE}/veo/generate"
    payload: dict = {
        "prompt": prompt,
        "model": ENGINE_MODELS.get(engine, engine),
        "aspectRatio": aspect_ratio,
        "enableAudio": audio,
    }
    if image_urls:
        payload["generationType"] = "REFERENCE_2_VIDEO"
        payload["imageUrls"] = image_urls
    if duration:
        payload["duration"] = int(round(duration))
    if seed is not None:
        payload["seeds"] = seed
    if audio_url:
        payload["audioUrl"] = audio_url
    if callback_url:
        payload["callBackUrl"] = callback_url

    logger.info(
        f"Kie.ai request to {url}: model={payload['model']}, "
        f"images={len(image_urls or [])}, duration={payload.get('duration')}, seed={seed}"
    )
    response = _request_with_backoff("POST", url, json=payload)
    return response.json()


def get_task_status(task_id: str) -> dict:
    """Reads the Veo task record for ``task_id``."""
    url = f"{KIE_API_BASE}/veo/record-info"
    logger.info(f"Polling status at {url}?taskId={task_id}")
    response = _request_with_backoff("GET", url, params={"taskId": task_id})
    return response.json()


def extract_task_id(response: dict) -> str:
    data = response.get("data") or {}
    task_id = None
    if isinstance(data, dict):
        task_id = data.get("taskId") or data.get("task_id") or data.get("id")
    if not task_id:
        task_id = response.get("taskId") or response.get("task_id") or response.get("id")
    if not task_id:
        raise KieError(f"No task_id in Kie response: {response}")
    return str(task_id)


def _first_url(poll_data: dict) -> Optional[str]:
    results = poll_data.get("results") or poll_data.get("works") or []
    if results and isinstance(results, list):
        first = results[0]
        if isinstance(first, str):
            return first
        if isinstance(first, dict):
            url = first.get("url") or first.get("videoUrl") or first.get("video_url")
            if url:
                return url

    response = poll_data.get("response")
    if isinstance(response, dict):
        urls = response.get("resultUrls") or []
        if urls:
            return urls[0]

    urls = poll_data.get("resultUrls")
    if isinstance(urls, list) and urls:
        return urls[0]
    return poll_data.get("videoUrl") or poll_data.get("url") or poll_data.get("video_url")


def normalize_status(status_data: dict) -> tuple[str, Optional[str], Optional[str]]:
    """
    Collapse Kie's status shapes into (status, artifact_url, error).

    Kie reports progress two ways:
      data.status      = SUCCESS / GENERATING / PENDING / GENERATE_FAILED / ...
      data.successFlag = 0 (generating), 1 (success), 2/3 (failed)
    """
    poll_data = status_data.get("data") if isinstance(status_data, dict) else None
    if not isinstance(poll_data, dict):
        poll_data = {}

    raw_status = poll_data.get("status", "") or ""
    success_flag = poll_data.get("successFlag")

    if raw_status in ("SUCCESS", "success") or success_flag == 1:
        url = _first_url(poll_data)
        if not url:
            return FAILED, None, f"Render completed but no video URL: {status_data}"
        return SUCCEEDED, url, None

    if raw_status in _FAILED_STATUSES or success_flag in (2, 3):
        error = (
            poll_data.get("errorMessage") or poll_data.get("error")
            or poll_data.get("msg") or poll_data.get("failReason")
            or status_data.get("msg") or "Unknown provider error"
        )
        return FAILED, None, str(error)

    return PENDING, None, None
