"""
Gemini-backed vision collaborators for the Quality Gate.

  GeminiQualityChecker: scores one quality dimension (0–100) of a rendered video
  GeminiTextDetector: lists on-screen text visible in a time window

Both send the video inline to the generateContent REST endpoint over httpx.
"""

import os
import json
import base64
import logging
from typing import Optional

import httpx

from .models import AssetRef, Brand, ValidationType
from .quality_gate import DimensionScore
from .storage import download_bytes

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", "")
VISION_MODEL = os.getenv("QA_VISION_MODEL", "gemini-2.0-flash")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

DIMENSION_PROMPTS = {
    ValidationType.PRODUCT_PRESENCE: (
        "Score how clearly the advertised product (shown in the reference images) is visible "
        "and recognizable throughout this video."
    ),
    ValidationType.TEXT_LEGIBILITY: (
        "Score how legible the on-screen text in this video is: contrast, size, "
        "position inside the safe area, and absence of garbled characters."
    ),
    ValidationType.COLOR_CONSISTENCY: (
        "Score how consistently this video keeps the brand colors ({colors}) and a stable "
        "color grade across shots."
    ),
    ValidationType.MOTION_SMOOTHNESS: (
        "Score how smooth and physically plausible the camera and subject motion is "
        "(no jitter, warping or sudden jumps)."
    ),
    ValidationType.GLITCH_DETECTION: (
        "Score how free this video is of visual glitches: artifacts, flicker, morphing "
        "objects, extra limbs or melted text. 100 means no glitches."
    ),
}

SCORE_FORMAT = """
Respond with ONLY a JSON object, no markdown, no explanation:
{"score": 0-100, "issues": ["..."], "suggestions": ["..."]}
"""

TEXT_PROMPT = """List every piece of on-screen text (captions, overlays, prices, calls to action)
visible in this video between {start:.1f}s and {end:.1f}s.

Respond with ONLY a JSON object, no markdown:
{{"texts": ["exact text as shown", "..."]}}
"""


def _parse_json_response(text: str) -> dict:
    """Parse JSON from Gemini response, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            return json.loads(json_block.strip())
        raise ValueError(f"Gemini returned invalid JSON: {text[:200]}")


class _GeminiVideoClient:
    def __init__(self, api_key: str = "", model: str = ""):
        self.api_key = api_key or GEMINI_API_KEY
        self.model = model or VISION_MODEL
        self._video_cache: dict[str, str] = {}

    async def _video_b64(self, url: str) -> str:
        if url not in self._video_cache:
            data = await download_bytes(url)
            # keep only the most recent artifact
            self._video_cache = {url: base64.b64encode(data).decode("utf-8")}
        return self._video_cache[url]

    async def _ask(self, video_url: str, prompt: str, image_urls: Optional[list[str]] = None) -> dict:
        if not self.api_key:
            raise RuntimeError("GEMINI_API_KEY not set")

        parts: list[dict] = [{"inlineData": {"mimeType": "video/mp4", "data": await self._video_b64(video_url)}}]
        for image_url in image_urls or []:
            parts.append({"fileData": {"mimeType": "image/jpeg", "fileUri": image_url}})
        parts.append({"text": prompt})

        async with httpx.AsyncClient(timeout=120) as client:
            response = await client.post(
                f"{API_BASE}/models/{self.model}:generateContent",
                params={"key": self.api_key},
                json={
                    "contents": [{"parts": parts}],
                    "generationConfig": {"temperature": 0.1, "maxOutputTokens": 512},
                },
            )
            response.raise_for_status()
            result = response.json()

        candidates = result.get("candidates", [])
        if not candidates:
            raise ValueError("Gemini returned no candidates")
        text = candidates[0].get("content", {}).get("parts", [{}])[0].get("text", "")
        return _parse_json_response(text)


class GeminiQualityChecker(_GeminiVideoClient):
    async def check(
        self,
        dimension: ValidationType,
        artifact_url: str,
        reference_assets: list[AssetRef],
        brand: Optional[Brand] = None,
    ) -> DimensionScore:
        colors = ", ".join(
            c for c in ([brand.primary_color, brand.secondary_color, brand.accent_color] if brand else []) if c
        ) or "the brand palette"
        prompt = DIMENSION_PROMPTS[dimension].format(colors=colors) + SCORE_FORMAT
        refs = [a.url for a in reference_assets] if dimension == ValidationType.PRODUCT_PRESENCE else []

        data = await self._ask(artifact_url, prompt, refs)
        score = max(0, min(100, int(data.get("score", 0))))
        logger.info(f"Gemini {dimension.value} score for {artifact_url}: {score}")
        return DimensionScore(
            score=score,
            issues=[str(i) for i in data.get("issues", [])],
            suggestions=[str(s) for s in data.get("suggestions", [])],
            details={"model": self.model},
        )


class GeminiTextDetector(_GeminiVideoClient):
    async def detect_text(self, artifact_url: str, start_time: float, end_time: float) -> list[str]:
        data = await self._ask(artifact_url, TEXT_PROMPT.format(start=start_time, end=end_time))
        texts = [str(t) for t in data.get("texts", []) if str(t).strip()]
        logger.info(f"Detected {len(texts)} text element(s) in {start_time:.1f}-{end_time:.1f}s")
        return texts
