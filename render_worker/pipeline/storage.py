"""
R2 storage helpers for render artifacts.

Burned-in videos are stored under:
  renders/{variant_id}/{run_id}_burned.mp4

Downloads use httpx; uploads go through the S3 API via boto3.
"""

import os
import asyncio
import logging

import boto3
import httpx
from botocore.config import Config as BotoConfig

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")


# ── Helpers ──────────────────────────────────────────────────────────────────

def render_key(variant_id: str, run_id: str, suffix: str = "burned") -> str:
    """S3 key for a post-processed render artifact."""
    return f"renders/{variant_id}/{run_id}_{suffix}.mp4"


def public_url(key: str) -> str:
    return f"{R2_PUBLIC_URL.rstrip('/')}/{key}"


async def download_bytes(url: str, timeout: float = 120) -> bytes:
    """Download a file from a public URL and return raw bytes."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


def _s3_client():
    return boto3.client(
        "s3",
        endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        config=BotoConfig(signature_version="s3v4"),
        region_name="auto",
    )


async def upload_to_r2(key: str, data: bytes, content_type: str = "video/mp4") -> str:
    """Upload bytes to R2 and return the public URL of the object."""
    try:
        await asyncio.to_thread(
            _s3_client().put_object,
            Bucket=R2_BUCKET_NAME,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
    except Exception as e:
        logger.error(f"R2 upload failed for key={key}: {e}")
        raise

    url = public_url(key)
    logger.info(f"Uploaded to R2: {url}")
    return url
