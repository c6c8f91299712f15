"""
Per-user render submission limits.

RedisRateLimiter keeps a sorted set per user (`render_ratelimit:{user_id}`)
whose members are submission timestamps; entries older than the window are
trimmed and the remainder counted.
InMemoryRateLimiter is the fallback when Redis is not configured: the same
sliding window in a dict, plus a cap on concurrently running submissions.
"""

import os
import time
import uuid
import logging
import threading
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

RENDER_RATE_LIMIT = int(os.getenv("RENDER_RATE_LIMIT", "20"))            # submissions per window
RENDER_RATE_WINDOW_SECONDS = int(os.getenv("RENDER_RATE_WINDOW_SECONDS", "3600"))
FALLBACK_RATE_LIMIT = int(os.getenv("FALLBACK_RATE_LIMIT", "10"))         # stricter, no persistence
MAX_CONCURRENT_SUBMISSIONS = int(os.getenv("MAX_CONCURRENT_SUBMISSIONS", "3"))

RateDecision = Tuple[bool, int, int]   # (allowed, remaining, retry_after_seconds)


class RedisRateLimiter:
    def __init__(
        self,
        redis_client,
        max_requests: int = RENDER_RATE_LIMIT,
        window_seconds: int = RENDER_RATE_WINDOW_SECONDS,
    ):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def check(self, user_id: str) -> RateDecision:
        """Check and record one submission for ``user_id``."""
        now = time.time()
        key = f"render_ratelimit:{user_id}"

        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now - self.window_seconds)
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        _, current_count, oldest_entries = pipe.execute()

        if current_count >= self.max_requests:
            if oldest_entries:
                retry_after = int(oldest_entries[0][1] + self.window_seconds - now) + 1
            else:
                retry_after = self.window_seconds
            logger.warning(f"Render rate limit exceeded for user {user_id}: {current_count}/{self.max_requests}")
            return False, 0, retry_after

        pipe = self.redis.pipeline(transaction=True)
        pipe.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.expire(key, self.window_seconds + 60)
        pipe.execute()

        remaining = self.max_requests - current_count - 1
        return True, remaining, 0


class InMemoryRateLimiter:
    def __init__(
        self,
        max_requests: int = FALLBACK_RATE_LIMIT,
        window_seconds: int = RENDER_RATE_WINDOW_SECONDS,
        max_concurrent: int = MAX_CONCURRENT_SUBMISSIONS,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_concurrent = max_concurrent
        self._lock = threading.Lock()
        self._request_log: Dict[str, List[float]] = {}
        self._active = 0

    def check(self, user_id: str) -> RateDecision:
        now = time.time()
        window_start = now - self.window_seconds

        with self._lock:
            timestamps = [ts for ts in self._request_log.get(user_id, []) if ts > window_start]
            if len(timestamps) >= self.max_requests:
                self._request_log[user_id] = timestamps
                retry_after = int(timestamps[0] + self.window_seconds - now) + 1
                return False, 0, retry_after

            timestamps.append(now)
            self._request_log[user_id] = timestamps
            return True, self.max_requests - len(timestamps), 0

    # ── Concurrent submission guard ──────────────────────────────────────

    def acquire_slot(self) -> bool:
        with self._lock:
            if self._active >= self.max_concurrent:
                return False
            self._active += 1
            return True

    def release_slot(self):
        with self._lock:
            self._active = max(0, self._active - 1)

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def cleanup_expired(self):
        """Drop users whose whole log has aged out of the window."""
        cutoff = time.time() - self.window_seconds
        with self._lock:
            for user_id in list(self._request_log):
                kept = [ts for ts in self._request_log[user_id] if ts > cutoff]
                if kept:
                    self._request_log[user_id] = kept
                else:
                    del self._request_log[user_id]
