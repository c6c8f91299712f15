"""
Thread-safe in-memory metrics for the render worker.

One MetricsCollector per process, created at startup and handed to the
dispatcher, callback handler and sweeper. Tracks:
  - Counters + per-minute time-series (runs.submitted, runs.failed, qa.burn_in, ...)
  - Latency samples (last 100 per name)
  - Gauges (start_time, runs_in_flight)
  - Recent errors (last 50) for root-cause analysis
  - Sliding-window run error rate, with a warning log when it crosses the alert threshold

All data is ephemeral and resets on restart.
"""

import os
import time
import logging
import threading
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, List, Tuple

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

MAX_SAMPLES = 100
MAX_MINUTES = 60
MAX_ERRORS = 50
MAX_ALERTS = 20
ERROR_RATE_WINDOW_SECONDS = int(os.getenv("ERROR_RATE_WINDOW_SECONDS", "300"))
ERROR_RATE_ALERT_PCT = float(os.getenv("ERROR_RATE_ALERT_PCT", "25"))
ERROR_RATE_MIN_SAMPLES = 5


class SlidingWindowErrorRate:
    """Outcomes inside the last ``window_seconds``; older entries are evicted on access."""

    def __init__(self, window_seconds: int, clock: Callable[[], float] = time.time):
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: Deque[Tuple[float, bool]] = deque()

    def _evict(self, now: float):
        cutoff = now - self.window_seconds
        while self._events and self._events[0][0] <= cutoff:
            self._events.popleft()

    def record(self, is_error: bool):
        now = self._clock()
        self._events.append((now, is_error))
        self._evict(now)

    def counts(self) -> Tuple[int, int]:
        """(total, errors) inside the window."""
        self._evict(self._clock())
        total = len(self._events)
        errors = sum(1 for _, is_error in self._events if is_error)
        return total, errors

    def rate_pct(self) -> float:
        total, errors = self.counts()
        return (errors / total * 100) if total else 0.0


class MetricsCollector:
    def __init__(
        self,
        window_seconds: int = ERROR_RATE_WINDOW_SECONDS,
        alert_pct: float = ERROR_RATE_ALERT_PCT,
        clock: Callable[[], float] = time.time,
    ):
        self._lock = threading.Lock()
        self._clock = clock
        self._counters: Dict[str, int] = defaultdict(int)
        self._latency_samples: Dict[str, List[float]] = defaultdict(list)
        self._timeseries: Dict[str, Dict[int, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: Dict[str, float] = defaultdict(float)
        self._recent_errors: List[dict] = []
        self._alerts: List[dict] = []
        self._alerting = False

        self.alert_pct = alert_pct
        self.error_window = SlidingWindowErrorRate(window_seconds, clock)
        self._gauges["start_time"] = clock()

    def _minute_bucket(self) -> int:
        return int(self._clock()) // 60 * 60

    # ── Recording ────────────────────────────────────────────────────────

    def inc_counter(self, name: str, amount: int = 1):
        """Increment a counter (e.g. 'runs.submitted', 'errors.api_error')."""
        with self._lock:
            self._counters[name] += amount
            self._timeseries[name][self._minute_bucket()] += amount

    def record_latency(self, name: str, duration_ms: float):
        with self._lock:
            samples = self._latency_samples[name]
            samples.append(duration_ms)
            if len(samples) > MAX_SAMPLES:
                self._latency_samples[name] = samples[-MAX_SAMPLES:]

    def set_gauge(self, name: str, value: float):
        with self._lock:
            self._gauges[name] = value

    def record_error(self, component: str, error_type: str, message: str, run_id: str = ""):
        """Record an error for root-cause analysis."""
        with self._lock:
            self._recent_errors.append({
                "timestamp": self._clock(),
                "component": component,
                "error_type": error_type,
                "message": message[:300],
                "run_id": run_id,
            })
            if len(self._recent_errors) > MAX_ERRORS:
                self._recent_errors.pop(0)

    def record_outcome(self, success: bool):
        """Feed one terminal run outcome into the error-rate window."""
        with self._lock:
            self.error_window.record(not success)
            total, errors = self.error_window.counts()
            rate = (errors / total * 100) if total else 0.0

            over = total >= ERROR_RATE_MIN_SAMPLES and rate > self.alert_pct
            if over and not self._alerting:
                alert = {
                    "timestamp": self._clock(),
                    "error_rate_pct": round(rate, 2),
                    "window_seconds": self.error_window.window_seconds,
                    "samples": total,
                }
                self._alerts.append(alert)
                if len(self._alerts) > MAX_ALERTS:
                    self._alerts.pop(0)
                logger.warning(
                    f"Render error rate {rate:.1f}% over the last "
                    f"{self.error_window.window_seconds}s ({errors}/{total}) exceeds {self.alert_pct}%"
                )
            self._alerting = over

    # ── Reading ──────────────────────────────────────────────────────────

    def error_rate(self) -> float:
        with self._lock:
            return self.error_window.rate_pct()

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def alerts(self) -> List[dict]:
        with self._lock:
            return list(self._alerts)

    def snapshot(self) -> dict:
        """Complete metrics snapshot for the /metrics endpoint."""
        now = self._clock()
        minute_now = int(now) // 60 * 60

        with self._lock:
            latency_stats = {}
            for name, samples in self._latency_samples.items():
                if not samples:
                    continue
                sorted_s = sorted(samples)
                n = len(sorted_s)
                latency_stats[name] = {
                    "p50": sorted_s[n // 2],
                    "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                    "avg": sum(sorted_s) / n,
                    "count": n,
                }

            timeseries_out = {}
            cutoff = minute_now - MAX_MINUTES * 60
            for name, buckets in self._timeseries.items():
                for k in [k for k in buckets if k < cutoff]:
                    del buckets[k]
                timeseries_out[name] = [
                    {"t": minute_now - (MAX_MINUTES - 1 - i) * 60,
                     "v": buckets.get(minute_now - (MAX_MINUTES - 1 - i) * 60, 0)}
                    for i in range(MAX_MINUTES)
                ]

            total, errors = self.error_window.counts()
            return {
                "timestamp": now,
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "latency": latency_stats,
                "timeseries": timeseries_out,
                "error_rate": {
                    "window_seconds": self.error_window.window_seconds,
                    "total": total,
                    "errors": errors,
                    "pct": round((errors / total * 100) if total else 0.0, 2),
                    "alert_pct": self.alert_pct,
                },
                "alerts": list(self._alerts),
                "recent_errors": list(self._recent_errors[-10:]),
                "uptime_seconds": now - self._gauges.get("start_time", now),
            }
