"""Tests for the metrics collector and sliding-window error rate."""
import pytest

from render_worker.metrics import MetricsCollector, SlidingWindowErrorRate


class FakeClock:
    def __init__(self, t: float = 1_000_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


class TestSlidingWindow:
    def test_rate_over_window(self):
        clock = FakeClock()
        window = SlidingWindowErrorRate(60, clock)
        window.record(True)
        window.record(False)
        assert window.counts() == (2, 1)
        assert window.rate_pct() == 50.0

    def test_old_events_expire(self):
        clock = FakeClock()
        window = SlidingWindowErrorRate(60, clock)
        window.record(True)
        clock.t += 61
        window.record(False)
        assert window.counts() == (1, 0)
        assert window.rate_pct() == 0.0

    def test_empty_window(self):
        assert SlidingWindowErrorRate(60).rate_pct() == 0.0


class TestMetricsCollector:
    def test_counters(self):
        m = MetricsCollector()
        m.inc_counter("runs.submitted")
        m.inc_counter("runs.submitted", 2)
        assert m.counter("runs.submitted") == 3
        assert m.counter("never") == 0

    def test_alert_needs_minimum_samples(self):
        m = MetricsCollector(window_seconds=60, alert_pct=25, clock=FakeClock())
        for _ in range(4):
            m.record_outcome(success=False)
        assert m.alerts() == []
        m.record_outcome(success=False)
        assert len(m.alerts()) == 1
        assert m.alerts()[0]["error_rate_pct"] == 100.0

    def test_alert_fires_once_per_excursion(self):
        clock = FakeClock()
        m = MetricsCollector(window_seconds=60, alert_pct=25, clock=clock)
        for _ in range(6):
            m.record_outcome(success=False)
        assert len(m.alerts()) == 1

        clock.t += 61
        for _ in range(10):
            m.record_outcome(success=True)
        for _ in range(5):
            m.record_outcome(success=False)
        assert len(m.alerts()) == 2

    def test_below_threshold_does_not_alert(self):
        m = MetricsCollector(window_seconds=60, alert_pct=25, clock=FakeClock())
        for _ in range(9):
            m.record_outcome(success=True)
        m.record_outcome(success=False)
        assert m.error_rate() == pytest.approx(10.0)
        assert m.alerts() == []

    def test_snapshot_shape(self):
        m = MetricsCollector(clock=FakeClock())
        m.inc_counter("runs.failed")
        m.record_latency("provider.submit", 120.0)
        m.record_error("callback", "timeout", "Render timed out", "run-1")
        m.set_gauge("runs_in_flight", 3)

        snap = m.snapshot()
        assert snap["counters"]["runs.failed"] == 1
        assert snap["latency"]["provider.submit"]["count"] == 1
        assert snap["recent_errors"][0]["run_id"] == "run-1"
        assert snap["gauges"]["runs_in_flight"] == 3
        assert len(snap["timeseries"]["runs.failed"]) == 60
        assert snap["error_rate"]["total"] == 0
