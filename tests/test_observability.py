"""
Tests for MetricsRecorder.
"""

from prometheus_client import REGISTRY

from core.models import FetchStats
from infra.metrics import IterationStats, MetricsRecorder


class TestMetricsRecorder:

    def test_singleton(self):
        assert MetricsRecorder(enabled=False) is MetricsRecorder(enabled=True)

    def test_disabled_recorder_keeps_snapshots(self):
        metrics = MetricsRecorder(enabled=False)

        metrics.observe_iteration(IterationStats("ok", "cycle_1", 3, 1, 1, 0.2))
        metrics.record_price_resolution(FetchStats(source="coingecko", stale_count=2), unresolved=1)
        metrics.record_position_closed("stop_loss")
        metrics.record_position_closed("stop_loss")
        metrics.record_order_failure("SELL")
        metrics.record_calibration_samples("INVERTIBLE", 7)

        assert not metrics.is_enabled()
        assert metrics.last_iteration().iteration_number == 3
        assert metrics.last_fetch() == {"source": "coingecko", "stale": 2, "unresolved": 1, "retries": 0}
        assert metrics.closed_snapshot() == {"stop_loss": 2}
        assert metrics.order_failures() == 1
        assert metrics.calibration_snapshot() == {"INVERTIBLE": 7}

    def test_enabled_recorder_exports_prometheus_metrics(self):
        metrics = MetricsRecorder(enabled=True, port=9100)

        metrics.observe_iteration(IterationStats("ok", "cycle_1", 1, 0, 0, 0.5))
        metrics.record_position_closed("take_profit")
        metrics.record_open_positions(4)

        assert REGISTRY.get_sample_value("cycle_iterations_total", {"status": "ok"}) == 1.0
        assert REGISTRY.get_sample_value("position_closed_total", {"reason": "take_profit"}) == 1.0
        assert REGISTRY.get_sample_value("position_open_count") == 4.0

    def test_reset_allows_reregistration(self):
        MetricsRecorder(enabled=True)
        MetricsRecorder._reset_for_testing()
        metrics = MetricsRecorder(enabled=True)
        assert metrics.is_enabled()
