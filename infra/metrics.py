"""Prometheus-backed metrics hooks for the cycle iteration loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Summary, start_http_server

from core.models import FetchStats

logger = logging.getLogger(__name__)

METRIC_PREFIXES = ("cycle_", "price_", "position_", "order_", "calibration_")


@dataclass
class IterationStats:
    status: str  # "ok", "error", "skipped"
    cycle_id: str
    iteration_number: int
    to_sell: int
    closed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose iteration loop stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    When disabled, every ``record_*`` call still keeps the last values so
    they can be inspected, but nothing is registered or exported.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_iteration: Optional[IterationStats] = None
        self._last_fetch: Optional[Dict[str, object]] = None
        self._closed_by_reason: Dict[str, int] = {}
        self._order_failures: int = 0
        self._calibration_samples: Dict[str, int] = {}

        if not self._enabled:
            self._iteration_summary = None
            self._iteration_counter = None
            self._price_source_counter = None
            self._stale_gauge = None
            self._unresolved_gauge = None
            self._positions_gauge = None
            self._closed_counter = None
            self._order_failures_counter = None
            self._calibration_gauge = None
            return

        self._iteration_summary = Summary(
            "cycle_iteration_duration_seconds",
            "Duration of a single cycle iteration",
        )
        self._iteration_counter = Counter(
            "cycle_iterations_total",
            "Cycle iterations by status",
            labelnames=("status",),
        )
        self._price_source_counter = Counter(
            "price_resolutions_total",
            "Price resolution passes by first successful source",
            labelnames=("source",),
        )
        self._stale_gauge = Gauge(
            "price_stale_assets",
            "Assets priced from a stale reading in the last resolution",
        )
        self._unresolved_gauge = Gauge(
            "price_unresolved_assets",
            "Assets with no price at all in the last resolution",
        )
        self._positions_gauge = Gauge(
            "position_open_count",
            "Number of currently open positions",
        )
        self._closed_counter = Counter(
            "position_closed_total",
            "Closed positions by close reason",
            labelnames=("reason",),
        )
        self._order_failures_counter = Counter(
            "order_failures_total",
            "Failed order placements by side",
            labelnames=("side",),
        )
        self._calibration_gauge = Gauge(
            "calibration_samples",
            "Calibration sample count per category",
            labelnames=("category",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            from prometheus_client import REGISTRY

            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIXES) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass  # already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None
        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound metrics to port %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                logger.debug("Port %s in use, trying next port...", port)

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_iteration(self, stats: IterationStats) -> None:
        if self._enabled:
            self._iteration_summary.observe(stats.duration_seconds)
            self._iteration_counter.labels(status=stats.status).inc()
        self._last_iteration = stats

    def record_price_resolution(self, stats: FetchStats, unresolved: int) -> None:
        self._last_fetch = {
            "source": stats.source or "none",
            "stale": stats.stale_count,
            "unresolved": unresolved,
            "retries": stats.retries,
        }
        if self._enabled:
            self._price_source_counter.labels(source=stats.source or "none").inc()
            self._stale_gauge.set(stats.stale_count)
            self._unresolved_gauge.set(unresolved)

    def record_open_positions(self, count: int) -> None:
        if self._enabled:
            self._positions_gauge.set(max(count, 0))

    def record_position_closed(self, reason: str) -> None:
        self._closed_by_reason[reason] = self._closed_by_reason.get(reason, 0) + 1
        if self._enabled:
            self._closed_counter.labels(reason=reason).inc()

    def record_order_failure(self, side: str) -> None:
        self._order_failures += 1
        if self._enabled:
            self._order_failures_counter.labels(side=side.lower()).inc()

    def record_calibration_samples(self, category: str, samples: int) -> None:
        self._calibration_samples[category] = samples
        if self._enabled:
            self._calibration_gauge.labels(category=category).set(samples)

    def last_iteration(self) -> Optional[IterationStats]:
        return self._last_iteration

    def last_fetch(self) -> Optional[Dict[str, object]]:
        return dict(self._last_fetch) if self._last_fetch else None

    def closed_snapshot(self) -> Dict[str, int]:
        return dict(self._closed_by_reason)

    def order_failures(self) -> int:
        return self._order_failures

    def calibration_snapshot(self) -> Dict[str, int]:
        return dict(self._calibration_samples)


__all__ = ["MetricsRecorder", "IterationStats"]
