"""Prometheus-backed metrics hooks for scheduled jobs and orders."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

from core.models import TrailingStopState

logger = logging.getLogger(__name__)

METRIC_PREFIX = "basketbot_"

_STATE_VALUES = {
    TrailingStopState.DISABLED: 0,
    TrailingStopState.IDLE: 1,
    TrailingStopState.ARMED: 2,
    TrailingStopState.TRIGGERED: 3,
}


@dataclass
class JobStats:
    job: str
    status: str
    duration_seconds: float


class MetricsRecorder:
    """
    Expose job, order and portfolio stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_job: Optional[JobStats] = None
        self._order_counts: Dict[str, int] = {}
        self._portfolio_worth: Optional[float] = None
        self._trailing_stop_state: Optional[TrailingStopState] = None
        self._ledger_size: Optional[int] = None

        if not self._enabled:
            self._job_summary = None
            self._job_counter = None
            self._order_counter = None
            self._worth_gauge = None
            self._trailing_stop_gauge = None
            self._ledger_gauge = None
            return

        self._job_summary = Summary(
            "basketbot_job_duration_seconds",
            "Duration of scheduled jobs",
            labelnames=("job",),
        )
        self._job_counter = Counter(
            "basketbot_job_total",
            "Scheduled jobs by outcome",
            labelnames=("job", "status"),
        )
        self._order_counter = Counter(
            "basketbot_orders_total",
            "Market orders by side and outcome",
            labelnames=("side", "status"),
        )
        self._worth_gauge = Gauge(
            "basketbot_portfolio_worth",
            "Portfolio worth in quote currency at the last valuation",
        )
        self._trailing_stop_gauge = Gauge(
            "basketbot_trailing_stop_state",
            "Trailing stop state (0=disabled, 1=idle, 2=armed, 3=triggered)",
        )
        self._ledger_gauge = Gauge(
            "basketbot_removal_ledger_size",
            "Coins waiting out their removal grace period",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)

            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_job(self, job: str, status: str, duration: float) -> None:
        if self._enabled:
            self._job_summary.labels(job=job).observe(duration)
            self._job_counter.labels(job=job, status=status).inc()
        self._last_job = JobStats(job=job, status=status, duration_seconds=duration)

    def record_order(self, side: str, status: str) -> None:
        if self._enabled:
            self._order_counter.labels(side=side, status=status).inc()
        key = f"{side}:{status}"
        self._order_counts[key] = self._order_counts.get(key, 0) + 1

    def set_portfolio_worth(self, worth: float) -> None:
        if self._enabled:
            self._worth_gauge.set(worth)
        self._portfolio_worth = worth

    def set_trailing_stop_state(self, state: TrailingStopState) -> None:
        if self._enabled:
            self._trailing_stop_gauge.set(_STATE_VALUES[state])
        self._trailing_stop_state = state

    def set_removal_ledger_size(self, size: int) -> None:
        if self._enabled:
            self._ledger_gauge.set(size)
        self._ledger_size = size

    def last_job(self) -> Optional[JobStats]:
        return self._last_job

    def order_counts(self) -> Dict[str, int]:
        return dict(self._order_counts)

    def portfolio_worth(self) -> Optional[float]:
        return self._portfolio_worth

    def trailing_stop_state(self) -> Optional[TrailingStopState]:
        return self._trailing_stop_state

    def removal_ledger_size(self) -> Optional[int]:
        return self._ledger_size
