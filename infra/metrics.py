"""Prometheus-backed metrics hooks for the keeper loop and vault events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Summary, start_http_server

from core.events import BufferDeployed, BufferRemoved, EventRecord, FeesCollected, RegimeChanged
from core.regime import Regime

logger = logging.getLogger(__name__)

METRIC_PREFIX = "pegsentinel_"


@dataclass
class PollStats:
    status: str  # "rebalanced" | "no_change" | "skipped" | "failed"
    tick: int
    regime: str
    duration_seconds: float


class MetricsRecorder:
    """
    Expose keeper and vault state via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Every record_* call is a no-op when disabled.
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

        self._last_poll: Optional[PollStats] = None
        self._outcomes: Dict[str, int] = {}

        if not self._enabled:
            self._poll_summary = None
            self._poll_counter = None
            self._tick_gauge = None
            self._regime_gauge = None
            self._rebalance_counter = None
            self._treasury_gauge = None
            self._buffer_liquidity_gauge = None
            self._fees_counter = None
            return

        self._poll_summary = Summary(
            f"{METRIC_PREFIX}poll_duration_seconds",
            "Duration of one keeper poll",
        )
        self._poll_counter = Counter(
            f"{METRIC_PREFIX}poll_total",
            "Keeper polls by status",
            labelnames=("status",),
        )
        self._tick_gauge = Gauge(
            f"{METRIC_PREFIX}pool_tick",
            "Pool tick observed at the last poll",
        )
        self._regime_gauge = Gauge(
            f"{METRIC_PREFIX}regime",
            "Active regime (0=normal, 1=defend)",
        )
        self._rebalance_counter = Counter(
            f"{METRIC_PREFIX}rebalance_total",
            "Rebalance attempts by outcome",
            labelnames=("outcome",),  # outcome: "deploy_buffer", "remove_buffer", or an error class
        )
        self._treasury_gauge = Gauge(
            f"{METRIC_PREFIX}treasury_balance",
            "Undeployed treasury balance in token base units",
            labelnames=("token",),
        )
        self._buffer_liquidity_gauge = Gauge(
            f"{METRIC_PREFIX}buffer_liquidity",
            "Liquidity of the active buffer position (0 when none)",
        )
        self._fees_counter = Counter(
            f"{METRIC_PREFIX}fees_collected_total",
            "Fees swept from the core position into the treasury",
            labelnames=("token",),
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
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)

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
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        # All ports exhausted
        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_poll(self, stats: PollStats) -> None:
        self._last_poll = stats
        if self._enabled:
            assert self._poll_summary and self._poll_counter and self._tick_gauge and self._regime_gauge
            self._poll_summary.observe(stats.duration_seconds)
            self._poll_counter.labels(status=stats.status).inc()
            self._tick_gauge.set(stats.tick)
            self._regime_gauge.set(Regime.from_value(stats.regime).value)

    def record_rebalance(self, outcome: str) -> None:
        self._outcomes[outcome] = self._outcomes.get(outcome, 0) + 1
        if self._enabled and self._rebalance_counter:
            self._rebalance_counter.labels(outcome=outcome).inc()

    def record_treasury(self, balance0: int, balance1: int) -> None:
        if self._enabled and self._treasury_gauge:
            self._treasury_gauge.labels(token="token0").set(balance0)
            self._treasury_gauge.labels(token="token1").set(balance1)

    def record_event(self, event: EventRecord) -> None:
        """EventLog subscriber: keep gauges in step with committed vault events."""
        if isinstance(event, (BufferDeployed, BufferRemoved, FeesCollected)):
            after = event.treasury_after
            self.record_treasury(after.get("balance0", 0), after.get("balance1", 0))
        if not self._enabled:
            return
        if isinstance(event, BufferDeployed) and self._buffer_liquidity_gauge:
            self._buffer_liquidity_gauge.set(event.liquidity)
        elif isinstance(event, BufferRemoved) and self._buffer_liquidity_gauge:
            self._buffer_liquidity_gauge.set(0)
            if self._fees_counter and (event.fees0 or event.fees1):
                self._fees_counter.labels(token="token0").inc(event.fees0)
                self._fees_counter.labels(token="token1").inc(event.fees1)
        elif isinstance(event, FeesCollected) and self._fees_counter:
            self._fees_counter.labels(token="token0").inc(event.amount0)
            self._fees_counter.labels(token="token1").inc(event.amount1)
        elif isinstance(event, RegimeChanged) and self._regime_gauge:
            self._regime_gauge.set(Regime.from_value(event.to_regime).value)

    def last_poll(self) -> Optional[PollStats]:
        return self._last_poll

    def outcome_snapshot(self) -> Dict[str, int]:
        return dict(self._outcomes)


__all__ = ["MetricsRecorder", "PollStats"]
