"""Prometheus-backed metrics hooks for the decision pipeline and position lifecycle."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose pipeline stats via Prometheus.

    Each recorder owns its CollectorRegistry, so several instances (tests,
    multiple services in one process) never collide on metric names.
    When disabled, every record_* call only updates the in-process snapshot.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._last_no_trade_reason: Optional[str] = None
        self._tick_outcomes: Dict[str, int] = {}

        self._tick_counter = Counter(
            "trader_tick_total",
            "Symbol evaluations by outcome (decision or no_trade)",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._no_trade_counter = Counter(
            "trader_no_trade_total",
            "Symbol evaluations that produced no trade, grouped by reason",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._tick_summary = Summary(
            "trader_tick_duration_seconds",
            "Duration of one full tick across all symbols",
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "trader_open_positions",
            "Positions currently in an active state",
            registry=self.registry,
        )
        self._transition_counter = Counter(
            "trader_position_transitions_total",
            "Committed position state transitions by target state",
            labelnames=("state",),
            registry=self.registry,
        )
        self._circuit_breaker_gauge = Gauge(
            "trader_circuit_breaker_state",
            "Circuit breaker state (0=clear, 1=tripped)",
            registry=self.registry,
        )
        self._circuit_breaker_trips_counter = Counter(
            "trader_circuit_breaker_trips_total",
            "Total number of circuit breaker trips",
            registry=self.registry,
        )
        self._risk_denials_counter = Counter(
            "trader_risk_denials_total",
            "Trade proposals denied by the risk gate, by failing check",
            labelnames=("check",),
            registry=self.registry,
        )
        self._persistence_failures_counter = Counter(
            "trader_persistence_failures_total",
            "State transitions abandoned after exhausting persistence retries",
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port, registry=self.registry)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, successfully bound to port %s instead", self._port, port)
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

    def record_tick_outcome(self, no_trade_reason: Optional[str]) -> None:
        outcome = "decision" if no_trade_reason is None else "no_trade"
        self._tick_outcomes[outcome] = self._tick_outcomes.get(outcome, 0) + 1
        self._tick_counter.labels(outcome=outcome).inc()
        if no_trade_reason is not None:
            self._last_no_trade_reason = no_trade_reason
            self._no_trade_counter.labels(reason=no_trade_reason).inc()

    def observe_tick_duration(self, seconds: float) -> None:
        self._tick_summary.observe(max(seconds, 0.0))

    def record_open_positions(self, count: int) -> None:
        self._positions_gauge.set(max(count, 0))

    def record_transition(self, state: str) -> None:
        self._transition_counter.labels(state=state).inc()

    def record_circuit_breaker_state(self, tripped: bool) -> None:
        self._circuit_breaker_gauge.set(1 if tripped else 0)

    def record_circuit_breaker_trip(self) -> None:
        self._circuit_breaker_gauge.set(1)
        self._circuit_breaker_trips_counter.inc()

    def record_risk_denial(self, check: str) -> None:
        self._risk_denials_counter.labels(check=check).inc()

    def record_persistence_failure(self) -> None:
        self._persistence_failures_counter.inc()

    def last_no_trade_reason(self) -> Optional[str]:
        return self._last_no_trade_reason

    def tick_outcomes(self) -> Dict[str, int]:
        return dict(self._tick_outcomes)

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value of one sample from this recorder's registry."""
        return self.registry.get_sample_value(name, labels or {})
