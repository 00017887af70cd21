"""Prometheus-backed metrics for the trading cycle and safety machine."""

from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

from infra.events import (
    CycleCompleted,
    ErrorOccurred,
    EventBus,
    PerformanceUpdated,
    PositionsUpdated,
    RiskAlert,
    SafetyStateChanged,
    TradeClosed,
    TradeExecuted,
)

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose trading loop stats via Prometheus.

    Each recorder owns its registry, so several bot instances (and tests)
    can coexist without duplicate-registration errors.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()
        self._emergency_active = False

        self._cycle_summary = Summary(
            "trader_cycle_duration_seconds",
            "Duration of a full trading cycle",
            registry=self.registry,
        )
        self._cycle_counter = Counter(
            "trader_cycle_total",
            "Trading cycles by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._trades_counter = Counter(
            "trader_trades_executed_total",
            "Orders filled, by side",
            labelnames=("side",),
            registry=self.registry,
        )
        self._closed_counter = Counter(
            "trader_trades_closed_total",
            "Trades closed, by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._risk_alert_counter = Counter(
            "trader_risk_alerts_total",
            "Risk alerts raised, by level",
            labelnames=("level",),
            registry=self.registry,
        )
        self._error_counter = Counter(
            "trader_errors_total",
            "Cycle step errors, by step",
            labelnames=("step",),
            registry=self.registry,
        )
        self._emergency_counter = Counter(
            "trader_emergency_stops_total",
            "Emergency stops, by kind",
            labelnames=("kind",),
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "trader_open_positions",
            "Number of currently open positions",
            registry=self.registry,
        )
        self._unrealized_gauge = Gauge(
            "trader_unrealized_pnl",
            "Aggregate unrealized pnl of open positions",
            registry=self.registry,
        )
        self._total_pnl_gauge = Gauge(
            "trader_realized_pnl_total",
            "Cumulative realized pnl this session",
            registry=self.registry,
        )
        self._drawdown_gauge = Gauge(
            "trader_max_drawdown",
            "Peak-to-trough drawdown of realized pnl",
            registry=self.registry,
        )
        self._emergency_gauge = Gauge(
            "trader_emergency_stop_active",
            "1 while an emergency stop is active",
            registry=self.registry,
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        start_http_server(self._port, registry=self.registry)
        self._started = True
        logger.info("Prometheus metrics exporter listening on port %s", self._port)

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(CycleCompleted, self._on_cycle)
        bus.subscribe(TradeExecuted, self._on_trade)
        bus.subscribe(TradeClosed, self._on_trade_closed)
        bus.subscribe(PositionsUpdated, self._on_positions)
        bus.subscribe(PerformanceUpdated, self._on_performance)
        bus.subscribe(RiskAlert, self._on_risk_alert)
        bus.subscribe(ErrorOccurred, self._on_error)
        bus.subscribe(SafetyStateChanged, self._on_safety)

    def _on_cycle(self, event: CycleCompleted) -> None:
        self._cycle_summary.observe(event.duration_seconds)
        self._cycle_counter.labels(status=event.status).inc()

    def _on_trade(self, event: TradeExecuted) -> None:
        self._trades_counter.labels(side=event.trade.side.value).inc()

    def _on_trade_closed(self, event: TradeClosed) -> None:
        pnl = event.trade.realized_pnl or 0.0
        outcome = "win" if pnl > 0 else "loss" if pnl < 0 else "flat"
        self._closed_counter.labels(outcome=outcome).inc()

    def _on_positions(self, event: PositionsUpdated) -> None:
        self._positions_gauge.set(len(event.positions))
        self._unrealized_gauge.set(sum(p.unrealized_pnl for p in event.positions))

    def _on_performance(self, event: PerformanceUpdated) -> None:
        self._total_pnl_gauge.set(event.performance.total_pnl)
        self._drawdown_gauge.set(event.performance.max_drawdown)

    def _on_risk_alert(self, event: RiskAlert) -> None:
        self._risk_alert_counter.labels(level=event.level.value).inc()

    def _on_error(self, event: ErrorOccurred) -> None:
        self._error_counter.labels(step=event.step).inc()

    def _on_safety(self, event: SafetyStateChanged) -> None:
        # Count each activation once, not every state republish
        if event.emergency_stop_active and event.reason is not None and not self._emergency_active:
            self._emergency_counter.labels(kind=event.reason.kind.value).inc()
        self._emergency_active = event.emergency_stop_active
        self._emergency_gauge.set(1 if event.emergency_stop_active else 0)
