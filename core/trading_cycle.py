"""
Trading Cycle Orchestrator

Runs the periodic decision loop for one instrument:

1. Refresh market snapshot (price + latest bar)
2. Indicators (only with enough history)
3. Positions: revalue, reconcile broker-side closes, balance, safety check
4. Risk check: liquidate everything and abort the cycle on a breach
5. Signals -> fusion -> sizing -> gate -> validation -> order
6. Performance + safety drawdown check

A failing collaborator is reported as an ErrorOccurred event and only skips
the steps that depend on it. Cycles never overlap.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from analytics.performance import compute_performance, format_summary
from core.broker import Broker
from core.exceptions import BrokerConnectionError, RiskLimitError, ValidationError
from core.models import (
    MIN_INDICATOR_BARS,
    UNITS_PER_LOT,
    Action,
    BotState,
    FusedSignal,
    IndicatorSet,
    MarketSnapshot,
    Performance,
    Position,
    ProposedTradeBuilder,
    Trade,
    TradeStatus,
    utc_now,
    validate_signal,
)
from core.risk import RiskManager
from infra.events import (
    CycleCompleted,
    ErrorOccurred,
    EventBus,
    IndicatorsUpdated,
    PerformanceUpdated,
    PositionsUpdated,
    PriceUpdated,
    RiskAlert,
    RiskLevel,
    SignalUpdated,
    TradeClosed,
    TradeExecuted,
)
from strategy.predictor import SignalPredictor
from strategy.signal_fusion import fuse_signals
from strategy.technical import compute_indicators, technical_signal
from tools.config_validator import BotConfig

logger = logging.getLogger(__name__)

STRATEGY_NAME = "signal_fusion"


@dataclass
class CycleResult:
    """Result of a trading cycle execution"""
    cycle: int
    status: str  # executed | no_trade | aborted | skipped | stopped
    executed: Optional[Trade] = None
    no_trade_reason: Optional[str] = None
    aborted_reason: Optional[str] = None
    errors: List[str] = None

    def __post_init__(self):
        if self.errors is None:
            self.errors = []


class _Stopped(Exception):
    """Raised between steps once a stop was requested."""


class CycleOrchestrator:
    """
    Owns market state, positions, trades and performance for one bot.

    Hosts read state through ``snapshot()`` and the event bus; they never get
    the live objects.
    """

    def __init__(
        self,
        config: BotConfig,
        broker: Broker,
        predictor: SignalPredictor,
        bus: Optional[EventBus] = None,
        risk: Optional[RiskManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
        indicator_fn: Callable[[Sequence], Optional[IndicatorSet]] = compute_indicators,
    ):
        self.config = config
        self.broker = broker
        self.predictor = predictor
        self.bus = bus or EventBus()
        self._clock = clock or utc_now
        self.risk = risk or RiskManager(config, clock=self._clock)
        self.indicator_fn = indicator_fn
        self.safety = None

        self.market = MarketSnapshot()
        self.indicators: Optional[IndicatorSet] = None
        self.last_signal: Optional[FusedSignal] = None
        self.positions: List[Position] = []
        self.trades: List[Trade] = []
        self.performance = Performance()
        self.balance: Optional[float] = None
        self.reference_balance: Optional[float] = None
        self.cycle_count = 0
        self.connection_failures = 0

        self.running = False
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()
        self._cycle_task: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None

        logger.info(
            f"Initialized CycleOrchestrator ({config.broker.instrument}, "
            f"interval={config.loop.interval_seconds:g}s, sizing={self.risk.sizing_policy.name})"
        )

    def attach_safety(self, safety) -> None:
        self.safety = safety

    # ----- lifecycle -----
    async def start(self, schedule: bool = True) -> None:
        """
        Test the connection, preload history and begin the timer.

        Raises:
            BrokerConnectionError: connection test or history load failed
        """
        if self.running:
            return
        if not await self.broker.test_connection():
            raise BrokerConnectionError("test_connection")

        bars = await self.broker.get_historical_data(
            self.config.loop.history_bars, self.config.loop.history_granularity
        )
        self.market.replace(bars)
        logger.info(f"Loaded {len(self.market)} {self.config.loop.history_granularity} bars")

        self.running = True
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self.risk.resume()
        if schedule:
            self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        """
        Stop scheduling cycles. An in-flight cycle finishes its current step
        and then returns; this never waits for it, so it is safe to call from
        inside a cycle.
        """
        if self.running:
            logger.info("Stopping trading cycle")
        self.running = False
        self._stop_requested = True
        self._stop_event.set()
        self.risk.halt("orchestrator stopped")

    async def wait_stopped(self) -> None:
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await task

    async def _run_loop(self) -> None:
        interval = self.config.loop.interval_seconds
        while self.running:
            await self.run_cycle()
            if not self.running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Trading loop exited")

    async def update_config(self, config: BotConfig) -> None:
        """Swap config between cycles (waits for an in-flight cycle)."""
        async with self._lock:
            self.config = config
            self.risk.update_config(config)
            logger.info("Orchestrator config updated")

    def snapshot(self) -> BotState:
        return BotState(
            running=self.running,
            price=self.market.price,
            bar_count=len(self.market),
            indicators=self.indicators,
            last_signal=self.last_signal,
            positions=tuple(replace(p) for p in self.positions),
            trades=tuple(self.trades),
            performance=self.performance,
            risk=replace(self.risk.state),
            cycle_count=self.cycle_count,
        )

    # ----- helpers -----
    def _check_stop(self) -> None:
        if self._stop_requested:
            raise _Stopped()

    def _error(self, result: CycleResult, step: str, error: Exception) -> None:
        message = f"{step}: {error}"
        logger.error(f"Cycle {result.cycle} {message}")
        result.errors.append(message)
        self.bus.publish(ErrorOccurred(step=step, message=str(error), error_type=type(error).__name__))

    def _publish_positions(self) -> None:
        self.bus.publish(PositionsUpdated(positions=tuple(replace(p) for p in self.positions)))

    def _close_trade_record(self, position: Position, close_price: float, pnl: float,
                            note: Optional[str] = None) -> Optional[Trade]:
        for i, trade in enumerate(self.trades):
            if trade.id == position.id and trade.status is TradeStatus.OPEN:
                closed = trade.close(close_price, pnl, at=self._clock())
                if note:
                    closed = closed.annotate(note)
                self.trades[i] = closed
                self.bus.publish(TradeClosed(trade=closed))
                return closed
        logger.info(f"Position {position.id} closed ({pnl:+.2f}) with no matching trade record")
        return None

    # ----- the cycle -----
    async def run_cycle(self) -> CycleResult:
        """Run one cycle; an overlapping call is skipped."""
        if self._lock.locked():
            logger.warning("Previous cycle still running; skipping")
            return CycleResult(cycle=self.cycle_count, status="skipped", no_trade_reason="cycle in progress")

        async with self._lock:
            if self.safety is not None and self.safety.state.emergency_stop_active:
                return CycleResult(cycle=self.cycle_count, status="skipped", no_trade_reason="emergency stop active")

            self.cycle_count += 1
            result = CycleResult(cycle=self.cycle_count, status="no_trade")
            started = time.monotonic()
            self._cycle_task = asyncio.current_task()
            try:
                await self._run_steps(result)
            except _Stopped:
                result.status = "stopped"
                logger.info(f"Cycle {result.cycle} stopped between steps")
            finally:
                self._cycle_task = None

            duration = time.monotonic() - started
            self.bus.publish(CycleCompleted(cycle=result.cycle, duration_seconds=duration, status=result.status))
            logger.info(
                f"Cycle {result.cycle} {result.status} in {duration:.2f}s"
                + (f" ({result.no_trade_reason})" if result.no_trade_reason else "")
            )
            return result

    async def _run_steps(self, result: CycleResult) -> None:
        price_fresh = await self._step_market(result)
        self._check_stop()

        self._step_indicators(result)
        self._check_stop()

        balance = await self._step_positions(result, price_fresh)
        self._check_stop()

        if balance is not None and balance > 0:
            check = self.risk.should_liquidate_all(self.positions, balance)
            if check.should_close:
                await self._liquidate(result, check.reason)
                return
        self._check_stop()

        if not price_fresh:
            result.no_trade_reason = "stale price"
        elif self.indicators is None:
            result.no_trade_reason = f"insufficient history ({len(self.market)}/{MIN_INDICATOR_BARS} bars)"
        elif balance is None or balance <= 0:
            result.no_trade_reason = "balance unavailable"
        else:
            await self._step_signals(result, balance)
        self._check_stop()

        await self._step_performance()

    async def _step_market(self, result: CycleResult) -> bool:
        try:
            price = await self.broker.get_current_price()
            bars = await self.broker.get_historical_data(1, self.config.loop.update_granularity)
        except BrokerConnectionError as e:
            self._error(result, "market_data", e)
            self.connection_failures += 1
            limit = self.config.safety.max_connection_failures
            if self.safety is not None and self.connection_failures >= limit:
                await self.safety.on_connection_lost(self.connection_failures)
            return False

        self.connection_failures = 0
        self.market.extend(bars)
        self.market.update_price(price, at=self._clock())
        self.bus.publish(PriceUpdated(price=price, bar_count=len(self.market)))
        return True

    def _step_indicators(self, result: CycleResult) -> None:
        self.indicators = None
        if len(self.market) >= MIN_INDICATOR_BARS:
            try:
                self.indicators = self.indicator_fn(self.market.bars)
            except (ArithmeticError, ValueError) as e:
                self._error(result, "indicators", e)
        self.bus.publish(IndicatorsUpdated(indicators=self.indicators))

    async def _step_positions(self, result: CycleResult, price_fresh: bool) -> Optional[float]:
        try:
            fresh = await self.broker.get_open_positions()
        except BrokerConnectionError as e:
            self._error(result, "positions", e)
            fresh = None
        # close_all_positions owns the position list once a stop is requested
        self._check_stop()

        if fresh is not None:
            if price_fresh:
                for position in fresh:
                    position.revalue(self.market.price)
            fresh_ids = {p.id for p in fresh}
            gone = [p for p in self.positions if p.id not in fresh_ids]
            for position in gone:
                pnl = position.unrealized_pnl
                self._close_trade_record(position, position.current_price, pnl, note="closed broker-side")
                self.risk.record_outcome(pnl)
                logger.info(f"Position {position.id} closed broker-side ({pnl:+.2f})")
            self.positions = fresh
            self._publish_positions()

            if self.safety is not None:
                for position in gone:
                    await self.safety.on_trade_outcome(position.unrealized_pnl)
                    self._check_stop()

        try:
            balance = await self.broker.get_account_balance()
        except BrokerConnectionError as e:
            self._error(result, "balance", e)
            return None
        self._check_stop()

        self.balance = balance
        if self.reference_balance is None and balance > 0:
            self.reference_balance = balance
        if self.safety is not None:
            await self.safety.on_position_update(self.positions, balance, self.risk.state.daily_pnl)
        return balance

    async def _liquidate(self, result: CycleResult, reason: str) -> None:
        error = RiskLimitError(reason)
        logger.warning(f"Risk liquidation: {error}")
        failures = await self.close_all_positions(reason)
        for position_id, exc in failures:
            self._error(result, "liquidation", exc)
        self.bus.publish(RiskAlert(level=RiskLevel.HIGH, message=reason))
        result.status = "aborted"
        result.aborted_reason = reason

    async def _step_signals(self, result: CycleResult, balance: float) -> None:
        bars = self.market.bars
        price = self.market.price
        try:
            technical = validate_signal(technical_signal(self.indicators, price))
            predicted = validate_signal(await self.predictor.predict(bars, self.indicators))
        except ValidationError as e:
            self._error(result, "signals", e)
            result.no_trade_reason = "invalid signal"
            return
        except Exception as e:
            logger.error(f"Predictor failed: {e}", exc_info=True)
            self._error(result, "predictor", e)
            result.no_trade_reason = "predictor unavailable"
            return

        fused = fuse_signals(technical, predicted)
        self.last_signal = fused
        self.bus.publish(SignalUpdated(signal=fused))

        threshold = self.config.ai.confidence_threshold
        if fused.action is Action.HOLD:
            result.no_trade_reason = "hold signal"
            return
        if not fused.confidence > threshold:
            result.no_trade_reason = f"confidence {fused.confidence:.2f} <= {threshold:.2f}"
            return

        await self._execute(result, fused, balance, price)

    async def _execute(self, result: CycleResult, fused: FusedSignal, balance: float, price: float) -> None:
        side = fused.action.to_side()
        try:
            lots = self.risk.size_for_trade(balance, self.performance)
            stop_loss, take_profit = self.risk.compute_stops(price, side)
            proposal = (
                ProposedTradeBuilder(instrument=self.config.broker.instrument, strategy=STRATEGY_NAME)
                .side(side)
                .size(lots)
                .entry(price)
                .stops(stop_loss, take_profit)
                .confidence(fused.confidence)
                .build()
            )
        except ValidationError as e:
            self._error(result, "sizing", e)
            result.no_trade_reason = "sizing failed"
            return

        gate = self.risk.can_place_trade(self.positions, proposal, balance)
        if not gate.approved:
            logger.warning(f"Trade denied: {gate.reason}")
            self.bus.publish(RiskAlert(level=RiskLevel.MEDIUM, message=gate.reason))
            result.no_trade_reason = gate.reason
            return

        validation = self.risk.validate_trade(proposal)
        if not validation.valid:
            self._error(result, "validate_trade", ValidationError(validation.errors))
            result.no_trade_reason = "trade validation failed"
            return

        try:
            fill = await self.broker.place_trade(side, proposal.units, stop_loss, take_profit)
        except BrokerConnectionError as e:
            self._error(result, "place_trade", e)
            result.no_trade_reason = "order failed"
            return

        trade = Trade(
            id=fill.trade_id,
            instrument=proposal.instrument,
            side=side,
            size=fill.units / UNITS_PER_LOT,
            open_price=fill.price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            open_time=fill.time,
            confidence=fused.confidence,
            strategy=proposal.strategy,
        )
        self.trades.append(trade)
        self.positions.append(Position(
            id=trade.id,
            side=side,
            size=trade.size,
            open_price=trade.open_price,
            current_price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            open_time=trade.open_time,
        ))
        self.risk.record_trade_opened()
        if self.safety is not None:
            self.safety.on_trade_opened(trade)

        logger.info(
            f"Executed {side.value} {trade.size:.2f} lots @ {trade.open_price:.5f} "
            f"(SL {stop_loss:.5f}, TP {take_profit:.5f}, confidence {fused.confidence:.2f})"
        )
        self.bus.publish(TradeExecuted(trade=trade))
        self._publish_positions()
        result.status = "executed"
        result.executed = trade

    async def _step_performance(self) -> None:
        self.performance = compute_performance(self.trades, self.reference_balance)
        self.bus.publish(PerformanceUpdated(performance=self.performance))
        logger.debug(f"Performance: {format_summary(self.performance)}")
        if self.safety is not None:
            await self.safety.on_performance_update(self.performance)

    # ----- shared liquidation -----
    async def close_all_positions(self, reason: str) -> List[Tuple[str, Exception]]:
        """
        Close every open position (best effort).

        Called from outside a cycle this waits for the in-flight cycle, which
        returns at its next step boundary once a stop was requested.

        Returns the (position_id, error) pairs that could not be closed.
        """
        if self._cycle_task is not None and self._cycle_task is asyncio.current_task():
            return await self._close_all(reason)
        async with self._lock:
            return await self._close_all(reason)

    async def _close_all(self, reason: str) -> List[Tuple[str, Exception]]:
        try:
            positions = await self.broker.get_open_positions()
        except BrokerConnectionError as e:
            logger.error(f"Could not refresh positions before closing; using cached list: {e}")
            positions = list(self.positions)

        failures: List[Tuple[str, Exception]] = []
        remaining: List[Position] = []
        for position in positions:
            try:
                pnl = await self.broker.close_position(position.id)
            except BrokerConnectionError as e:
                failures.append((position.id, e))
                remaining.append(position)
                continue
            close_price = self.market.price if self.market.price is not None else position.current_price
            self._close_trade_record(position, close_price, pnl, note=f"closed: {reason}")
            self.risk.record_outcome(pnl)
            logger.warning(f"Closed position {position.id} ({pnl:+.2f}): {reason}")

        self.positions = remaining
        self._publish_positions()
        return failures
