"""
eurusd-bot Core: Safety State Machine

Wraps the cycle orchestrator with session-level guards:

    UNINITIALIZED -> VERIFIED -> RUNNING <-> STOPPED

plus an orthogonal emergency-stop flag. While the flag is set the
orchestrator is stopped and cannot be restarted. Daily-loss and drawdown
stops cannot be cleared within the session.

The orchestrator calls the ``on_*`` hooks inline from the cycle that produced
the triggering change, so counters are always current when the next trade
is considered.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence

from core.broker import Broker
from core.exceptions import BrokerConnectionError, ConfigurationError, EmergencyStopError, TradingBotError
from core.models import (
    EmergencyStopKind,
    EmergencyStopReason,
    Performance,
    Position,
    SafetyPhase,
    SafetyState,
    Trade,
    utc_now,
)
from infra.events import EventBus, RiskAlert, RiskLevel, SafetyStateChanged
from tools.config_validator import BotConfig, validate_safety_limits

logger = logging.getLogger(__name__)

LOW_LIVE_BALANCE = 1000.0
NOT_INITIALIZED = "Session not initialized; call initialize first"

ConfirmCallback = Callable[[str], Awaitable[bool]]


@dataclass
class SafetyResult:
    """Outcome of a safety transition"""
    success: bool
    message: str
    error: Optional[TradingBotError] = None


class SafetyStateMachine:
    """Session guard around one CycleOrchestrator."""

    def __init__(
        self,
        config: BotConfig,
        broker: Broker,
        orchestrator,
        bus: Optional[EventBus] = None,
        confirm: Optional[ConfirmCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.broker = broker
        self.orchestrator = orchestrator
        self.bus = bus or EventBus()
        self.confirm = confirm
        self._clock = clock or utc_now
        self.state = SafetyState(environment=config.environment)
        self.reference_balance: Optional[float] = None
        self._restored_count = 0
        orchestrator.attach_safety(self)

    # ----- helpers -----
    def snapshot(self) -> SafetyState:
        return replace(self.state, emergency_stop_history=list(self.state.emergency_stop_history))

    def _set_phase(self, phase: SafetyPhase) -> None:
        if self.state.phase is not phase:
            logger.info(f"Safety phase {self.state.phase.value} -> {phase.value}")
        self.state.phase = phase
        self._publish_state()

    def _publish_state(self) -> None:
        self.bus.publish(SafetyStateChanged(
            phase=self.state.phase,
            emergency_stop_active=self.state.emergency_stop_active,
            reason=self.state.active_reason if self.state.emergency_stop_active else None,
        ))

    def _risk_alert(self, level: RiskLevel, message: str) -> None:
        logger.warning(f"Risk alert ({level.value}): {message}")
        self.bus.publish(RiskAlert(level=level, message=message))

    def _error(self, message: str) -> None:
        logger.error(message)
        if self.state.is_live:
            self._risk_alert(RiskLevel.HIGH, message)

    def is_within_trading_hours(self, now: Optional[datetime] = None) -> bool:
        return self.config.trading_hours.contains(now or self._clock())

    def update_config(self, config: BotConfig) -> None:
        errors = validate_safety_limits(config)
        if errors:
            raise ConfigurationError(errors)
        if config.environment is not self.state.environment:
            raise ConfigurationError(["Environment cannot change within a session"])
        self.config = config

    # ----- transitions -----
    def initialize(self) -> SafetyResult:
        """
        Validate the config against the safety limits.

        Raises:
            ConfigurationError: every violated rule; the session cannot be
                verified or started until a later call succeeds
        """
        errors = validate_safety_limits(self.config)
        if errors:
            logger.error(f"Initialization failed with {len(errors)} error(s): {'; '.join(errors)}")
            self.state.initialized = False
            raise ConfigurationError(errors)

        self.state.initialized = True
        if self.state.is_live:
            logger.warning(
                "LIVE TRADING: real money at risk. "
                f"max daily loss {self.config.risk.max_daily_loss_pct:g}%, "
                f"max position {self.config.risk.max_position_size:g} lots, "
                f"max concurrent {self.config.risk.max_concurrent_trades}, "
                f"confidence threshold {self.config.ai.confidence_threshold:.0%}"
            )
        return SafetyResult(True, f"{self.state.environment.value} session initialized")

    async def verify_account(self) -> SafetyResult:
        if not self.state.initialized:
            return SafetyResult(False, NOT_INITIALIZED, ConfigurationError([NOT_INITIALIZED]))
        try:
            if not await self.broker.test_connection():
                self.state.connected = False
                self._error("Broker connection test failed")
                return SafetyResult(False, "Account verification failed: broker unreachable",
                                    BrokerConnectionError("test_connection"))
            balance = await self.broker.get_account_balance()
        except BrokerConnectionError as e:
            self.state.connected = False
            self._error(f"Account verification failed: {e}")
            return SafetyResult(False, f"Account verification failed: {e}", e)

        self.state.connected = True
        if balance <= 0:
            self._error(f"Account balance is zero or negative ({balance:.2f})")
            return SafetyResult(False, "Account verification failed: non-positive balance")

        if self.state.is_live and balance < LOW_LIVE_BALANCE:
            self._risk_alert(RiskLevel.MEDIUM, f"Account balance is low for live trading ({balance:.2f})")

        self.reference_balance = balance
        self.state.account_verified = True
        self._set_phase(SafetyPhase.VERIFIED)
        return SafetyResult(True, f"Account verified (balance {balance:.2f})")

    async def start_trading(self, schedule: bool = True) -> SafetyResult:
        if self.state.emergency_stop_active:
            reason = self.state.active_reason
            return SafetyResult(False, "Emergency stop is active; clear it before starting",
                                EmergencyStopError(reason))
        if not self.state.initialized:
            return SafetyResult(False, NOT_INITIALIZED, ConfigurationError([NOT_INITIALIZED]))
        if not self.state.account_verified:
            return SafetyResult(False, "Account not verified; call verify_account first")
        if self.state.phase is SafetyPhase.RUNNING:
            return SafetyResult(False, "Trading already running")
        if not self.is_within_trading_hours():
            return SafetyResult(False, "Outside of configured trading hours")

        if self.state.is_live and self.config.safety.require_manual_confirmation:
            prompt = (
                f"LIVE TRADING on account {self.config.broker.account_id}: "
                f"max daily loss {self.config.risk.max_daily_loss_pct:g}%, "
                f"max position {self.config.risk.max_position_size:g} lots, "
                f"confidence {self.config.ai.confidence_threshold:.0%}. Proceed?"
            )
            confirmed = await self.confirm(prompt) if self.confirm is not None else False
            if not confirmed:
                logger.warning("Live trading cancelled: confirmation not given")
                return SafetyResult(False, "Live trading cancelled by user")

        try:
            await self.orchestrator.start(schedule=schedule)
        except BrokerConnectionError as e:
            self._error(f"Failed to start trading: {e}")
            return SafetyResult(False, f"Failed to start trading: {e}", e)

        self.state.session_start = self._clock()
        self._set_phase(SafetyPhase.RUNNING)
        return SafetyResult(True, f"{self.state.environment.value} trading started")

    async def manual_stop(self) -> SafetyResult:
        if self.state.phase is not SafetyPhase.RUNNING:
            return SafetyResult(False, f"Not running (phase {self.state.phase.value})")
        await self.orchestrator.stop()
        self._set_phase(SafetyPhase.STOPPED)
        return SafetyResult(True, "Trading stopped")

    # ----- hooks from the cycle -----
    def on_trade_opened(self, trade: Trade) -> None:
        self.state.total_trades += 1
        self.state.last_trade_time = trade.open_time

    async def on_trade_outcome(self, pnl: float) -> None:
        if self.state.emergency_stop_active:
            return
        if pnl < 0:
            self.state.consecutive_losses += 1
            limit = self.config.consecutive_loss_limit()
            if self.state.consecutive_losses >= limit:
                message = f"{self.state.consecutive_losses} consecutive losses detected"
                if self.config.safety.pause_on_consecutive_losses:
                    await self.emergency_stop(EmergencyStopKind.CONSECUTIVE_LOSSES, message)
                else:
                    self._risk_alert(RiskLevel.HIGH, message)
        elif pnl > 0:
            self.state.consecutive_losses = 0

    async def on_position_update(self, positions: Sequence[Position], balance: float,
                                 daily_realized: float) -> None:
        if self.state.emergency_stop_active:
            return
        if balance <= 0:
            await self.emergency_stop(EmergencyStopKind.ACCOUNT_ERROR, f"Account balance is {balance:.2f}")
            return
        total = daily_realized + sum(p.unrealized_pnl for p in positions)
        loss_pct = -total / balance * 100.0 if total < 0 else 0.0
        if loss_pct >= self.config.risk.max_daily_loss_pct:
            await self.emergency_stop(
                EmergencyStopKind.DAILY_LOSS,
                f"Daily loss limit reached: {loss_pct:.2f}%",
            )

    async def on_performance_update(self, performance: Performance) -> None:
        if self.state.emergency_stop_active:
            return
        if self.reference_balance:
            drawdown_pct = performance.max_drawdown / self.reference_balance * 100.0
        else:
            drawdown_pct = performance.max_drawdown_pct
        if drawdown_pct >= self.config.risk.max_drawdown_pct:
            await self.emergency_stop(
                EmergencyStopKind.DRAWDOWN,
                f"Maximum drawdown exceeded: {drawdown_pct:.2f}%",
            )

    async def on_connection_lost(self, failures: int) -> None:
        if self.state.emergency_stop_active:
            return
        await self.emergency_stop(
            EmergencyStopKind.CONNECTION_LOST,
            f"Broker unreachable for {failures} consecutive cycle(s)",
        )

    # ----- emergency stop -----
    async def emergency_stop(self, kind: EmergencyStopKind, message: str) -> EmergencyStopReason:
        """
        Activate the stop, halt the orchestrator and close every position.

        While a stop is already active a further trigger is logged and
        ignored, so the entry that decides clearing is the one that started
        the incident.
        """
        if self.state.emergency_stop_active:
            active = self.state.active_reason
            logger.warning(
                f"Emergency stop ({kind.value}) ignored; "
                f"already stopped for {active.kind.value if active else 'unknown'}: {message}"
            )
            return active
        reason = EmergencyStopReason(kind=kind, message=message, timestamp=self._clock())
        self.state.emergency_stop_active = True
        self.state.emergency_stop_history.append(reason)
        logger.critical(f"EMERGENCY STOP ({kind.value}): {message}")

        await self.orchestrator.stop()
        failures = await self.orchestrator.close_all_positions(f"emergency stop: {kind.value}")
        for position_id, error in failures:
            logger.error(f"Emergency close of position {position_id} failed: {error}")

        if self.state.phase is SafetyPhase.RUNNING:
            self.state.phase = SafetyPhase.STOPPED
        self._publish_state()
        return reason

    async def manual_emergency_stop(self) -> EmergencyStopReason:
        return await self.emergency_stop(EmergencyStopKind.MANUAL, "Manual emergency stop activated")

    def clear_emergency_stop(self) -> bool:
        # Stops carried over from a previous session are clearable
        session_history = self.state.emergency_stop_history[self._restored_count:]
        reason = session_history[-1] if session_history else None
        if reason is not None and not reason.kind.recoverable:
            logger.warning(f"Cannot clear {reason.kind.value} emergency stop within this session")
            return False
        self.state.emergency_stop_active = False
        self.state.emergency_stop_history = []
        self._restored_count = 0
        self.state.consecutive_losses = 0
        logger.info("Emergency stop cleared")
        self._publish_state()
        return True

    def restore(self, history: List[EmergencyStopReason], active: bool) -> None:
        """Reload persisted emergency-stop history (restart path)."""
        self.state.emergency_stop_history = list(history)
        self._restored_count = len(history)
        self.state.emergency_stop_active = bool(active and history)
        if self.state.emergency_stop_active:
            logger.warning(f"Restored active emergency stop: {self.state.active_reason.message}")
