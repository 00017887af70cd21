"""
eurusd-bot Core: Risk Engine

Position sizing, pre-trade gating, trade validation and daily-loss monitoring.
Hard constraints come from the ``risk`` section of the bot config.

NO signal, however confident, can bypass these checks.
"""

from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple
from dataclasses import dataclass
from datetime import date, datetime
import logging

from core.exceptions import ValidationError
from core.models import (
    INSTRUMENT,
    PIP_SIZE,
    UNITS_PER_LOT,
    Performance,
    Position,
    ProposedTrade,
    RiskState,
    Side,
    utc_now,
)
from tools.config_validator import BotConfig, RiskConfig

logger = logging.getLogger(__name__)

MIN_REWARD_RISK_RATIO = 1.5
MAX_SIZE_MULTIPLE = 2.0  # proposals above 2x the default size are denied
KELLY_CAP = 0.25


@dataclass
class RiskCheckResult:
    """Result of the pre-trade gate"""
    approved: bool
    reason: Optional[str] = None
    violated_checks: List[str] = None

    def __post_init__(self):
        if self.violated_checks is None:
            self.violated_checks = []


@dataclass
class TradeValidationResult:
    """Result of trade parameter validation (every failed rule listed)"""
    valid: bool
    errors: List[str] = None

    def __post_init__(self):
        if self.errors is None:
            self.errors = []


@dataclass
class LiquidationCheck:
    should_close: bool
    reason: Optional[str] = None


def _round_lots(lots: float) -> float:
    return round(lots * 100) / 100


def compute_stops(entry_price: float, side: Side, stop_loss_pips: float, take_profit_pips: float) -> Tuple[float, float]:
    """Convert pip distances to absolute stop-loss / take-profit prices."""
    sl_distance = stop_loss_pips * PIP_SIZE
    tp_distance = take_profit_pips * PIP_SIZE
    if side is Side.BUY:
        return entry_price - sl_distance, entry_price + tp_distance
    return entry_price + sl_distance, entry_price - tp_distance


class SizingPolicy(Protocol):
    name: str

    def size(self, risk: "RiskManager", balance: float, performance: Performance) -> float:
        ...


class FixedFractionalSizing:
    """Risk a fixed share of balance against the configured stop distance."""
    name = "fixed_fractional"

    def size(self, risk: "RiskManager", balance: float, performance: Performance) -> float:
        cfg = risk.config
        return risk.size_position(balance, cfg.stop_loss_pips, cfg.risk_per_trade_pct)


class KellySizing:
    """Kelly fraction from realized win rate and average win/loss."""
    name = "kelly"

    def size(self, risk: "RiskManager", balance: float, performance: Performance) -> float:
        return risk.size_position_kelly(
            balance,
            performance.win_rate / 100.0,
            performance.avg_win,
            performance.avg_loss,
        )


SIZING_POLICIES = {
    FixedFractionalSizing.name: FixedFractionalSizing,
    KellySizing.name: KellySizing,
}


def get_sizing_policy(name: str) -> SizingPolicy:
    try:
        return SIZING_POLICIES[name]()
    except KeyError:
        raise ValidationError([f"Unknown sizing policy: {name}"]) from None


class RiskManager:
    """
    Enforces the risk section of the config.

    Daily counters follow the calendar date of the injected clock: they reset
    as soon as the date changes, however little time has elapsed.
    """

    def __init__(self, config: BotConfig, clock: Optional[Callable[[], datetime]] = None):
        self._bot_config = config
        self._clock = clock or utc_now
        self.state = RiskState(last_reset_date=self._today())
        self.trading_enabled = True
        self.sizing_policy = get_sizing_policy(config.risk.sizing_policy)

    @property
    def config(self) -> RiskConfig:
        return self._bot_config.risk

    def update_config(self, config: BotConfig) -> None:
        self._bot_config = config
        self.sizing_policy = get_sizing_policy(config.risk.sizing_policy)
        logger.info(f"Risk config updated (sizing={self.sizing_policy.name})")

    def _today(self) -> date:
        return self._clock().date()

    def _roll_day(self) -> None:
        today = self._today()
        if self.state.last_reset_date != today:
            if self.state.last_reset_date is not None:
                logger.info(
                    f"New trading day {today}: resetting daily pnl "
                    f"{self.state.daily_pnl:.2f} and {self.state.daily_trade_count} trade(s)"
                )
            self.state.daily_pnl = 0.0
            self.state.daily_trade_count = 0
            self.state.last_reset_date = today

    def _daily_loss_limit(self, balance: float) -> float:
        return balance * self.config.max_daily_loss_pct / 100.0

    # ----- Sizing -----
    def size_position(self, balance: float, stop_distance_pips: float, risk_pct: float) -> float:
        """
        Lots that lose ``risk_pct`` of ``balance`` if the stop is hit.

        Example: 10_000 balance, 50 pip stop, 2% -> 200 / 0.0050 = 40_000 units = 0.40 lots
        """
        errors = []
        if stop_distance_pips <= 0:
            errors.append(f"Stop distance must be positive (got {stop_distance_pips} pips)")
        if balance <= 0:
            errors.append(f"Balance must be positive (got {balance})")
        if risk_pct <= 0:
            errors.append(f"Risk percentage must be positive (got {risk_pct})")
        if errors:
            raise ValidationError(errors)

        risk_amount = balance * risk_pct / 100.0
        units = risk_amount / (stop_distance_pips * PIP_SIZE)
        return _round_lots(units / UNITS_PER_LOT)

    def size_position_kelly(self, balance: float, win_rate: float, avg_win: float, avg_loss: float) -> float:
        """Kelly sizing; ``win_rate`` is a fraction and ``avg_loss`` a magnitude."""
        default = self.config.default_position_size
        if balance <= 0 or win_rate <= 0 or avg_win <= 0 or avg_loss <= 0:
            return default

        fraction = (win_rate * avg_win - (1 - win_rate) * avg_loss) / avg_win
        fraction = min(fraction, KELLY_CAP)
        if fraction <= 0:
            return default * 0.5

        risk_amount = balance * fraction
        units = risk_amount / (self.config.stop_loss_pips * PIP_SIZE)
        return _round_lots(units / UNITS_PER_LOT)

    def size_for_trade(self, balance: float, performance: Performance) -> float:
        """Size with the configured policy, capped at max_position_size."""
        lots = self.sizing_policy.size(self, balance, performance)
        capped = min(lots, self.config.max_position_size)
        if capped < lots:
            logger.info(f"Size {lots:.2f} lots capped to max_position_size {capped:.2f}")
        return capped

    def compute_stops(self, entry_price: float, side: Side) -> Tuple[float, float]:
        return compute_stops(entry_price, side, self.config.stop_loss_pips, self.config.take_profit_pips)

    # ----- Gates -----
    def can_place_trade(
        self,
        open_positions: Sequence[Position],
        proposed: ProposedTrade,
        balance: float,
    ) -> RiskCheckResult:
        """
        Ordered pre-trade gate. The first failing check is returned:

        1. Daily loss limit
        2. Concurrent trade cap
        3. Trading disabled
        4. Size above 2x default
        """
        self._roll_day()
        cfg = self.config

        limit = self._daily_loss_limit(balance)
        if self.state.daily_pnl <= -limit:
            return RiskCheckResult(
                approved=False,
                reason=f"Daily risk limit exceeded ({self.state.daily_pnl:.2f} <= -{limit:.2f})",
                violated_checks=["daily_loss_limit"],
            )

        if len(open_positions) >= cfg.max_concurrent_trades:
            return RiskCheckResult(
                approved=False,
                reason=f"Maximum concurrent trades reached ({len(open_positions)}/{cfg.max_concurrent_trades})",
                violated_checks=["max_concurrent_trades"],
            )

        if not self.trading_enabled:
            return RiskCheckResult(
                approved=False,
                reason="Trading is disabled",
                violated_checks=["trading_disabled"],
            )

        max_size = cfg.default_position_size * MAX_SIZE_MULTIPLE
        if proposed.size > max_size:
            return RiskCheckResult(
                approved=False,
                reason=f"Position size too large ({proposed.size:.2f} > {max_size:.2f} lots)",
                violated_checks=["max_size"],
            )

        return RiskCheckResult(approved=True)

    def validate_trade(self, proposed: ProposedTrade) -> TradeValidationResult:
        """Check trade parameters, collecting every violation."""
        errors: List[str] = []

        if proposed.instrument != INSTRUMENT:
            errors.append(f"Invalid or missing instrument: {proposed.instrument!r}")

        side = Side.parse(proposed.side)
        if side is None:
            errors.append(f"Invalid trade side: {proposed.side!r}")

        if not proposed.size or proposed.size <= 0:
            errors.append("Invalid position size")

        entry = proposed.entry_price
        if not entry or entry <= 0:
            errors.append("Invalid entry price")
            entry = None

        sl, tp = proposed.stop_loss, proposed.take_profit
        if sl is not None and tp is not None and entry is not None:
            if side is Side.BUY:
                if sl >= entry:
                    errors.append("Stop loss must be below entry price for buy orders")
                if tp <= entry:
                    errors.append("Take profit must be above entry price for buy orders")
            elif side is Side.SELL:
                if sl <= entry:
                    errors.append("Stop loss must be above entry price for sell orders")
                if tp >= entry:
                    errors.append("Take profit must be below entry price for sell orders")

            sl_distance = abs(entry - sl)
            tp_distance = abs(tp - entry)
            if sl_distance == 0 or tp_distance / sl_distance < MIN_REWARD_RISK_RATIO:
                errors.append(f"Risk-reward ratio too low (minimum {MIN_REWARD_RISK_RATIO}:1)")

        return TradeValidationResult(valid=not errors, errors=errors)

    def should_liquidate_all(self, open_positions: Sequence[Position], balance: float) -> LiquidationCheck:
        """Daily-loss breach (inclusive) or aggregate unrealized loss past the emergency threshold."""
        self._roll_day()
        if balance <= 0:
            raise ValidationError([f"Balance must be positive (got {balance})"])

        limit = self._daily_loss_limit(balance)
        if self.state.daily_pnl <= -limit:
            return LiquidationCheck(
                should_close=True,
                reason=f"Daily loss limit exceeded ({self.state.daily_pnl:.2f} <= -{limit:.2f})",
            )

        unrealized = sum(p.unrealized_pnl for p in open_positions)
        unrealized_pct = unrealized / balance * 100.0
        if unrealized_pct <= -self.config.emergency_stop_loss_pct:
            return LiquidationCheck(
                should_close=True,
                reason=(
                    f"Maximum drawdown exceeded (unrealized {unrealized_pct:.2f}% <= "
                    f"-{self.config.emergency_stop_loss_pct:g}%)"
                ),
            )

        return LiquidationCheck(should_close=False)

    # ----- Bookkeeping -----
    def record_outcome(self, pnl: float) -> None:
        self._roll_day()
        self.state.daily_pnl += pnl
        logger.debug(f"Recorded outcome {pnl:+.2f}; daily pnl {self.state.daily_pnl:+.2f}")

    def record_trade_opened(self) -> None:
        self._roll_day()
        self.state.daily_trade_count += 1

    def halt(self, reason: str) -> None:
        if self.trading_enabled:
            logger.warning(f"Risk engine halting new trades: {reason}")
        self.trading_enabled = False

    def resume(self) -> None:
        self.trading_enabled = True

    def risk_metrics(self, balance: float) -> Dict[str, float]:
        self._roll_day()
        limit = self._daily_loss_limit(balance) if balance > 0 else 0.0
        return {
            "daily_pnl": self.state.daily_pnl,
            "daily_trades": self.state.daily_trade_count,
            "risk_utilization": abs(self.state.daily_pnl) / limit if limit > 0 else 0.0,
            "max_concurrent_trades": self.config.max_concurrent_trades,
        }
