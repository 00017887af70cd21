"""
eurusd-bot Core: Domain Model

Market data, signals, positions, trades and the state records owned by the
orchestrator / safety pair. Hosts receive frozen snapshots of these, never the
live objects.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from core.exceptions import ValidationError

INSTRUMENT = "EUR_USD"
PIP_SIZE = 0.0001  # one pip of EUR/USD in quote currency
UNITS_PER_LOT = 100_000
MAX_SNAPSHOT_BARS = 500
MIN_INDICATOR_BARS = 50


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value) -> Optional["Side"]:
        """Return the Side for ``value`` or None when it is not recognized."""
        if isinstance(value, Side):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class Action(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"

    def to_side(self) -> Side:
        if self is Action.HOLD:
            raise ValueError("HOLD has no trade side")
        return Side(self.value)


class Environment(str, Enum):
    DEMO = "demo"
    LIVE = "live"


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class EmergencyStopKind(str, Enum):
    DAILY_LOSS = "daily_loss"
    CONSECUTIVE_LOSSES = "consecutive_losses"
    DRAWDOWN = "drawdown"
    MANUAL = "manual"
    CONNECTION_LOST = "connection_lost"
    ACCOUNT_ERROR = "account_error"

    @property
    def recoverable(self) -> bool:
        """Daily-loss and drawdown stops cannot be cleared within a session."""
        return self not in (EmergencyStopKind.DAILY_LOSS, EmergencyStopKind.DRAWDOWN)


class SafetyPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    VERIFIED = "verified"
    RUNNING = "running"
    STOPPED = "stopped"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Bar:
    """One OHLCV candle"""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class MarketSnapshot:
    """
    Rolling window of bars plus the latest mid price.

    Bars are kept in insertion order and bounded to ``max_bars``; the oldest
    bar is evicted on overflow. A bar carrying the same timestamp as the last
    one replaces it, since the broker keeps re-serving the forming candle.
    """

    def __init__(self, bars: Optional[Sequence[Bar]] = None, max_bars: int = MAX_SNAPSHOT_BARS):
        self.max_bars = max_bars
        self._bars: List[Bar] = []
        self.price: Optional[float] = None
        self.price_time: Optional[datetime] = None
        if bars:
            self.extend(bars)

    @property
    def bars(self) -> Tuple[Bar, ...]:
        return tuple(self._bars)

    def __len__(self) -> int:
        return len(self._bars)

    def append(self, bar: Bar) -> None:
        if self._bars and self._bars[-1].timestamp == bar.timestamp:
            self._bars[-1] = bar
        else:
            self._bars.append(bar)
        overflow = len(self._bars) - self.max_bars
        if overflow > 0:
            del self._bars[:overflow]

    def extend(self, bars: Sequence[Bar]) -> None:
        for bar in bars:
            self.append(bar)

    def replace(self, bars: Sequence[Bar]) -> None:
        self._bars = []
        self.extend(bars)

    def update_price(self, price: float, at: Optional[datetime] = None) -> None:
        self.price = price
        self.price_time = at or utc_now()

    def closes(self) -> List[float]:
        return [bar.close for bar in self._bars]


@dataclass(frozen=True)
class MACD:
    line: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class IndicatorSet:
    rsi: float
    sma_short: float
    sma_long: float
    macd: MACD
    bollinger: BollingerBands


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Signal:
    """A trade signal from one source. Confidence is expected in [0, 1]."""
    action: Action
    confidence: float
    source: str = ""
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FusedSignal:
    action: Action
    confidence: float
    technical: Optional[Signal] = None
    predictor: Optional[Signal] = None


def validate_signal(signal: Signal) -> Signal:
    """Reject malformed signals before they reach fusion (never clamp)."""
    errors = []
    if not isinstance(signal.action, Action):
        errors.append(f"Unrecognized signal action: {signal.action!r}")
    confidence = signal.confidence
    if not isinstance(confidence, (int, float)) or confidence != confidence:
        errors.append(f"Signal confidence is not a number: {confidence!r}")
    elif not 0.0 <= confidence <= 1.0:
        errors.append(f"Signal confidence {confidence} outside [0, 1]")
    if errors:
        label = signal.source or "signal"
        raise ValidationError([f"{label}: {e}" for e in errors])
    return signal


# ---------------------------------------------------------------------------
# Positions and trades
# ---------------------------------------------------------------------------

@dataclass
class Position:
    """Open exposure. Revalued every cycle with the latest price."""
    id: str
    side: Side
    size: float  # lots
    open_price: float
    current_price: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    unrealized_pnl: float = 0.0
    open_time: Optional[datetime] = None

    def revalue(self, price: float) -> float:
        self.current_price = price
        diff = price - self.open_price if self.side is Side.BUY else self.open_price - price
        self.unrealized_pnl = diff * self.size * UNITS_PER_LOT
        return self.unrealized_pnl

    @property
    def pnl_pct(self) -> float:
        notional = self.open_price * self.size * UNITS_PER_LOT
        if notional <= 0:
            return 0.0
        return self.unrealized_pnl / notional * 100.0


@dataclass(frozen=True)
class ProposedTrade:
    """A fully-specified trade proposal, not yet validated or submitted."""
    instrument: str
    side: object  # Side when recognized; raw value kept so validation can report it
    size: float
    entry_price: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    confidence: float
    strategy: str

    @property
    def units(self) -> int:
        return int(round(self.size * UNITS_PER_LOT))


class ProposedTradeBuilder:
    """Incremental construction of a ProposedTrade; build() enforces completeness."""

    _REQUIRED = ("instrument", "side", "size", "entry_price", "confidence", "strategy")

    def __init__(self, instrument: Optional[str] = None, strategy: Optional[str] = None):
        self._fields: Dict[str, object] = {
            "instrument": instrument,
            "strategy": strategy,
            "stop_loss": None,
            "take_profit": None,
        }

    def side(self, side) -> "ProposedTradeBuilder":
        self._fields["side"] = Side.parse(side) or side
        return self

    def size(self, lots: float) -> "ProposedTradeBuilder":
        self._fields["size"] = lots
        return self

    def entry(self, price: float) -> "ProposedTradeBuilder":
        self._fields["entry_price"] = price
        return self

    def stops(self, stop_loss: Optional[float], take_profit: Optional[float]) -> "ProposedTradeBuilder":
        self._fields["stop_loss"] = stop_loss
        self._fields["take_profit"] = take_profit
        return self

    def confidence(self, value: float) -> "ProposedTradeBuilder":
        self._fields["confidence"] = value
        return self

    def strategy(self, name: str) -> "ProposedTradeBuilder":
        self._fields["strategy"] = name
        return self

    def build(self) -> ProposedTrade:
        missing = [name for name in self._REQUIRED if self._fields.get(name) is None]
        if missing:
            raise ValidationError([f"Missing required field: {name}" for name in missing])
        return ProposedTrade(**self._fields)  # type: ignore[arg-type]


@dataclass(frozen=True)
class Trade:
    """
    Order record. Open trades are closed through ``close()``, which returns a
    new record; once closed only audit annotations may be added.
    """
    id: str
    instrument: str
    side: Side
    size: float
    open_price: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    open_time: datetime
    confidence: float
    strategy: str
    status: TradeStatus = TradeStatus.OPEN
    close_price: Optional[float] = None
    close_time: Optional[datetime] = None
    realized_pnl: Optional[float] = None
    annotations: Tuple[str, ...] = ()

    @property
    def is_closed(self) -> bool:
        return self.status is TradeStatus.CLOSED

    def close(self, close_price: float, realized_pnl: float, at: Optional[datetime] = None) -> "Trade":
        if self.status is not TradeStatus.OPEN:
            raise ValidationError([f"Trade {self.id} is {self.status.value}; only open trades can be closed"])
        return replace(
            self,
            status=TradeStatus.CLOSED,
            close_price=close_price,
            close_time=at or utc_now(),
            realized_pnl=realized_pnl,
        )

    def annotate(self, note: str) -> "Trade":
        return replace(self, annotations=self.annotations + (note,))


# ---------------------------------------------------------------------------
# Risk / safety / performance records
# ---------------------------------------------------------------------------

@dataclass
class RiskState:
    daily_pnl: float = 0.0
    daily_trade_count: int = 0
    last_reset_date: Optional[date] = None


@dataclass(frozen=True)
class EmergencyStopReason:
    kind: EmergencyStopKind
    message: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, str]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, str]) -> "EmergencyStopReason":
        return cls(
            kind=EmergencyStopKind(raw["kind"]),
            message=str(raw.get("message", "")),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
        )


@dataclass
class SafetyState:
    environment: Environment
    phase: SafetyPhase = SafetyPhase.UNINITIALIZED
    connected: bool = False
    initialized: bool = False
    account_verified: bool = False
    emergency_stop_active: bool = False
    consecutive_losses: int = 0
    last_trade_time: Optional[datetime] = None
    session_start: Optional[datetime] = None
    total_trades: int = 0
    emergency_stop_history: List[EmergencyStopReason] = field(default_factory=list)

    @property
    def is_live(self) -> bool:
        return self.environment is Environment.LIVE

    @property
    def active_reason(self) -> Optional[EmergencyStopReason]:
        if not self.emergency_stop_history:
            return None
        return self.emergency_stop_history[-1]


@dataclass(frozen=True)
class Performance:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0  # percent
    total_pnl: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_pct: float = 0.0
    sharpe_ratio: float = 0.0
    profit_factor: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0


@dataclass(frozen=True)
class BotState:
    """Read-only view of everything the orchestrator owns."""
    running: bool
    price: Optional[float]
    bar_count: int
    indicators: Optional[IndicatorSet]
    last_signal: Optional[FusedSignal]
    positions: Tuple[Position, ...]
    trades: Tuple[Trade, ...]
    performance: Performance
    risk: RiskState
    cycle_count: int
