"""
Typed publish/subscribe channel between the trading core and its hosts.

Every state facet has its own event type so subscribers can react to exactly
what changed. Handlers run synchronously in publish order; a failing handler
is logged and does not stop delivery to the others.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, DefaultDict, List, Optional, Tuple, Type

from core.models import (
    EmergencyStopReason,
    FusedSignal,
    IndicatorSet,
    Performance,
    Position,
    SafetyPhase,
    Trade,
    utc_now,
)

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Event:
    """Marker base for bus events."""


@dataclass(frozen=True)
class PriceUpdated(Event):
    price: float
    bar_count: int
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class IndicatorsUpdated(Event):
    indicators: Optional[IndicatorSet]
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SignalUpdated(Event):
    signal: FusedSignal
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class TradeExecuted(Event):
    trade: Trade
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class TradeClosed(Event):
    trade: Trade
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PositionsUpdated(Event):
    positions: Tuple[Position, ...]
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PerformanceUpdated(Event):
    performance: Performance
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ErrorOccurred(Event):
    step: str
    message: str
    error_type: str = ""
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class RiskAlert(Event):
    level: RiskLevel
    message: str
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SafetyStateChanged(Event):
    phase: SafetyPhase
    emergency_stop_active: bool
    reason: Optional[EmergencyStopReason] = None
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class CycleCompleted(Event):
    cycle: int
    duration_seconds: float
    status: str  # executed | no_trade | aborted | skipped | stopped
    at: datetime = field(default_factory=utc_now)


Handler = Callable[[Event], None]


class EventBus:
    """In-process event fan-out, one per bot instance."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[Event], List[Handler]] = defaultdict(list)
        self._wildcard: List[Handler] = []

    def subscribe(self, event_type: Type[Event], handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for one event type. Returns an unsubscribe callable."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        self._wildcard.append(handler)

        def unsubscribe() -> None:
            if handler in self._wildcard:
                self._wildcard.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        handlers = list(self._handlers.get(type(event), ())) + list(self._wildcard)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler {handler!r} failed on {type(event).__name__}")


__all__ = [
    "Event",
    "CycleCompleted",
    "EventBus",
    "ErrorOccurred",
    "IndicatorsUpdated",
    "PerformanceUpdated",
    "PositionsUpdated",
    "PriceUpdated",
    "RiskAlert",
    "RiskLevel",
    "SafetyStateChanged",
    "SignalUpdated",
    "TradeClosed",
    "TradeExecuted",
]
