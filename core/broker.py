"""
eurusd-bot Core: Broker Contract

The narrow async interface the cycle uses to talk to a broker. Implementations
raise BrokerConnectionError on any transport or auth failure and never
substitute synthetic data.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from core.models import Bar, Position, Side


@dataclass(frozen=True)
class OrderFill:
    """Broker confirmation of a filled market order"""
    trade_id: str
    side: Side
    units: int
    price: float
    time: datetime
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


@runtime_checkable
class Broker(Protocol):
    async def test_connection(self) -> bool:
        ...

    async def get_current_price(self) -> float:
        ...

    async def get_historical_data(self, count: int, granularity: str) -> List[Bar]:
        ...

    async def place_trade(
        self,
        side: Side,
        units: int,
        stop_loss: Optional[float],
        take_profit: Optional[float],
    ) -> OrderFill:
        ...

    async def close_position(self, position_id: str) -> float:
        """Close one position; returns the realized pnl."""
        ...

    async def get_account_balance(self) -> float:
        ...

    async def get_open_positions(self) -> List[Position]:
        ...
