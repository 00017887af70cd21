"""
eurusd-bot Core: Paper Broker

Simulated order book-keeping for dry runs. Market data comes from a real
broker when one is supplied (``market_data``), or from prices/bars pushed in
by the caller. Orders fill at the current mid; stop-loss and take-profit
levels are checked on every price update and close the position at the
level that was touched.
"""

import itertools
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from core.broker import Broker, OrderFill
from core.exceptions import BrokerConnectionError
from core.models import UNITS_PER_LOT, Bar, Position, Side, utc_now

logger = logging.getLogger(__name__)


class PaperBroker:
    """In-memory broker. Set ``connected = False`` to simulate an outage."""

    def __init__(
        self,
        balance: float = 10_000.0,
        market_data: Optional[Broker] = None,
        bars: Optional[Sequence[Bar]] = None,
        price: Optional[float] = None,
    ):
        self.balance = balance
        self.market_data = market_data
        self.connected = True
        self._bars: List[Bar] = list(bars or [])
        self._price = price if price is not None else (self._bars[-1].close if self._bars else None)
        self._positions: Dict[str, Position] = {}
        self._ids = itertools.count(1)
        self.closed: List[tuple] = []  # (position_id, pnl)

    # ----- Feed control -----
    def set_price(self, price: float) -> None:
        self._price = price
        self._apply_price(price)

    def push_bar(self, bar: Bar) -> None:
        self._bars.append(bar)
        self.set_price(bar.close)

    def _check_connected(self, operation: str) -> None:
        if not self.connected:
            raise BrokerConnectionError(operation, ConnectionError("paper broker disconnected"))

    def _apply_price(self, price: float) -> None:
        for position in list(self._positions.values()):
            position.revalue(price)
            hit = None
            if position.side is Side.BUY:
                if position.stop_loss is not None and price <= position.stop_loss:
                    hit = position.stop_loss
                elif position.take_profit is not None and price >= position.take_profit:
                    hit = position.take_profit
            else:
                if position.stop_loss is not None and price >= position.stop_loss:
                    hit = position.stop_loss
                elif position.take_profit is not None and price <= position.take_profit:
                    hit = position.take_profit
            if hit is not None:
                pnl = self._settle(position.id, hit)
                logger.info(f"Paper position {position.id} closed at {hit:.5f} (pnl {pnl:+.2f})")

    def _settle(self, position_id: str, price: float) -> float:
        position = self._positions.pop(position_id)
        pnl = position.revalue(price)
        self.balance += pnl
        self.closed.append((position_id, pnl))
        return pnl

    # ----- Broker protocol -----
    async def test_connection(self) -> bool:
        if self.market_data is not None:
            return await self.market_data.test_connection()
        return self.connected

    async def get_current_price(self) -> float:
        self._check_connected("get_current_price")
        if self.market_data is not None:
            self.set_price(await self.market_data.get_current_price())
        if self._price is None:
            raise BrokerConnectionError("get_current_price", LookupError("no price available"))
        return self._price

    async def get_historical_data(self, count: int, granularity: str) -> List[Bar]:
        self._check_connected("get_historical_data")
        if self.market_data is not None:
            return await self.market_data.get_historical_data(count, granularity)
        return self._bars[-count:]

    async def place_trade(self, side: Side, units: int, stop_loss: Optional[float],
                          take_profit: Optional[float]) -> OrderFill:
        self._check_connected("place_trade")
        if self._price is None:
            raise BrokerConnectionError("place_trade", LookupError("no price available"))
        trade_id = f"paper-{next(self._ids)}"
        now = utc_now()
        self._positions[trade_id] = Position(
            id=trade_id,
            side=side,
            size=units / UNITS_PER_LOT,
            open_price=self._price,
            current_price=self._price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            open_time=now,
        )
        logger.info(f"Paper fill {side.value} {units} units @ {self._price:.5f} ({trade_id})")
        return OrderFill(trade_id=trade_id, side=side, units=units, price=self._price, time=now,
                         stop_loss=stop_loss, take_profit=take_profit)

    async def close_position(self, position_id: str) -> float:
        self._check_connected("close_position")
        if position_id not in self._positions:
            raise BrokerConnectionError("close_position", KeyError(position_id))
        return self._settle(position_id, self._price)

    async def get_account_balance(self) -> float:
        self._check_connected("get_account_balance")
        return self.balance

    async def get_open_positions(self) -> List[Position]:
        self._check_connected("get_open_positions")
        return [replace(p) for p in self._positions.values()]
