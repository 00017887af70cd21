"""
eurusd-bot Core: Exchange Connector (OANDA v20)

REST client for the OANDA v20 API. Requests are synchronous (``requests``)
with retry/backoff; the async Broker methods run them in a worker thread.

Positions map to OANDA trades (one per fill), so several concurrent
positions on the same instrument stay individually closable.
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from core.broker import OrderFill
from core.exceptions import BrokerConnectionError
from core.models import INSTRUMENT, UNITS_PER_LOT, Bar, Environment, Position, Side

logger = logging.getLogger(__name__)

OANDA_BASE = {
    Environment.DEMO: "https://api-fxpractice.oanda.com",
    Environment.LIVE: "https://api-fxtrade.oanda.com",
}

PRICE_DECIMALS = 5


def _parse_time(raw: str) -> datetime:
    """OANDA RFC3339 timestamps carry nanoseconds; trim to microseconds."""
    value = raw.rstrip("Z")
    if "." in value:
        head, frac = value.split(".", 1)
        value = f"{head}.{frac[:6]}"
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


class OandaExchange:
    """
    OANDA v20 REST connector.

    Supports:
    - Pricing (mid of best bid/ask)
    - Mid-price candles
    - Market orders with stop-loss / take-profit on fill
    - Open trade listing and per-trade close
    - Account balance
    """

    def __init__(
        self,
        api_key: str,
        account_id: str,
        environment: Environment = Environment.DEMO,
        instrument: str = INSTRUMENT,
        max_retries: int = 3,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ):
        if not api_key or not account_id:
            raise BrokerConnectionError("configure", ValueError("OANDA API key and account ID are required"))
        self.account_id = account_id
        self.environment = environment
        self.instrument = instrument
        self.max_retries = max_retries
        self.timeout = timeout
        self.base_url = OANDA_BASE[environment]
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept-Datetime-Format": "RFC3339",
        })
        self._sleep = sleep
        logger.info(f"Initialized OandaExchange ({environment.value}, {instrument}, account {account_id})")

    @classmethod
    def from_config(cls, config) -> "OandaExchange":
        broker = config.broker
        return cls(
            api_key=broker.api_key,
            account_id=broker.account_id,
            environment=broker.environment,
            instrument=broker.instrument,
            max_retries=broker.max_retries,
            timeout=broker.timeout_seconds,
        )

    # ----- HTTP -----
    def _req(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
             body: Optional[dict] = None) -> dict:
        """
        Make HTTP request to OANDA with exponential backoff.

        Retries on 429, 5xx, timeouts and connection errors. Other 4xx
        responses (bad order, auth) fail immediately.
        """
        url = self.base_url + path
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = self._session.request(method, url, params=params, json=body, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"OANDA client error {status_code} on {path}: {e.response.text}")
                    raise BrokerConnectionError(f"{method} {path}", e) from e
                logger.warning(f"OANDA {status_code} on {path}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {path}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.RequestException, ValueError) as e:
                logger.error(f"OANDA request failed on {path}: {e}")
                raise BrokerConnectionError(f"{method} {path}", e) from e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                self._sleep(backoff)

        raise BrokerConnectionError(f"{method} {path}", last_exception)

    # ----- Sync API -----
    def fetch_price(self) -> float:
        data = self._req("GET", f"/v3/accounts/{self.account_id}/pricing",
                         params={"instruments": self.instrument})
        try:
            price = data["prices"][0]
            bid = float(price["bids"][0]["price"])
            ask = float(price["asks"][0]["price"])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise BrokerConnectionError("get_current_price", e) from e
        return (bid + ask) / 2

    def fetch_candles(self, count: int, granularity: str) -> List[Bar]:
        data = self._req("GET", f"/v3/instruments/{self.instrument}/candles",
                         params={"count": count, "granularity": granularity, "price": "M"})
        bars = []
        try:
            for candle in data.get("candles", []):
                mid = candle["mid"]
                bars.append(Bar(
                    timestamp=_parse_time(candle["time"]),
                    open=float(mid["o"]),
                    high=float(mid["h"]),
                    low=float(mid["l"]),
                    close=float(mid["c"]),
                    volume=float(candle.get("volume", 0)),
                ))
        except (KeyError, TypeError, ValueError) as e:
            raise BrokerConnectionError("get_historical_data", e) from e
        return bars

    def submit_market_order(self, side: Side, units: int, stop_loss: Optional[float],
                            take_profit: Optional[float]) -> OrderFill:
        order: Dict[str, Any] = {
            "type": "MARKET",
            "instrument": self.instrument,
            "units": str(units if side is Side.BUY else -units),
            "timeInForce": "FOK",
            "positionFill": "DEFAULT",
        }
        if stop_loss is not None:
            order["stopLossOnFill"] = {"price": f"{stop_loss:.{PRICE_DECIMALS}f}"}
        if take_profit is not None:
            order["takeProfitOnFill"] = {"price": f"{take_profit:.{PRICE_DECIMALS}f}"}

        data = self._req("POST", f"/v3/accounts/{self.account_id}/orders", body={"order": order})
        fill = data.get("orderFillTransaction")
        if not fill:
            reason = (data.get("orderCancelTransaction") or {}).get("reason", "no fill returned")
            raise BrokerConnectionError("place_trade", RuntimeError(f"order not filled: {reason}"))
        try:
            opened = fill.get("tradeOpened") or {}
            return OrderFill(
                trade_id=str(opened.get("tradeID") or fill["id"]),
                side=side,
                units=abs(int(float(opened.get("units", units)))),
                price=float(opened.get("price") or fill["price"]),
                time=_parse_time(fill["time"]),
                stop_loss=stop_loss,
                take_profit=take_profit,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise BrokerConnectionError("place_trade", e) from e

    def close_trade(self, trade_id: str) -> float:
        data = self._req("PUT", f"/v3/accounts/{self.account_id}/trades/{trade_id}/close",
                         body={"units": "ALL"})
        fill = data.get("orderFillTransaction") or {}
        return float(fill.get("pl", 0.0))

    def fetch_balance(self) -> float:
        data = self._req("GET", f"/v3/accounts/{self.account_id}")
        try:
            return float(data["account"]["balance"])
        except (KeyError, TypeError, ValueError) as e:
            raise BrokerConnectionError("get_account_balance", e) from e

    def fetch_open_trades(self) -> List[Position]:
        data = self._req("GET", f"/v3/accounts/{self.account_id}/openTrades")
        positions = []
        try:
            for trade in data.get("trades", []):
                if trade.get("instrument", self.instrument) != self.instrument:
                    continue
                units = float(trade["currentUnits"])
                positions.append(Position(
                    id=str(trade["id"]),
                    side=Side.BUY if units > 0 else Side.SELL,
                    size=abs(units) / UNITS_PER_LOT,
                    open_price=float(trade["price"]),
                    stop_loss=float(trade["stopLossOrder"]["price"]) if trade.get("stopLossOrder") else None,
                    take_profit=float(trade["takeProfitOrder"]["price"]) if trade.get("takeProfitOrder") else None,
                    unrealized_pnl=float(trade.get("unrealizedPL", 0.0)),
                    open_time=_parse_time(trade["openTime"]) if trade.get("openTime") else None,
                ))
        except (KeyError, TypeError, ValueError) as e:
            raise BrokerConnectionError("get_open_positions", e) from e
        return positions

    # ----- Broker protocol -----
    async def test_connection(self) -> bool:
        try:
            await asyncio.to_thread(self._req, "GET", f"/v3/accounts/{self.account_id}")
        except BrokerConnectionError as e:
            logger.error(f"OANDA connection test failed: {e}")
            return False
        return True

    async def get_current_price(self) -> float:
        return await asyncio.to_thread(self.fetch_price)

    async def get_historical_data(self, count: int, granularity: str) -> List[Bar]:
        return await asyncio.to_thread(self.fetch_candles, count, granularity)

    async def place_trade(self, side: Side, units: int, stop_loss: Optional[float],
                          take_profit: Optional[float]) -> OrderFill:
        return await asyncio.to_thread(self.submit_market_order, side, units, stop_loss, take_profit)

    async def close_position(self, position_id: str) -> float:
        return await asyncio.to_thread(self.close_trade, position_id)

    async def get_account_balance(self) -> float:
        return await asyncio.to_thread(self.fetch_balance)

    async def get_open_positions(self) -> List[Position]:
        return await asyncio.to_thread(self.fetch_open_trades)
