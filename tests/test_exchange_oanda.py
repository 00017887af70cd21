"""
Tests for the OANDA v20 connector.

The HTTP session is a Mock; no request leaves the process.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from requests.exceptions import ConnectionError, HTTPError, Timeout

from core.exceptions import BrokerConnectionError
from core.exchange_oanda import OandaExchange, _parse_time
from core.models import Environment, Side

ACCOUNT = "101-001-1234567-001"


def _response(status=200, payload=None):
    response = Mock()
    response.status_code = status
    response.text = "body"
    response.json.return_value = payload if payload is not None else {}
    if status >= 400:
        response.raise_for_status.side_effect = HTTPError(response=response)
    return response


@pytest.fixture
def session():
    session = Mock()
    session.headers = {}
    return session


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def exchange(session, sleeps):
    return OandaExchange(api_key="token", account_id=ACCOUNT, session=session, sleep=sleeps.append)


def test_requires_credentials(session):
    with pytest.raises(BrokerConnectionError):
        OandaExchange(api_key="", account_id=ACCOUNT, session=session)


def test_auth_header_and_environment_url(session):
    exchange = OandaExchange(api_key="token", account_id=ACCOUNT, environment=Environment.LIVE, session=session)

    assert session.headers["Authorization"] == "Bearer token"
    assert exchange.base_url == "https://api-fxtrade.oanda.com"


def test_parse_time_trims_nanoseconds():
    assert _parse_time("2024-03-04T12:00:01.123456789Z") == datetime(
        2024, 3, 4, 12, 0, 1, 123456, tzinfo=timezone.utc
    )


class TestRetry:
    def test_retries_server_errors_then_succeeds(self, exchange, session, sleeps):
        session.request.side_effect = [_response(500), _response(503), _response(200, {"ok": True})]

        assert exchange._req("GET", "/v3/x") == {"ok": True}
        assert session.request.call_count == 3
        assert len(sleeps) == 2
        assert 1.0 <= sleeps[0] < 2.0
        assert 2.0 <= sleeps[1] < 3.0

    def test_retries_rate_limit(self, exchange, session):
        session.request.side_effect = [_response(429), _response(200, {"ok": True})]

        assert exchange._req("GET", "/v3/x") == {"ok": True}

    def test_client_error_fails_immediately(self, exchange, session, sleeps):
        session.request.return_value = _response(400)

        with pytest.raises(BrokerConnectionError):
            exchange._req("POST", "/v3/orders")

        assert session.request.call_count == 1
        assert sleeps == []

    def test_network_errors_exhaust_retries(self, exchange, session, sleeps):
        session.request.side_effect = [Timeout(), ConnectionError(), Timeout()]

        with pytest.raises(BrokerConnectionError) as exc:
            exchange._req("GET", "/v3/x")

        assert isinstance(exc.value.original, Timeout)
        assert len(sleeps) == 2

    def test_invalid_json_is_not_retried(self, exchange, session):
        response = _response(200)
        response.json.side_effect = ValueError("not json")
        session.request.return_value = response

        with pytest.raises(BrokerConnectionError):
            exchange._req("GET", "/v3/x")

        assert session.request.call_count == 1


class TestPayloads:
    def test_price_is_mid(self, exchange, session):
        session.request.return_value = _response(payload={
            "prices": [{"bids": [{"price": "1.08500"}], "asks": [{"price": "1.08520"}]}],
        })

        assert exchange.fetch_price() == pytest.approx(1.0851)
        args, kwargs = session.request.call_args
        assert args[1].endswith(f"/v3/accounts/{ACCOUNT}/pricing")
        assert kwargs["params"] == {"instruments": "EUR_USD"}

    def test_malformed_price_raises(self, exchange, session):
        session.request.return_value = _response(payload={"prices": []})

        with pytest.raises(BrokerConnectionError):
            exchange.fetch_price()

    def test_candles(self, exchange, session):
        session.request.return_value = _response(payload={"candles": [
            {"time": "2024-03-04T12:00:00.000000000Z", "volume": 42,
             "mid": {"o": "1.0850", "h": "1.0860", "l": "1.0840", "c": "1.0855"}},
        ]})

        bars = exchange.fetch_candles(1, "M1")

        assert len(bars) == 1
        assert bars[0].close == pytest.approx(1.0855)
        assert bars[0].volume == 42.0
        assert session.request.call_args.kwargs["params"]["price"] == "M"

    def test_sell_order_body(self, exchange, session):
        session.request.return_value = _response(payload={"orderFillTransaction": {
            "id": "900", "time": "2024-03-04T12:00:00Z", "price": "1.08500",
            "tradeOpened": {"tradeID": "901", "units": "-40000", "price": "1.08500"},
        }})

        fill = exchange.submit_market_order(Side.SELL, 40_000, 1.09, 1.075)

        order = session.request.call_args.kwargs["json"]["order"]
        assert order["units"] == "-40000"
        assert order["timeInForce"] == "FOK"
        assert order["stopLossOnFill"] == {"price": "1.09000"}
        assert order["takeProfitOnFill"] == {"price": "1.07500"}
        assert fill.trade_id == "901"
        assert fill.units == 40_000
        assert fill.side is Side.SELL

    def test_cancelled_order_raises(self, exchange, session):
        session.request.return_value = _response(payload={
            "orderCancelTransaction": {"reason": "INSUFFICIENT_MARGIN"},
        })

        with pytest.raises(BrokerConnectionError) as exc:
            exchange.submit_market_order(Side.BUY, 1000, None, None)

        assert "INSUFFICIENT_MARGIN" in str(exc.value)

    def test_close_trade_returns_realized_pnl(self, exchange, session):
        session.request.return_value = _response(payload={"orderFillTransaction": {"pl": "-12.30"}})

        assert exchange.close_trade("901") == pytest.approx(-12.3)
        args, kwargs = session.request.call_args
        assert args[0] == "PUT"
        assert args[1].endswith("/trades/901/close")

    def test_open_trades_map_to_positions(self, exchange, session):
        session.request.return_value = _response(payload={"trades": [
            {"id": "1", "instrument": "EUR_USD", "currentUnits": "-25000", "price": "1.0900",
             "unrealizedPL": "12.5", "openTime": "2024-03-04T10:00:00Z",
             "stopLossOrder": {"price": "1.0950"}},
            {"id": "2", "instrument": "GBP_USD", "currentUnits": "1000", "price": "1.2700"},
        ]})

        positions = exchange.fetch_open_trades()

        assert len(positions) == 1
        position = positions[0]
        assert position.side is Side.SELL
        assert position.size == pytest.approx(0.25)
        assert position.stop_loss == pytest.approx(1.095)
        assert position.take_profit is None
        assert position.unrealized_pnl == pytest.approx(12.5)

    def test_balance(self, exchange, session):
        session.request.return_value = _response(payload={"account": {"balance": "10000.50"}})

        assert exchange.fetch_balance() == pytest.approx(10_000.5)


@pytest.mark.asyncio
async def test_connection_test_reports_false_on_failure(exchange, session):
    session.request.return_value = _response(401)

    assert await exchange.test_connection() is False


@pytest.mark.asyncio
async def test_async_methods_delegate(exchange, session):
    session.request.return_value = _response(payload={"account": {"balance": "500"}})

    assert await exchange.get_account_balance() == pytest.approx(500.0)
