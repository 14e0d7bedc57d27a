"""
Tests for the crypto.com connector: request signing, retry/backoff and
response parsing. No network access; requests is patched.
"""

import hashlib
import hmac
from unittest.mock import MagicMock, Mock, patch

import pytest
from requests.exceptions import ConnectionError, HTTPError, Timeout

from core.exchange_cryptocom import (
    CRYPTOCOM_BASE,
    CryptoComExchange,
    ExchangeAPIError,
    format_amount,
)
from core.models import Instrument


@pytest.fixture
def exchange():
    return CryptoComExchange(api_key="key", api_secret="secret", timeout=5)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("core.exchange_cryptocom.time.sleep") as sleep:
        yield sleep


def _ok(result):
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"code": 0, "result": result}
    return response


def _http_error(status):
    response = Mock()
    response.status_code = status
    response.text = "error"
    failing = MagicMock()
    failing.raise_for_status.side_effect = HTTPError(response=response)
    return failing


BTC = Instrument(name="BTC_USDT", base_currency="BTC", quote_currency="USDT",
                 price_decimals=2, quantity_decimals=6)


# ========== signing ==========

def test_sign_matches_manual_hmac(exchange):
    request = {
        "id": 11,
        "method": "private/create-order",
        "params": {"side": "BUY", "instrument_name": "BTC_USDT", "notional": "10.00"},
        "nonce": 1700000000000,
    }

    signed = exchange.sign(request)

    payload = "private/create-order11key" + "instrument_nameBTC_USDTnotional10.00sideBUY" + "1700000000000"
    expected = hmac.new(b"secret", payload.encode(), hashlib.sha256).hexdigest()
    assert signed["sig"] == expected
    assert signed["api_key"] == "key"
    assert "sig" not in request


def test_sign_requires_credentials():
    with pytest.raises(ValueError):
        CryptoComExchange().sign({"id": 1, "method": "m", "params": {}, "nonce": 1})


def test_format_amount_never_uses_exponent():
    assert format_amount(0.000001, 6) == "0.000001"
    assert format_amount(10000.0, 2) == "10000.00"
    assert format_amount(5.0, 0) == "5"


# ========== retries ==========

class TestRetry:
    def test_retries_5xx_then_succeeds(self, exchange, no_sleep):
        with patch("core.exchange_cryptocom.requests.get") as mock_get:
            mock_get.side_effect = [_http_error(502), _ok({"instruments": []})]

            assert exchange._req("GET", "public/get-instruments") == {"instruments": []}
            assert mock_get.call_count == 2
            assert no_sleep.called

    def test_retries_429_until_exhausted(self, exchange):
        with patch("core.exchange_cryptocom.requests.get") as mock_get:
            mock_get.return_value = _http_error(429)

            with pytest.raises(HTTPError):
                exchange._req("GET", "public/get-book", max_retries=3)
            assert mock_get.call_count == 3

    def test_client_error_not_retried(self, exchange):
        with patch("core.exchange_cryptocom.requests.get") as mock_get:
            mock_get.return_value = _http_error(400)

            with pytest.raises(HTTPError):
                exchange._req("GET", "public/get-book")
            assert mock_get.call_count == 1

    def test_network_errors_retried(self, exchange):
        with patch("core.exchange_cryptocom.requests.get") as mock_get:
            mock_get.side_effect = [Timeout("slow"), ConnectionError("reset"), _ok({"data": []})]

            assert exchange._req("GET", "public/get-book") == {"data": []}
            assert mock_get.call_count == 3

    def test_non_zero_code_raises(self, exchange):
        response = MagicMock()
        response.raise_for_status.return_value = None
        response.json.return_value = {"code": 10004, "message": "BAD_REQUEST"}
        with patch("core.exchange_cryptocom.requests.get", return_value=response):
            with pytest.raises(ExchangeAPIError) as excinfo:
                exchange._req("GET", "public/get-instruments")
        assert excinfo.value.code == 10004


# ========== endpoints ==========

def test_get_instruments_parses_metadata(exchange):
    result = {"instruments": [
        {"instrument_name": "BTC_USDT", "base_currency": "BTC", "quote_currency": "USDT",
         "price_decimals": 2, "quantity_decimals": 6},
        {"instrument_name": "ETH_USD", "base_currency": "ETH", "quote_currency": "USD_Stable_Coin",
         "price_decimals": 2, "quantity_decimals": 4},
    ]}
    with patch("core.exchange_cryptocom.requests.get", return_value=_ok(result)) as mock_get:
        instruments = exchange.get_instruments()

    assert mock_get.call_args[0][0] == f"{CRYPTOCOM_BASE}/public/get-instruments"
    assert instruments[0] == BTC
    assert instruments[1].quote_currency == "USD"


def test_get_book_parses_depth(exchange):
    result = {
        "instrument_name": "BTC_USDT",
        "depth": 150,
        "data": [{"bids": [["50000", "0.5", "1"], ["49990", "2", "3"]], "asks": [["50010", "1", "1"]]}],
    }
    with patch("core.exchange_cryptocom.requests.get", return_value=_ok(result)) as mock_get:
        quote = exchange.get_book("BTC_USDT")

    assert mock_get.call_args.kwargs["params"] == {"instrument_name": "BTC_USDT", "depth": 150}
    assert quote.bid == 50000.0
    assert quote.ask == 50010.0
    assert quote.bids == ((50000.0, 0.5), (49990.0, 2.0))


def test_get_book_without_liquidity_raises(exchange):
    result = {"data": [{"bids": [], "asks": [["1", "1", "1"]]}]}
    with patch("core.exchange_cryptocom.requests.get", return_value=_ok(result)):
        with pytest.raises(ValueError):
            exchange.get_book("BTC_USDT")


def test_get_balances_signs_request(exchange):
    result = {"accounts": [{"currency": "BTC", "available": "0.5"}, {"currency": "USDT", "available": 12}]}
    with patch("core.exchange_cryptocom.requests.post", return_value=_ok(result)) as mock_post:
        balances = exchange.get_balances()

    body = mock_post.call_args.kwargs["json"]
    assert body["method"] == "private/get-account-summary"
    assert body["api_key"] == "key"
    assert "sig" in body
    assert [(b.currency, b.available) for b in balances] == [("BTC", 0.5), ("USDT", 12.0)]


class TestMarketOrders:
    def test_buy_sends_notional(self, exchange):
        with patch("core.exchange_cryptocom.requests.post", return_value=_ok({"order_id": "1"})) as mock_post:
            exchange.create_market_order(BTC, "BUY", 10000.0, "basketbot_rebalance")

        params = mock_post.call_args.kwargs["json"]["params"]
        assert params == {
            "instrument_name": "BTC_USDT",
            "side": "BUY",
            "type": "MARKET",
            "client_oid": "basketbot_rebalance",
            "notional": "10000.00",
        }

    def test_sell_sends_quantity(self, exchange):
        with patch("core.exchange_cryptocom.requests.post", return_value=_ok({"order_id": "1"})) as mock_post:
            exchange.create_market_order(BTC, "sell", 0.2, "basketbot_rebalance")

        params = mock_post.call_args.kwargs["json"]["params"]
        assert params["side"] == "SELL"
        assert params["quantity"] == "0.200000"
        assert "notional" not in params

    def test_orders_are_never_retried(self, exchange):
        with patch("core.exchange_cryptocom.requests.post") as mock_post:
            mock_post.side_effect = ConnectionError("reset")

            with pytest.raises(ConnectionError):
                exchange.create_market_order(BTC, "BUY", 10.0, "basketbot_invest")
            assert mock_post.call_count == 1


def test_check_connectivity(exchange):
    with patch("core.exchange_cryptocom.requests.post", side_effect=Timeout("slow")):
        assert exchange.check_connectivity() is False
