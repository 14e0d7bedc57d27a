"""
basketbot Core: Exchange Connector (crypto.com)

crypto.com Exchange v2 REST integration: instrument metadata, order books,
account balances and market orders, with HMAC-SHA256 request signing.
"""

import hashlib
import hmac
import logging
import random
import time
from typing import Any, Dict, List, Optional

import requests

from core.models import Balance, Instrument, PriceQuote

logger = logging.getLogger(__name__)

CRYPTOCOM_BASE = "https://api.crypto.com/v2"
BOOK_DEPTH = 150


class ExchangeAPIError(RuntimeError):
    """Exchange answered with a non-zero result code."""

    def __init__(self, method: str, code: Any, message: str = ""):
        super().__init__(f"{method} failed with code {code}: {message}")
        self.method = method
        self.code = code


def _param_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return "".join(_param_string(item) for item in value)
    if isinstance(value, dict):
        return "".join(f"{key}{_param_string(value[key])}" for key in sorted(value))
    return "" if value is None else str(value)


def format_amount(value: float, decimals: int) -> str:
    """Fixed-point string without exponent (amounts are already truncated)."""
    return f"{value:.{max(int(decimals), 0)}f}"


class CryptoComExchange:
    """
    crypto.com Exchange API connector.

    Supports:
    - Market data (instruments, order books)
    - Account data (balances)
    - Order execution (market buy by notional, market sell by quantity)
    """

    def __init__(self, api_key: str = "", api_secret: str = "", timeout: float = 30.0):
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout

        # Rate limiting
        self._last_call: Dict[str, float] = {}
        self._min_interval = 0.1  # 100ms between calls per endpoint

        logger.info("Initialized CryptoComExchange")

    def _rate_limit(self, endpoint: str):
        """Simple rate limiting"""
        last = self._last_call.get(endpoint, 0)
        elapsed = time.time() - last
        if elapsed < self._min_interval:
            time.sleep(self._min_interval - elapsed)
        self._last_call[endpoint] = time.time()

    def sign(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Add api_key and sig to a private request.

        Signature payload: method + id + api_key + sorted(key+value params) + nonce.
        """
        if not self.api_key or not self.api_secret:
            raise ValueError("api_key and api_secret required for authenticated requests")

        params = request.get("params") or {}
        payload = (
            f"{request['method']}{request['id']}{self.api_key}"
            f"{_param_string(params)}{request['nonce']}"
        )
        signed = dict(request)
        signed["api_key"] = self.api_key
        signed["sig"] = hmac.new(
            self.api_secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return signed

    def _req(self, http_method: str, method: str, params: Optional[Dict[str, Any]] = None,
             authenticated: bool = False, max_retries: int = 3) -> Dict[str, Any]:
        """
        Call the API with exponential backoff.

        Retries on 429, 5xx and network errors. Other 4xx responses and
        non-zero result codes are raised immediately.

        Returns:
            The `result` object of the response
        """
        url = f"{CRYPTOCOM_BASE}/{method}"
        last_exception: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                if authenticated:
                    nonce = int(time.time() * 1000)
                    body = self.sign({"id": nonce, "method": method, "params": params or {}, "nonce": nonce})
                    response = requests.post(url, json=body, timeout=self.timeout)
                elif http_method == "GET":
                    response = requests.get(url, params=params, timeout=self.timeout)
                else:
                    response = requests.post(url, json={"method": method, "params": params or {}},
                                             timeout=self.timeout)
                response.raise_for_status()
                data = response.json()
                code = data.get("code", 0)
                if code != 0:
                    raise ExchangeAPIError(method, code, data.get("message", ""))
                return data.get("result") or {}

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"crypto.com client error on {method}: {status_code} - {e.response.text}")
                    raise
                logger.warning(f"HTTP {status_code} on {method}, attempt {attempt + 1}/{max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {method}: {e}, attempt {attempt + 1}/{max_retries}")
                last_exception = e

            if attempt < max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {max_retries} attempts exhausted for {method}")
        if last_exception:
            raise last_exception
        raise RuntimeError(f"Request to {method} failed after {max_retries} attempts")

    # ========== Market data (public) ==========

    def get_instruments(self) -> List[Instrument]:
        """All spot instruments, quote currencies normalised."""
        self._rate_limit("instruments")
        result = self._req("GET", "public/get-instruments")
        return [Instrument.from_exchange(raw) for raw in result.get("instruments", [])]

    def get_book(self, instrument_name: str, depth: int = BOOK_DEPTH) -> PriceQuote:
        """
        Order book snapshot as a PriceQuote with bid depth.

        Raises:
            ValueError: If the book has no bids or asks
        """
        self._rate_limit("book")
        result = self._req("GET", "public/get-book",
                           params={"instrument_name": instrument_name, "depth": depth})
        books = result.get("data") or []
        if not books:
            raise ValueError(f"Empty book for {instrument_name}")

        book = books[0]
        bids = tuple((float(level[0]), float(level[1])) for level in book.get("bids") or [])
        asks = [(float(level[0]), float(level[1])) for level in book.get("asks") or []]
        if not bids or not asks:
            raise ValueError(f"No liquidity for {instrument_name}")

        return PriceQuote(
            instrument_name=result.get("instrument_name", instrument_name),
            bid=bids[0][0],
            ask=asks[0][0],
            last=bids[0][0],
            bids=bids,
        )

    # ========== Account (private) ==========

    def get_balances(self) -> List[Balance]:
        self._rate_limit("accounts")
        result = self._req("POST", "private/get-account-summary", params={}, authenticated=True)
        return [Balance.from_exchange(raw) for raw in result.get("accounts", [])]

    def get_balance(self, currency: str) -> Optional[Balance]:
        self._rate_limit("accounts")
        result = self._req("POST", "private/get-account-summary",
                           params={"currency": currency.upper()}, authenticated=True)
        accounts = result.get("accounts") or []
        return Balance.from_exchange(accounts[0]) if accounts else None

    def create_market_order(self, instrument: Instrument, side: str, amount: float,
                            client_oid: str) -> Dict[str, Any]:
        """
        Submit a market order. Never retried.

        Args:
            instrument: Pair to trade
            side: "BUY" (amount is quote notional) or "SELL" (amount is base quantity)
            amount: Truncated notional or quantity
            client_oid: Client order id
        """
        side = side.upper()
        params: Dict[str, Any] = {
            "instrument_name": instrument.name,
            "side": side,
            "type": "MARKET",
            "client_oid": client_oid,
        }
        if side == "BUY":
            params["notional"] = format_amount(amount, instrument.price_decimals)
        else:
            params["quantity"] = format_amount(amount, instrument.quantity_decimals)

        self._rate_limit("create_order")
        logger.debug(f"PLACING MARKET ORDER: {side} {amount} {instrument.name}")
        return self._req("POST", "private/create-order", params=params,
                         authenticated=True, max_retries=1)

    def check_connectivity(self) -> bool:
        """True when authenticated balance reads succeed."""
        try:
            self.get_balances()
            logger.info("Exchange connectivity: OK")
            return True
        except Exception as e:
            logger.error(f"Exchange connectivity failed: {e}")
            return False
