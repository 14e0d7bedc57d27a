"""
basketbot Core: Market-Cap Provider (CoinGecko)

Top-N coins by market cap and the stablecoins among them, as upper-cased
symbols. Lists can be served from a short-lived cache for the frequent
trailing-stop checks.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

COINGECKO_BASE = "https://api.coingecko.com/api/v3"


class CoinGeckoClient:
    """CoinGecko /coins/markets reader"""

    def __init__(self, top: int, timeout: float = 30.0, cache_minutes: float = 60.0):
        self.top = int(top)
        self.timeout = timeout
        self._cache_ttl = timedelta(minutes=cache_minutes)
        self._cache: Dict[str, Tuple[datetime, List[str]]] = {}

    def get_top_coins(self, use_cache: bool = False) -> List[str]:
        return self._markets(category=None, use_cache=use_cache)

    def get_stablecoins(self, use_cache: bool = False) -> List[str]:
        return self._markets(category="stablecoins", use_cache=use_cache)

    def _markets(self, category: Optional[str], use_cache: bool) -> List[str]:
        # includes-only mode
        if self.top < 1:
            return []

        key = category or "all"
        if use_cache:
            cached = self._cache.get(key)
            if cached and datetime.now(timezone.utc) - cached[0] < self._cache_ttl:
                logger.debug(f"Using cached market caps ({key}, {len(cached[1])} coins)")
                return list(cached[1])

        params = {
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "per_page": self.top,
            "page": 1,
            "sparkline": "false",
        }
        if category:
            params["category"] = category

        response = requests.get(f"{COINGECKO_BASE}/coins/markets", params=params, timeout=self.timeout)
        response.raise_for_status()

        symbols: List[str] = []
        for coin in response.json():
            rank = coin.get("market_cap_rank")
            if rank is None or rank > self.top:
                continue
            symbols.append(str(coin["symbol"]).upper())

        self._cache[key] = (datetime.now(timezone.utc), symbols)
        logger.debug(f"Fetched {len(symbols)} coins from CoinGecko ({key})")
        return list(symbols)
