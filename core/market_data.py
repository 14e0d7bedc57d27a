"""
basketbot Core: Market Data

Loads one cycle's snapshot from the exchange and the market-cap provider
into keyed maps. Any failed or empty read raises CriticalDataUnavailable so
the running cycle aborts before touching orders or state.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from core.exceptions import CriticalDataUnavailable
from core.models import Balance, Instrument, PriceQuote

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Universe:
    """Instruments against the quote currency plus the market-cap lists"""
    instruments: Dict[str, Instrument]  # base currency -> instrument
    stablecoins: List[str]
    top_coins: List[str]

    def instrument(self, symbol: str) -> Optional[Instrument]:
        return self.instruments.get(symbol.upper())


class MarketDataService:
    def __init__(self, exchange, market_cap, quote: str):
        self.exchange = exchange
        self.market_cap = market_cap
        self.quote = quote.upper()

    def load_universe(self, use_cache: bool = False) -> Universe:
        try:
            instruments = self.exchange.get_instruments()
        except Exception as e:
            raise CriticalDataUnavailable("instruments", e) from e

        quoted: Dict[str, Instrument] = {}
        for instrument in instruments:
            if instrument.quote_currency == self.quote:
                quoted.setdefault(instrument.base_currency, instrument)
        if not quoted:
            raise CriticalDataUnavailable("instruments")

        try:
            stablecoins = self.market_cap.get_stablecoins(use_cache=use_cache)
            top_coins = self.market_cap.get_top_coins(use_cache=use_cache)
        except Exception as e:
            raise CriticalDataUnavailable("market_cap", e) from e

        return Universe(instruments=quoted, stablecoins=list(stablecoins), top_coins=list(top_coins))

    def balances(self) -> Dict[str, Balance]:
        try:
            balances = self.exchange.get_balances()
        except Exception as e:
            raise CriticalDataUnavailable("balances", e) from e
        if not balances:
            raise CriticalDataUnavailable("balances")
        return {balance.currency: balance for balance in balances}

    def balance(self, currency: str) -> Optional[Balance]:
        """Single fresh balance read; None when it cannot be fetched."""
        try:
            return self.exchange.get_balance(currency)
        except Exception as e:
            logger.warning(f"Failed to refresh {currency} balance: {e}")
            return None

    def quotes(self, universe: Universe, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        """
        Order books for every symbol with a quote-currency instrument.

        Raises:
            CriticalDataUnavailable: If any book fails or nothing was quoted
        """
        quotes: Dict[str, PriceQuote] = {}
        for symbol in symbols:
            instrument = universe.instrument(symbol)
            if instrument is None:
                continue
            try:
                quotes[symbol] = self.exchange.get_book(instrument.name)
            except Exception as e:
                raise CriticalDataUnavailable(f"book:{instrument.name}", e) from e

        if not quotes:
            raise CriticalDataUnavailable("books")
        return quotes
