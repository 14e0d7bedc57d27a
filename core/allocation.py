"""
basketbot Core: Allocation Calculator

Pure functions over balances, quotes and configuration: which coins are
tradable, what the portfolio is worth, what each coin should be worth and how
far it deviates. Nothing here performs I/O or mutates its inputs.
"""

from typing import Iterable, List, Mapping, Optional, Sequence

from core.models import Balance, DistributionDelta, Instrument, PriceQuote

# Underperformer total is ignored unless it clears the summed minimums by this factor
UNDERPERFORMER_MINIMUM_MARGIN = 1.1


class AllocationCalculator:
    """
    Target-weight math bound to one immutable configuration.

    Weights map SYMBOL -> percent. Coins without a weight split whatever
    percentage the weighted tradable coins leave over.
    """

    def __init__(self, quote: str, include: Sequence[str] = (), exclude: Sequence[str] = (),
                 weights: Optional[Mapping[str, float]] = None, threshold: float = 5.0,
                 investment: float = 0.0):
        self.quote = quote.upper()
        self.include = tuple(symbol.upper() for symbol in include)
        self.exclude = frozenset(symbol.upper() for symbol in exclude)
        self.weights = {symbol.upper(): float(pct) for symbol, pct in (weights or {}).items()}
        self.threshold = float(threshold)
        self.investment = float(investment)

    @classmethod
    def from_config(cls, config) -> "AllocationCalculator":
        return cls(
            quote=config.quote,
            include=config.include,
            exclude=config.exclude,
            weights=config.weights,
            threshold=config.threshold,
            investment=config.investment,
        )

    def tradable_coins(self, instruments: Iterable[Instrument], stablecoins: Iterable[str],
                       top_coins: Iterable[str],
                       removal_symbols: Optional[Iterable[str]] = None) -> List[str]:
        """
        Coins eligible for investing and rebalancing this cycle.

        Quote-currency pairs within the top coins, minus excludes and
        stablecoins; then configured includes (when a quote pair exists) and
        ledger coins are added so explicit configuration beats the filters.
        """
        instruments = list(instruments)
        stable = {symbol.upper() for symbol in stablecoins}
        top = {symbol.upper() for symbol in top_coins}
        quoted = {i.base_currency for i in instruments if i.quote_currency == self.quote}

        tradable: List[str] = []
        for instrument in instruments:
            base = instrument.base_currency
            if instrument.quote_currency != self.quote:
                continue
            if base in self.exclude or base in stable:
                continue
            if base in top and base not in tradable:
                tradable.append(base)

        for symbol in self.include:
            if symbol in quoted and symbol not in tradable:
                tradable.append(symbol)

        for symbol in removal_symbols or ():
            symbol = symbol.upper()
            if symbol == self.quote:
                continue
            if symbol not in tradable:
                tradable.append(symbol)

        return tradable

    def portfolio_worth(self, balances: Mapping[str, Balance], tradable: Iterable[str],
                        quotes: Mapping[str, PriceQuote]) -> float:
        """
        Quote-currency worth of the tradable holdings.

        A coin without a quote is left out of the sum rather than counted as zero.
        """
        worth = 0.0
        for symbol in tradable:
            balance = balances.get(symbol)
            quote = quotes.get(symbol)
            if balance is None or quote is None:
                continue
            worth += quote.bid_worth(balance.available)
        return worth

    def _reserved(self, tradable: Sequence[str]):
        used = [symbol for symbol in self.weights if symbol in tradable]
        return sum(self.weights[symbol] for symbol in used), len(used)

    def coin_target(self, tradable: Sequence[str], coin: str, total: float) -> float:
        """Worth `coin` should hold out of `total`."""
        coin = coin.upper()
        weight = self.weights.get(coin)
        if weight:
            return total * (weight / 100)

        reserved_weight, reserved_count = self._reserved(tradable)
        unweighted = len(tradable) - reserved_count
        if unweighted <= 0:
            return 0.0
        return total * ((100 - reserved_weight) / 100) / unweighted

    def coin_investment_target(self, tradable: Sequence[str], coin: str) -> float:
        return self.coin_target(tradable, coin, self.investment)

    def distribution_delta(self, total: float, tradable: Sequence[str],
                           balances: Mapping[str, Balance],
                           quotes: Mapping[str, PriceQuote]) -> List[DistributionDelta]:
        """
        Per-coin deviation from target for every quoted tradable coin.

        Missing balances count as zero holdings; coins without a quote are skipped.
        """
        deltas: List[DistributionDelta] = []
        for symbol in tradable:
            quote = quotes.get(symbol)
            if quote is None:
                continue
            balance = balances.get(symbol)
            available = balance.available if balance else 0.0

            target = self.coin_target(tradable, symbol, total)
            current = quote.bid_worth(available)
            deviation = current - target
            if target > 0:
                percentage = (deviation / target) * 100
            else:
                percentage = 0.0 if current == 0 else float("inf")

            deltas.append(DistributionDelta(
                symbol=symbol,
                target=target,
                current=current,
                deviation=deviation,
                percentage=percentage,
            ))
        return deltas

    @staticmethod
    def lowest_performer(deltas: Iterable[DistributionDelta],
                         ignore: Iterable[str] = ()) -> Optional[DistributionDelta]:
        ignored = set(ignore)
        lowest: Optional[DistributionDelta] = None
        for delta in deltas:
            if delta.symbol in ignored:
                continue
            if lowest is None or delta.percentage < lowest.percentage:
                lowest = delta
        return lowest

    @staticmethod
    def highest_performer(deltas: Iterable[DistributionDelta],
                          ignore: Iterable[str] = ()) -> Optional[DistributionDelta]:
        ignored = set(ignore)
        highest: Optional[DistributionDelta] = None
        for delta in deltas:
            if delta.symbol in ignored:
                continue
            if highest is None or delta.percentage > highest.percentage:
                highest = delta
        return highest

    def underperformer_worth(self, deltas: Iterable[DistributionDelta],
                             threshold: Optional[float] = None,
                             minimum_notionals: Optional[Mapping[str, float]] = None) -> float:
        """
        Amount needed to lift every coin at or below -threshold back to target.

        With `minimum_notionals`, coins lacking a minimum are not counted and a
        total that does not clear 1.1x their summed minimums is reported as 0.
        """
        threshold = self.threshold if threshold is None else threshold
        worth = 0.0
        minimum_total = 0.0
        for delta in deltas:
            if delta.percentage > -threshold:
                continue
            if minimum_notionals is not None:
                if delta.symbol not in minimum_notionals:
                    continue
                minimum_total += minimum_notionals[delta.symbol]
            worth += abs(delta.deviation)

        if minimum_notionals is not None and worth <= minimum_total * UNDERPERFORMER_MINIMUM_MARGIN:
            return 0.0
        return worth

    def available_funds(self, balances: Mapping[str, Balance]) -> float:
        balance = balances.get(self.quote)
        return balance.available if balance else 0.0
