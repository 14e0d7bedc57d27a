"""
basketbot Core: Rebalance Orchestrator

Runs the rebalance cycle in a fixed order:
1. Market cap: liquidate coins whose removal grace period ended (or that are
   excluded) and spread the proceeds evenly over the remaining coins
2. Overperformers: sell coins above target by the threshold back to target and
   buy the lowest performers with the proceeds
3. Underperformers (optional): raise the amount underperformers are missing by
   selling the highest performers, then buy the lowest performers

A failed order only drops that leg; a failed data read aborts the cycle.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from core.allocation import AllocationCalculator
from core.exceptions import CriticalDataUnavailable
from core.market_data import Universe
from core.models import (
    Balance,
    DistributionDelta,
    PhaseResult,
    PriceQuote,
    TradeDirection,
    TradeRecord,
    TradeType,
    utc_now,
)
from core.order_sizing import (
    fix_notional,
    fix_quantity,
    minimum_buy_notional,
    minimum_sell_quantity,
    size_buy,
)
from core.removal_ledger import Holding
from core.trailing_stop import trading_allowed
from infra.alerting import NotificationKind, RebalanceMessage

logger = logging.getLogger(__name__)

PHASE_MARKET_CAP = "market_cap"
PHASE_OVERPERFORMERS = "overperformers"
PHASE_UNDERPERFORMERS = "underperformers"


@dataclass
class RebalanceReport:
    """What one rebalance cycle did"""
    phases: List[PhaseResult] = field(default_factory=list)
    skipped: bool = False  # trailing stop holds trading
    aborted: bool = False  # market or account data unavailable

    @property
    def had_work(self) -> bool:
        return any(phase.had_work for phase in self.phases)

    @property
    def trades(self) -> List[TradeRecord]:
        return [trade for phase in self.phases for trade in phase.trades]

    def phase(self, name: str) -> Optional[PhaseResult]:
        for result in self.phases:
            if result.name == name:
                return result
        return None


class RebalanceOrchestrator:
    def __init__(self, config, allocation: AllocationCalculator, ledger, market_data,
                 executor, notifier, tracker, metrics=None,
                 clock: Callable[[], datetime] = utc_now):
        """
        Args:
            config: BotConfig
            allocation: Target-weight calculator bound to the same config
            ledger: RemovalLedger (reloaded at the start of every cycle)
            market_data: MarketDataService
            executor: OrderExecutor
            notifier: AlertService
            tracker: TrailingStopTracker, consulted before trading
            metrics: Optional MetricsRecorder
            clock: Returns the current aware UTC datetime
        """
        self.config = config
        self.allocation = allocation
        self.ledger = ledger
        self.market_data = market_data
        self.executor = executor
        self.notifier = notifier
        self.tracker = tracker
        self.metrics = metrics
        self._clock = clock

    @property
    def quote(self) -> str:
        return self.allocation.quote

    def run(self) -> RebalanceReport:
        now = self._clock()
        report = RebalanceReport()

        if not trading_allowed(self.tracker, self.notifier, now):
            logger.info("Trailing stop has been hit, rebalance skipped")
            report.skipped = True
            return report

        try:
            universe = self.market_data.load_universe(use_cache=False)
            self.ledger.load()
            eligible = self._tradable(universe)
            tradable = self._tradable(universe, self.ledger.symbols())

            market_cap = self.rebalance_market_caps(universe, tradable, eligible, now)
            report.phases.append(market_cap)
            if market_cap.had_work:
                tradable = self._tradable(universe, self.ledger.symbols())

            report.phases.append(self.rebalance_overperformers(universe, tradable))

            if self.config.rebalance.underperformers:
                report.phases.append(self.rebalance_underperformers(universe, tradable))
        except CriticalDataUnavailable as e:
            logger.error(f"Rebalance aborted, data unavailable: {e}")
            report.aborted = True
            return report
        finally:
            if self.metrics:
                self.metrics.set_removal_ledger_size(len(self.ledger))

        if not report.had_work and self.config.idle_message:
            logger.info(self.config.idle_message)
        return report

    def _tradable(self, universe: Universe, removal_symbols: Optional[Iterable[str]] = None) -> List[str]:
        return self.allocation.tradable_coins(
            universe.instruments.values(), universe.stablecoins, universe.top_coins, removal_symbols
        )

    # ========== Phase 1: market cap ==========

    def rebalance_market_caps(self, universe: Universe, tradable: List[str],
                              eligible: List[str], now: Optional[datetime] = None) -> PhaseResult:
        """
        Args:
            universe: Instruments and market-cap lists of this cycle
            tradable: Tradable coins including the removal ledger
            eligible: Tradable coins without the removal ledger
            now: Ledger evaluation time
        """
        result = PhaseResult(name=PHASE_MARKET_CAP)
        balances = self.market_data.balances()
        quotes = self.market_data.quotes(universe, tradable)

        worth = self.allocation.portfolio_worth(balances, tradable, quotes)
        result.portfolio_worth = worth
        if worth == 0:
            return result

        holdings = self._holdings(universe, balances)
        due = self.ledger.scan(holdings, eligible, self.config.exclude, now or self._clock())
        self.ledger.save()
        if not due:
            return result

        # coins excluded this cycle were not part of the tradable set
        unquoted = [symbol for symbol in due if symbol not in quotes]
        if unquoted:
            quotes = {**quotes, **self.market_data.quotes(universe, unquoted)}

        sold_worth = 0.0
        for symbol in due:
            instrument = universe.instrument(symbol)
            quote = quotes.get(symbol)
            if instrument is None or quote is None:
                continue

            logger.info(f"[CHECK] {symbol} should not be in the portfolio")
            result.had_work = True

            quantity = fix_quantity(instrument, balances[symbol].available)
            if not self.executor.sell(instrument, quantity, TradeType.REBALANCE):
                continue

            proceeds = quote.bid_worth(quantity)
            sold_worth += proceeds
            self.ledger.remove(symbol)
            logger.info(f"[SELL] {symbol} for {proceeds} {self.quote}")
            result.trades.append(TradeRecord(symbol=symbol, direction=TradeDirection.SELL, amount=proceeds))

        self.ledger.save()

        budget = min(sold_worth, self._available_funds())
        targets = [symbol for symbol in eligible if symbol not in self.ledger]
        if targets and budget > 0:
            per_coin = budget / len(targets)
            for symbol in targets:
                instrument = universe.instrument(symbol)
                quote = quotes.get(symbol)
                if instrument is None or quote is None:
                    continue

                minimum = fix_notional(instrument, minimum_buy_notional(instrument, quote))
                notional = size_buy(instrument, per_coin, minimum, budget)
                if notional is None:
                    continue

                if self.executor.buy(instrument, notional, TradeType.REBALANCE):
                    budget -= notional
                    logger.info(f"[BUY] {symbol} for {notional} {self.quote}")
                    result.trades.append(TradeRecord(symbol=symbol, direction=TradeDirection.BUY, amount=notional))

        self._announce(NotificationKind.REBALANCE_MARKET_CAP, result)
        return result

    def _holdings(self, universe: Universe, balances: Mapping[str, Balance]) -> List[Holding]:
        holdings = []
        for symbol, balance in balances.items():
            if balance.available == 0:
                continue
            instrument = universe.instrument(symbol)
            if instrument is None:
                continue
            sellable = fix_quantity(instrument, balance.available) >= minimum_sell_quantity(instrument)
            holdings.append(Holding(symbol=symbol, sellable=sellable))
        return holdings

    # ========== Phase 2: overperformers ==========

    def rebalance_overperformers(self, universe: Universe, tradable: List[str]) -> PhaseResult:
        result = PhaseResult(name=PHASE_OVERPERFORMERS)
        balances = self.market_data.balances()
        quotes = self.market_data.quotes(universe, tradable)

        worth = self.allocation.portfolio_worth(balances, tradable, quotes)
        result.portfolio_worth = worth
        if worth == 0:
            return result

        threshold = self.allocation.threshold
        deltas = self.allocation.distribution_delta(worth, tradable, balances, quotes)

        sold_worth = 0.0
        ignore: List[str] = []
        for delta in deltas:
            if delta.percentage < threshold:
                continue

            logger.info(
                f"[CHECK] {delta.symbol} deviates {delta.deviation} {self.quote} "
                f"({delta.percentage:.2f}%) -> [OVERPERFORMING]"
            )
            result.had_work = True

            if self._sell_worth(universe, quotes, delta, delta.deviation, result):
                sold_worth += delta.deviation
                ignore.append(delta.symbol)

        if sold_worth > 0:
            budget = min(sold_worth, self._available_funds())
            self._redistribute(universe, quotes, deltas, budget, ignore, result)

        self._announce(NotificationKind.REBALANCE_OVERPERFORMERS, result)
        return result

    # ========== Phase 3: underperformers ==========

    def rebalance_underperformers(self, universe: Universe, tradable: List[str]) -> PhaseResult:
        result = PhaseResult(name=PHASE_UNDERPERFORMERS)
        balances = self.market_data.balances()
        quotes = self.market_data.quotes(universe, tradable)

        worth = self.allocation.portfolio_worth(balances, tradable, quotes)
        result.portfolio_worth = worth
        if worth == 0:
            return result

        threshold = self.allocation.threshold
        deltas = self.allocation.distribution_delta(worth, tradable, balances, quotes)

        minimums: Dict[str, float] = {}
        for delta in deltas:
            instrument = universe.instrument(delta.symbol)
            if instrument is not None:
                minimums[delta.symbol] = fix_notional(
                    instrument, minimum_buy_notional(instrument, quotes[delta.symbol])
                )

        needed = min(self.allocation.underperformer_worth(deltas, threshold, minimums), worth)
        if needed <= 0:
            return result

        for delta in deltas:
            if delta.percentage <= -threshold:
                logger.info(
                    f"[CHECK] {delta.symbol} deviates {delta.deviation} {self.quote} "
                    f"({delta.percentage:.2f}%) -> [UNDERPERFORMING]"
                )
        result.had_work = True

        raised = 0.0
        ignore: List[str] = []
        for _ in range(len(deltas)):
            if raised >= needed:
                break
            highest = self.allocation.highest_performer(deltas, ignore)
            if highest is None or highest.deviation <= 0:
                break
            ignore.append(highest.symbol)

            amount = min(highest.deviation, needed - raised)
            if self._sell_worth(universe, quotes, highest, amount, result):
                raised += amount

        if raised > 0:
            budget = min(raised, self._available_funds())
            self._redistribute(universe, quotes, deltas, budget, ignore, result)

        self._announce(NotificationKind.REBALANCE_UNDERPERFORMERS, result)
        return result

    # ========== Shared legs ==========

    def _sell_worth(self, universe: Universe, quotes: Mapping[str, PriceQuote],
                    delta: DistributionDelta, amount: float, result: PhaseResult) -> bool:
        """Sell `amount` quote-currency worth of a coin, valued at the best bid."""
        instrument = universe.instrument(delta.symbol)
        quote = quotes.get(delta.symbol)
        if instrument is None or quote is None or quote.bid <= 0:
            return False

        quantity = fix_quantity(instrument, amount / quote.bid)
        if quantity < minimum_sell_quantity(instrument):
            return False

        if not self.executor.sell(instrument, quantity, TradeType.REBALANCE):
            return False

        logger.info(f"[SELL] {delta.symbol} for {amount} {self.quote} ({delta.percentage:.2f}%)")
        result.trades.append(TradeRecord(
            symbol=delta.symbol, direction=TradeDirection.SELL, amount=amount, percentage=delta.percentage,
        ))
        return True

    def _redistribute(self, universe: Universe, quotes: Mapping[str, PriceQuote],
                      deltas: List[DistributionDelta], budget: float, ignore: List[str],
                      result: PhaseResult) -> float:
        """
        Buy the lowest performers one at a time until the budget no longer
        covers a minimum order.

        Returns:
            Unspent budget
        """
        ignore = list(ignore)
        for _ in range(len(deltas)):
            lowest = self.allocation.lowest_performer(deltas, ignore)
            if lowest is None:
                break
            ignore.append(lowest.symbol)

            instrument = universe.instrument(lowest.symbol)
            quote = quotes.get(lowest.symbol)
            if instrument is None or quote is None:
                continue

            minimum = fix_notional(instrument, minimum_buy_notional(instrument, quote))
            notional = size_buy(instrument, abs(lowest.deviation), minimum, budget)
            if notional is None:
                break

            if self.executor.buy(instrument, notional, TradeType.REBALANCE):
                budget -= notional
                logger.info(f"[BUY] {lowest.symbol} for {notional} {self.quote} ({lowest.percentage:.2f}%)")
                result.trades.append(TradeRecord(
                    symbol=lowest.symbol, direction=TradeDirection.BUY, amount=notional,
                    percentage=lowest.percentage,
                ))
        return budget

    def _available_funds(self) -> float:
        return self.allocation.available_funds(self.market_data.balances())

    def _announce(self, kind: NotificationKind, result: PhaseResult) -> None:
        if result.trades:
            self.notifier.notify(kind, RebalanceMessage(portfolio_worth=result.portfolio_worth,
                                                        trades=list(result.trades)))
