"""
basketbot Core: Invest Orchestrator

Spends the configured per-cycle investment across the tradable coins by
target weight and adds what was spent to the trailing-stop basis.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List

from core.allocation import AllocationCalculator
from core.exceptions import CriticalDataUnavailable
from core.models import TradeDirection, TradeRecord, TradeType, utc_now
from core.order_sizing import fix_notional, minimum_buy_notional
from core.trailing_stop import trading_allowed
from infra.alerting import InvestMessage, NotificationKind

logger = logging.getLogger(__name__)


@dataclass
class InvestReport:
    invested: float = 0.0
    remaining_funds: float = 0.0
    portfolio_worth: float = 0.0
    trades: List[TradeRecord] = field(default_factory=list)
    skipped: bool = False
    aborted: bool = False


class InvestOrchestrator:
    def __init__(self, config, allocation: AllocationCalculator, ledger, market_data,
                 executor, notifier, tracker, metrics=None,
                 clock: Callable[[], datetime] = utc_now):
        self.config = config
        self.allocation = allocation
        self.ledger = ledger
        self.market_data = market_data
        self.executor = executor
        self.notifier = notifier
        self.tracker = tracker
        self.metrics = metrics
        self._clock = clock

    def run(self) -> InvestReport:
        report = InvestReport()

        if not trading_allowed(self.tracker, self.notifier, self._clock()):
            logger.info("Trailing stop has been hit, investment skipped")
            report.skipped = True
            return report

        try:
            self._invest(report)
        except CriticalDataUnavailable as e:
            logger.error(f"Investment aborted, data unavailable: {e}")
            report.aborted = True
        return report

    def _invest(self, report: InvestReport) -> None:
        universe = self.market_data.load_universe(use_cache=False)
        self.ledger.load()
        # ledger coins keep receiving their share until they are sold
        tradable = self.allocation.tradable_coins(
            universe.instruments.values(), universe.stablecoins, universe.top_coins,
            self.ledger.symbols(),
        )
        balances = self.market_data.balances()
        quotes = self.market_data.quotes(universe, tradable)

        available = self.allocation.available_funds(balances)
        report.remaining_funds = available
        if self.allocation.investment > available:
            logger.info(
                f"Not enough funds to invest {self.allocation.investment} {self.allocation.quote} "
                f"(available {available})"
            )
            return

        logger.info("[CHECK] Investing new funds into portfolio")

        for symbol in tradable:
            instrument = universe.instrument(symbol)
            quote = quotes.get(symbol)
            if instrument is None or quote is None:
                continue

            minimum = fix_notional(instrument, minimum_buy_notional(instrument, quote))
            notional = fix_notional(instrument, self.allocation.coin_investment_target(tradable, symbol))
            if notional < minimum:
                notional = minimum
            if notional > available:
                continue

            if self.executor.buy(instrument, notional, TradeType.INVEST):
                available -= notional
                report.invested += notional
                logger.info(f"[BUY] {symbol} for {notional} {self.allocation.quote}")
                report.trades.append(TradeRecord(symbol=symbol, direction=TradeDirection.BUY, amount=notional))

        report.remaining_funds = available

        def current_worth() -> float:
            return self.allocation.portfolio_worth(
                self.market_data.balances(), tradable, self.market_data.quotes(universe, tradable)
            )

        self.tracker.add_investment(report.invested, current_worth)

        report.portfolio_worth = current_worth()
        if self.metrics:
            self.metrics.set_portfolio_worth(report.portfolio_worth)

        self.notifier.notify(NotificationKind.INVEST, InvestMessage(
            investment=report.invested,
            remaining_funds=report.remaining_funds,
            coin_count=len(tradable),
            portfolio_worth=report.portfolio_worth,
        ))
