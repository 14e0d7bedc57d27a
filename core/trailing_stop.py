"""
basketbot Core: Trailing Stop

Tracks the portfolio all-time high against the invested basis. Once the
profit threshold arms the stop, a drawdown from the ATH beyond the configured
percentage liquidates everything into the quote currency and pauses trading
until the resume time.

States: DISABLED -> IDLE -> ARMED -> TRIGGERED -> (resume) -> IDLE
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from core.allocation import AllocationCalculator
from core.exceptions import CriticalDataUnavailable
from core.models import PortfolioATH, TradeType, TrailingStopState, utc_now
from core.order_sizing import fix_quantity, minimum_sell_quantity
from infra.alerting import NotificationKind
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


class TrailingStopTracker:
    """
    Owns PortfolioATH.json and the pure transition function.

    Persistence is read-modify-write: callers load, evaluate, then save.
    """

    def __init__(self, store: StateStore, config, clock: Callable[[], datetime] = utc_now):
        """
        Args:
            store: State store for PortfolioATH.json
            config: TrailingStopConfig (enabled, min_profit, max_drop, resume_hours)
            clock: Returns the current aware UTC datetime
        """
        self.store = store
        self.config = config
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return bool(self.config.enabled)

    def load(self) -> PortfolioATH:
        raw = self.store.load()
        if not isinstance(raw, dict):
            logger.warning("Portfolio ATH has unexpected format, starting from zero")
            return PortfolioATH()
        try:
            return PortfolioATH.from_dict(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Portfolio ATH unreadable, starting from zero: {e}")
            return PortfolioATH()

    def save(self, ath: PortfolioATH) -> bool:
        return self.store.save(ath.to_dict())

    def state(self, ath: PortfolioATH) -> TrailingStopState:
        if not self.enabled:
            return TrailingStopState.DISABLED
        if ath.triggered:
            return TrailingStopState.TRIGGERED
        if ath.active:
            return TrailingStopState.ARMED
        return TrailingStopState.IDLE

    def resume_due(self, ath: PortfolioATH, now: Optional[datetime] = None) -> bool:
        if not ath.triggered:
            return False
        now = now or self._clock()
        return ath.resume is None or now >= ath.resume

    def evaluate(self, ath: PortfolioATH, worth: float,
                 now: Optional[datetime] = None) -> Tuple[PortfolioATH, List[TrailingStopState]]:
        """
        Apply one check cycle to the bookkeeping.

        Args:
            ath: Current bookkeeping (not mutated)
            worth: Current portfolio worth in quote currency
            now: Evaluation time

        Returns:
            (updated bookkeeping, states entered this cycle)
        """
        if ath.triggered:
            return ath, []

        now = now or self._clock()
        updated = replace(ath, all_time_high=max(ath.all_time_high, worth))
        transitions: List[TrailingStopState] = []

        if not updated.active and updated.investment > 0:
            profit = (updated.all_time_high / updated.investment - 1) * 100
            if profit >= self.config.min_profit:
                updated.active = True
                transitions.append(TrailingStopState.ARMED)

        if updated.active:
            drop = (updated.all_time_high / worth - 1) * 100 if worth > 0 else float("inf")
            if drop >= self.config.max_drop:
                updated.triggered = True
                updated.resume = now + timedelta(hours=self.config.resume_hours)
                transitions.append(TrailingStopState.TRIGGERED)

        return updated, transitions

    def ensure_resumed(self, now: Optional[datetime] = None) -> bool:
        """
        Reset the bookkeeping if a triggered stop has reached its resume time.

        Returns:
            True when a reset happened (trading resumed)
        """
        if not self.enabled:
            return False
        ath = self.load()
        if not self.resume_due(ath, now):
            return False
        logger.info("Trading now resumed after trailing stop hit")
        self.save(PortfolioATH())
        return True

    def trading_blocked(self, now: Optional[datetime] = None) -> bool:
        """True while an enabled stop is triggered and not yet resumable."""
        if not self.enabled:
            return False
        ath = self.load()
        return ath.triggered and not self.resume_due(ath, now)

    def add_investment(self, amount: float, seed_worth: Callable[[], float]) -> PortfolioATH:
        """
        Add invested quote currency to the basis.

        The first investment seeds the basis with the whole portfolio worth
        (which already contains `amount`) instead of adding to zero.
        """
        ath = self.load()
        if ath.investment == 0:
            ath.investment = seed_worth()
        else:
            ath.investment += amount
        self.save(ath)
        return ath


def trading_allowed(tracker: TrailingStopTracker, notifier, now: Optional[datetime] = None) -> bool:
    """
    Gate checked at the top of invest and rebalance.

    A stop whose resume time has passed is reset here first (and announced),
    so trading restarts even if the trailing-stop job has not run yet.
    """
    if tracker.ensure_resumed(now):
        notifier.notify(NotificationKind.CONTINUE)
    return not tracker.trading_blocked(now)


class TrailingStopMonitor:
    """Per-cycle trailing-stop check: resume, track the ATH, arm, trigger and liquidate."""

    def __init__(self, tracker: TrailingStopTracker, ledger, allocation: AllocationCalculator,
                 market_data, executor, notifier, fee_currency: str = "CRO",
                 metrics=None, clock: Callable[[], datetime] = utc_now):
        self.tracker = tracker
        self.ledger = ledger
        self.allocation = allocation
        self.market_data = market_data
        self.executor = executor
        self.notifier = notifier
        self.fee_currency = fee_currency.upper()
        self.metrics = metrics
        self._clock = clock

    def check(self) -> TrailingStopState:
        if not self.tracker.enabled:
            return TrailingStopState.DISABLED

        now = self._clock()
        ath = self.tracker.load()

        if ath.triggered:
            if not self.tracker.resume_due(ath, now):
                return TrailingStopState.TRIGGERED
            logger.info("Trading now resumed after trailing stop hit")
            ath = PortfolioATH()
            self.tracker.save(ath)
            self.notifier.notify(NotificationKind.CONTINUE)

        if ath.investment == 0:
            return self._record_state(ath)

        try:
            universe = self.market_data.load_universe(use_cache=True)
            self.ledger.load()
            tradable = self.allocation.tradable_coins(
                universe.instruments.values(), universe.stablecoins, universe.top_coins,
                self.ledger.symbols(),
            )
            balances = self.market_data.balances()
            quotes = self.market_data.quotes(universe, tradable)
        except CriticalDataUnavailable as e:
            logger.error(f"Trailing stop check aborted: {e}")
            return self._record_state(ath)

        worth = self.allocation.portfolio_worth(balances, tradable, quotes)
        if self.metrics:
            self.metrics.set_portfolio_worth(worth)

        ath, transitions = self.tracker.evaluate(ath, worth, now)

        if TrailingStopState.ARMED in transitions:
            logger.info("The trailing stop has been armed!")
            self.notifier.notify(NotificationKind.ARMED)

        if TrailingStopState.TRIGGERED in transitions:
            logger.warning("Trailing stop hit, selling portfolio")
            self._liquidate(universe, balances, quotes)
            self.ledger.clear()
            self.ledger.save()
            logger.info(
                f"Portfolio sold, trading will resume in {self.tracker.config.resume_hours:g} hours"
            )
            self.notifier.notify(NotificationKind.TRAILING_STOP)

        self.tracker.save(ath)
        return self._record_state(ath)

    def _liquidate(self, universe, balances, quotes) -> None:
        # held coins outside the tradable set were not quoted for the valuation
        unquoted = [
            symbol for symbol, balance in balances.items()
            if balance.available > 0 and symbol not in quotes and universe.instrument(symbol) is not None
        ]
        if unquoted:
            try:
                quotes = {**quotes, **self.market_data.quotes(universe, unquoted)}
            except CriticalDataUnavailable as e:
                logger.warning(f"Selling {', '.join(unquoted)} without a book: {e}")

        for symbol, balance in balances.items():
            instrument = universe.instrument(symbol)
            if instrument is None:
                continue

            available = balance.available
            if symbol == self.fee_currency:
                # fees are charged in this coin, the balance shrinks with every order
                refreshed = self.market_data.balance(symbol)
                if refreshed is not None:
                    available = refreshed.available

            quantity = fix_quantity(instrument, available)
            if quantity < minimum_sell_quantity(instrument):
                continue

            if self.executor.sell(instrument, quantity, TradeType.TRAILING_STOP):
                quote = quotes.get(symbol)
                proceeds = quote.bid_worth(quantity) if quote else "unknown"
                logger.info(f"[SELL] {symbol} for {proceeds} {self.allocation.quote}")

    def _record_state(self, ath: PortfolioATH) -> TrailingStopState:
        state = self.tracker.state(ath)
        if self.metrics:
            self.metrics.set_trailing_stop_state(state)
        return state
