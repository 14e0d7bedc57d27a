"""
basketbot Core: Execution Engine

Market order placement for the orchestrators. Orders are paced, never
retried, and a failure is reported as False so the calling phase can carry
on with the rest of its plan.
"""

import logging
import time

from core.models import Instrument, TradeDirection, TradeType

logger = logging.getLogger(__name__)

CLIENT_ORDER_PREFIX = "basketbot"


def client_order_id(trade_type: TradeType) -> str:
    return f"{CLIENT_ORDER_PREFIX}_{trade_type.value}"


class OrderExecutor:
    """
    Order gateway used by invest, rebalance and trailing-stop liquidation.

    Modes:
    - dry_run: orders are logged and reported successful, nothing is sent
    - live: orders are submitted to the exchange
    """

    def __init__(self, exchange, dry_run: bool = False, delay_seconds: float = 0.1,
                 metrics=None):
        self.exchange = exchange
        self.dry_run = dry_run
        self.delay_seconds = delay_seconds
        self.metrics = metrics

        mode = "DRY_RUN" if dry_run else "LIVE"
        logger.info(f"Initialized OrderExecutor (mode={mode}, delay={delay_seconds}s)")

    def buy(self, instrument: Instrument, notional: float, trade_type: TradeType) -> bool:
        """Market buy spending `notional` quote currency (already truncated)."""
        return self._submit(instrument, TradeDirection.BUY, notional, trade_type)

    def sell(self, instrument: Instrument, quantity: float, trade_type: TradeType) -> bool:
        """Market sell of `quantity` base currency (already truncated)."""
        return self._submit(instrument, TradeDirection.SELL, quantity, trade_type)

    def _submit(self, instrument: Instrument, direction: TradeDirection, amount: float,
                trade_type: TradeType) -> bool:
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)

        if self.dry_run:
            logger.info(f"DRY RUN: {direction.value} {amount} {instrument.name} ({trade_type.value})")
            self._record(direction, "dry_run")
            return True

        try:
            self.exchange.create_market_order(
                instrument, direction.value, amount, client_order_id(trade_type)
            )
        except Exception as e:
            logger.error(f"{direction.value} {amount} {instrument.name} failed: {e}", exc_info=True)
            self._record(direction, "failed")
            return False

        self._record(direction, "filled")
        return True

    def _record(self, direction: TradeDirection, status: str) -> None:
        if self.metrics:
            self.metrics.record_order(direction.value, status)
