"""
basketbot Core: Order Sizing

Converts desired notionals/quantities into exchange-legal order sizes.
Truncation always rounds toward zero so an order never exceeds what is held.
"""

from decimal import Context, Decimal, ROUND_FLOOR
from typing import Optional

from core.models import Instrument, PriceQuote

# Safety margin applied on top of the smallest representable order
MIN_NOTIONAL_MARGIN = 1.1

_QUANTIZE_CONTEXT = Context(prec=60)


def truncate(value: float, decimals: int) -> float:
    """Floor `value` to `decimals` fractional digits (never rounds up)."""
    step = Decimal(1).scaleb(-int(decimals))
    return float(Decimal(str(value)).quantize(step, rounding=ROUND_FLOOR, context=_QUANTIZE_CONTEXT))


def fix_notional(instrument: Instrument, notional: float) -> float:
    return truncate(notional, instrument.price_decimals)


def fix_quantity(instrument: Instrument, quantity: float) -> float:
    return truncate(quantity, instrument.quantity_decimals)


def minimum_buy_notional(instrument: Instrument, quote: PriceQuote) -> float:
    """
    Smallest buy notional the exchange will accept, with a 10% margin.

    The larger of one price tick and one quantity tick valued at the best ask.
    """
    min_price_notional = 1 / (10 ** instrument.price_decimals)
    min_quantity_notional = quote.ask / (10 ** instrument.quantity_decimals)
    return max(min_price_notional, min_quantity_notional) * MIN_NOTIONAL_MARGIN


def minimum_sell_quantity(instrument: Instrument) -> float:
    return 1 / (10 ** instrument.quantity_decimals)


def size_buy(instrument: Instrument, desired: float, minimum: float, budget: float) -> Optional[float]:
    """
    Apply the buy sizing rule against a remaining budget.

    Returns None when the minimum does not fit the budget. Otherwise the
    truncated desired notional, raised to the minimum and capped at the budget.
    """
    if minimum > budget:
        return None

    notional = fix_notional(instrument, desired)
    if notional < minimum:
        notional = minimum
    if notional > budget:
        notional = fix_notional(instrument, budget)
    return notional
