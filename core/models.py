"""
basketbot Core: Data Model

Value types shared by the allocation, ledger, trailing-stop and orchestration
layers. Exchange payloads are normalised into these before the core sees them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class TradeDirection(Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeType(Enum):
    """Origin of an order, used in the client order id."""
    INVEST = "invest"
    REBALANCE = "rebalance"
    TRAILING_STOP = "trailingstop"


class TrailingStopState(Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    ARMED = "armed"
    TRIGGERED = "triggered"


@dataclass(frozen=True)
class Instrument:
    """Tradable pair metadata (one exchange snapshot)"""
    name: str  # e.g. "BTC_USDT"
    base_currency: str
    quote_currency: str
    price_decimals: int
    quantity_decimals: int

    @classmethod
    def from_exchange(cls, raw: Dict[str, Any]) -> "Instrument":
        quote = str(raw["quote_currency"]).upper()
        if quote == "USD_STABLE_COIN":
            quote = "USD"
        return cls(
            name=raw["instrument_name"],
            base_currency=str(raw["base_currency"]).upper(),
            quote_currency=quote,
            price_decimals=int(raw["price_decimals"]),
            quantity_decimals=int(raw["quantity_decimals"]),
        )


@dataclass(frozen=True)
class Balance:
    currency: str
    available: float

    @classmethod
    def from_exchange(cls, raw: Dict[str, Any]) -> "Balance":
        currency = str(raw["currency"]).upper()
        if currency == "USD_STABLE_COIN":
            currency = "USD"
        return cls(currency=currency, available=float(raw.get("available") or 0.0))


@dataclass(frozen=True)
class PriceQuote:
    """Top of book plus optional bid depth for one pair"""
    instrument_name: str
    bid: float
    ask: float
    last: float = 0.0
    bids: Tuple[Tuple[float, float], ...] = ()

    @property
    def reference_price(self) -> float:
        return self.last if self.last > 0 else self.bid

    def bid_worth(self, quantity: float) -> float:
        """
        Quote-currency value of selling `quantity` into the bid side.

        Walks the depth levels when present; otherwise values the quantity at
        the reference price. Quantity beyond the available depth is not valued.
        """
        if not self.bids:
            return quantity * self.reference_price

        worth = 0.0
        remaining = quantity
        for price, size in self.bids:
            if remaining <= 0:
                break
            filled = size if size <= remaining else remaining
            worth += filled * price
            remaining -= size
        return worth


@dataclass(frozen=True)
class DistributionDelta:
    """A coin's current worth versus its target worth for one cycle"""
    symbol: str
    target: float
    current: float
    deviation: float  # current - target
    percentage: float  # deviation as % of target


@dataclass(frozen=True)
class RemovalEntry:
    symbol: str
    execute_at: datetime

    def is_due(self, now: datetime) -> bool:
        return self.execute_at < now

    def to_dict(self) -> Dict[str, str]:
        return {"coin": self.symbol, "execute": self.execute_at.isoformat()}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RemovalEntry":
        return cls(symbol=str(raw["coin"]).upper(), execute_at=parse_timestamp(raw["execute"]))


@dataclass
class PortfolioATH:
    """Persistent trailing-stop bookkeeping"""
    active: bool = False
    all_time_high: float = 0.0
    investment: float = 0.0
    resume: Optional[datetime] = None
    triggered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "all_time_high": self.all_time_high,
            "investment": self.investment,
            "resume": self.resume.isoformat() if self.resume else None,
            "triggered": self.triggered,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PortfolioATH":
        resume = raw.get("resume")
        return cls(
            active=bool(raw.get("active", False)),
            all_time_high=float(raw.get("all_time_high", raw.get("allTimeHigh", 0.0))),
            investment=float(raw.get("investment", 0.0)),
            resume=parse_timestamp(resume) if resume else None,
            triggered=bool(raw.get("triggered", False)),
        )


@dataclass(frozen=True)
class TradeRecord:
    symbol: str
    direction: TradeDirection
    amount: float  # quote currency
    percentage: float = 0.0


@dataclass
class PhaseResult:
    """Outcome of one rebalance phase"""
    name: str
    had_work: bool = False
    portfolio_worth: float = 0.0
    trades: List[TradeRecord] = field(default_factory=list)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or epoch milliseconds) into an aware UTC datetime."""
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
