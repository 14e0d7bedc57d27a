"""
basketbot Core: Removal Ledger

Tracks held coins that fell out of the market-cap universe and when their
grace period ends. Only coins whose entry is due (or which are explicitly
excluded) are liquidated by the rebalance market-cap phase.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from core.models import RemovalEntry, utc_now
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Holding:
    """A held coin as seen by the ledger scan"""
    symbol: str
    sellable: bool  # truncated balance reaches the minimum sell quantity


class RemovalLedger:
    """
    Persistent symbol -> grace-period expiry map.

    State machine per held coin (evaluated by `scan`):
    - eligible: any entry is deleted
    - ineligible dust: ignored
    - ineligible, no entry: entry created with expiry now + grace period
    - ineligible, entry pending: waits (unless excluded)
    - ineligible, entry due or excluded: reported for liquidation
    """

    def __init__(self, store: StateStore, grace_hours: float,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.grace_hours = float(grace_hours)
        self._clock = clock
        self._entries: Dict[str, RemovalEntry] = {}

    def load(self) -> "RemovalLedger":
        raw = self.store.load()
        entries: Dict[str, RemovalEntry] = {}
        if not isinstance(raw, list):
            logger.warning("Removal list has unexpected format, starting empty")
            raw = []
        for item in raw:
            try:
                entry = RemovalEntry.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping malformed removal entry {item!r}: {e}")
                continue
            # first occurrence wins
            entries.setdefault(entry.symbol, entry)
        self._entries = entries
        return self

    def save(self) -> bool:
        return self.store.save([entry.to_dict() for entry in self._entries.values()])

    def symbols(self) -> List[str]:
        return list(self._entries)

    def entries(self) -> List[RemovalEntry]:
        return list(self._entries.values())

    def get(self, symbol: str) -> Optional[RemovalEntry]:
        return self._entries.get(symbol.upper())

    def __contains__(self, symbol: str) -> bool:
        return symbol.upper() in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, symbol: str, now: Optional[datetime] = None) -> RemovalEntry:
        symbol = symbol.upper()
        existing = self._entries.get(symbol)
        if existing:
            return existing
        now = now or self._clock()
        entry = RemovalEntry(symbol=symbol, execute_at=now + timedelta(hours=self.grace_hours))
        self._entries[symbol] = entry
        logger.info(f"[CHECK] {symbol} left the market cap, selling after {entry.execute_at.isoformat()}")
        return entry

    def remove(self, symbol: str) -> bool:
        return self._entries.pop(symbol.upper(), None) is not None

    def clear(self) -> None:
        self._entries = {}

    def prune_eligible(self, eligible: Iterable[str]) -> List[str]:
        """Delete entries for coins that are back in the tradable set."""
        pruned = [symbol for symbol in eligible if self.remove(symbol)]
        for symbol in pruned:
            logger.info(f"[CHECK] {symbol} is back in the market cap, removal cancelled")
        return pruned

    def scan(self, holdings: Iterable[Holding], eligible: Iterable[str],
             excluded: Iterable[str], now: Optional[datetime] = None) -> List[str]:
        """
        Apply the state machine to every holding.

        Args:
            holdings: Held coins with a non-zero balance
            eligible: Tradable set without the ledger union
            excluded: Configured exclude list (forces liquidation)
            now: Evaluation time

        Returns:
            Symbols due for liquidation this cycle
        """
        now = now or self._clock()
        eligible_set = set(eligible)
        excluded_set = set(excluded)
        self.prune_eligible(eligible_set)

        due: List[str] = []
        for holding in holdings:
            symbol = holding.symbol
            if symbol in eligible_set or not holding.sellable:
                continue

            entry = self._entries.get(symbol)
            if entry is None:
                self.add(symbol, now=now)
                if symbol in excluded_set:
                    due.append(symbol)
            elif symbol in excluded_set or entry.is_due(now):
                due.append(symbol)
        return due
