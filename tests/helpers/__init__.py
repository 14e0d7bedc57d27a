"""Test helpers for the basketbot test suite"""

from tests.helpers.exchange_stubs import (
    FakeExchange,
    FakeMarketCap,
    FrozenClock,
    RecordingNotifier,
    make_config,
)

__all__ = [
    "FakeExchange",
    "FakeMarketCap",
    "FrozenClock",
    "RecordingNotifier",
    "make_config",
]
