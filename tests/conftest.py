"""
Pytest configuration and fixtures for basketbot tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from tests.helpers import FakeExchange, FakeMarketCap, FrozenClock, RecordingNotifier


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def exchange():
    return FakeExchange(quote="USDT")


@pytest.fixture
def market_cap():
    return FakeMarketCap()


@pytest.fixture
def notifier():
    return RecordingNotifier()
