"""
Pytest configuration and fixtures for eurusd-bot tests.

This conftest.py provides shared fixtures for all tests.
"""
import pytest

from infra.events import EventBus
from tests.helpers import T0, EventRecorder, make_config


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch):
    """Credentials from the developer's shell must not leak into config tests."""
    monkeypatch.delenv("OANDA_API_KEY", raising=False)
    monkeypatch.delenv("OANDA_ACCOUNT_ID", raising=False)
    yield


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


class MutableClock:
    """Callable clock tests can move forward."""

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return MutableClock()
