"""Test helpers for eurusd-bot test suite"""

from tests.helpers.broker_stubs import (
    T0,
    EventRecorder,
    StubBroker,
    StubPredictor,
    make_bars,
    make_config,
)

__all__ = [
    "T0",
    "EventRecorder",
    "StubBroker",
    "StubPredictor",
    "make_bars",
    "make_config",
]
