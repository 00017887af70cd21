"""Tests for the in-process event bus."""

import dataclasses
import logging

import pytest

from infra.events import EventBus, PriceUpdated, RiskAlert, RiskLevel


def test_typed_subscription_only_sees_its_type(bus):
    seen = []
    bus.subscribe(PriceUpdated, seen.append)

    bus.publish(RiskAlert(level=RiskLevel.LOW, message="x"))
    bus.publish(PriceUpdated(price=1.1, bar_count=10))

    assert [type(e) for e in seen] == [PriceUpdated]


def test_wildcard_sees_everything(bus, recorder):
    bus.publish(PriceUpdated(price=1.1, bar_count=10))
    bus.publish(RiskAlert(level=RiskLevel.HIGH, message="x"))

    assert len(recorder.events) == 2


def test_typed_handlers_run_before_wildcard():
    bus = EventBus()
    order = []
    bus.subscribe_all(lambda e: order.append("all"))
    bus.subscribe(PriceUpdated, lambda e: order.append("typed"))

    bus.publish(PriceUpdated(price=1.1, bar_count=1))

    assert order == ["typed", "all"]


def test_unsubscribe(bus):
    seen = []
    unsubscribe = bus.subscribe(PriceUpdated, seen.append)

    unsubscribe()
    unsubscribe()
    bus.publish(PriceUpdated(price=1.1, bar_count=1))

    assert seen == []


def test_failing_handler_does_not_block_others(bus, caplog):
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(PriceUpdated, broken)
    bus.subscribe(PriceUpdated, seen.append)

    with caplog.at_level(logging.ERROR, logger="infra.events"):
        bus.publish(PriceUpdated(price=1.1, bar_count=1))

    assert len(seen) == 1
    assert "failed on PriceUpdated" in caplog.text


def test_events_are_immutable():
    event = RiskAlert(level=RiskLevel.MEDIUM, message="x")

    with pytest.raises(dataclasses.FrozenInstanceError):
        event.message = "y"


def test_infra_package_exports_resolve():
    import infra

    assert sorted(infra.__all__) == ["AlertService", "AlertSeverity", "EventBus", "MetricsRecorder", "StateStore"]
    assert all(hasattr(infra, name) for name in infra.__all__)
