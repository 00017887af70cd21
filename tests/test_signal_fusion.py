"""Tests for fusing the technical and predictor signals."""

import math

import pytest

from core.exceptions import ValidationError
from core.models import Action, Signal, validate_signal
from strategy.signal_fusion import fuse_signals


def _sig(action, confidence, source="t"):
    return Signal(action=action, confidence=confidence, source=source)


def test_agreeing_signals_are_weighted():
    fused = fuse_signals(_sig(Action.BUY, 0.8), _sig(Action.BUY, 0.6))

    assert fused.action is Action.BUY
    assert fused.confidence == pytest.approx(0.8 * 0.4 + 0.6 * 0.6)
    assert fused.confidence == pytest.approx(0.68)


def test_agreeing_sell_signals():
    fused = fuse_signals(_sig(Action.SELL, 0.5), _sig(Action.SELL, 1.0))

    assert fused.action is Action.SELL
    assert fused.confidence == pytest.approx(0.8)


@pytest.mark.parametrize("technical_conf,predictor_conf", [(0.5, 0.9), (1.0, 1.0), (0.0, 0.0)])
def test_disagreement_is_always_hold_at_point_three(technical_conf, predictor_conf):
    fused = fuse_signals(_sig(Action.SELL, technical_conf), _sig(Action.BUY, predictor_conf))

    assert fused.action is Action.HOLD
    assert fused.confidence == 0.3


def test_technical_hold_defers_to_predictor_at_its_weight():
    fused = fuse_signals(_sig(Action.HOLD, 0.9), _sig(Action.SELL, 0.9))

    assert fused.action is Action.SELL
    assert fused.confidence == pytest.approx(0.54)


def test_predictor_hold_defers_to_technical_at_its_weight():
    fused = fuse_signals(_sig(Action.BUY, 0.75), _sig(Action.HOLD, 0.9))

    assert fused.action is Action.BUY
    assert fused.confidence == pytest.approx(0.3)


def test_both_hold_uses_predictor_confidence():
    fused = fuse_signals(_sig(Action.HOLD, 0.3), _sig(Action.HOLD, 0.65))

    assert fused.action is Action.HOLD
    assert fused.confidence == pytest.approx(0.65)


def test_fused_signal_keeps_components():
    technical, predictor = _sig(Action.BUY, 0.8, "technical"), _sig(Action.BUY, 0.6, "predictor")

    fused = fuse_signals(technical, predictor)

    assert fused.technical is technical
    assert fused.predictor is predictor


def test_fusion_never_clamps_out_of_range_input():
    # Range checking belongs to validate_signal
    fused = fuse_signals(_sig(Action.BUY, 2.0), _sig(Action.BUY, 2.0))

    assert fused.confidence == pytest.approx(2.0)


@pytest.mark.parametrize("confidence", [-0.1, 1.01, math.nan, "high"])
def test_validate_signal_rejects_bad_confidence(confidence):
    with pytest.raises(ValidationError) as exc:
        validate_signal(_sig(Action.BUY, confidence, "predictor"))

    assert exc.value.errors
    assert exc.value.errors[0].startswith("predictor:")


def test_validate_signal_rejects_unknown_action():
    with pytest.raises(ValidationError):
        validate_signal(Signal(action="moon", confidence=0.5))


@pytest.mark.parametrize("confidence", [0.0, 0.5, 1.0])
def test_validate_signal_accepts_boundaries(confidence):
    signal = _sig(Action.HOLD, confidence)

    assert validate_signal(signal) is signal
