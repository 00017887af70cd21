"""Tests for indicator math and the technical vote."""

import pytest

from core.models import Action, BollingerBands, IndicatorSet, MACD
from strategy.technical import (
    bollinger,
    compute_indicators,
    ema_series,
    macd,
    rsi,
    sma,
    technical_signal,
)
from tests.helpers import make_bars

NEUTRAL_BB = BollingerBands(upper=1.2, middle=1.1, lower=1.0)
FLAT_MACD = MACD(line=0.0, signal=0.0, histogram=0.0)


def _indicators(rsi_value=50.0, sma_short=1.1, sma_long=1.1, macd_value=FLAT_MACD, bb=NEUTRAL_BB):
    return IndicatorSet(rsi=rsi_value, sma_short=sma_short, sma_long=sma_long, macd=macd_value, bollinger=bb)


class TestIndicatorMath:
    def test_sma_uses_trailing_window(self):
        assert sma([1, 2, 3, 4, 5], 2) == pytest.approx(4.5)

    def test_ema_seeded_with_first_value(self):
        assert ema_series([1.0, 2.0, 2.0], 3) == pytest.approx([1.0, 1.5, 1.75])

    def test_ema_of_empty_series(self):
        assert ema_series([], 9) == []

    def test_rsi_balanced_changes(self):
        closes = [1.0 if i % 2 == 0 else 2.0 for i in range(15)]

        assert rsi(closes) == pytest.approx(50.0)

    def test_rsi_without_losses_is_100(self):
        assert rsi([1.0 + 0.01 * i for i in range(20)]) == 100.0

    def test_rsi_only_looks_at_last_fourteen_changes(self):
        # Early crash is outside the window
        closes = [5.0, 1.0] + [1.0 + 0.01 * i for i in range(14)]

        assert rsi(closes) == 100.0

    def test_macd_flat_series_is_zero(self):
        result = macd([1.1] * 60)

        assert result.line == pytest.approx(0.0)
        assert result.signal == pytest.approx(0.0)
        assert result.histogram == pytest.approx(0.0)

    def test_macd_signal_lags_a_fresh_rally(self):
        closes = [1.1] * 50 + [1.1 + 0.001 * i for i in range(1, 11)]

        result = macd(closes)

        assert result.line > result.signal > 0
        assert result.histogram == pytest.approx(result.line - result.signal)

    def test_bollinger_flat_series_collapses(self):
        bands = bollinger([1.1] * 30)

        assert bands.upper == pytest.approx(1.1)
        assert bands.lower == pytest.approx(1.1)

    def test_bollinger_uses_population_deviation(self):
        bands = bollinger([1.0, 3.0] * 10)

        assert bands.middle == pytest.approx(2.0)
        assert bands.upper == pytest.approx(4.0)
        assert bands.lower == pytest.approx(0.0)


class TestComputeIndicators:
    def test_none_below_fifty_bars(self):
        assert compute_indicators(make_bars(49)) is None

    def test_computed_at_fifty_bars(self):
        indicators = compute_indicators(make_bars(50, step=0.0001))

        assert indicators is not None
        assert indicators.rsi == 100.0
        assert indicators.sma_short > indicators.sma_long

    def test_long_average_covers_fifty_closes(self):
        indicators = compute_indicators(make_bars(60, start=1.0, step=0.001))

        # closes 1.010 .. 1.059
        assert indicators.sma_long == pytest.approx(1.0345)
        assert indicators.sma_short == pytest.approx(1.0495)


class TestTechnicalSignal:
    def test_bullish_confluence(self):
        indicators = _indicators(
            rsi_value=25.0,
            sma_short=1.11,
            sma_long=1.10,
            macd_value=MACD(line=0.001, signal=0.0005, histogram=0.0005),
        )

        signal = technical_signal(indicators, price=1.12)

        assert signal.action is Action.BUY
        assert signal.confidence == pytest.approx(0.9)
        assert signal.source == "technical"
        assert len(signal.reasons) == 4
        assert "RSI oversold" in signal.reasons

    def test_sell_confidence_capped_at_one(self):
        indicators = _indicators(
            rsi_value=75.0,
            sma_short=1.10,
            sma_long=1.11,
            macd_value=MACD(line=-0.001, signal=-0.0005, histogram=-0.0005),
            bb=BollingerBands(upper=1.05, middle=1.0, lower=0.95),
        )

        signal = technical_signal(indicators, price=1.09)

        assert signal.action is Action.SELL
        assert signal.confidence == 1.0
        assert "Price above upper Bollinger Band" in signal.reasons

    def test_exactly_half_weight_is_hold(self):
        # RSI 0.3 + SMA cross 0.2 = 0.5, which must be exceeded
        indicators = _indicators(rsi_value=25.0, sma_short=1.11, sma_long=1.10)

        signal = technical_signal(indicators, price=1.11)

        assert signal.action is Action.HOLD
        assert signal.confidence == 0.3
        assert signal.reasons == ()

    def test_opposing_vote_does_not_block_heavier_side(self):
        indicators = _indicators(
            rsi_value=25.0,
            sma_short=1.10,
            sma_long=1.11,
            macd_value=MACD(line=0.001, signal=0.0005, histogram=0.0005),
        )

        # BUY: RSI 0.3 + MACD 0.25 + price 0.15 = 0.70; SELL: SMA cross 0.2
        signal = technical_signal(indicators, price=1.105)

        assert signal.action is Action.BUY
        assert signal.confidence == pytest.approx(0.7)

    def test_macd_needs_histogram_agreement(self):
        indicators = _indicators(
            rsi_value=25.0,
            sma_short=1.11,
            sma_long=1.10,
            macd_value=MACD(line=0.001, signal=0.0005, histogram=0.0),
        )

        signal = technical_signal(indicators, price=1.11)

        assert signal.action is Action.HOLD
