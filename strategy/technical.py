"""
eurusd-bot Strategy: Technical Indicators

Indicator set (RSI 14, SMA 20/50, MACD 12/26/9, Bollinger 20/2) and the
weighted-vote technical signal built on top of it.

Indicators are only computed with at least MIN_INDICATOR_BARS bars; callers
get None below that instead of placeholder values.
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple

from core.models import (
    MIN_INDICATOR_BARS,
    Action,
    Bar,
    BollingerBands,
    IndicatorSet,
    MACD,
    Signal,
)

logger = logging.getLogger(__name__)

RSI_PERIOD = 14
SMA_SHORT = 20
SMA_LONG = 50
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
BB_PERIOD = 20
BB_DEVIATIONS = 2.0

# Vote weights of each rule in the technical signal
WEIGHT_RSI = 0.3
WEIGHT_SMA_CROSS = 0.2
WEIGHT_PRICE_VS_SMA = 0.15
WEIGHT_MACD = 0.25
WEIGHT_BOLLINGER = 0.2

MIN_WINNING_WEIGHT = 0.5
HOLD_CONFIDENCE = 0.3


def sma(values: Sequence[float], period: int) -> float:
    window = values[-period:]
    return sum(window) / len(window)


def ema_series(values: Sequence[float], period: int) -> List[float]:
    """EMA for every point, seeded with the first value."""
    if not values:
        return []
    k = 2.0 / (period + 1)
    out = [values[0]]
    for value in values[1:]:
        out.append(value * k + out[-1] * (1 - k))
    return out


def rsi(values: Sequence[float], period: int = RSI_PERIOD) -> float:
    """Simple-average RSI over the last ``period`` changes."""
    changes = [b - a for a, b in zip(values[-period - 1:-1], values[-period:])]
    gains = sum(c for c in changes if c > 0) / period
    losses = sum(-c for c in changes if c < 0) / period
    if losses == 0:
        return 100.0
    return 100.0 - 100.0 / (1.0 + gains / losses)


def macd(values: Sequence[float]) -> MACD:
    fast = ema_series(values, MACD_FAST)
    slow = ema_series(values, MACD_SLOW)
    line_series = [f - s for f, s in zip(fast, slow)]
    signal_series = ema_series(line_series, MACD_SIGNAL)
    line, signal = line_series[-1], signal_series[-1]
    return MACD(line=line, signal=signal, histogram=line - signal)


def bollinger(values: Sequence[float], period: int = BB_PERIOD, deviations: float = BB_DEVIATIONS) -> BollingerBands:
    window = values[-period:]
    middle = sum(window) / len(window)
    variance = sum((v - middle) ** 2 for v in window) / len(window)
    spread = math.sqrt(variance) * deviations
    return BollingerBands(upper=middle + spread, middle=middle, lower=middle - spread)


def compute_indicators(bars: Sequence[Bar]) -> Optional[IndicatorSet]:
    """Return the indicator set, or None with fewer than MIN_INDICATOR_BARS bars."""
    if len(bars) < MIN_INDICATOR_BARS:
        return None
    closes = [bar.close for bar in bars]
    return IndicatorSet(
        rsi=rsi(closes),
        sma_short=sma(closes, SMA_SHORT),
        sma_long=sma(closes, SMA_LONG),
        macd=macd(closes),
        bollinger=bollinger(closes),
    )


def _votes(indicators: IndicatorSet, price: float) -> List[Tuple[Action, float, str]]:
    votes: List[Tuple[Action, float, str]] = []

    if indicators.rsi < 30:
        votes.append((Action.BUY, WEIGHT_RSI, "RSI oversold"))
    elif indicators.rsi > 70:
        votes.append((Action.SELL, WEIGHT_RSI, "RSI overbought"))

    if indicators.sma_short > indicators.sma_long:
        votes.append((Action.BUY, WEIGHT_SMA_CROSS, "SMA20 above SMA50"))
    elif indicators.sma_short < indicators.sma_long:
        votes.append((Action.SELL, WEIGHT_SMA_CROSS, "SMA20 below SMA50"))

    if price > indicators.sma_short:
        votes.append((Action.BUY, WEIGHT_PRICE_VS_SMA, "Price above SMA20"))
    elif price < indicators.sma_short:
        votes.append((Action.SELL, WEIGHT_PRICE_VS_SMA, "Price below SMA20"))

    m = indicators.macd
    if m.line > m.signal and m.histogram > 0:
        votes.append((Action.BUY, WEIGHT_MACD, "MACD bullish crossover"))
    elif m.line < m.signal and m.histogram < 0:
        votes.append((Action.SELL, WEIGHT_MACD, "MACD bearish crossover"))

    bb = indicators.bollinger
    if price < bb.lower:
        votes.append((Action.BUY, WEIGHT_BOLLINGER, "Price below lower Bollinger Band"))
    elif price > bb.upper:
        votes.append((Action.SELL, WEIGHT_BOLLINGER, "Price above upper Bollinger Band"))

    return votes


def technical_signal(indicators: IndicatorSet, price: float) -> Signal:
    """
    Weighted vote across the indicator rules.

    The heavier side wins only if it outweighs the other and exceeds 0.5;
    otherwise the result is HOLD at 0.3.
    """
    votes = _votes(indicators, price)
    buy_weight = sum(w for action, w, _ in votes if action is Action.BUY)
    sell_weight = sum(w for action, w, _ in votes if action is Action.SELL)

    if buy_weight > sell_weight and buy_weight > MIN_WINNING_WEIGHT:
        action, confidence = Action.BUY, min(buy_weight, 1.0)
    elif sell_weight > buy_weight and sell_weight > MIN_WINNING_WEIGHT:
        action, confidence = Action.SELL, min(sell_weight, 1.0)
    else:
        action, confidence = Action.HOLD, HOLD_CONFIDENCE

    reasons = tuple(reason for vote_action, _, reason in votes if vote_action is action)
    logger.debug(
        f"Technical vote: buy={buy_weight:.2f} sell={sell_weight:.2f} -> {action.value} ({confidence:.2f})"
    )
    return Signal(action=action, confidence=confidence, source="technical", reasons=reasons)
