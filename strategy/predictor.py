"""
eurusd-bot Strategy: Predictor

The model-backed half of the decision. Anything implementing
``SignalPredictor`` can be plugged into the cycle; ``MomentumPredictor`` is the
built-in baseline used for paper sessions and tests.
"""

import logging
import math
from typing import Optional, Protocol, Sequence, runtime_checkable

from core.models import Action, Bar, IndicatorSet, Signal

logger = logging.getLogger(__name__)


@runtime_checkable
class SignalPredictor(Protocol):
    async def predict(self, bars: Sequence[Bar], indicators: IndicatorSet) -> Signal:
        ...


class MomentumPredictor:
    """
    Volatility-normalized momentum scorer.

    Scores the return over ``lookback`` bars against the per-bar volatility,
    tilts it by the RSI distance from 50 and maps the result onto a
    BUY/SELL/HOLD probability-like confidence.
    """

    def __init__(self, lookback: int = 12, entry_score: float = 1.0, max_confidence: float = 0.95):
        if lookback < 2:
            raise ValueError("lookback must be at least 2 bars")
        self.lookback = lookback
        self.entry_score = entry_score
        self.max_confidence = max_confidence

    def _score(self, bars: Sequence[Bar], indicators: Optional[IndicatorSet]) -> float:
        closes = [bar.close for bar in bars[-(self.lookback + 1):]]
        if len(closes) < 3 or closes[0] <= 0:
            return 0.0
        returns = [(b - a) / a for a, b in zip(closes[:-1], closes[1:]) if a > 0]
        mean = sum(returns) / len(returns)
        variance = sum((r - mean) ** 2 for r in returns) / len(returns)
        vol = math.sqrt(variance)
        if vol == 0:
            return 0.0
        score = (closes[-1] / closes[0] - 1.0) / (vol * math.sqrt(len(returns)))
        if indicators is not None:
            # Stretched RSI fades the move
            score -= (indicators.rsi - 50.0) / 50.0
        return score

    async def predict(self, bars: Sequence[Bar], indicators: IndicatorSet) -> Signal:
        score = self._score(bars, indicators)
        strength = 1.0 / (1.0 + math.exp(-(abs(score) - self.entry_score) * 2.0))
        confidence = min(self.max_confidence, 0.5 + strength / 2.0)

        if score >= self.entry_score:
            action = Action.BUY
        elif score <= -self.entry_score:
            action = Action.SELL
        else:
            action, confidence = Action.HOLD, 1.0 - confidence / 2.0

        logger.debug(f"Momentum score {score:.3f} -> {action.value} ({confidence:.2f})")
        return Signal(
            action=action,
            confidence=confidence,
            source="predictor",
            reasons=(f"momentum score {score:.2f}",),
        )
