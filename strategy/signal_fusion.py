"""
eurusd-bot Strategy: Signal Fusion

Combines the technical signal with the predictor signal into one decision.
The predictor carries the larger weight. Opposing directional signals cancel
into a low-confidence HOLD.

Confidence ranges are checked by the caller (core.models.validate_signal)
before fusion; nothing here clamps.
"""

from core.models import Action, FusedSignal, Signal

TECHNICAL_WEIGHT = 0.4
PREDICTOR_WEIGHT = 0.6
CONFLICT_CONFIDENCE = 0.3


def fuse_signals(technical: Signal, predictor: Signal) -> FusedSignal:
    """
    Fuse two signals.

    - same non-HOLD action: weighted sum of both confidences
    - one side HOLD: the other action, at its own weighted confidence
    - both HOLD: HOLD at the predictor's confidence
    - BUY against SELL: HOLD at 0.3
    """
    t_action, p_action = technical.action, predictor.action

    if t_action == p_action:
        if t_action is Action.HOLD:
            action, confidence = Action.HOLD, predictor.confidence
        else:
            action = t_action
            confidence = technical.confidence * TECHNICAL_WEIGHT + predictor.confidence * PREDICTOR_WEIGHT
    elif t_action is Action.HOLD:
        action, confidence = p_action, predictor.confidence * PREDICTOR_WEIGHT
    elif p_action is Action.HOLD:
        action, confidence = t_action, technical.confidence * TECHNICAL_WEIGHT
    else:
        action, confidence = Action.HOLD, CONFLICT_CONFIDENCE

    return FusedSignal(action=action, confidence=confidence, technical=technical, predictor=predictor)
