"""Infrastructure modules for eurusd-bot"""

from .events import EventBus  # noqa: F401
from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
    "AlertService",
    "AlertSeverity",
    "EventBus",
    "MetricsRecorder",
    "StateStore",
]
