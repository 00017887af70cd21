"""Shared exception types for core trading logic."""

from typing import List, Optional, Sequence


class TradingBotError(Exception):
    """Base class for every error the trading core raises on purpose."""


class BrokerConnectionError(TradingBotError):
    """Raised when the broker is unreachable or rejects our credentials."""

    def __init__(self, operation: str, original: Optional[Exception] = None):
        message = f"{operation} failed"
        if original is not None:
            message = f"{message}: {original}"
        super().__init__(message)
        self.operation = operation
        self.original = original


class ValidationError(TradingBotError):
    """Malformed trade or signal parameters. Carries every violated rule."""

    def __init__(self, errors: Sequence[str]):
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


class RiskLimitError(TradingBotError):
    """A trade was denied, or positions were liquidated, by a risk limit."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConfigurationError(TradingBotError):
    """Configuration failed validation; fatal to startup."""

    def __init__(self, errors: Sequence[str]):
        self.errors: List[str] = list(errors)
        super().__init__(
            f"Invalid configuration: {len(self.errors)} error(s): " + "; ".join(self.errors)
        )


class EmergencyStopError(TradingBotError):
    """Attempt to start or trade while an emergency stop is active."""

    def __init__(self, reason):
        kind = getattr(reason, "kind", None)
        message = getattr(reason, "message", None) or "emergency stop active"
        label = kind.value if kind is not None else "unknown"
        super().__init__(f"Emergency stop active ({label}): {message}")
        self.reason = reason
