"""Alerting helpers for webhook notifications of risk and safety events."""

from __future__ import annotations

import hashlib
import json
import logging
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from core.models import EmergencyStopKind
from infra.events import ErrorOccurred, EventBus, RiskAlert, RiskLevel, SafetyStateChanged

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


RISK_LEVEL_SEVERITY = {
    RiskLevel.LOW: AlertSeverity.INFO,
    RiskLevel.MEDIUM: AlertSeverity.WARNING,
    RiskLevel.HIGH: AlertSeverity.CRITICAL,
}


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0


class AlertService:
    """
    Send notifications for risk alerts, step errors and emergency stops.

    Identical alerts (same severity/title/message) inside ``dedupe_seconds``
    of the first occurrence are suppressed.
    """

    def __init__(self, config: AlertConfig, clock=time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._first_seen: Dict[str, float] = {}
        self.sent = 0

    @classmethod
    def from_config(cls, alerting) -> "AlertService":
        config = AlertConfig(
            enabled=alerting.enabled,
            webhook_url=alerting.webhook_url or None,
            min_severity=AlertSeverity.from_string(alerting.min_severity, default=AlertSeverity.WARNING),
            dry_run=alerting.dry_run,
            timeout=alerting.timeout_seconds,
            dedupe_seconds=alerting.dedupe_seconds,
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(RiskAlert, self._on_risk_alert)
        bus.subscribe(ErrorOccurred, self._on_error)
        bus.subscribe(SafetyStateChanged, self._on_safety)

    def _on_risk_alert(self, event: RiskAlert) -> None:
        self.notify(RISK_LEVEL_SEVERITY[event.level], "Risk alert", event.message)

    def _on_error(self, event: ErrorOccurred) -> None:
        self.notify(AlertSeverity.WARNING, f"Cycle error ({event.step})", event.message,
                    {"error_type": event.error_type})

    def _on_safety(self, event: SafetyStateChanged) -> None:
        if not event.emergency_stop_active or event.reason is None:
            return
        severity = AlertSeverity.WARNING if event.reason.kind is EmergencyStopKind.MANUAL else AlertSeverity.CRITICAL
        self.notify(
            severity,
            f"EMERGENCY STOP: {event.reason.kind.value}",
            event.reason.message,
            {"timestamp": event.reason.timestamp.isoformat()},
        )

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an alert. Returns True when it was delivered (or logged in dry-run)."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()
        now = self._clock()
        first_seen = self._first_seen.get(fingerprint)
        if first_seen is not None and now - first_seen <= self._config.dedupe_seconds:
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False
        self._first_seen[fingerprint] = now
        self._purge(now)

        return self._send_alert(severity, title, message, context)

    def _purge(self, now: float) -> None:
        horizon = max(self._config.dedupe_seconds, 1.0) * 5
        stale = [fp for fp, seen in self._first_seen.items() if now - seen > horizon]
        for fp in stale:
            del self._first_seen[fp]

    def _send_alert(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> bool:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            self.sent += 1
            return True

        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    raise urllib.error.HTTPError(
                        self._config.webhook_url, response.status, body, response.headers, None,
                    )
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)
            return False
        self.sent += 1
        return True

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
