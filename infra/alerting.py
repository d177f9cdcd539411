"""
Alert notifications for trade, risk and breaker events.

Alerts go out as a JSON POST to a webhook. Repeats of the same alert are
folded into one delivery per dedupe window; an alert that keeps firing
without being resolved is re-sent once as ESCALATED with a higher
severity.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

# History records idle this long are forgotten; pruning runs at most once per interval
_RECORD_IDLE_SECONDS = 300.0
_PRUNE_INTERVAL_SECONDS = 60.0


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: Optional[str], default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        fallback = default or cls.WARNING
        if not value:
            return fallback
        return cls.__members__.get(value.strip().upper(), fallback)

    def boosted(self, steps: int) -> "AlertSeverity":
        ordered = sorted(AlertSeverity, key=lambda s: s.value)
        return ordered[min(ordered.index(self) + max(steps, 0), len(ordered) - 1)]


class AlertType(str, Enum):
    """Event kinds carried in an alert's context["type"]."""
    TRADE_OPENED = "trade_opened"
    TRADE_CLOSED = "trade_closed"
    RISK_BREACH = "risk_breach"
    CIRCUIT_BREAKER_TRIP = "circuit_breaker_trip"
    CIRCUIT_BREAKER_RESET = "circuit_breaker_reset"
    CONFIRMATION_REQUIRED = "confirmation_required"
    CONFIRMATION_EXPIRED = "confirmation_expired"
    PERSISTENCE_FAILURE = "persistence_failure"
    EXECUTION_FAILURE = "execution_failure"


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0
    escalation_seconds: float = 120.0
    escalation_webhook_url: Optional[str] = None
    escalation_severity_boost: int = 1


@dataclass
class AlertRecord:
    """One alert fingerprint's history. Times are time.monotonic() readings."""
    title: str
    alert_type: Optional[str]
    first_seen: float
    last_seen: float
    count: int = 1
    escalated: bool = False
    resolved: bool = False

    def age(self, now: float) -> float:
        return now - self.first_seen

    def restart(self, now: float) -> None:
        self.first_seen = self.last_seen = now
        self.count = 1
        self.escalated = self.resolved = False

    def seen(self, now: float) -> None:
        self.last_seen = now
        self.count += 1


def _expand_url(value: Optional[str]) -> Optional[str]:
    """Expand ${VAR} references; an unresolved reference counts as unset."""
    if not value:
        return None
    expanded = os.path.expandvars(value)
    return None if "${" in expanded else expanded


class AlertService:
    """
    Send notifications for trading events.

    Usable from the tick, monitor and reaper threads at once. In dry_run
    the payload is logged instead of posted; either way it is kept in
    `delivered` for inspection.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")

        self._history: Dict[str, AlertRecord] = {}
        self._delivered: Deque[Dict[str, Any]] = deque(maxlen=200)
        self._last_prune = time.monotonic()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        """Build from the `alerts` section of app.yaml."""
        raw = raw_config or {}
        webhook_url = _expand_url(raw.get("webhook_url")) or os.getenv(raw.get("webhook_env", "ALERT_WEBHOOK_URL"))

        return cls(AlertConfig(
            enabled=bool(raw.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw.get("min_severity"), AlertSeverity.WARNING),
            dry_run=bool(raw.get("dry_run", False)),
            timeout=float(raw.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw.get("dedupe_seconds", 60.0)),
            escalation_seconds=float(raw.get("escalation_seconds", 120.0)),
            escalation_webhook_url=_expand_url(raw.get("escalation_webhook_url")),
            escalation_severity_boost=int(raw.get("escalation_severity_boost", 1)),
        ))

    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def delivered(self) -> List[Dict[str, Any]]:
        """Payloads handed to the transport (or logged in dry-run), oldest first."""
        with self._lock:
            return list(self._delivered)

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Send an alert, subject to the severity filter, dedupe and escalation.

        context["type"] should carry an AlertType value.
        """
        if not self._enabled or severity.value < self._config.min_severity.value:
            return

        with self._lock:
            now = time.monotonic()
            self._prune(now)
            key = self._fingerprint(severity, title, message)
            record = self._history.get(key)

            # Dedupe window is fixed from the first occurrence, not sliding
            if record is not None and record.age(now) <= self._config.dedupe_seconds:
                record.seen(now)
                logger.debug(f"Alert deduped: {title} ({record.count} in window)")
                return

            record = self._remember(key, title, (context or {}).get("type"), now)
            webhook_url = self._config.webhook_url
            if not (record.escalated or record.resolved) and record.age(now) >= self._config.escalation_seconds:
                record.escalated = True
                age = int(record.age(now))
                logger.warning(f"Escalating alert: {title} (unresolved for {age}s)")
                severity = severity.boosted(self._config.escalation_severity_boost)
                title = f"ESCALATED: {title}"
                message = f"{message} (unresolved for {age}s, {record.count} occurrences)"
                context = {**(context or {}), "escalated": True,
                           "first_seen_seconds_ago": age, "occurrence_count": record.count}
                webhook_url = self._config.escalation_webhook_url or webhook_url

            payload = self._payload(severity, title, message, context)
            self._delivered.append(payload)

        if self._config.dry_run:
            logger.info(f"[ALERT:{severity.name}] {payload['text']}")
        elif webhook_url:
            self._post(webhook_url, payload)
        else:
            logger.warning(f"No webhook URL for alert: {title}")

    def alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        **context: Any,
    ) -> None:
        """notify() with the event type folded into the context."""
        self.notify(severity, title, message, {"type": alert_type.value, **context})

    def resolve_alert(self, severity: AlertSeverity, title: str, message: str) -> None:
        """Mark an alert as resolved so it does not escalate."""
        with self._lock:
            record = self._history.get(self._fingerprint(severity, title, message))
            if record is not None:
                record.resolved = True
                logger.debug(f"Alert resolved: {title}")

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        return hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()

    def _remember(self, key: str, title: str, alert_type: Optional[str], now: float) -> AlertRecord:
        record = self._history.get(key)
        if record is None:
            record = AlertRecord(title=title, alert_type=alert_type, first_seen=now, last_seen=now)
            self._history[key] = record
        elif record.escalated or record.resolved or \
                record.age(now) > self._config.dedupe_seconds + self._config.escalation_seconds:
            record.restart(now)
        else:
            record.seen(now)
        return record

    def _prune(self, now: float) -> None:
        if now - self._last_prune < _PRUNE_INTERVAL_SECONDS:
            return
        self._last_prune = now
        idle = [key for key, record in self._history.items() if now - record.last_seen > _RECORD_IDLE_SECONDS]
        for key in idle:
            del self._history[key]
        if idle:
            logger.debug(f"Forgot {len(idle)} idle alert records")

    def _post(self, webhook_url: str, payload: Dict[str, Any]) -> None:
        request = urllib.request.Request(
            webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error(f"Alert webhook returned HTTP {response.status} for '{payload['title']}'")
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error(f"Failed to deliver alert '{payload['title']}': {exc}")

    @staticmethod
    def _payload(severity: AlertSeverity, title: str, message: str,
                 context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        parts = [f"[{severity.name}] {title}", message]
        if context:
            parts.append("context=" + json.dumps(context, sort_keys=True, default=str))
        return {
            "text": " | ".join(p for p in parts if p),
            "severity": severity.name,
            "type": (context or {}).get("type"),
            "title": title,
            "message": message,
        }


__all__ = ["AlertService", "AlertSeverity", "AlertType", "AlertConfig"]
