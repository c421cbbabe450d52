"""Alerting helpers for webhook notifications."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from core.events import BufferDeployed, EventRecord, RegimeChanged, TreasuryWithdrawn
from core.regime import Regime

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


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0  # Dedupe identical alerts within 60s


@dataclass
class AlertRecord:
    """Track alert history for dedupe."""
    fingerprint: str
    first_seen: float  # monotonic
    last_seen: float
    count: int = 1


class AlertService:
    """
    Send notifications for regime changes and keeper failures.

    Features:
    - Severity threshold
    - Deduplication: identical alerts within the dedupe window are suppressed
    - Dry run: log instead of POSTing
    """

    MAX_RECORD_AGE = 300.0

    def __init__(self, config: AlertConfig, clock: Optional[Callable[[], float]] = None) -> None:
        self._config = config
        self._clock = clock or time.monotonic
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._alert_history: Dict[str, AlertRecord] = {}
        self.sent = 0

    @classmethod
    def from_config(cls, monitoring: Optional[Dict[str, Any]], dry_run: bool = False) -> "AlertService":
        """Build from the `monitoring` section of app.yaml (ALERT_WEBHOOK_URL overrides the URL)."""
        monitoring = monitoring or {}
        webhook_url = os.getenv("ALERT_WEBHOOK_URL") or monitoring.get("alert_webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)

        config = AlertConfig(
            enabled=bool(monitoring.get("alerts_enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(monitoring.get("alert_min_severity", "warning")),
            dry_run=dry_run,
            timeout=float(monitoring.get("alert_timeout_seconds", 5.0)),
            dedupe_seconds=float(monitoring.get("alert_dedupe_seconds", 60.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send an alert unless it is below the threshold or a duplicate.

        Returns:
            True if the alert was delivered (or logged in dry run)
        """
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        self._cleanup_old_alerts()
        fingerprint = self._generate_fingerprint(severity, title, message)
        now = self._clock()
        record = self._alert_history.get(fingerprint)
        if record is not None and now - record.first_seen <= self._config.dedupe_seconds:
            record.last_seen = now
            record.count += 1
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False

        self._alert_history[fingerprint] = AlertRecord(fingerprint, first_seen=now, last_seen=now)
        self._send_alert(severity, title, message, context)
        self.sent += 1
        return True

    def on_event(self, event: EventRecord) -> None:
        """EventLog subscriber for events operators should hear about."""
        if isinstance(event, RegimeChanged):
            entering_defense = Regime.from_value(event.to_regime) != Regime.NORMAL
            self.notify(
                AlertSeverity.WARNING if entering_defense else AlertSeverity.INFO,
                f"Regime {event.from_regime} -> {event.to_regime}",
                f"tick={event.tick} caller={event.caller} forced={event.forced}",
                event.to_dict(),
            )
        elif isinstance(event, BufferDeployed):
            self.notify(
                AlertSeverity.INFO,
                "Buffer deployed",
                f"L={event.liquidity} paid=({event.amount0}, {event.amount1}) tick={event.tick}",
            )
        elif isinstance(event, TreasuryWithdrawn):
            self.notify(
                AlertSeverity.WARNING,
                "Treasury withdrawal",
                f"{event.amount0}/{event.amount1} to {event.recipient}",
            )

    def _generate_fingerprint(self, severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode('utf-8')).hexdigest()

    def _send_alert(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._config.webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
        )

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    raise urllib.error.HTTPError(
                        self._config.webhook_url,
                        response.status,
                        body,
                        response.headers,
                        None,
                    )
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    def _cleanup_old_alerts(self) -> None:
        now = self._clock()
        stale = [fp for fp, record in self._alert_history.items() if now - record.last_seen > self.MAX_RECORD_AGE]
        for fp in stale:
            del self._alert_history[fp]

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


__all__ = ["AlertService", "AlertSeverity", "AlertConfig"]
