"""
Telegram alerts for the operator.

Each alert carries an optional dedup key. A key that fired within its
cooldown is suppressed, so an outage produces one message instead of one
per tick. Sending blocks on HTTP (requests); async callers go through an
executor.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"

PRIORITY_PREFIX = {
    "critical": "🚨🚨🚨",
    "high": "⚠️",
    "low": "ℹ️",
}


@dataclass
class AlertRecord:
    key: str
    last_sent: float
    count: int = 1


def _fields(**values: Any) -> str:
    """Render `Name: value` lines, skipping empty values."""
    lines = []
    for name, value in values.items():
        if value is None or value == "":
            continue
        lines.append(f"{name.replace('_', ' ').capitalize()}: {value}")
    return "\n".join(lines)


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class AlertManager:
    """
    Usage:
        alerts = AlertManager(telegram_bot_token="...", telegram_chat_id="...")
        alerts.alert_breaker_tripped(5, "sales: HTTP 503")
        alerts.alert_publish_failure(42, "vitalik.eth", "HTTP 403", permanent=True)

    `_telegram_api` replaces the HTTP call with an object exposing
    send_message(chat_id=, text=, parse_mode=) (tests).
    """

    DEFAULT_COOLDOWN = 300

    def __init__(
        self,
        telegram_bot_token: Optional[str] = None,
        telegram_chat_id: Optional[str] = None,
        default_cooldown: int = DEFAULT_COOLDOWN,
        _telegram_api: Optional[Any] = None,
    ) -> None:
        self._bot_token = telegram_bot_token
        self._chat_id = telegram_chat_id
        self._default_cooldown = default_cooldown
        self._telegram_api = _telegram_api
        self._sent_alerts: dict[str, AlertRecord] = {}

    @property
    def is_configured(self) -> bool:
        return self._telegram_api is not None or bool(self._bot_token and self._chat_id)

    # =========================================================================
    # Generic send
    # =========================================================================

    def send_alert(
        self,
        title: str,
        message: str,
        dedup_key: Optional[str] = None,
        cooldown_seconds: Optional[int] = None,
        priority: str = "normal",
    ) -> bool:
        """
        Send one alert.

        Returns:
            True if delivered; False if suppressed by the cooldown, not
            configured, or the request failed. Failed sends do not start
            the cooldown.
        """
        if dedup_key:
            wait = self._cooldown_remaining(dedup_key, cooldown_seconds or self._default_cooldown)
            if wait > 0:
                logger.debug(f"Suppressed alert {dedup_key} ({wait:.0f}s of cooldown left)")
                return False

        prefix = PRIORITY_PREFIX.get(priority)
        header = f"{prefix} *{title}*" if prefix else f"*{title}*"
        delivered = self._deliver(f"{header}\n\n{message.strip()}")

        if delivered and dedup_key:
            self._mark_sent(dedup_key)
        return delivered

    # =========================================================================
    # Alert types
    # =========================================================================

    def alert_breaker_tripped(self, consecutive_errors: int, last_error: str) -> bool:
        """Scheduler stopped itself; someone has to reset it."""
        body = _fields(
            consecutive_errors=consecutive_errors,
            last_error=last_error[:300],
            time=_utc_now(),
        )
        return self.send_alert(
            title="Scheduler Circuit Breaker Tripped",
            message=f"{body}\n\nAll pollers are stopped until the error counter is reset.",
            dedup_key="breaker_tripped",
            cooldown_seconds=900,
            priority="critical",
        )

    def alert_publish_failure(
        self,
        record_id: int,
        name: str,
        error: str,
        permanent: bool = False,
    ) -> bool:
        # Transient failures share one key so an outage sends one alert
        key = f"publish_rejected_{record_id}" if permanent else "publish_transient"
        body = _fields(
            record=f"#{record_id} {name}",
            result="rejected" if permanent else "failed (will retry)",
            error=error[:300],
        )
        return self.send_alert(
            title="Publish Failure",
            message=body,
            dedup_key=key,
            cooldown_seconds=600,
            priority="high" if permanent else "normal",
        )

    def alert_health_issue(self, component: str, status: str, message: str) -> bool:
        unhealthy = status.upper() == "UNHEALTHY"
        body = _fields(component=component, status=status, details=message, time=_utc_now())
        return self.send_alert(
            title=f"{'🔴' if unhealthy else '🟡'} Health Issue: {component}",
            message=body,
            dedup_key=f"health_{component}_{status}",
            cooldown_seconds=300,
            priority="high" if unhealthy else "normal",
        )

    # =========================================================================
    # Dedup bookkeeping
    # =========================================================================

    def _cooldown_remaining(self, key: str, cooldown: int) -> float:
        record = self._sent_alerts.get(key)
        if record is None:
            return 0.0
        return max(0.0, cooldown - (time.time() - record.last_sent))

    def _mark_sent(self, key: str) -> None:
        record = self._sent_alerts.get(key)
        if record is None:
            self._sent_alerts[key] = AlertRecord(key=key, last_sent=time.time())
        else:
            record.last_sent = time.time()
            record.count += 1

    def clear_dedup_cache(self) -> None:
        self._sent_alerts.clear()

    def get_alert_stats(self) -> dict[str, int]:
        return {
            "unique_alerts": len(self._sent_alerts),
            "total_sent": sum(r.count for r in self._sent_alerts.values()),
        }

    # =========================================================================
    # Transport
    # =========================================================================

    def _deliver(self, text: str) -> bool:
        if self._telegram_api is not None:
            try:
                self._telegram_api.send_message(
                    chat_id=self._chat_id, text=text, parse_mode="Markdown"
                )
            except Exception as e:
                logger.error(f"Telegram client failed: {e}")
                return False
            return True

        if not self.is_configured:
            logger.warning(f"Telegram not configured, alert dropped: {text[:80]}")
            return False

        try:
            response = requests.post(
                f"{TELEGRAM_API}/bot{self._bot_token}/sendMessage",
                json={"chat_id": self._chat_id, "text": text, "parse_mode": "Markdown"},
                timeout=10,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Telegram alert not delivered: {e}")
            return False

        logger.info(f"Telegram alert sent: {text[:50]}")
        return True
