"""
Webhook Notification Handler.

============================================================
PURPOSE
============================================================
POST alerts as JSON to one or more webhook URLs (chat
integrations, incident tools).

PRINCIPLES:
- Notification-only
- Rate limiting to prevent spam
- Minimum severity filter
- Delivery failures are logged, never raised

============================================================
"""

import asyncio
import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

import aiohttp

from ..clock import ClockProtocol, SystemClock
from ..models import Alert, AlertSeverity


logger = logging.getLogger(__name__)


# ============================================================
# MESSAGE FORMATTER
# ============================================================

class AlertFormatter:
    """Formats alerts as plain text and JSON payloads."""

    SEVERITY_ICONS = {
        AlertSeverity.LOW: "ℹ️",
        AlertSeverity.MEDIUM: "⚠️",
        AlertSeverity.HIGH: "🔶",
        AlertSeverity.CRITICAL: "🚨",
    }

    @classmethod
    def format_text(cls, alert: Alert) -> str:
        """Human-readable alert text."""
        icon = cls.SEVERITY_ICONS.get(alert.severity, "📌")
        time_str = alert.last_triggered_at.strftime("%Y-%m-%d %H:%M:%S UTC")

        lines = [
            f"{icon} {alert.rule_name} [{alert.severity.value}]",
            alert.message,
            f"Target: {alert.target}",
            f"Category: {alert.category.value}",
            f"Time: {time_str}",
        ]
        if alert.escalations:
            lines.append(f"Escalated {alert.escalations}x")
        return "\n".join(lines)

    @classmethod
    def to_payload(cls, alert: Alert) -> Dict[str, Any]:
        """JSON body sent to webhooks."""
        return {
            "text": cls.format_text(alert),
            "alert": {
                "alert_id": alert.alert_id,
                "rule_id": alert.rule_id,
                "rule_name": alert.rule_name,
                "target": alert.target,
                "severity": alert.severity.value,
                "category": alert.category.value,
                "state": alert.state.value,
                "message": alert.message,
                "first_triggered_at": alert.first_triggered_at.isoformat(),
                "last_triggered_at": alert.last_triggered_at.isoformat(),
                "escalations": alert.escalations,
            },
        }

    @classmethod
    def format_summary(cls, alerts: List[Alert]) -> str:
        """Format alert summary."""
        open_alerts = [a for a in alerts if a.state.is_open]
        if not open_alerts:
            return "✅ No active alerts"

        lines = ["📋 Alert Summary", ""]
        for severity in reversed(list(AlertSeverity)):
            count = sum(1 for a in open_alerts if a.severity == severity)
            if count:
                lines.append(f"{cls.SEVERITY_ICONS[severity]} {severity.value}: {count}")
        lines.append("")
        lines.append(f"Total Active: {len(open_alerts)}")
        return "\n".join(lines)


# ============================================================
# RATE LIMITER
# ============================================================

class WebhookRateLimiter:
    """
    Sliding-window rate limiter.

    Prevents excessive message sending.
    """

    def __init__(
        self,
        max_per_minute: int = 20,
        max_per_hour: int = 100,
        clock: Optional[ClockProtocol] = None,
    ):
        self._max_per_minute = max_per_minute
        self._max_per_hour = max_per_hour
        self._clock = clock or SystemClock()
        self._minute_window = []
        self._hour_window = []
        self._lock = asyncio.Lock()

    def _prune(self):
        now = self._clock.now()
        minute_ago = now - timedelta(minutes=1)
        hour_ago = now - timedelta(hours=1)
        self._minute_window = [t for t in self._minute_window if t > minute_ago]
        self._hour_window = [t for t in self._hour_window if t > hour_ago]
        return now

    async def acquire(self) -> bool:
        """Try to acquire a send slot."""
        async with self._lock:
            now = self._prune()

            if len(self._minute_window) >= self._max_per_minute:
                return False
            if len(self._hour_window) >= self._max_per_hour:
                return False

            self._minute_window.append(now)
            self._hour_window.append(now)
            return True

    @property
    def remaining_minute(self) -> int:
        self._prune()
        return max(0, self._max_per_minute - len(self._minute_window))

    @property
    def remaining_hour(self) -> int:
        self._prune()
        return max(0, self._max_per_hour - len(self._hour_window))


# ============================================================
# WEBHOOK NOTIFIER
# ============================================================

class WebhookNotifier:
    """
    Sends alert notifications to webhooks.

    Usable directly as an AlertManager notification handler.
    """

    def __init__(
        self,
        urls: Optional[List[str]] = None,
        rate_limiter: Optional[WebhookRateLimiter] = None,
        min_severity: AlertSeverity = AlertSeverity.MEDIUM,
        request_timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize webhook notifier.

        Args:
            urls: Webhook URLs; TELEMETRY_WEBHOOK_URLS (comma-separated) if omitted
            rate_limiter: Optional rate limiter
            min_severity: Minimum alert severity to send
            request_timeout: Per-request timeout in seconds
            headers: Extra headers (e.g. authorization)
            session: Optional shared session (not closed by this notifier)
        """
        if urls:
            self._urls = list(urls)
        else:
            env_urls = os.getenv("TELEMETRY_WEBHOOK_URLS", "")
            self._urls = [u.strip() for u in env_urls.split(",") if u.strip()]

        self._rate_limiter = rate_limiter or WebhookRateLimiter()
        self._min_severity = min_severity
        self._timeout = request_timeout
        self._headers = headers or {}
        self._formatter = AlertFormatter()

        self._session = session
        self._owns_session = session is None
        self._enabled = bool(self._urls)
        self._sent = 0
        self._failed = 0

        if self._enabled:
            logger.info(f"WebhookNotifier enabled with {len(self._urls)} url(s)")
        else:
            logger.warning("WebhookNotifier NOT configured - check TELEMETRY_WEBHOOK_URLS")

    async def __call__(self, alert: Alert) -> bool:
        return await self.send_alert(alert)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the notifier."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = bool(self._urls)

    def disable(self) -> None:
        self._enabled = False

    async def send_alert(self, alert: Alert) -> bool:
        """
        Send an alert notification.

        Returns True if every webhook accepted it.
        """
        if not self._enabled:
            return False
        if alert.severity.rank < self._min_severity.rank:
            return False
        return await self._send_to_all(self._formatter.to_payload(alert))

    async def send_summary(self, alerts: List[Alert]) -> bool:
        if not self._enabled:
            return False
        return await self._send_to_all({"text": self._formatter.format_summary(alerts)})

    async def _send_to_all(self, payload: Dict[str, Any]) -> bool:
        if not await self._rate_limiter.acquire():
            logger.warning("Webhook rate limit reached, message not sent")
            return False

        results = await asyncio.gather(*(self._post(url, payload) for url in self._urls))
        return all(results)

    async def _post(self, url: str, payload: Dict[str, Any]) -> bool:
        try:
            session = await self._get_session()
            async with session.post(url, json=payload, headers=self._headers) as response:
                if 200 <= response.status < 300:
                    self._sent += 1
                    return True
                body = await response.text()
                self._failed += 1
                logger.error(f"Webhook error: {response.status} - {body[:200]}")
                return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._failed += 1
            logger.error(f"Error sending webhook to {url}: {e}")
            return False

    def stats(self) -> Dict[str, int]:
        return {
            "urls": len(self._urls),
            "sent": self._sent,
            "failed": self._failed,
        }


# ============================================================
# NOTIFICATION HANDLER FACTORY
# ============================================================

def create_webhook_handler(
    urls: List[str],
    min_severity: AlertSeverity = AlertSeverity.MEDIUM,
) -> WebhookNotifier:
    """
    Create a webhook notification handler.

    The notifier is itself awaitable with an Alert, so it can be passed
    straight to AlertManager.add_handler().
    """
    return WebhookNotifier(urls=urls, min_severity=min_severity)


__all__ = [
    "AlertFormatter",
    "WebhookRateLimiter",
    "WebhookNotifier",
    "create_webhook_handler",
]
