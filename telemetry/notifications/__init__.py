"""
Notifications Package.

Notification handlers for the telemetry engine.
"""

from .webhook import (
    AlertFormatter,
    WebhookRateLimiter,
    WebhookNotifier,
    create_webhook_handler,
)


__all__ = [
    "AlertFormatter",
    "WebhookRateLimiter",
    "WebhookNotifier",
    "create_webhook_handler",
]
