"""
Internal Event Bus.

============================================================
PURPOSE
============================================================
Single in-process channel between producers (probe results,
ingestion calls) and consumers (trackers, alert manager, dashboard).

PRINCIPLES:
- Producers do not know their consumers
- A failing subscriber never affects the publisher or other subscribers
- Delivery is synchronous and in subscription order; coroutine
  functions are rejected at subscription

============================================================
"""

import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)


class EventTopic(Enum):
    """Topics carried by the bus."""
    SAMPLE_PUBLISHED = "sample_published"
    MESSAGE_OBSERVED = "message_observed"
    ERROR_OBSERVED = "error_observed"
    ALERT_TRIGGERED = "alert_triggered"
    ALERT_RESOLVED = "alert_resolved"
    CHAIN_FINALIZED = "chain_finalized"
    RECOVERY_COMPLETED = "recovery_completed"


Subscriber = Callable[[Any], None]


class EventBus:
    """Topic-based publish/subscribe."""

    def __init__(self):
        self._subscribers: Dict[EventTopic, List[Subscriber]] = {}
        self._published = 0
        self._delivery_errors = 0

    def subscribe(self, topic: EventTopic, handler: Subscriber) -> None:
        """Register a synchronous handler for a topic."""
        if inspect.iscoroutinefunction(handler):
            raise TypeError(f"Subscriber for {topic.value} must be synchronous")
        self._subscribers.setdefault(topic, []).append(handler)

    def unsubscribe(self, topic: EventTopic, handler: Subscriber) -> None:
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, topic: EventTopic, payload: Any) -> int:
        """
        Deliver a payload to every subscriber of the topic.

        Returns the number of successful deliveries.
        """
        self._published += 1
        delivered = 0
        for handler in list(self._subscribers.get(topic, [])):
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                self._delivery_errors += 1
                logger.error(f"Event subscriber error on {topic.value}: {e}")
        return delivered

    def subscriber_count(self, topic: EventTopic) -> int:
        return len(self._subscribers.get(topic, []))

    def stats(self) -> Dict[str, int]:
        return {
            "published": self._published,
            "delivery_errors": self._delivery_errors,
        }


__all__ = ["EventTopic", "EventBus", "Subscriber"]
