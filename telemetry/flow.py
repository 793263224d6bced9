"""
Message Flow Tracker.

============================================================
PURPOSE
============================================================
Maintains per-route aggregates of directed inter-context messages
and recommends likely-broken directions.

PRINCIPLES:
- Single writer; each update publishes a fresh Route value
- Counters are cumulative for the session
- Latency is an exponential moving average
- Payloads are sanitized before they are retained

============================================================
"""

import logging
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .clock import ClockProtocol, SystemClock
from .config import FlowConfig
from .models import ContextRole, FailureType, FlaggedRoute, MessageEvent, Route


logger = logging.getLogger(__name__)


# ============================================================
# FAILURE CLASSIFICATION
# ============================================================

FAILURE_PATTERNS: List[Tuple[FailureType, Tuple[str, ...]]] = [
    (FailureType.TIMEOUT, ("timeout", "timed out")),
    (FailureType.PERMISSION_DENIED, ("permission", "denied", "not allowed", "unauthorized")),
    (FailureType.SERIALIZATION_ERROR, ("serializ", "json", "circular", "could not be cloned")),
    (FailureType.ROUTING_ERROR, (
        "receiving end does not exist",
        "could not establish connection",
        "no receiver",
        "no listener",
        "port closed",
        "disconnected",
        "route",
    )),
]

FAILURE_ADVICE: Dict[FailureType, str] = {
    FailureType.TIMEOUT: "increase message timeouts or reduce payload size",
    FailureType.ROUTING_ERROR: "verify receivers are registered before messages are sent",
    FailureType.SERIALIZATION_ERROR: "ensure message payloads are plain serializable data",
    FailureType.PERMISSION_DENIED: "review the permissions granted to the sending context",
    FailureType.UNKNOWN: "inspect the error output of both contexts",
}


def classify_failure(error: Optional[str]) -> FailureType:
    """Classify a failed message from its error text."""
    if not error:
        return FailureType.UNKNOWN
    text = error.lower()
    for failure_type, needles in FAILURE_PATTERNS:
        if any(needle in text for needle in needles):
            return failure_type
    return FailureType.UNKNOWN


SENSITIVE_KEYS = ("apikey", "api_key", "token", "password", "secret")


def sanitize_payload(payload: Any) -> Any:
    """Mask credential-like fields, recursively."""
    if isinstance(payload, dict):
        clean = {}
        for key, value in payload.items():
            if any(marker in str(key).lower() for marker in SENSITIVE_KEYS):
                clean[key] = "[REDACTED]"
            else:
                clean[key] = sanitize_payload(value)
        return clean
    if isinstance(payload, list):
        return [sanitize_payload(item) for item in payload]
    return payload


# Typical latency of a healthy channel between two roles
EXPECTED_LATENCY_MS: Dict[Tuple[ContextRole, ContextRole], float] = {
    (ContextRole.BACKGROUND_WORKER, ContextRole.PAGE_SCRIPT): 50.0,
    (ContextRole.PAGE_SCRIPT, ContextRole.BACKGROUND_WORKER): 50.0,
    (ContextRole.BACKGROUND_WORKER, ContextRole.OFFSCREEN_WORKER): 100.0,
    (ContextRole.OFFSCREEN_WORKER, ContextRole.BACKGROUND_WORKER): 100.0,
    (ContextRole.BACKGROUND_WORKER, ContextRole.UI_SURFACE): 30.0,
    (ContextRole.UI_SURFACE, ContextRole.BACKGROUND_WORKER): 30.0,
    (ContextRole.PAGE_SCRIPT, ContextRole.OFFSCREEN_WORKER): 150.0,
}

# Multiple of the expected latency that counts as a slow route
EXPECTED_LATENCY_TOLERANCE = 4.0


# ============================================================
# MESSAGE FLOW TRACKER
# ============================================================

class MessageFlowTracker:
    """
    Route table of observed inter-context messages.

    Readers get the current table; record() swaps in a new one.
    """

    def __init__(
        self,
        config: Optional[FlowConfig] = None,
        clock: Optional[ClockProtocol] = None,
        role_of: Optional[Callable[[str], Optional[ContextRole]]] = None,
    ):
        self._config = config or FlowConfig()
        self._clock = clock or SystemClock()
        self._role_of = role_of or (lambda context_id: None)
        self._routes: Dict[str, Route] = {}
        self._recent: Deque[MessageEvent] = deque(maxlen=self._config.recent_message_limit)

    # --------------------------------------------------------
    # WRITE PATH
    # --------------------------------------------------------

    def record(self, event: MessageEvent) -> Route:
        """Fold one observed message into its route aggregate."""
        key = f"{event.source}->{event.target}"
        current = self._routes.get(key) or Route(source=event.source, target=event.target)
        failure_type = None if event.success else classify_failure(event.error)

        updated = current.with_message(event, self._config.latency_smoothing, failure_type)
        self._routes = {**self._routes, key: updated}

        payload = sanitize_payload(dict(event.payload)) if event.payload else None
        self._recent.append(replace(event, payload=payload))

        if not event.success:
            logger.debug(f"Message failure on {key}: {failure_type.value} ({event.error})")
        return updated

    # --------------------------------------------------------
    # READ PATH
    # --------------------------------------------------------

    def get_route(self, source: str, target: str) -> Optional[Route]:
        return self._routes.get(f"{source}->{target}")

    def routes(self) -> List[Route]:
        return sorted(self._routes.values(), key=lambda r: r.key)

    def recent_messages(self, limit: int = 50) -> List[MessageEvent]:
        """Newest first."""
        return list(self._recent)[-limit:][::-1]

    def is_connected(self, a: str, b: str) -> bool:
        """True if either direction carried a message recently."""
        now = self._clock.now()
        for route in (self.get_route(a, b), self.get_route(b, a)):
            if route is None or route.last_message_at is None:
                continue
            if (now - route.last_message_at).total_seconds() <= self._config.active_route_seconds:
                return True
        return False

    def expected_latency(self, source: str, target: str) -> Optional[float]:
        source_role = self._role_of(source)
        target_role = self._role_of(target)
        if source_role is None or target_role is None:
            return None
        return EXPECTED_LATENCY_MS.get((source_role, target_role))

    def flagged_routes(self) -> List[FlaggedRoute]:
        """Routes that look broken or slow."""
        cfg = self._config
        flagged = []

        for route in self.routes():
            if route.total_messages < cfg.min_messages_for_flag:
                continue
            reasons = []

            if route.failure_rate >= cfg.failure_rate_flag:
                reasons.append(f"high failure rate ({route.failure_rate:.0%})")
                reverse = self.get_route(route.target, route.source)
                if (
                    reverse is not None
                    and reverse.total_messages >= cfg.min_messages_for_flag
                    and reverse.failure_rate < cfg.failure_rate_flag
                ):
                    reasons.append("one-directional failure, reverse direction is healthy")

            latency = route.average_latency_ms
            if latency is not None:
                expected = self.expected_latency(route.source, route.target)
                if latency > cfg.high_latency_ms:
                    reasons.append(f"high latency ({latency:.0f}ms)")
                elif expected is not None and latency > expected * EXPECTED_LATENCY_TOLERANCE:
                    reasons.append(f"latency {latency:.0f}ms exceeds expected {expected:.0f}ms")

            if reasons:
                flagged.append(FlaggedRoute(route=route, reason="; ".join(reasons)))

        return flagged

    def statistics(self) -> Dict[str, Any]:
        routes = list(self._routes.values())
        total = sum(r.total_messages for r in routes)
        successful = sum(r.successful_messages for r in routes)
        failure_types: Dict[str, int] = {}
        for route in routes:
            for kind, count in route.failure_types.items():
                failure_types[kind] = failure_types.get(kind, 0) + count

        weighted = [(r.average_latency_ms, r.total_messages) for r in routes if r.average_latency_ms is not None]
        weight = sum(count for _, count in weighted)
        average_latency = sum(lat * count for lat, count in weighted) / weight if weight else None

        return {
            "route_count": len(routes),
            "total_messages": total,
            "successful_messages": successful,
            "failed_messages": total - successful,
            "success_rate": successful / total if total else 1.0,
            "average_latency_ms": average_latency,
            "failure_types": failure_types,
        }

    def recommendations(self) -> List[str]:
        """Human-readable advice derived from the route table."""
        advice = []
        for flagged in self.flagged_routes():
            advice.append(f"Investigate route {flagged.route.key}: {flagged.reason}")

        stats = self.statistics()
        if stats["failure_types"]:
            dominant = max(stats["failure_types"].items(), key=lambda item: item[1])[0]
            advice.append(
                f"Most message failures are {dominant}: {FAILURE_ADVICE[FailureType(dominant)]}"
            )

        average = stats["average_latency_ms"]
        if average is not None and average > self._config.average_latency_warning_ms:
            advice.append(
                f"Average message latency {average:.0f}ms exceeds "
                f"{self._config.average_latency_warning_ms:.0f}ms; consider batching messages"
            )
        return advice


__all__ = [
    "FAILURE_PATTERNS",
    "EXPECTED_LATENCY_MS",
    "classify_failure",
    "sanitize_payload",
    "MessageFlowTracker",
]
