"""
Tests for the Message Flow Tracker.
"""

import pytest

from telemetry.config import FlowConfig
from telemetry.exceptions import InvalidMetric
from telemetry.flow import MessageFlowTracker, classify_failure, sanitize_payload
from telemetry.models import ContextRole, FailureType, MessageEvent, Route


ROLES = {
    "bg": ContextRole.BACKGROUND_WORKER,
    "page": ContextRole.PAGE_SCRIPT,
    "ui": ContextRole.UI_SURFACE,
}


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def tracker(clock):
    return MessageFlowTracker(FlowConfig(), clock, role_of=ROLES.get)


def message(clock, source="bg", target="page", success=True, latency_ms=20.0, error=None, **kwargs):
    return MessageEvent(
        source=source,
        target=target,
        timestamp=clock.now(),
        success=success,
        latency_ms=latency_ms,
        error=error,
        **kwargs,
    )


# ============================================================
# CLASSIFICATION
# ============================================================

class TestClassifyFailure:
    """Tests for classify_failure."""

    @pytest.mark.parametrize("error,expected", [
        ("Request timed out after 5000ms", FailureType.TIMEOUT),
        ("Could not establish connection. Receiving end does not exist.", FailureType.ROUTING_ERROR),
        ("Error: could not be cloned", FailureType.SERIALIZATION_ERROR),
        ("Permission denied for tabs", FailureType.PERMISSION_DENIED),
        ("something odd", FailureType.UNKNOWN),
        (None, FailureType.UNKNOWN),
    ])
    def test_classification(self, error, expected):
        assert classify_failure(error) == expected


class TestSanitizePayload:
    """Credential-like fields are masked."""

    def test_nested_masking(self):
        clean = sanitize_payload({
            "apiKey": "abc",
            "user": {"password": "hunter2", "name": "ana"},
            "items": [{"token": "t"}],
        })

        assert clean["apiKey"] == "[REDACTED]"
        assert clean["user"] == {"password": "[REDACTED]", "name": "ana"}
        assert clean["items"] == [{"token": "[REDACTED]"}]


# ============================================================
# ROUTE AGGREGATES
# ============================================================

class TestRoute:
    """Tests for the Route value."""

    def test_counters_must_add_up(self):
        with pytest.raises(InvalidMetric):
            Route(source="a", target="b", total_messages=3, successful_messages=1, failed_messages=1)

    def test_empty_route_rates(self):
        route = Route(source="a", target="b")

        assert route.key == "a->b"
        assert route.success_rate == 1.0
        assert route.failure_rate == 0.0


class TestMessageFlowTracker:
    """Tests for MessageFlowTracker."""

    def test_failing_route_is_flagged(self, tracker, clock):
        """Eight failures out of ten messages."""
        for i in range(10):
            ok = i < 2
            tracker.record(message(
                clock,
                success=ok,
                error=None if ok else "Could not establish connection. Receiving end does not exist.",
            ))

        route = tracker.get_route("bg", "page")
        assert route.total_messages == 10
        assert route.failed_messages == 8
        assert route.success_rate == pytest.approx(0.2)
        assert route.failure_types == {"routing_error": 8}

        flagged = tracker.flagged_routes()
        assert [f.route.key for f in flagged] == ["bg->page"]
        assert "high failure rate" in flagged[0].reason

    def test_counters_always_add_up(self, tracker, clock):
        for i in range(25):
            route = tracker.record(message(clock, success=i % 3 != 0, error="timeout"))
            assert route.successful_messages + route.failed_messages == route.total_messages

    def test_latency_moving_average(self, tracker, clock):
        tracker.record(message(clock, latency_ms=100.0))
        tracker.record(message(clock, latency_ms=200.0))
        tracker.record(message(clock, latency_ms=None))

        # 0.3 * 200 + 0.7 * 100
        assert tracker.get_route("bg", "page").average_latency_ms == pytest.approx(130.0)

    def test_small_routes_are_not_flagged(self, tracker, clock):
        for _ in range(4):
            tracker.record(message(clock, success=False, error="timeout"))

        assert tracker.flagged_routes() == []

    def test_one_directional_failure(self, tracker, clock):
        for _ in range(6):
            tracker.record(message(clock, success=False, error="timeout"))
            tracker.record(message(clock, source="page", target="bg"))

        flagged = tracker.flagged_routes()

        assert len(flagged) == 1
        assert "one-directional" in flagged[0].reason

    def test_latency_above_expected_for_roles(self, tracker, clock):
        for _ in range(5):
            tracker.record(message(clock, source="bg", target="ui", latency_ms=200.0))

        flagged = tracker.flagged_routes()

        assert tracker.expected_latency("bg", "ui") == 30.0
        assert "exceeds expected" in flagged[0].reason

    def test_high_latency(self, tracker, clock):
        for _ in range(5):
            tracker.record(message(clock, source="x", target="y", latency_ms=1500.0))

        assert "high latency" in tracker.flagged_routes()[0].reason

    def test_is_connected_expires(self, tracker, clock):
        tracker.record(message(clock))

        assert tracker.is_connected("bg", "page")
        assert tracker.is_connected("page", "bg")
        assert not tracker.is_connected("bg", "ui")

        clock.advance(301)
        assert not tracker.is_connected("bg", "page")

    def test_recent_messages_are_sanitized(self, tracker, clock):
        tracker.record(message(clock, payload={"token": "secret", "size": 3}))
        tracker.record(message(clock, message_type="ping"))

        recent = tracker.recent_messages()

        assert recent[0].message_type == "ping"
        assert recent[1].payload == {"token": "[REDACTED]", "size": 3}

    def test_statistics_and_recommendations(self, tracker, clock):
        for _ in range(5):
            tracker.record(message(clock, success=False, error="timed out", latency_ms=400.0))
        tracker.record(message(clock, source="page", target="bg", latency_ms=300.0))

        stats = tracker.statistics()
        assert stats["route_count"] == 2
        assert stats["total_messages"] == 6
        assert stats["failed_messages"] == 5
        assert stats["failure_types"] == {"timeout": 5}

        advice = tracker.recommendations()
        assert any(line.startswith("Investigate route bg->page") for line in advice)
        assert any("Most message failures are timeout" in line for line in advice)
        assert any("consider batching messages" in line for line in advice)
