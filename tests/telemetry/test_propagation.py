"""
Tests for the Error Propagation Tracker.
"""

from datetime import timedelta

import pytest

from telemetry.config import PropagationConfig
from telemetry.events import EventBus, EventTopic
from telemetry.models import ChainResolution, ErrorEvent
from telemetry.propagation import ErrorPropagationTracker


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def connected():
    """Mutable set of connected context pairs."""
    return {("bg", "page"), ("page", "bg"), ("bg", "ui"), ("ui", "bg")}


@pytest.fixture
def tracker(clock, connected, bus):
    return ErrorPropagationTracker(
        PropagationConfig(causal_window_seconds=2.0, quiet_period_seconds=5.0),
        clock,
        is_connected=lambda a, b: (a, b) in connected,
        bus=bus,
    )


def error(clock, event_id, context_id, offset=0.0, **kwargs):
    return ErrorEvent(
        event_id=event_id,
        context_id=context_id,
        timestamp=clock.now() + timedelta(seconds=offset),
        message=f"error in {context_id}",
        **kwargs,
    )


# ============================================================
# CHAIN CONSTRUCTION
# ============================================================

class TestChainConstruction:
    """Tests for joining events into chains."""

    def test_correlated_handled_chain(self, tracker, clock):
        """page fails, then bg handles the same correlation id."""
        tracker.record(error(clock, "e1", "page", correlation_id="X"))
        clock.advance(1)
        chain = tracker.record(error(clock, "e2", "bg", correlation_id="X", handled=True))

        assert chain.length == 2
        assert chain.contexts == ("page", "bg")
        assert chain.handled is True
        assert chain.resolution == ChainResolution.HANDLED
        assert chain.origin_error_id == "e1"
        assert len(tracker.open_chains()) == 1

    def test_correlation_ignores_time_window(self, tracker, clock):
        tracker.record(error(clock, "e1", "page", correlation_id="X"))
        clock.advance(4)
        chain = tracker.record(error(clock, "e2", "off", correlation_id="X"))

        assert chain.contexts == ("page", "off")

    def test_causal_join_requires_connection(self, tracker, clock):
        tracker.record(error(clock, "e1", "page"))
        joined = tracker.record(error(clock, "e2", "bg", offset=1.0))
        separate = tracker.record(error(clock, "e3", "off", offset=1.5))

        assert joined.contexts == ("page", "bg")
        assert separate.length == 1
        assert separate.chain_id != joined.chain_id

    def test_causal_join_respects_window(self, tracker, clock):
        first = tracker.record(error(clock, "e1", "page"))
        later = tracker.record(error(clock, "e2", "bg", offset=3.0))

        assert later.chain_id != first.chain_id

    def test_same_context_does_not_join_causally(self, tracker, clock):
        first = tracker.record(error(clock, "e1", "bg"))
        second = tracker.record(error(clock, "e2", "bg", offset=0.5))

        assert second.chain_id != first.chain_id

    def test_events_are_ordered_by_timestamp(self, tracker, clock):
        tracker.record(error(clock, "late", "bg", offset=1.0, correlation_id="Y"))
        chain = tracker.record(error(clock, "early", "page", correlation_id="Y"))

        assert chain.origin_error_id == "early"
        assert chain.path == "page -> bg"


# ============================================================
# FINALIZATION
# ============================================================

class TestFinalization:
    """Tests for sweep() and unhandled findings."""

    def test_quiet_chain_is_finalized_as_unhandled(self, tracker, clock, bus):
        finalized_events = []
        bus.subscribe(EventTopic.CHAIN_FINALIZED, finalized_events.append)
        tracker.record(error(clock, "e1", "page"))
        tracker.record(error(clock, "e2", "bg", offset=0.5))

        clock.advance(3)
        assert tracker.sweep() == []

        clock.advance(3)
        finalized = tracker.sweep()

        assert len(finalized) == 1
        assert finalized[0].finalized is True
        assert finalized[0].resolution == ChainResolution.UNHANDLED
        assert tracker.open_chains() == []
        assert tracker.unhandled_chains() == finalized
        assert finalized_events == finalized

    def test_recovered_chain_is_not_unhandled(self, tracker, clock):
        tracker.record(error(clock, "e1", "page", recovered=True))
        clock.advance(10)
        tracker.sweep()

        assert tracker.unhandled_chains() == []
        assert tracker.finalized_chains()[0].resolution == ChainResolution.RECOVERED

    def test_correlation_after_finalization_starts_new_chain(self, tracker, clock):
        first = tracker.record(error(clock, "e1", "page", correlation_id="Z"))
        clock.advance(10)
        tracker.sweep()
        second = tracker.record(error(clock, "e2", "bg", correlation_id="Z"))

        assert second.chain_id != first.chain_id
        assert tracker.get_chain(first.chain_id).finalized is True

    def test_record_never_finalizes(self, tracker, clock):
        first = tracker.record(error(clock, "e1", "page", correlation_id="Z"))
        clock.advance(10)
        second = tracker.record(error(clock, "e2", "bg", correlation_id="Z"))

        assert second.chain_id == first.chain_id
        assert tracker.finalized_chains() == []

    def test_batch_older_than_quiet_period_joins_one_chain(self, tracker, clock):
        """Events delivered together after the quiet period already elapsed on their timestamps."""
        tracker.record(error(clock, "e1", "off", offset=-5.5, correlation_id="X"))
        chain = tracker.record(error(clock, "e2", "bg", offset=-4.0, correlation_id="X", handled=True))

        assert tracker.sweep() == []
        assert chain.length == 2
        assert chain.handled is True
        assert [c.chain_id for c in tracker.open_chains()] == [chain.chain_id]

    def test_quiet_period_counts_from_arrival(self, tracker, clock):
        tracker.record(error(clock, "e1", "page", offset=-30.0))

        clock.advance(4)
        assert tracker.sweep() == []

        clock.advance(1)
        [done] = tracker.sweep()
        assert done.origin_error_id == "e1"
        assert tracker.unhandled_chains() == [done]

    def test_analysis(self, tracker, clock):
        tracker.record(error(clock, "e1", "page", correlation_id="A"))
        tracker.record(error(clock, "e2", "bg", correlation_id="A"))
        tracker.record(error(clock, "e3", "ui", offset=10.0))

        analysis = tracker.analysis()

        assert analysis["events"] == 3
        assert analysis["total_chains"] == 2
        assert analysis["cascading_errors"] == 1
        assert analysis["isolated_errors"] == 1
        assert analysis["average_depth"] == pytest.approx(1.5)
        assert {"path": "page -> bg", "count": 1} in analysis["most_common_paths"]

    def test_recent_chains_newest_first(self, tracker, clock):
        tracker.record(error(clock, "e1", "page"))
        tracker.record(error(clock, "e2", "off", offset=5.0))

        recent = tracker.recent_chains()

        assert [c.origin_error_id for c in recent] == ["e2", "e1"]
