"""
Tests for the Telemetry Engine.

============================================================
TEST PRINCIPLES:
- Every loop stops on shutdown
- Alerts reach recovery without blocking the sampling cycle
- Observations reported from outside flow into the trackers
============================================================
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from telemetry.engine import MAX_POLLING_BACKOFF, TelemetryEngine
from telemetry.exceptions import RecoveryActionFailure
from telemetry.models import AlertCategory, RecoveryActionType, RecoveryOutcome
from telemetry.recovery import RECOVERY_EXPRESSIONS


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def engine(app_bridge, fast_config, clock):
    return TelemetryEngine(app_bridge, fast_config, clock=clock)


# ============================================================
# LIFECYCLE
# ============================================================

class TestEngineLifecycle:
    """Tests for start/stop/close."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        await engine.start()
        assert engine.is_running

        await asyncio.sleep(0.2)
        await engine.stop()

        stats = engine.stats()
        assert engine.is_running is False
        assert stats["running"] is False
        assert stats["cycles"]["sampling"] >= 1
        assert stats["cycles"]["analysis"] >= 1
        assert stats["cycles"]["dashboard"] >= 1
        assert stats["tracked_contexts"] == 4
        assert engine.dashboard.latest is not None

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, engine, app_bridge):
        await engine.start()
        await engine.start()
        await engine.stop()
        await engine.stop()

        assert app_bridge.count("list_contexts") == 1

    @pytest.mark.asyncio
    async def test_failing_cycle_does_not_stop_loop(self, engine, monkeypatch):
        broken = AsyncMock(side_effect=RuntimeError("boom"))
        monkeypatch.setattr(engine, "analyze_once", broken)

        await engine.start(discover=False)
        await asyncio.sleep(0.15)
        await engine.stop()

        assert broken.await_count >= 2
        assert engine.stats()["cycles"]["analysis"] == 0

    @pytest.mark.asyncio
    async def test_close_releases_bridge(self, engine, app_bridge):
        await engine.close()

        assert app_bridge.closed == 1


# ============================================================
# SAMPLING CYCLE
# ============================================================

class TestSamplingCycle:
    """Tests for sample_once and recovery hand-off."""

    @pytest.mark.asyncio
    async def test_memory_alert_triggers_gc(self, engine, app_bridge):
        await engine.collector.discover()
        app_bridge.set_metrics("bg", memory_mb=160)

        await engine.sample_once()
        await engine.recovery.drain(1.0)

        [alert] = engine.get_active_alerts()
        assert alert.target == "bg"
        assert alert.category == AlertCategory.MEMORY

        [action] = engine.recovery.history()
        assert action.action_type == RecoveryActionType.FORCE_GC
        assert action.outcome == RecoveryOutcome.SUCCESS
        assert ("bg", RECOVERY_EXPRESSIONS[RecoveryActionType.FORCE_GC]) in app_bridge.expressions
        assert engine.alerts.statistics()["recovery"]["attempted"] == 1

    @pytest.mark.asyncio
    async def test_failing_route_reconnects_bridge(self, engine, app_bridge):
        await engine.collector.discover()
        for i in range(10):
            engine.record_message(
                "bg",
                "page",
                success=i < 2,
                latency_ms=15.0,
                error=None if i < 2 else "Receiving end does not exist",
            )

        await engine.sample_once()
        await engine.recovery.drain(1.0)

        route = engine.get_route_statistics("bg", "page")
        assert route.failed_messages == 8
        assert [a.target for a in engine.get_active_alerts()] == ["bg->page"]
        assert app_bridge.closed == 1
        [action] = engine.recovery.history()
        assert action.action_type == RecoveryActionType.RECONNECT_BRIDGE
        assert action.outcome == RecoveryOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_reconnect_fails_when_bridge_is_empty(self, engine, app_bridge):
        await engine.collector.discover()
        app_bridge.contexts.clear()
        for _ in range(6):
            engine.record_message("bg", "page", success=False, error="timeout")

        await engine.sample_once()
        await engine.recovery.drain(1.0)

        [action] = engine.recovery.history()
        assert action.outcome == RecoveryOutcome.FAILURE
        assert engine.get_active_alerts()[0].escalations == 1

    @pytest.mark.asyncio
    async def test_reduce_polling_and_restore(self, engine, app_bridge, clock, fast_config):
        base = fast_config.scheduler.sampling_interval_seconds
        await engine.collector.discover()
        app_bridge.set_metrics("bg", response_ms=2500)

        await engine.sample_once()
        await engine.recovery.drain(1.0)
        assert engine.sampling_interval == pytest.approx(base * 2)

        app_bridge.set_metrics("bg", response_ms=100)
        for _ in range(2):
            clock.advance(5)
            await engine.sample_once()
            assert engine.sampling_interval == pytest.approx(base * 2)

        clock.advance(5)
        await engine.sample_once()
        assert engine.sampling_interval == pytest.approx(base)

    @pytest.mark.asyncio
    async def test_reduce_polling_is_capped(self, engine, fast_config):
        base = fast_config.scheduler.sampling_interval_seconds

        for _ in range(2):
            await engine._reduce_polling(RecoveryActionType.REDUCE_POLLING, "bg")

        assert engine.sampling_interval == pytest.approx(base * MAX_POLLING_BACKOFF)
        with pytest.raises(RecoveryActionFailure):
            await engine._reduce_polling(RecoveryActionType.REDUCE_POLLING, "bg")


# ============================================================
# INGESTION AND QUERIES
# ============================================================

class TestIngestion:
    """Tests for record_message / record_error and queries."""

    def test_record_error_builds_chain(self, engine):
        engine.record_error("page", "fetch failed", correlation_id="X")
        engine.record_error("bg", "fallback used", correlation_id="X", handled=True)

        analysis = engine.get_propagation_analysis()

        assert analysis["events"] == 2
        assert analysis["total_chains"] == 1
        assert analysis["cascading_errors"] == 1

    @pytest.mark.asyncio
    async def test_slow_notification_does_not_delay_sampling(self, app_bridge, fast_config, clock):
        release = asyncio.Event()
        delivered = []

        async def slow_webhook(alert):
            await release.wait()
            delivered.append(alert.rule_id)
            return True

        engine = TelemetryEngine(app_bridge, fast_config, clock=clock, notification_handlers=[slow_webhook])
        await engine.collector.discover()
        app_bridge.set_metrics("bg", memory_mb=160, response_ms=3000)

        await asyncio.wait_for(engine.sample_once(), timeout=1.0)

        assert delivered == []
        assert engine.stats()["pending_notifications"] >= 1

        release.set()
        await engine.alerts.drain_notifications(1.0)
        await engine.recovery.drain(1.0)
        assert "critical-memory-usage" in delivered

    @pytest.mark.asyncio
    async def test_stop_drains_notifications(self, app_bridge, fast_config, clock):
        delivered = []

        async def webhook(alert):
            await asyncio.sleep(0.05)
            delivered.append(alert.alert_id)
            return True

        engine = TelemetryEngine(app_bridge, fast_config, clock=clock, notification_handlers=[webhook])
        app_bridge.set_metrics("bg", memory_mb=160)
        await engine.start()
        await asyncio.sleep(0.1)
        await engine.stop()

        assert delivered
        assert engine.alerts.pending_notifications == 0

    @pytest.mark.asyncio
    async def test_console_batch_builds_one_handled_chain(self, engine, app_bridge, clock):
        """Console errors stamped before the quiet period still correlate within one cycle."""
        now_ms = int(clock.now().timestamp() * 1000)
        app_bridge.console["off"] = [
            {"level": "error", "text": "render failed", "correlationId": "X", "timestamp": now_ms - 5500},
        ]
        app_bridge.console["bg"] = [
            {"level": "error", "text": "retried render", "correlationId": "X", "timestamp": now_ms - 4000,
             "handled": True},
        ]
        await engine.collector.discover()

        await engine.sample_once()

        [chain] = engine.propagation.open_chains()
        assert chain.contexts == ("off", "bg")
        assert chain.handled is True
        assert engine.propagation.unhandled_chains() == []

    def test_record_message_returns_route(self, engine):
        route = engine.record_message("ui", "bg", success=True, latency_ms=12.0)

        assert route.key == "ui->bg"
        assert route.total_messages == 1

    @pytest.mark.asyncio
    async def test_latest_snapshot(self, engine, clock):
        unpublished = engine.get_latest_snapshot()
        assert unpublished.sequence == 0

        await engine.collector.discover()
        await engine.sample_once()
        published = await engine.refresh_dashboard()

        assert engine.get_latest_snapshot() is published
        assert published.sequence == 1

    @pytest.mark.asyncio
    async def test_metrics_history_export(self, engine, clock):
        await engine.collector.discover()
        for _ in range(3):
            await engine.sample_once()
            clock.advance(5)

        assert len(engine.export_metrics_history()) == 3
        assert [s.sample_id for s in engine.export_metrics_history(limit=1)] == [3]

    @pytest.mark.asyncio
    async def test_acknowledge_and_resolve(self, engine, app_bridge):
        await engine.collector.discover()
        app_bridge.set_metrics("bg", memory_mb=160)
        await engine.sample_once()
        await engine.recovery.drain(1.0)
        [alert] = engine.get_active_alerts()

        assert engine.acknowledge_alert(alert.alert_id, "ops") is True
        assert engine.resolve_alert(alert.alert_id, "ops") is True
        assert engine.get_active_alerts() == []
