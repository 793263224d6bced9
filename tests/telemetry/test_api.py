"""
Tests for the Telemetry HTTP API.
"""

import json
from datetime import datetime

import pytest
from aiohttp import test_utils, web

from telemetry.api import TelemetryEncoder, create_telemetry_app, setup_telemetry_routes
from telemetry.engine import TelemetryEngine
from telemetry.models import AlertSeverity, Route


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def engine(app_bridge, fast_config, clock):
    return TelemetryEngine(app_bridge, fast_config, clock=clock)


def client_for(app: web.Application) -> test_utils.TestClient:
    return test_utils.TestClient(test_utils.TestServer(app))


async def raise_memory_alert(engine, app_bridge):
    await engine.collector.discover()
    app_bridge.set_metrics("bg", memory_mb=160)
    await engine.sample_once()
    await engine.recovery.drain(1.0)


# ============================================================
# ENCODER
# ============================================================

class TestTelemetryEncoder:
    """Tests for TelemetryEncoder."""

    def test_models_are_serialized(self, clock):
        route = Route(source="bg", target="page", total_messages=1, successful_messages=1)
        encoded = json.loads(json.dumps({
            "route": route,
            "severity": AlertSeverity.HIGH,
            "at": clock.now(),
        }, cls=TelemetryEncoder))

        assert encoded["route"]["key"] == "bg->page"
        assert encoded["route"]["success_rate"] == 1.0
        assert encoded["route"]["failure_types"] == {}
        assert encoded["severity"] == "high"
        assert datetime.fromisoformat(encoded["at"]) == clock.now()


# ============================================================
# STATE ENDPOINTS
# ============================================================

class TestStateEndpoints:
    """Tests for read-only endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, engine):
        async with client_for(create_telemetry_app(engine)) as client:
            resp = await client.get("/health")
            body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "ok"
        assert body["running"] is False

    @pytest.mark.asyncio
    async def test_snapshot(self, engine, app_bridge):
        await raise_memory_alert(engine, app_bridge)

        async with client_for(create_telemetry_app(engine)) as client:
            resp = await client.get("/snapshot")
            body = await resp.json()

        assert resp.status == 200
        data = body["data"]
        assert data["overall_status"] == "critical"
        assert data["active_alerts"][0]["rule_id"] == "critical-memory-usage"
        assert data["sample"]["contexts"]["bg"]["memory_usage_mb"] == pytest.approx(160.0)

    @pytest.mark.asyncio
    async def test_metrics(self, engine, clock):
        await engine.collector.discover()
        for _ in range(3):
            await engine.sample_once()
            clock.advance(5)

        async with client_for(create_telemetry_app(engine)) as client:
            resp = await client.get("/metrics", params={"limit": "2"})
            body = await resp.json()
            bad = await client.get("/metrics", params={"limit": "abc"})

        assert resp.status == 200
        assert body["data"]["count"] == 2
        assert [s["sample_id"] for s in body["data"]["samples"]] == [2, 3]
        assert bad.status == 400

    @pytest.mark.asyncio
    async def test_routes(self, engine):
        engine.record_message("bg", "page", success=True, latency_ms=10.0)

        async with client_for(create_telemetry_app(engine)) as client:
            listing = await (await client.get("/routes")).json()
            found = await client.get("/routes/bg/page")
            found_body = await found.json()
            missing = await client.get("/routes/page/bg")

        assert listing["data"]["statistics"]["route_count"] == 1
        assert found.status == 200
        assert found_body["data"]["key"] == "bg->page"
        assert found_body["data"]["total_messages"] == 1
        assert missing.status == 404

    @pytest.mark.asyncio
    async def test_propagation_and_bottlenecks(self, engine):
        engine.record_error("page", "boom", correlation_id="X")
        engine.record_error("bg", "caught", correlation_id="X", handled=True)

        async with client_for(create_telemetry_app(engine)) as client:
            propagation = await (await client.get("/propagation")).json()
            bottlenecks = await (await client.get("/bottlenecks")).json()

        assert propagation["data"]["analysis"]["total_chains"] == 1
        [chain] = propagation["data"]["open_chains"]
        assert chain["path"] == "page -> bg"
        assert chain["resolution"] == "handled"
        assert bottlenecks["data"]["performance_score"] == 100.0
        assert bottlenecks["data"]["bottlenecks"] == []


# ============================================================
# ALERT ENDPOINTS
# ============================================================

class TestAlertEndpoints:
    """Tests for alert queries and actions."""

    @pytest.mark.asyncio
    async def test_alert_filters(self, engine, app_bridge):
        await raise_memory_alert(engine, app_bridge)

        async with client_for(create_telemetry_app(engine)) as client:
            critical = await (await client.get("/alerts", params={"severity": "critical"})).json()
            low = await (await client.get("/alerts", params={"severity": "low"})).json()
            bogus = await client.get("/alerts", params={"severity": "bogus"})
            stats = await (await client.get("/alerts/statistics")).json()

        assert critical["data"]["count"] == 1
        assert low["data"]["count"] == 0
        assert bogus.status == 400
        assert stats["data"]["active_alerts"] == 1
        assert stats["data"]["recovery"]["attempted"] == 1

    @pytest.mark.asyncio
    async def test_acknowledge_and_resolve(self, engine, app_bridge):
        await raise_memory_alert(engine, app_bridge)
        [alert] = engine.get_active_alerts()

        async with client_for(create_telemetry_app(engine)) as client:
            unknown = await client.post("/alerts/alert-999/acknowledge", json={"acknowledged_by": "ops"})
            acked = await client.post(f"/alerts/{alert.alert_id}/acknowledge", json={"acknowledged_by": "ops"})
            acked_body = await acked.json()
            again = await client.post(f"/alerts/{alert.alert_id}/acknowledge", json={"acknowledged_by": "ops"})
            resolved = await client.post(f"/alerts/{alert.alert_id}/resolve", json={"resolved_by": "ops"})
            history = await (await client.get("/alerts", params={"active_only": "false"})).json()

        assert unknown.status == 404
        assert acked.status == 200
        assert acked_body["data"]["state"] == "acknowledged"
        assert acked_body["data"]["acknowledged_by"] == "ops"
        assert again.status == 404
        assert resolved.status == 200
        assert engine.get_active_alerts() == []
        assert history["data"]["alerts"][0]["state"] == "resolved"

    @pytest.mark.asyncio
    async def test_invalid_body(self, engine, app_bridge):
        await raise_memory_alert(engine, app_bridge)
        [alert] = engine.get_active_alerts()

        async with client_for(create_telemetry_app(engine)) as client:
            resp = await client.post(
                f"/alerts/{alert.alert_id}/resolve",
                data="not json",
                headers={"Content-Type": "application/json"},
            )

        assert resp.status == 400


# ============================================================
# MOUNTING
# ============================================================

class TestSetupRoutes:
    """Tests for mounting under a prefix."""

    @pytest.mark.asyncio
    async def test_prefix(self, engine):
        app = web.Application()
        setup_telemetry_routes(app, engine, prefix="/api/telemetry")

        async with client_for(app) as client:
            mounted = await client.get("/api/telemetry/health")
            bare = await client.get("/health")

        assert mounted.status == 200
        assert bare.status == 404
