"""
Tests for the HTTP Instrumentation Bridge client.
"""

import pytest
from aiohttp import test_utils, web

from telemetry.bridge import HttpInstrumentationBridge
from telemetry.exceptions import ContextGone, InvalidMetric, ProbeUnavailable
from telemetry.probe import ContextProbeAdapter, ProbeSuccess


# ============================================================
# FIXTURES
# ============================================================

class BridgeService:
    """Minimal bridge service with one live context, "bg"."""

    def __init__(self):
        self.expressions = []

    @staticmethod
    def ok(data=None) -> web.Response:
        return web.json_response({"status": "ok", "data": data})

    async def contexts(self, request: web.Request) -> web.Response:
        return self.ok([
            {"id": "bg", "type": "background"},
            {"id": "page", "type": "content_script", "url": "https://example.com"},
        ])

    async def select(self, request: web.Request) -> web.Response:
        ref = request.match_info["ref"]
        if ref == "closed":
            return web.json_response({"status": "error"}, status=410)
        if ref == "flaky":
            return web.Response(status=503, text="bridge restarting")
        if ref == "weird":
            return web.json_response({"status": "pending"})
        return self.ok()

    async def evaluate(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.expressions.append((request.match_info["ref"], body["expression"]))
        return self.ok({"memoryUsedBytes": 64 * 1024 * 1024, "responseTimeMs": 40})

    async def console(self, request: web.Request) -> web.Response:
        return self.ok([{"level": "error", "text": "boom"}])

    async def network(self, request: web.Request) -> web.Response:
        return self.ok([])

    async def snapshot(self, request: web.Request) -> web.Response:
        return self.ok({"nodeCount": 30})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/contexts", self.contexts)
        app.router.add_post("/contexts/{ref}/select", self.select)
        app.router.add_post("/contexts/{ref}/evaluate", self.evaluate)
        app.router.add_get("/contexts/{ref}/console", self.console)
        app.router.add_get("/contexts/{ref}/network", self.network)
        app.router.add_get("/contexts/{ref}/snapshot", self.snapshot)
        return app


# ============================================================
# CLIENT TESTS
# ============================================================

class TestHttpInstrumentationBridge:
    """Tests for HttpInstrumentationBridge against a live service."""

    @pytest.mark.asyncio
    async def test_operations(self):
        service = BridgeService()
        async with test_utils.TestServer(service.app()) as server:
            bridge = HttpInstrumentationBridge(str(server.make_url("/")))
            try:
                contexts = await bridge.list_contexts()
                await bridge.select_context("bg")
                value = await bridge.evaluate_in_context("bg", "1 + 1")
                console = await bridge.read_console_output("bg")
                network = await bridge.read_network_activity("bg")
                snapshot = await bridge.take_structural_snapshot("bg")
            finally:
                await bridge.close()

        assert [c["id"] for c in contexts] == ["bg", "page"]
        assert value["responseTimeMs"] == 40
        assert service.expressions == [("bg", "1 + 1")]
        assert console == [{"level": "error", "text": "boom"}]
        assert network == []
        assert snapshot == {"nodeCount": 30}
        assert bridge.stats() == {"requests": 6, "errors": 0}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ref,error", [
        ("closed", ContextGone),
        ("flaky", ProbeUnavailable),
        ("weird", InvalidMetric),
    ])
    async def test_error_mapping(self, ref, error):
        async with test_utils.TestServer(BridgeService().app()) as server:
            bridge = HttpInstrumentationBridge(str(server.make_url("/")))
            try:
                with pytest.raises(error):
                    await bridge.select_context(ref)
            finally:
                await bridge.close()

    @pytest.mark.asyncio
    async def test_connection_error(self):
        server = test_utils.TestServer(web.Application())
        await server.start_server()
        url = str(server.make_url("/"))
        await server.close()

        bridge = HttpInstrumentationBridge(url, request_timeout=1.0)
        try:
            with pytest.raises(ProbeUnavailable):
                await bridge.list_contexts()
        finally:
            await bridge.close()
        assert bridge.stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_probe_through_http(self):
        async with test_utils.TestServer(BridgeService().app()) as server:
            bridge = HttpInstrumentationBridge(str(server.make_url("/")))
            adapter = ContextProbeAdapter(bridge)
            try:
                descriptors = await adapter.list_contexts(timeout=2.0)
                result = await adapter.sample(descriptors[0], timeout=2.0)
            finally:
                await bridge.close()

        assert isinstance(result, ProbeSuccess)
        assert result.data.memory_usage_mb == pytest.approx(64.0)
        assert result.data.console[0]["text"] == "boom"
