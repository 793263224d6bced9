"""
Telemetry API Endpoints.

============================================================
PURPOSE
============================================================
HTTP API over the engine's published state.

PRINCIPLES:
- GET endpoints are read-only queries
- The only writes are alert acknowledge / resolve
- Every response is {"status": "ok" | "error", ...}

============================================================
"""

import dataclasses
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

from aiohttp import web

from .engine import TelemetryEngine
from .models import AlertSeverity, AlertState, PropagationChain, Route


logger = logging.getLogger(__name__)


# ============================================================
# JSON ENCODER
# ============================================================

# Computed properties included alongside dataclass fields
DERIVED_FIELDS = {
    Route: ("key", "success_rate", "failure_rate"),
    PropagationChain: ("origin_error_id", "contexts", "length", "handled", "resolution", "path"),
}


class TelemetryEncoder(json.JSONEncoder):
    """JSON encoder for telemetry models."""

    def default(self, obj):
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Mapping):
            return dict(obj)
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            data = {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
            for name in DERIVED_FIELDS.get(type(obj), ()):
                data[name] = getattr(obj, name)
            return data
        return super().default(obj)


def json_response(data: Any, status: int = 200) -> web.Response:
    """Create JSON response."""
    return web.Response(
        text=json.dumps(data, cls=TelemetryEncoder, indent=2),
        status=status,
        content_type="application/json",
    )


def error_response(message: str, status: int) -> web.Response:
    return json_response({"status": "error", "error": message}, status=status)


def _sample_view(sample) -> Dict[str, Any]:
    view = sample.as_metrics()
    view["sample_id"] = sample.sample_id
    view["timestamp"] = sample.timestamp
    return view


def _int_query(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    value = int(raw)
    if value < 0:
        raise ValueError(f"{name} must be >= 0")
    return value


# ============================================================
# API HANDLERS
# ============================================================

class TelemetryAPI:
    """HTTP handlers bound to one engine."""

    def __init__(self, engine: TelemetryEngine):
        self._engine = engine

    # --------------------------------------------------------
    # STATE
    # --------------------------------------------------------

    async def health(self, request: web.Request) -> web.Response:
        """
        GET /health

        Engine liveness.
        """
        return json_response({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "telemetry",
            "running": self._engine.is_running,
        })

    async def get_snapshot(self, request: web.Request) -> web.Response:
        """GET /snapshot"""
        try:
            return json_response({"status": "ok", "data": self._engine.get_latest_snapshot()})
        except Exception as e:
            logger.error(f"Error getting snapshot: {e}")
            return error_response(str(e), 500)

    async def get_metrics(self, request: web.Request) -> web.Response:
        """
        GET /metrics

        Query params:
        - limit: Max number of samples (newest kept)
        """
        try:
            limit = _int_query(request, "limit", 100)
        except ValueError as e:
            return error_response(f"Invalid limit: {e}", 400)

        try:
            samples = self._engine.export_metrics_history(limit)
            return json_response({
                "status": "ok",
                "data": {
                    "samples": [_sample_view(s) for s in samples],
                    "count": len(samples),
                },
            })
        except Exception as e:
            logger.error(f"Error exporting metrics: {e}")
            return error_response(str(e), 500)

    # --------------------------------------------------------
    # ALERT ENDPOINTS
    # --------------------------------------------------------

    async def get_alerts(self, request: web.Request) -> web.Response:
        """
        GET /alerts

        Query params:
        - severity: Filter by severity (low, medium, high, critical)
        - state: Filter by state
        - active_only: Only open alerts (default true)
        - limit: Max number of alerts
        """
        try:
            limit = _int_query(request, "limit", 100)
        except ValueError as e:
            return error_response(f"Invalid limit: {e}", 400)

        try:
            manager = self._engine.alerts
            active_only = request.query.get("active_only", "true").lower() == "true"

            if active_only:
                alerts = manager.get_active_alerts()
            else:
                alerts = manager.history.get_recent(limit)

            severity = request.query.get("severity")
            if severity:
                try:
                    wanted = AlertSeverity(severity.lower())
                    alerts = [a for a in alerts if a.severity == wanted]
                except ValueError:
                    return error_response(f"Unknown severity: {severity}", 400)

            state = request.query.get("state")
            if state:
                try:
                    wanted_state = AlertState(state.lower())
                    alerts = [a for a in alerts if a.state == wanted_state]
                except ValueError:
                    return error_response(f"Unknown state: {state}", 400)

            return json_response({
                "status": "ok",
                "data": {"alerts": alerts[:limit], "count": len(alerts[:limit])},
            })
        except Exception as e:
            logger.error(f"Error getting alerts: {e}")
            return error_response(str(e), 500)

    async def get_alert_statistics(self, request: web.Request) -> web.Response:
        """GET /alerts/statistics"""
        return json_response({"status": "ok", "data": self._engine.alerts.statistics()})

    async def acknowledge_alert(self, request: web.Request) -> web.Response:
        """
        POST /alerts/{alert_id}/acknowledge

        Body: {"acknowledged_by": "..."}
        """
        return await self._alert_action(request, "acknowledged_by", self._engine.acknowledge_alert, "acknowledged")

    async def resolve_alert(self, request: web.Request) -> web.Response:
        """
        POST /alerts/{alert_id}/resolve

        Body: {"resolved_by": "..."}
        """
        return await self._alert_action(request, "resolved_by", self._engine.resolve_alert, "resolved")

    async def _alert_action(self, request: web.Request, actor_field: str, action, verb: str) -> web.Response:
        alert_id = request.match_info.get("alert_id")
        try:
            body: Dict[str, Any] = await request.json() if request.body_exists else {}
        except json.JSONDecodeError:
            return error_response("Request body must be JSON", 400)
        if not isinstance(body, dict):
            return error_response("Request body must be a JSON object", 400)

        try:
            actor = str(body.get(actor_field, "unknown"))
            if action(alert_id, actor):
                return json_response({
                    "status": "ok",
                    "message": f"Alert {alert_id} {verb}",
                    "data": self._engine.alerts.get_alert(alert_id),
                })
            return error_response(f"Alert {alert_id} not found or cannot be {verb}", 404)
        except Exception as e:
            logger.error(f"Error updating alert {alert_id}: {e}")
            return error_response(str(e), 500)

    # --------------------------------------------------------
    # ROUTES / PROPAGATION / BOTTLENECKS
    # --------------------------------------------------------

    async def get_routes(self, request: web.Request) -> web.Response:
        """GET /routes"""
        try:
            flow = self._engine.flow
            return json_response({
                "status": "ok",
                "data": {
                    "routes": flow.routes(),
                    "flagged": flow.flagged_routes(),
                    "statistics": flow.statistics(),
                    "recommendations": flow.recommendations(),
                },
            })
        except Exception as e:
            logger.error(f"Error getting routes: {e}")
            return error_response(str(e), 500)

    async def get_route(self, request: web.Request) -> web.Response:
        """GET /routes/{source}/{target}"""
        source = request.match_info["source"]
        target = request.match_info["target"]
        route = self._engine.get_route_statistics(source, target)
        if route is None:
            return error_response(f"No route {source}->{target}", 404)
        return json_response({"status": "ok", "data": route})

    async def get_propagation(self, request: web.Request) -> web.Response:
        """GET /propagation"""
        try:
            tracker = self._engine.propagation
            return json_response({
                "status": "ok",
                "data": {
                    "analysis": tracker.analysis(),
                    "open_chains": tracker.open_chains(),
                    "unhandled_chains": tracker.unhandled_chains(20),
                },
            })
        except Exception as e:
            logger.error(f"Error getting propagation: {e}")
            return error_response(str(e), 500)

    async def get_bottlenecks(self, request: web.Request) -> web.Response:
        """GET /bottlenecks"""
        return json_response({"status": "ok", "data": self._engine.get_bottleneck_report()})


# ============================================================
# ROUTER FACTORY
# ============================================================

def create_telemetry_app(engine: TelemetryEngine) -> web.Application:
    """
    Create telemetry API application.

    Returns an aiohttp Application with all routes configured.
    """
    api = TelemetryAPI(engine)

    app = web.Application()

    app.router.add_get("/health", api.health)
    app.router.add_get("/snapshot", api.get_snapshot)
    app.router.add_get("/metrics", api.get_metrics)
    app.router.add_get("/alerts", api.get_alerts)
    app.router.add_get("/alerts/statistics", api.get_alert_statistics)
    app.router.add_get("/routes", api.get_routes)
    app.router.add_get("/routes/{source}/{target}", api.get_route)
    app.router.add_get("/propagation", api.get_propagation)
    app.router.add_get("/bottlenecks", api.get_bottlenecks)

    # Alert lifecycle actions
    app.router.add_post("/alerts/{alert_id}/acknowledge", api.acknowledge_alert)
    app.router.add_post("/alerts/{alert_id}/resolve", api.resolve_alert)

    return app


def setup_telemetry_routes(
    app: web.Application,
    engine: TelemetryEngine,
    prefix: str = "/api/telemetry",
) -> None:
    """Mount the telemetry API on an existing application."""
    app.add_subapp(prefix, create_telemetry_app(engine))


__all__ = [
    "TelemetryEncoder",
    "json_response",
    "TelemetryAPI",
    "create_telemetry_app",
    "setup_telemetry_routes",
]
