"""
Shared fixtures for telemetry tests.

============================================================
PURPOSE
============================================================
An in-memory instrumentation bridge plus factories for samples
and alerts, so every component can be exercised without a
real application or network.

============================================================
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from telemetry.bridge import InstrumentationBridge
from telemetry.clock import MockClock
from telemetry.config import (
    ProbeConfig,
    RecoveryConfig,
    RetryPolicy,
    SchedulerConfig,
    TelemetryConfig,
)
from telemetry.exceptions import ContextGone, ProbeUnavailable
from telemetry.models import (
    AggregateMetrics,
    Alert,
    AlertCategory,
    AlertSeverity,
    AlertState,
    ContextMetrics,
    ContextRole,
    HealthStatus,
    MetricsSample,
    ProbeStatus,
)
from telemetry.probe import METRICS_EXPRESSION


MB = 1024 * 1024


# ============================================================
# FAKE BRIDGE
# ============================================================

class FakeBridge(InstrumentationBridge):
    """
    Scriptable in-memory bridge.

    - payloads: metrics payload returned per context
    - delays: seconds to sleep before answering an evaluation
    - failures: exceptions raised (in order) by evaluate_in_context
    - gone: contexts whose selection raises ContextGone
    - broken_reads: auxiliary operations that raise ProbeUnavailable
    - action_failures: contexts where recovery expressions fail
    """

    def __init__(self):
        self.contexts: List[Dict[str, Any]] = []
        self.payloads: Dict[str, Any] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.console: Dict[str, List[Dict[str, Any]]] = {}
        self.network: Dict[str, List[Dict[str, Any]]] = {}
        self.snapshots: Dict[str, Dict[str, Any]] = {}
        self.delays: Dict[str, float] = {}
        self.failures: Dict[str, List[BaseException]] = {}
        self.gone: Set[str] = set()
        self.broken_reads: Set[str] = set()
        self.action_failures: Set[str] = set()
        self.list_failures: List[BaseException] = []
        self.calls: List[Tuple[str, str]] = []
        self.expressions: List[Tuple[str, str]] = []
        self.closed = 0

    def add_context(
        self,
        ref: str,
        kind: str = "background",
        url: Optional[str] = None,
        memory_mb: float = 50.0,
        response_ms: float = 100.0,
        **extra: Any,
    ) -> None:
        record = {"id": ref, "type": kind, "title": ref}
        if url is not None:
            record["url"] = url
        self.contexts.append(record)
        self.set_metrics(ref, memory_mb=memory_mb, response_ms=response_ms, **extra)

    def set_metrics(
        self,
        ref: str,
        memory_mb: Optional[float] = 50.0,
        response_ms: Optional[float] = 100.0,
        **extra: Any,
    ) -> None:
        payload: Dict[str, Any] = {}
        if memory_mb is not None:
            payload["memoryUsedBytes"] = memory_mb * MB
        if response_ms is not None:
            payload["responseTimeMs"] = response_ms
        payload.update(extra)
        self.payloads[ref] = payload

    def count(self, operation: str, ref: Optional[str] = None) -> int:
        return sum(1 for op, r in self.calls if op == operation and (ref is None or r == ref))

    # --------------------------------------------------------
    # BRIDGE INTERFACE
    # --------------------------------------------------------

    async def list_contexts(self) -> List[Dict[str, Any]]:
        self.calls.append(("list_contexts", "*"))
        if self.list_failures:
            raise self.list_failures.pop(0)
        return [dict(c) for c in self.contexts]

    async def select_context(self, ref: str) -> None:
        self.calls.append(("select_context", ref))
        if ref in self.gone:
            raise ContextGone(f"Context {ref} closed", context_ref=ref, operation="select_context")

    async def evaluate_in_context(self, ref: str, expression: str) -> Any:
        self.calls.append(("evaluate_in_context", ref))
        self.expressions.append((ref, expression))
        if ref in self.delays:
            await asyncio.sleep(self.delays[ref])
        pending = self.failures.get(ref)
        if pending:
            raise pending.pop(0)

        if expression != METRICS_EXPRESSION:
            if ref in self.action_failures:
                raise ContextGone(f"Context {ref} closed", context_ref=ref, operation="evaluate_in_context")
            return {"ok": True}

        payload = self.payloads.get(ref, {})
        if isinstance(payload, dict):
            payload = dict(payload)
            payload["messages"] = self.messages.pop(ref, [])
        return payload

    async def read_console_output(self, ref: str) -> List[Dict[str, Any]]:
        self.calls.append(("read_console_output", ref))
        if "read_console_output" in self.broken_reads:
            raise ProbeUnavailable("console unavailable", context_ref=ref)
        return self.console.pop(ref, [])

    async def read_network_activity(self, ref: str) -> List[Dict[str, Any]]:
        self.calls.append(("read_network_activity", ref))
        if "read_network_activity" in self.broken_reads:
            raise ProbeUnavailable("network unavailable", context_ref=ref)
        return list(self.network.get(ref, []))

    async def take_structural_snapshot(self, ref: str) -> Dict[str, Any]:
        self.calls.append(("take_structural_snapshot", ref))
        if "take_structural_snapshot" in self.broken_reads:
            raise ProbeUnavailable("snapshot unavailable", context_ref=ref)
        return dict(self.snapshots.get(ref, {"nodeCount": 12}))

    async def close(self) -> None:
        self.closed += 1


# ============================================================
# SAMPLE / ALERT FACTORIES
# ============================================================

class SampleFactory:
    """Builds MetricsSamples stamped by a MockClock."""

    def __init__(self, clock: MockClock):
        self._clock = clock
        self._seq = 0

    def metrics(
        self,
        context_id: str,
        role: ContextRole = ContextRole.BACKGROUND_WORKER,
        memory_usage_mb: Optional[float] = 50.0,
        response_time_ms: Optional[float] = 100.0,
        error_count: int = 0,
        health_score: float = 0.9,
        is_healthy: bool = True,
        issues: Tuple[str, ...] = (),
        status: ProbeStatus = ProbeStatus.SUCCESS,
        cpu_usage: Optional[float] = None,
        throughput: Optional[float] = None,
    ) -> ContextMetrics:
        return ContextMetrics(
            context_id=context_id,
            role=role,
            status=status,
            health_score=health_score,
            is_healthy=is_healthy,
            health_status=HealthStatus.HEALTHY if is_healthy else HealthStatus.CRITICAL,
            memory_usage_mb=memory_usage_mb,
            response_time_ms=response_time_ms,
            error_count=error_count,
            cpu_usage=cpu_usage,
            throughput=throughput,
            issues=tuple(issues),
        )

    def sample(self, *metrics: ContextMetrics, offset_seconds: float = 0.0) -> MetricsSample:
        """Sample at clock.now() + offset_seconds."""
        self._seq += 1
        scores = [m.health_score for m in metrics]
        return MetricsSample(
            sample_id=self._seq,
            timestamp=self._clock.now() + timedelta(seconds=offset_seconds),
            contexts={m.context_id: m for m in metrics},
            aggregate=AggregateMetrics(
                total_memory_mb=sum(m.memory_usage_mb or 0.0 for m in metrics),
                overall_health=sum(scores) / len(scores) if scores else None,
                healthy_contexts=sum(1 for m in metrics if m.is_healthy),
                total_contexts=len(metrics),
            ),
        )


def build_alert(
    clock: MockClock,
    alert_id: str = "alert-1",
    target: str = "bg",
    severity: AlertSeverity = AlertSeverity.CRITICAL,
    category: AlertCategory = AlertCategory.MEMORY,
    state: AlertState = AlertState.ACTIVE,
) -> Alert:
    return Alert(
        alert_id=alert_id,
        rule_id="test-rule",
        rule_name="Test Rule",
        target=target,
        severity=severity,
        category=category,
        message="Test Rule: triggered",
        state=state,
        first_triggered_at=clock.now(),
        last_triggered_at=clock.now(),
    )


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Deterministic clock."""
    return MockClock()


@pytest.fixture
def bridge():
    """Empty fake bridge."""
    return FakeBridge()


@pytest.fixture
def app_bridge():
    """Fake bridge with one context per role."""
    fake = FakeBridge()
    fake.add_context("bg", "background")
    fake.add_context("page", "content_script", url="https://example.com")
    fake.add_context("off", "offscreen")
    fake.add_context("ui", "popup", url="chrome-extension://abc/popup.html")
    return fake


@pytest.fixture
def fast_config():
    """Config with short timeouts and intervals."""
    config = TelemetryConfig()
    config.probe = ProbeConfig(
        timeout_seconds=0.2,
        retry=RetryPolicy(max_retries=1, initial_delay_seconds=0.01),
    )
    config.scheduler = SchedulerConfig(
        sampling_interval_seconds=0.05,
        bottleneck_interval_seconds=0.05,
        dashboard_interval_seconds=0.05,
        shutdown_timeout_seconds=1.0,
    )
    config.recovery = RecoveryConfig(action_timeout_seconds=0.5)
    return config


@pytest.fixture
def samples(clock):
    """Sample factory bound to the test clock."""
    return SampleFactory(clock)


@pytest.fixture
def make_alert(clock):
    """Alert factory bound to the test clock."""
    def _make(**kwargs) -> Alert:
        return build_alert(clock, **kwargs)
    return _make
