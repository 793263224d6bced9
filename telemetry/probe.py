"""
Context Probe Adapter.

============================================================
PURPOSE
============================================================
Wraps instrumentation bridge calls with a deadline and bounded
retries, and returns a uniform ProbeResult.

PRINCIPLES:
- sample() never raises to the caller
- Transient failures are retried with backoff inside the deadline
- ContextGone and malformed data are never retried
- Auxiliary reads (console, network, snapshot) only degrade a
  result to partial

============================================================
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .bridge import InstrumentationBridge
from .config import RetryPolicy
from .exceptions import (
    ContextGone,
    InvalidMetric,
    ProbeError,
    ProbeTimeout,
    ProbeUnavailable,
    TelemetryException,
)
from .models import ContextDescriptor, ContextRole, ProbeStatus, ROLE_STATE_FLAGS


logger = logging.getLogger(__name__)


# Expression evaluated inside every context to read its metrics
METRICS_EXPRESSION = """
(() => {
  const memory = (globalThis.performance && performance.memory) || {};
  const probe = globalThis.__telemetry__ || {};
  return {
    memoryUsedBytes: memory.usedJSHeapSize,
    responseTimeMs: probe.responseTimeMs,
    cpuUsage: probe.cpuUsage,
    throughput: probe.throughput,
    errorCount: probe.errorCount,
    messages: probe.drainMessages ? probe.drainMessages() : [],
    registrationActive: probe.registrationActive,
    injected: probe.injected,
    documentReady: typeof document !== 'undefined' ? document.readyState === 'complete' : undefined,
    rendered: probe.rendered,
  };
})()
""".strip()


# ============================================================
# PROBE RESULT
# ============================================================

@dataclass(frozen=True)
class ProbeData:
    """Validated data read from one context."""

    memory_usage_mb: Optional[float] = None
    response_time_ms: Optional[float] = None
    cpu_usage: Optional[float] = None
    throughput: Optional[float] = None
    reported_error_count: Optional[int] = None
    console: Tuple[Mapping[str, Any], ...] = ()
    network: Tuple[Mapping[str, Any], ...] = ()
    snapshot: Optional[Mapping[str, Any]] = None
    messages: Tuple[Mapping[str, Any], ...] = ()
    flags: Mapping[str, bool] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "flags", MappingProxyType(dict(self.flags)))


@dataclass(frozen=True)
class ProbeSuccess:
    data: ProbeData

    @property
    def status(self) -> ProbeStatus:
        return ProbeStatus.SUCCESS


@dataclass(frozen=True)
class ProbePartial:
    data: ProbeData
    reason: str

    @property
    def status(self) -> ProbeStatus:
        return ProbeStatus.PARTIAL


@dataclass(frozen=True)
class ProbeFailure:
    reason: str
    error: Optional[TelemetryException] = None

    @property
    def status(self) -> ProbeStatus:
        return ProbeStatus.FAILURE

    @property
    def context_gone(self) -> bool:
        return isinstance(self.error, ContextGone)


ProbeResult = Union[ProbeSuccess, ProbePartial, ProbeFailure]


# ============================================================
# PAYLOAD VALIDATION
# ============================================================

def _number(payload: Dict[str, Any], key: str, upper: Optional[float] = None) -> Optional[float]:
    """Read an optional non-negative finite number from the payload."""
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidMetric(f"{key} must be numeric", field=key, actual=value)
    if not math.isfinite(value):
        raise InvalidMetric(f"{key} must be finite", field=key, actual=value)
    if value < 0 or (upper is not None and value > upper):
        raise InvalidMetric(f"{key} out of range", field=key, actual=value)
    return float(value)


def parse_metrics_payload(payload: Any) -> Dict[str, Any]:
    """
    Validate the value returned by METRICS_EXPRESSION.

    Raises InvalidMetric on malformed data.
    """
    if not isinstance(payload, dict):
        raise InvalidMetric("Metrics payload must be an object", actual=payload)

    memory_bytes = _number(payload, "memoryUsedBytes")
    error_count = _number(payload, "errorCount")

    messages = payload.get("messages") or []
    if not isinstance(messages, list):
        raise InvalidMetric("messages must be a list", field="messages", actual=messages)

    flags = {}
    for flag, _ in ROLE_STATE_FLAGS.values():
        if isinstance(payload.get(flag), bool):
            flags[flag] = payload[flag]

    return {
        "memory_usage_mb": memory_bytes / (1024 * 1024) if memory_bytes is not None else None,
        "response_time_ms": _number(payload, "responseTimeMs"),
        "cpu_usage": _number(payload, "cpuUsage", upper=100.0),
        "throughput": _number(payload, "throughput"),
        "reported_error_count": int(error_count) if error_count is not None else None,
        "messages": tuple(m for m in messages if isinstance(m, dict)),
        "flags": flags,
    }


def describe_failure(error: BaseException) -> str:
    """Issue string recorded for a failed probe."""
    if isinstance(error, ProbeTimeout):
        return f"probe timeout: {error.message}"
    if isinstance(error, ContextGone):
        return f"context gone: {error.message}"
    if isinstance(error, ProbeUnavailable):
        return f"bridge unavailable: {error.message}"
    if isinstance(error, InvalidMetric):
        return f"invalid metric: {error.message}"
    return f"probe error: {error}"


# ============================================================
# PROBE ADAPTER
# ============================================================

class ContextProbeAdapter:
    """
    Timeout- and retry-bounded access to the instrumentation bridge.

    Side effect: none beyond the remote calls.
    """

    def __init__(
        self,
        bridge: InstrumentationBridge,
        retry: Optional[RetryPolicy] = None,
        metrics_expression: str = METRICS_EXPRESSION,
    ):
        self._bridge = bridge
        self._retry = retry or RetryPolicy()
        self._expression = metrics_expression
        self._probe_count = 0
        self._failure_count = 0
        self._retry_count = 0

    @property
    def bridge(self) -> InstrumentationBridge:
        return self._bridge

    # --------------------------------------------------------
    # DEADLINE-BOUNDED CALLS
    # --------------------------------------------------------

    async def _call(
        self,
        ref: str,
        operation: str,
        factory: Callable[[], Awaitable[Any]],
        deadline: float,
    ) -> Any:
        """Run one bridge call within what is left of the deadline."""
        loop = asyncio.get_running_loop()
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise ProbeTimeout(f"{operation} had no time left", context_ref=ref, operation=operation)
        try:
            return await asyncio.wait_for(factory(), timeout=remaining)
        except asyncio.TimeoutError:
            raise ProbeTimeout(
                f"{operation} exceeded {remaining:.3f}s",
                context_ref=ref,
                operation=operation,
                timeout_seconds=remaining,
            )

    async def _call_with_retry(
        self,
        ref: str,
        operation: str,
        factory: Callable[[], Awaitable[Any]],
        deadline: float,
    ) -> Any:
        """Retry transient bridge failures with backoff, inside the deadline."""
        loop = asyncio.get_running_loop()
        last_error: Optional[ProbeError] = None

        for attempt in range(self._retry.max_retries + 1):
            try:
                return await self._call(ref, operation, factory, deadline)
            except (ContextGone, ProbeTimeout, InvalidMetric):
                raise
            except ProbeUnavailable as e:
                last_error = e

            if attempt >= self._retry.max_retries:
                break
            delay = self._retry.delay_for(attempt + 1)
            if loop.time() + delay >= deadline:
                break
            self._retry_count += 1
            logger.warning(
                f"Retry {attempt + 1}/{self._retry.max_retries} for {operation} on {ref} "
                f"in {delay:.2f}s: {last_error.message}"
            )
            await asyncio.sleep(delay)

        raise last_error

    async def _auxiliary(
        self,
        ref: str,
        operation: str,
        factory: Callable[[], Awaitable[Any]],
        deadline: float,
        problems: List[str],
    ) -> Any:
        """Best-effort read; failures are recorded, not raised."""
        try:
            return await self._call(ref, operation, factory, deadline)
        except (ProbeError, InvalidMetric) as e:
            problems.append(f"{operation} failed: {e.message}")
        except Exception as e:
            problems.append(f"{operation} failed: {e}")
        return None

    # --------------------------------------------------------
    # PUBLIC API
    # --------------------------------------------------------

    async def sample(self, context: ContextDescriptor, timeout: float) -> ProbeResult:
        """
        Read metrics from one context within `timeout` seconds.

        Never raises; every failure is a ProbeFailure.
        """
        ref = context.context_id
        self._probe_count += 1
        deadline = asyncio.get_running_loop().time() + timeout

        try:
            started = time.perf_counter()
            await self._call_with_retry(
                ref, "select_context", lambda: self._bridge.select_context(ref), deadline
            )
            payload = await self._call_with_retry(
                ref,
                "evaluate_in_context",
                lambda: self._bridge.evaluate_in_context(ref, self._expression),
                deadline,
            )
            round_trip_ms = (time.perf_counter() - started) * 1000
            parsed = parse_metrics_payload(payload)
        except (ProbeError, InvalidMetric) as e:
            self._failure_count += 1
            return ProbeFailure(reason=describe_failure(e), error=e)
        except Exception as e:
            self._failure_count += 1
            error = ProbeUnavailable(f"Unexpected bridge error: {e}", context_ref=ref, cause=e)
            return ProbeFailure(reason=describe_failure(error), error=error)

        problems: List[str] = []
        console = await self._auxiliary(
            ref, "read_console_output", lambda: self._bridge.read_console_output(ref), deadline, problems
        )
        network = await self._auxiliary(
            ref, "read_network_activity", lambda: self._bridge.read_network_activity(ref), deadline, problems
        )
        snapshot = None
        if context.role == ContextRole.UI_SURFACE:
            snapshot = await self._auxiliary(
                ref, "take_structural_snapshot", lambda: self._bridge.take_structural_snapshot(ref), deadline, problems
            )

        if parsed["memory_usage_mb"] is None:
            problems.append("memory usage not reported")
        if parsed["response_time_ms"] is None:
            parsed["response_time_ms"] = round_trip_ms

        data = ProbeData(
            console=tuple(e for e in (console or []) if isinstance(e, dict)),
            network=tuple(e for e in (network or []) if isinstance(e, dict)),
            snapshot=snapshot,
            **parsed,
        )
        if problems:
            return ProbePartial(data=data, reason="; ".join(problems))
        return ProbeSuccess(data=data)

    async def evaluate(self, ref: str, expression: str, timeout: float) -> ProbeResult:
        """Evaluate an arbitrary expression in a context (used by recovery)."""
        deadline = asyncio.get_running_loop().time() + timeout
        try:
            await self._call_with_retry(
                ref, "select_context", lambda: self._bridge.select_context(ref), deadline
            )
            value = await self._call_with_retry(
                ref,
                "evaluate_in_context",
                lambda: self._bridge.evaluate_in_context(ref, expression),
                deadline,
            )
        except (ProbeError, InvalidMetric) as e:
            return ProbeFailure(reason=describe_failure(e), error=e)
        except Exception as e:
            error = ProbeUnavailable(f"Unexpected bridge error: {e}", context_ref=ref, cause=e)
            return ProbeFailure(reason=describe_failure(error), error=error)
        return ProbeSuccess(data=ProbeData(snapshot={"value": value}))

    async def list_contexts(self, timeout: float) -> List[ContextDescriptor]:
        """
        Discover and validate contexts.

        Invalid descriptors are logged and skipped; a bridge failure
        yields an empty list.
        """
        deadline = asyncio.get_running_loop().time() + timeout
        try:
            raw = await self._call_with_retry("*", "list_contexts", self._bridge.list_contexts, deadline)
        except (ProbeError, InvalidMetric) as e:
            logger.warning(f"Context discovery failed: {describe_failure(e)}")
            return []
        except Exception as e:
            logger.warning(f"Context discovery failed: {e}")
            return []

        descriptors = []
        for record in raw or []:
            try:
                descriptors.append(ContextDescriptor.from_bridge(record))
            except InvalidMetric as e:
                logger.warning(f"Skipping invalid context descriptor: {e.message}")
        return descriptors

    def stats(self) -> Dict[str, int]:
        return {
            "probes": self._probe_count,
            "failures": self._failure_count,
            "retries": self._retry_count,
        }


__all__ = [
    "METRICS_EXPRESSION",
    "ProbeData",
    "ProbeSuccess",
    "ProbePartial",
    "ProbeFailure",
    "ProbeResult",
    "ContextProbeAdapter",
    "parse_metrics_payload",
    "describe_failure",
]
