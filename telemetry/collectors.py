"""
Metrics Collectors.

============================================================
PURPOSE
============================================================
Drives one sampling cycle across every tracked execution context
and publishes an immutable MetricsSample.

PRINCIPLES:
- Probes run concurrently, each bounded by its own timeout
- A failed context degrades only itself
- Health scores are a weighted combination of clipped signals
- The latest sample is swapped in atomically; readers never block

============================================================
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

from .clock import ClockProtocol, SystemClock
from .config import HealthNormalization, HealthWeights, ProbeConfig
from .events import EventBus, EventTopic
from .models import (
    AggregateMetrics,
    ContextDescriptor,
    ContextMetrics,
    ContextRole,
    ErrorEvent,
    ExecutionContext,
    HealthStatus,
    MessageEvent,
    MetricsSample,
    ProbeStatus,
    ROLE_STATE_FLAGS,
)
from .probe import ContextProbeAdapter, ProbeData, ProbeFailure, ProbeResult


logger = logging.getLogger(__name__)


# ============================================================
# BASE COLLECTOR
# ============================================================

class BaseCollector(ABC):
    """
    Base class for collectors.

    safe_collect() never raises.
    """

    def __init__(self, name: str, clock: Optional[ClockProtocol] = None):
        """Initialize collector."""
        self._name = name
        self._clock = clock or SystemClock()
        self._last_collection_time: Optional[datetime] = None
        self._collection_count = 0
        self._error_count = 0

    @property
    def name(self) -> str:
        """Collector name."""
        return self._name

    @abstractmethod
    async def collect(self) -> Any:
        """Collect data."""
        pass

    async def safe_collect(self) -> Any:
        """
        Safely collect data with error handling.

        Never throws, returns None on error.
        """
        try:
            self._last_collection_time = self._clock.now()
            self._collection_count += 1
            return await self.collect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._error_count += 1
            logger.error(f"Collector {self._name} error: {e}")
            return None

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "collections": self._collection_count,
            "errors": self._error_count,
            "last_collection_time": self._last_collection_time,
        }


# ============================================================
# HEALTH SCORING
# ============================================================

def _clip(value: float) -> float:
    return max(0.0, min(1.0, value))


class HealthScorer:
    """Weighted health score over normalized memory, latency and error signals."""

    def __init__(
        self,
        weights: Optional[HealthWeights] = None,
        normalization: Optional[HealthNormalization] = None,
    ):
        self._weights = weights or HealthWeights()
        self._norm = normalization or HealthNormalization()

    @property
    def normalization(self) -> HealthNormalization:
        return self._norm

    def score(
        self,
        memory_usage_mb: Optional[float],
        response_time_ms: Optional[float],
        error_count: int,
        role_issue_count: int = 0,
    ) -> float:
        """Score in [0, 1]. Unknown signals contribute no penalty."""
        penalty = 0.0
        if memory_usage_mb is not None:
            penalty += self._weights.memory * _clip(memory_usage_mb / self._norm.memory_ceiling_mb)
        if response_time_ms is not None:
            penalty += self._weights.response_time * _clip(response_time_ms / self._norm.response_ceiling_ms)
        penalty += self._weights.errors * _clip(error_count / self._norm.error_ceiling)
        penalty += self._norm.issue_penalty * role_issue_count
        return _clip(1.0 - penalty)

    def is_healthy(self, score: float) -> bool:
        return score > self._norm.healthy_threshold

    def status(self, score: float) -> HealthStatus:
        if score < self._norm.critical_threshold:
            return HealthStatus.CRITICAL
        if score < self._norm.degraded_threshold:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY


# ============================================================
# OBSERVATION PARSING
# ============================================================

def parse_timestamp(value: Any, default: datetime) -> datetime:
    """Bridge timestamps are epoch milliseconds or ISO strings."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return default
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return default
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return default


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_error_entry(entry: Dict[str, Any]) -> bool:
    return str(entry.get("level", entry.get("type", ""))).lower() == "error"


def _snapshot_is_empty(snapshot: Optional[Dict[str, Any]]) -> bool:
    if snapshot is None:
        return False
    return not snapshot or snapshot.get("nodeCount") == 0 or snapshot.get("nodes") == []


# ============================================================
# METRICS COLLECTOR
# ============================================================

class MetricsCollector(BaseCollector):
    """
    Runs sampling cycles across all tracked contexts.

    Single writer of MetricsSample and ExecutionContext state.
    """

    def __init__(
        self,
        adapter: ContextProbeAdapter,
        probe_config: Optional[ProbeConfig] = None,
        scorer: Optional[HealthScorer] = None,
        clock: Optional[ClockProtocol] = None,
        bus: Optional[EventBus] = None,
        history_size: int = 720,
    ):
        super().__init__("metrics", clock)
        self._adapter = adapter
        self._config = probe_config or ProbeConfig()
        self._scorer = scorer or HealthScorer()
        self._bus = bus or EventBus()

        self._descriptors: Dict[str, ContextDescriptor] = {}
        self._contexts: Dict[str, ExecutionContext] = {}
        self._failure_streaks: Dict[str, int] = {}

        self._latest: Optional[MetricsSample] = None
        self._history: Deque[MetricsSample] = deque(maxlen=history_size)
        self._sample_seq = 0
        self._observation_seq = 0

    # --------------------------------------------------------
    # CONTEXT TRACKING
    # --------------------------------------------------------

    def track(self, descriptor: ContextDescriptor) -> bool:
        """Start probing a context. Returns False if already tracked."""
        if descriptor.context_id in self._descriptors:
            return False
        self._descriptors[descriptor.context_id] = descriptor
        logger.info(f"Tracking context {descriptor.context_id} ({descriptor.role.value})")
        return True

    def track_context(self, context_id: str, role: ContextRole, url: Optional[str] = None) -> bool:
        return self.track(ContextDescriptor(context_id=context_id, role=role, url=url))

    async def discover(self) -> int:
        """Track every context the bridge announces. Returns new count."""
        descriptors = await self._adapter.list_contexts(self._config.timeout_seconds)
        return sum(1 for d in descriptors if self.track(d))

    @property
    def tracked(self) -> Tuple[ContextDescriptor, ...]:
        return tuple(self._descriptors.values())

    @property
    def contexts(self) -> Tuple[ExecutionContext, ...]:
        """Published execution context entities."""
        return tuple(self._contexts.values())

    def get_context(self, context_id: str) -> Optional[ExecutionContext]:
        return self._contexts.get(context_id)

    def role_of(self, context_id: str) -> Optional[ContextRole]:
        descriptor = self._descriptors.get(context_id)
        return descriptor.role if descriptor else None

    # --------------------------------------------------------
    # PUBLISHED STATE
    # --------------------------------------------------------

    @property
    def latest(self) -> Optional[MetricsSample]:
        return self._latest

    def history(self, limit: Optional[int] = None) -> List[MetricsSample]:
        """Retained samples, oldest first."""
        samples = list(self._history)
        if limit is not None:
            samples = samples[-limit:] if limit > 0 else []
        return samples

    # --------------------------------------------------------
    # SAMPLING CYCLE
    # --------------------------------------------------------

    async def collect(self) -> MetricsSample:
        """Run one sampling cycle and publish the resulting sample."""
        descriptors = list(self._descriptors.values())
        timeout = self._config.timeout_seconds

        results = await asyncio.gather(
            *(self._adapter.sample(d, timeout) for d in descriptors),
            return_exceptions=True,
        )

        now = self._clock.now()
        self._sample_seq += 1
        per_context: Dict[str, ContextMetrics] = {}
        network_latencies: List[float] = []
        messages: List[MessageEvent] = []
        errors: List[ErrorEvent] = []

        for descriptor, result in zip(descriptors, results):
            if isinstance(result, BaseException):
                result = ProbeFailure(reason=f"probe error: {result}")

            if isinstance(result, ProbeFailure):
                per_context[descriptor.context_id] = self._record_failure(descriptor, result, now)
                continue

            metrics = self._record_success(descriptor, result, now)
            try:
                context_latencies = self._network_latencies(result.data)
                context_messages = self._message_events(descriptor, result.data, now)
                context_errors = self._error_events(descriptor, result.data, now)
            except Exception as e:
                # Malformed observations degrade only this context
                logger.warning(f"Invalid observations from {descriptor.context_id}: {e}")
                metrics = replace(metrics, issues=metrics.issues + (f"invalid observations: {e}",))
            else:
                network_latencies.extend(context_latencies)
                messages.extend(context_messages)
                errors.extend(context_errors)
            per_context[descriptor.context_id] = metrics

        sample = MetricsSample(
            sample_id=self._sample_seq,
            timestamp=now,
            contexts=per_context,
            aggregate=self._aggregate(per_context, network_latencies),
        )

        # Publish atomically, then fan out observations
        self._latest = sample
        self._history.append(sample)

        for event in messages:
            self._bus.publish(EventTopic.MESSAGE_OBSERVED, event)
        for event in errors:
            self._bus.publish(EventTopic.ERROR_OBSERVED, event)
        self._bus.publish(EventTopic.SAMPLE_PUBLISHED, sample)

        return sample

    def _record_failure(
        self,
        descriptor: ContextDescriptor,
        result: ProbeFailure,
        now: datetime,
    ) -> ContextMetrics:
        cid = descriptor.context_id
        streak = self._failure_streaks.get(cid, 0) + 1
        self._failure_streaks[cid] = streak
        still_active = streak < self._config.inactive_after_failures and not result.context_gone

        entity = self._contexts.get(cid)
        if entity is not None:
            if entity.is_active and not still_active:
                logger.warning(f"Context {cid} marked inactive after {streak} failed probes: {result.reason}")
            self._contexts = {
                **self._contexts,
                cid: replace(
                    entity,
                    is_active=entity.is_active and still_active,
                    consecutive_failures=streak,
                ),
            }
            still_active = self._contexts[cid].is_active
        else:
            logger.warning(f"Probe failed for unregistered context {cid}: {result.reason}")

        return ContextMetrics(
            context_id=cid,
            role=descriptor.role,
            status=ProbeStatus.FAILURE,
            health_score=self._scorer.normalization.failure_score,
            is_healthy=False,
            health_status=HealthStatus.UNKNOWN,
            is_active=still_active,
            issues=(result.reason,),
        )

    def _record_success(
        self,
        descriptor: ContextDescriptor,
        result: ProbeResult,
        now: datetime,
    ) -> ContextMetrics:
        cid = descriptor.context_id
        data: ProbeData = result.data
        self._failure_streaks[cid] = 0

        entity = self._contexts.get(cid)
        if entity is None:
            entity = ExecutionContext(
                context_id=cid,
                role=descriptor.role,
                first_seen=now,
                last_activity=now,
                url=descriptor.url,
            )
            logger.info(f"Context {cid} registered on first successful probe")
        else:
            if not entity.is_active:
                logger.info(f"Context {cid} is active again")
            entity = replace(entity, is_active=True, consecutive_failures=0, last_activity=now)
        self._contexts = {**self._contexts, cid: entity}

        role_issues = self._role_issues(descriptor.role, data)
        issues = list(role_issues)

        failed_requests = sum(
            1 for entry in data.network
            if entry.get("failed") or (isinstance(entry.get("status"), int) and entry["status"] >= 400)
        )
        if failed_requests:
            issues.append(f"{failed_requests} failed network requests")
        if result.status == ProbeStatus.PARTIAL:
            issues.append(f"partial probe: {result.reason}")

        console_errors = sum(1 for entry in data.console if _is_error_entry(entry))
        error_count = max(console_errors, data.reported_error_count or 0)

        score = self._scorer.score(
            data.memory_usage_mb,
            data.response_time_ms,
            error_count,
            len(role_issues),
        )

        return ContextMetrics(
            context_id=cid,
            role=descriptor.role,
            status=result.status,
            health_score=score,
            is_healthy=self._scorer.is_healthy(score),
            health_status=self._scorer.status(score),
            is_active=True,
            memory_usage_mb=data.memory_usage_mb,
            response_time_ms=data.response_time_ms,
            error_count=error_count,
            cpu_usage=data.cpu_usage,
            throughput=data.throughput,
            issues=tuple(issues),
        )

    def _role_issues(self, role: ContextRole, data: ProbeData) -> List[str]:
        flag, issue = ROLE_STATE_FLAGS[role]
        if data.flags.get(flag) is False:
            return [issue]
        if role == ContextRole.UI_SURFACE and _snapshot_is_empty(data.snapshot):
            return [issue]
        return []

    # --------------------------------------------------------
    # OBSERVATIONS
    # --------------------------------------------------------

    def _next_observation_id(self, cid: str) -> str:
        self._observation_seq += 1
        return f"{cid}-{self._sample_seq}-{self._observation_seq}"

    def _network_latencies(self, data: ProbeData) -> List[float]:
        latencies = []
        for entry in data.network:
            duration = entry.get("durationMs")
            if _is_number(duration) and duration >= 0:
                latencies.append(float(duration))
        return latencies

    def _message_events(
        self,
        descriptor: ContextDescriptor,
        data: ProbeData,
        now: datetime,
    ) -> List[MessageEvent]:
        events = []
        for record in data.messages:
            target = record.get("target")
            if not target:
                continue
            latency = record.get("latencyMs")
            events.append(MessageEvent(
                source=str(record.get("source") or descriptor.context_id),
                target=str(target),
                timestamp=parse_timestamp(record.get("timestamp"), now),
                success=bool(record.get("success", True)),
                latency_ms=float(latency) if _is_number(latency) else None,
                error=record.get("error"),
                correlation_id=record.get("correlationId"),
                message_type=record.get("type"),
                payload=record.get("payload") if isinstance(record.get("payload"), dict) else None,
            ))
        return events

    def _error_events(
        self,
        descriptor: ContextDescriptor,
        data: ProbeData,
        now: datetime,
    ) -> List[ErrorEvent]:
        events = []
        for entry in data.console:
            if not _is_error_entry(entry):
                continue
            events.append(ErrorEvent(
                event_id=str(entry.get("id") or self._next_observation_id(descriptor.context_id)),
                context_id=descriptor.context_id,
                timestamp=parse_timestamp(entry.get("timestamp"), now),
                message=str(entry.get("text", "")),
                correlation_id=entry.get("correlationId"),
                handled=bool(entry.get("handled", False)),
                recovered=bool(entry.get("recovered", False)),
                error_type=entry.get("errorType"),
            ))
        return events

    # --------------------------------------------------------
    # AGGREGATION
    # --------------------------------------------------------

    def _aggregate(
        self,
        per_context: Dict[str, ContextMetrics],
        network_latencies: List[float],
    ) -> AggregateMetrics:
        metrics = list(per_context.values())
        memory = [m.memory_usage_mb for m in metrics if m.memory_usage_mb is not None]
        response = [m.response_time_ms for m in metrics if m.response_time_ms is not None]
        cpu = [m.cpu_usage for m in metrics if m.cpu_usage is not None]

        return AggregateMetrics(
            total_memory_mb=sum(memory),
            max_response_time_ms=max(response) if response else None,
            cpu_usage=sum(cpu) / len(cpu) if cpu else None,
            network_latency_ms=sum(network_latencies) / len(network_latencies) if network_latencies else None,
            overall_health=sum(m.health_score for m in metrics) / len(metrics) if metrics else None,
            healthy_contexts=sum(1 for m in metrics if m.is_healthy),
            total_contexts=len(metrics),
        )


__all__ = [
    "BaseCollector",
    "HealthScorer",
    "MetricsCollector",
    "parse_timestamp",
]
