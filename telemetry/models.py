"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                    TELEMETRY & ALERTING ENGINE - DATA MODEL                  ║
║                                                                              ║
║  Every value a component publishes is immutable.                             ║
║  Readers never block writers; writers swap in fresh values.                  ║
║                                                                              ║
╚══════════════════════════════════════════════════════════════════════════════╝

============================================================
CORE PRINCIPLES
============================================================

1. IMMUTABLE PUBLICATION
   - MetricsSample, Route, PropagationChain, Bottleneck, Alert,
     RecoveryAction and DashboardSnapshot are frozen dataclasses
   - Updates produce new instances

2. EXPLICIT UNKNOWNS
   - A failed probe yields None metrics plus an issue string
   - Never a fabricated value

3. CLOSED VOCABULARIES
   - Context roles, alert states and bottleneck types are enums

============================================================
"""

from enum import Enum
from datetime import datetime
from types import MappingProxyType
from typing import Optional, Dict, Any, List, Mapping, Tuple
from dataclasses import dataclass, field, replace

from .exceptions import InvalidMetric


# ============================================================
# EXECUTION CONTEXTS
# ============================================================

class ContextRole(Enum):
    """Logical role of an isolated runtime surface."""

    BACKGROUND_WORKER = "background-worker"
    PAGE_SCRIPT = "page-script"
    OFFSCREEN_WORKER = "offscreen-worker"
    UI_SURFACE = "ui-surface"


# Bridge descriptor "type" values accepted for each role
ROLE_ALIASES: Dict[str, ContextRole] = {
    "background-worker": ContextRole.BACKGROUND_WORKER,
    "background": ContextRole.BACKGROUND_WORKER,
    "service_worker": ContextRole.BACKGROUND_WORKER,
    "service-worker": ContextRole.BACKGROUND_WORKER,
    "worker": ContextRole.BACKGROUND_WORKER,
    "page-script": ContextRole.PAGE_SCRIPT,
    "page": ContextRole.PAGE_SCRIPT,
    "content-script": ContextRole.PAGE_SCRIPT,
    "content_script": ContextRole.PAGE_SCRIPT,
    "offscreen-worker": ContextRole.OFFSCREEN_WORKER,
    "offscreen": ContextRole.OFFSCREEN_WORKER,
    "offscreen_document": ContextRole.OFFSCREEN_WORKER,
    "ui-surface": ContextRole.UI_SURFACE,
    "ui": ContextRole.UI_SURFACE,
    "popup": ContextRole.UI_SURFACE,
    "options": ContextRole.UI_SURFACE,
    "side_panel": ContextRole.UI_SURFACE,
}

# Descriptor attributes each role must carry
ROLE_REQUIRED_ATTRIBUTES: Dict[ContextRole, Tuple[str, ...]] = {
    ContextRole.BACKGROUND_WORKER: ("id",),
    ContextRole.PAGE_SCRIPT: ("id", "url"),
    ContextRole.OFFSCREEN_WORKER: ("id",),
    ContextRole.UI_SURFACE: ("id", "url"),
}

# Payload flag checked per role, with the issue reported when it is false
ROLE_STATE_FLAGS: Dict[ContextRole, Tuple[str, str]] = {
    ContextRole.BACKGROUND_WORKER: ("registrationActive", "worker registration inactive"),
    ContextRole.PAGE_SCRIPT: ("injected", "page script not injected"),
    ContextRole.OFFSCREEN_WORKER: ("documentReady", "offscreen document not ready"),
    ContextRole.UI_SURFACE: ("rendered", "ui surface not rendered"),
}


@dataclass(frozen=True)
class ContextDescriptor:
    """A context as announced by the instrumentation bridge, validated."""

    context_id: str
    role: ContextRole
    url: Optional[str] = None
    title: Optional[str] = None

    @classmethod
    def from_bridge(cls, raw: Any) -> "ContextDescriptor":
        """
        Validate a raw bridge descriptor.

        Raises InvalidMetric when the record does not fit the role schema.
        """
        if not isinstance(raw, dict):
            raise InvalidMetric("Context descriptor must be a mapping", actual=raw)

        kind = str(raw.get("type", "")).strip().lower()
        role = ROLE_ALIASES.get(kind)
        if role is None:
            raise InvalidMetric(f"Unknown context type: {kind!r}", field="type", actual=kind)

        for attribute in ROLE_REQUIRED_ATTRIBUTES[role]:
            if not raw.get(attribute):
                raise InvalidMetric(
                    f"{role.value} descriptor missing {attribute!r}",
                    field=attribute,
                )

        return cls(
            context_id=str(raw["id"]),
            role=role,
            url=raw.get("url"),
            title=raw.get("title"),
        )


@dataclass(frozen=True)
class ExecutionContext:
    """
    Identity and liveness of one tracked context.

    Created on first successful probe and kept for the whole session.
    """

    context_id: str
    role: ContextRole
    first_seen: datetime
    last_activity: datetime
    is_active: bool = True
    consecutive_failures: int = 0
    url: Optional[str] = None


# ============================================================
# METRICS
# ============================================================

class ProbeStatus(Enum):
    """Outcome of one probe."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class HealthStatus(Enum):
    """Bucketed health of a context or of the whole application."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ContextMetrics:
    """Per-context metrics inside one sample."""

    context_id: str
    role: ContextRole
    status: ProbeStatus
    health_score: float
    is_healthy: bool
    health_status: HealthStatus
    is_active: bool = True
    memory_usage_mb: Optional[float] = None
    response_time_ms: Optional[float] = None
    error_count: int = 0
    cpu_usage: Optional[float] = None
    throughput: Optional[float] = None
    issues: Tuple[str, ...] = ()

    def as_metrics(self) -> Dict[str, Any]:
        """Flat view used for rule metric paths."""
        return {
            "context_id": self.context_id,
            "role": self.role.value,
            "status": self.status.value,
            "health_score": self.health_score,
            "is_healthy": self.is_healthy,
            "health_status": self.health_status.value,
            "is_active": self.is_active,
            "memory_usage_mb": self.memory_usage_mb,
            "response_time_ms": self.response_time_ms,
            "error_count": self.error_count,
            "cpu_usage": self.cpu_usage,
            "throughput": self.throughput,
            "issues": list(self.issues),
        }


@dataclass(frozen=True)
class AggregateMetrics:
    """Application-wide figures derived from one sample."""

    total_memory_mb: float = 0.0
    max_response_time_ms: Optional[float] = None
    cpu_usage: Optional[float] = None
    network_latency_ms: Optional[float] = None
    overall_health: Optional[float] = None
    healthy_contexts: int = 0
    total_contexts: int = 0

    def as_metrics(self) -> Dict[str, Any]:
        return {
            "total_memory_mb": self.total_memory_mb,
            "max_response_time_ms": self.max_response_time_ms,
            "cpu_usage": self.cpu_usage,
            "network_latency_ms": self.network_latency_ms,
            "overall_health": self.overall_health,
            "healthy_contexts": self.healthy_contexts,
            "total_contexts": self.total_contexts,
        }


@dataclass(frozen=True)
class MetricsSample:
    """
    Immutable result of one sampling cycle.

    Consumed read-only by every downstream component.
    """

    sample_id: int
    timestamp: datetime
    contexts: Mapping[str, ContextMetrics]
    aggregate: AggregateMetrics

    def __post_init__(self) -> None:
        for metrics in self.contexts.values():
            if not 0.0 <= metrics.health_score <= 1.0:
                raise InvalidMetric(
                    f"Health score out of range for {metrics.context_id}",
                    field="health_score",
                    actual=metrics.health_score,
                )
        object.__setattr__(self, "contexts", MappingProxyType(dict(self.contexts)))

    def get(self, context_id: str) -> Optional[ContextMetrics]:
        """Metrics for one context, if it was sampled."""
        return self.contexts.get(context_id)

    def as_metrics(self) -> Dict[str, Any]:
        view = self.aggregate.as_metrics()
        view["contexts"] = {cid: m.as_metrics() for cid, m in self.contexts.items()}
        return view


# ============================================================
# MESSAGE FLOW
# ============================================================

class FailureType(Enum):
    """Classified cause of a failed inter-context message."""

    TIMEOUT = "timeout"
    ROUTING_ERROR = "routing_error"
    SERIALIZATION_ERROR = "serialization_error"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class MessageEvent:
    """One observed directed message between two contexts."""

    source: str
    target: str
    timestamp: datetime
    success: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    correlation_id: Optional[str] = None
    message_type: Optional[str] = None
    payload: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class Route:
    """
    Cumulative aggregate of one directed channel.

    successful_messages + failed_messages == total_messages always holds.
    """

    source: str
    target: str
    total_messages: int = 0
    successful_messages: int = 0
    failed_messages: int = 0
    average_latency_ms: Optional[float] = None
    last_message_at: Optional[datetime] = None
    failure_types: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.successful_messages + self.failed_messages != self.total_messages:
            raise InvalidMetric(
                f"Route {self.key} counters do not add up",
                field="total_messages",
                actual=self.total_messages,
            )
        object.__setattr__(self, "failure_types", MappingProxyType(dict(self.failure_types)))

    @property
    def key(self) -> str:
        return f"{self.source}->{self.target}"

    @property
    def success_rate(self) -> float:
        """Fraction of successful messages (1.0 when nothing was sent)."""
        if self.total_messages == 0:
            return 1.0
        return self.successful_messages / self.total_messages

    @property
    def failure_rate(self) -> float:
        return 1.0 - self.success_rate

    def with_message(
        self,
        event: MessageEvent,
        smoothing: float,
        failure_type: Optional[FailureType] = None,
    ) -> "Route":
        """Return a new aggregate that includes one more message."""
        average = self.average_latency_ms
        if event.latency_ms is not None:
            if average is None:
                average = event.latency_ms
            else:
                average = smoothing * event.latency_ms + (1.0 - smoothing) * average

        failure_types = dict(self.failure_types)
        if not event.success:
            kind = (failure_type or FailureType.UNKNOWN).value
            failure_types[kind] = failure_types.get(kind, 0) + 1

        return replace(
            self,
            total_messages=self.total_messages + 1,
            successful_messages=self.successful_messages + (1 if event.success else 0),
            failed_messages=self.failed_messages + (0 if event.success else 1),
            average_latency_ms=average,
            last_message_at=event.timestamp,
            failure_types=failure_types,
        )

    def as_metrics(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "total_messages": self.total_messages,
            "successful_messages": self.successful_messages,
            "failed_messages": self.failed_messages,
            "success_rate": self.success_rate,
            "failure_rate": self.failure_rate,
            "average_latency_ms": self.average_latency_ms,
        }


@dataclass(frozen=True)
class FlaggedRoute:
    """A route recommended for attention, with the reason."""

    route: Route
    reason: str


# ============================================================
# ERROR PROPAGATION
# ============================================================

class ChainResolution(Enum):
    """How a propagation chain ended."""

    PENDING = "pending"
    HANDLED = "handled"
    RECOVERED = "recovered"
    UNHANDLED = "unhandled"


@dataclass(frozen=True)
class ErrorEvent:
    """One error observed in one context."""

    event_id: str
    context_id: str
    timestamp: datetime
    message: str
    correlation_id: Optional[str] = None
    handled: bool = False
    recovered: bool = False
    error_type: Optional[str] = None


@dataclass(frozen=True)
class PropagationChain:
    """
    Reconstructed path of an error across contexts.

    Events are kept ordered by timestamp.
    """

    chain_id: str
    events: Tuple[ErrorEvent, ...]
    correlation_id: Optional[str] = None
    finalized: bool = False

    @property
    def origin_error_id(self) -> str:
        return self.events[0].event_id

    @property
    def contexts(self) -> Tuple[str, ...]:
        """Contexts traversed in order, consecutive repeats collapsed."""
        path: List[str] = []
        for event in self.events:
            if not path or path[-1] != event.context_id:
                path.append(event.context_id)
        return tuple(path)

    @property
    def length(self) -> int:
        return len(self.contexts)

    @property
    def handled(self) -> bool:
        return any(e.handled or e.recovered for e in self.events)

    @property
    def resolution(self) -> ChainResolution:
        if any(e.recovered for e in self.events):
            return ChainResolution.RECOVERED
        if self.handled:
            return ChainResolution.HANDLED
        if not self.finalized:
            return ChainResolution.PENDING
        return ChainResolution.UNHANDLED

    @property
    def started_at(self) -> datetime:
        return self.events[0].timestamp

    @property
    def last_event_at(self) -> datetime:
        return self.events[-1].timestamp

    @property
    def path(self) -> str:
        return " -> ".join(self.contexts)


# ============================================================
# BOTTLENECKS
# ============================================================

class BottleneckType(Enum):
    MEMORY = "memory"
    CPU = "cpu"
    LATENCY = "latency"
    THROUGHPUT = "throughput"


class BottleneckSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Bottleneck:
    """A sustained degradation detected in one analysis pass."""

    context_id: str
    bottleneck_type: BottleneckType
    severity: BottleneckSeverity
    estimated_slowdown_pct: float
    baseline_value: float
    trailing_value: float
    window_start: datetime
    window_end: datetime
    consecutive_passes: int
    recommendations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BottleneckReport:
    """Output of one analysis pass."""

    generated_at: datetime
    bottlenecks: Tuple[Bottleneck, ...] = ()
    performance_score: float = 100.0
    memory_growth_mb_per_min: Mapping[str, float] = field(default_factory=dict)
    synchronized_degradation: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "memory_growth_mb_per_min", MappingProxyType(dict(self.memory_growth_mb_per_min))
        )


# ============================================================
# ALERTS
# ============================================================

class AlertSeverity(Enum):
    """Alert severity tiers, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def escalated(self) -> "AlertSeverity":
        """One tier higher, capped at CRITICAL."""
        return _SEVERITY_ORDER[min(self.rank + 1, len(_SEVERITY_ORDER) - 1)]


_SEVERITY_ORDER = [
    AlertSeverity.LOW,
    AlertSeverity.MEDIUM,
    AlertSeverity.HIGH,
    AlertSeverity.CRITICAL,
]


class AlertCategory(Enum):
    """Alert categories."""

    MEMORY = "memory"
    PERFORMANCE = "performance"
    ERRORS = "errors"
    AVAILABILITY = "availability"
    MESSAGING = "messaging"
    HEALTH = "health"


class AlertState(Enum):
    """Lifecycle state of an alert."""

    PENDING = "pending"
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    AUTO_RESOLVED = "auto_resolved"
    RESOLVED = "resolved"

    @property
    def is_open(self) -> bool:
        return self in (AlertState.ACTIVE, AlertState.ACKNOWLEDGED)

    @property
    def is_closed(self) -> bool:
        return self in (AlertState.AUTO_RESOLVED, AlertState.RESOLVED)


@dataclass(frozen=True)
class Alert:
    """
    One alert for a (rule, target) pair.

    Re-triggers inside the cooldown update last_triggered_at on the same
    alert instead of creating a new one.
    """

    alert_id: str
    rule_id: str
    rule_name: str
    target: str
    severity: AlertSeverity
    category: AlertCategory
    message: str
    state: AlertState
    first_triggered_at: datetime
    last_triggered_at: datetime
    value: Any = None
    escalations: int = 0
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


# ============================================================
# RECOVERY
# ============================================================

class RecoveryActionType(Enum):
    CLEAR_CACHE = "clear-cache"
    FORCE_GC = "force-gc"
    RESTART_CONTEXT = "restart-context"
    REDUCE_POLLING = "reduce-polling"
    RECONNECT_BRIDGE = "reconnect-bridge"


class RecoveryOutcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class RecoveryAction:
    """Record of one executed corrective action."""

    action_id: str
    action_type: RecoveryActionType
    target: str
    alert_id: str
    requested_at: datetime
    completed_at: datetime
    outcome: RecoveryOutcome
    error: Optional[str] = None


# ============================================================
# DASHBOARD
# ============================================================

@dataclass(frozen=True)
class DashboardSnapshot:
    """
    Immutable composite of the latest state of every component.

    sequence and generated_at are excluded from equality so that two
    snapshots built from unchanged state compare equal.
    """

    sample: Optional[MetricsSample]
    overall_status: HealthStatus
    contexts: Tuple[ExecutionContext, ...]
    active_alerts: Tuple[Alert, ...]
    alert_statistics: Mapping[str, Any]
    routes: Tuple[Route, ...]
    flagged_routes: Tuple[FlaggedRoute, ...]
    recent_chains: Tuple[PropagationChain, ...]
    unhandled_chains: Tuple[PropagationChain, ...]
    bottlenecks: Tuple[Bottleneck, ...]
    performance_score: float
    recent_recoveries: Tuple[RecoveryAction, ...]
    recommendations: Tuple[str, ...]
    sequence: int = field(default=0, compare=False)
    generated_at: Optional[datetime] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "alert_statistics", MappingProxyType(dict(self.alert_statistics)))


__all__ = [
    "ContextRole",
    "ROLE_ALIASES",
    "ROLE_REQUIRED_ATTRIBUTES",
    "ROLE_STATE_FLAGS",
    "ContextDescriptor",
    "ExecutionContext",
    "ProbeStatus",
    "HealthStatus",
    "ContextMetrics",
    "AggregateMetrics",
    "MetricsSample",
    "FailureType",
    "MessageEvent",
    "Route",
    "FlaggedRoute",
    "ChainResolution",
    "ErrorEvent",
    "PropagationChain",
    "BottleneckType",
    "BottleneckSeverity",
    "Bottleneck",
    "BottleneckReport",
    "AlertSeverity",
    "AlertCategory",
    "AlertState",
    "Alert",
    "RecoveryActionType",
    "RecoveryOutcome",
    "RecoveryAction",
    "DashboardSnapshot",
]
