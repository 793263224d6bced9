"""
Telemetry & Alerting Package.

============================================================
PURPOSE
============================================================
Continuous health telemetry for a multi-context application
observed through a remote instrumentation bridge.

PRINCIPLES:
1. OBSERVATIONAL - Probe failures degrade one context, never a cycle
2. IMMUTABLE - Components publish fully-formed values; readers never block
3. INJECTED - Every component receives its collaborators; no globals
4. BOUNDED - Histories, rings and suppression windows are all capped
5. ISOLATED - One failing rule, handler or action never blocks the rest

============================================================
COMPONENTS
============================================================
- ContextProbeAdapter      bridge calls -> ProbeResult
- MetricsCollector         one MetricsSample per sampling cycle
- AlertManager             rule evaluation and alert lifecycle
- RecoveryExecutor         suppressed corrective actions
- MessageFlowTracker       per-route message aggregates
- ErrorPropagationTracker  cross-context error chains
- BottleneckDetector       sustained degradation per context
- DashboardAggregator      immutable snapshots for presentation
- TelemetryEngine          wiring plus the three periodic loops

============================================================
"""

from .clock import (
    ClockProtocol,
    SystemClock,
    MockClock,
)

from .exceptions import (
    Severity,
    ErrorClassification,
    TelemetryException,
    ConfigurationError,
    ProbeError,
    ProbeTimeout,
    ProbeUnavailable,
    ContextGone,
    InvalidMetric,
    RuleEvaluationError,
    RecoveryActionFailure,
)

from .config import (
    RetryPolicy,
    ProbeConfig,
    HealthWeights,
    HealthNormalization,
    AlertConfig,
    RecoveryConfig,
    FlowConfig,
    PropagationConfig,
    BottleneckConfig,
    DashboardConfig,
    SchedulerConfig,
    TelemetryConfig,
)

from .models import (
    # Contexts
    ContextRole,
    ContextDescriptor,
    ExecutionContext,

    # Samples
    ProbeStatus,
    HealthStatus,
    ContextMetrics,
    AggregateMetrics,
    MetricsSample,

    # Messaging
    FailureType,
    MessageEvent,
    Route,
    FlaggedRoute,

    # Errors
    ChainResolution,
    ErrorEvent,
    PropagationChain,

    # Bottlenecks
    BottleneckType,
    BottleneckSeverity,
    Bottleneck,
    BottleneckReport,

    # Alerts
    AlertSeverity,
    AlertCategory,
    AlertState,
    Alert,

    # Recovery
    RecoveryActionType,
    RecoveryOutcome,
    RecoveryAction,

    # Views
    DashboardSnapshot,
)

from .events import EventBus, EventTopic

from .bridge import InstrumentationBridge, HttpInstrumentationBridge

from .probe import (
    ProbeData,
    ProbeSuccess,
    ProbePartial,
    ProbeFailure,
    ProbeResult,
    ContextProbeAdapter,
)

from .collectors import (
    BaseCollector,
    HealthScorer,
    MetricsCollector,
)

from .flow import MessageFlowTracker, classify_failure, sanitize_payload

from .propagation import ErrorPropagationTracker

from .bottlenecks import BottleneckDetector

from .alerts import (
    TriggerKind,
    RuleScope,
    Comparator,
    TrendDirection,
    LogicalOperator,
    EvaluationContext,
    AlertRuleConfig,
    AlertRule,
    ThresholdRule,
    TrendRule,
    PatternRule,
    CompositeRule,
    build_rule,
    rule_from_dict,
    load_rules,
    get_default_rules,
    AlertHistory,
    AlertManager,
    NotificationHandler,
)

from .recovery import RecoveryPolicy, PolicyEntry, RecoveryExecutor

from .dashboard_service import DashboardAggregator

from .engine import TelemetryEngine

from .api import TelemetryEncoder, create_telemetry_app, setup_telemetry_routes

from .notifications import (
    AlertFormatter,
    WebhookRateLimiter,
    WebhookNotifier,
    create_webhook_handler,
)


__all__ = [
    # Clock
    "ClockProtocol",
    "SystemClock",
    "MockClock",

    # Exceptions
    "Severity",
    "ErrorClassification",
    "TelemetryException",
    "ConfigurationError",
    "ProbeError",
    "ProbeTimeout",
    "ProbeUnavailable",
    "ContextGone",
    "InvalidMetric",
    "RuleEvaluationError",
    "RecoveryActionFailure",

    # Config
    "RetryPolicy",
    "ProbeConfig",
    "HealthWeights",
    "HealthNormalization",
    "AlertConfig",
    "RecoveryConfig",
    "FlowConfig",
    "PropagationConfig",
    "BottleneckConfig",
    "DashboardConfig",
    "SchedulerConfig",
    "TelemetryConfig",

    # Models
    "ContextRole",
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

    # Bus
    "EventBus",
    "EventTopic",

    # Bridge / probe
    "InstrumentationBridge",
    "HttpInstrumentationBridge",
    "ProbeData",
    "ProbeSuccess",
    "ProbePartial",
    "ProbeFailure",
    "ProbeResult",
    "ContextProbeAdapter",

    # Collection
    "BaseCollector",
    "HealthScorer",
    "MetricsCollector",

    # Trackers
    "MessageFlowTracker",
    "classify_failure",
    "sanitize_payload",
    "ErrorPropagationTracker",
    "BottleneckDetector",

    # Alerts
    "TriggerKind",
    "RuleScope",
    "Comparator",
    "TrendDirection",
    "LogicalOperator",
    "EvaluationContext",
    "AlertRuleConfig",
    "AlertRule",
    "ThresholdRule",
    "TrendRule",
    "PatternRule",
    "CompositeRule",
    "build_rule",
    "rule_from_dict",
    "load_rules",
    "get_default_rules",
    "AlertHistory",
    "AlertManager",
    "NotificationHandler",

    # Recovery
    "RecoveryPolicy",
    "PolicyEntry",
    "RecoveryExecutor",

    # Dashboard / engine / API
    "DashboardAggregator",
    "TelemetryEngine",
    "TelemetryEncoder",
    "create_telemetry_app",
    "setup_telemetry_routes",

    # Notifications
    "AlertFormatter",
    "WebhookRateLimiter",
    "WebhookNotifier",
    "create_webhook_handler",
]
