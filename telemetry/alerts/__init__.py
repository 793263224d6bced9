"""
Alerts Package.

Alert rules and lifecycle management for the telemetry engine.
"""

from .rules import (
    AGGREGATE_TARGET,
    TriggerKind,
    RuleScope,
    Comparator,
    TrendDirection,
    LogicalOperator,
    compare,
    resolve_metric_path,
    EvaluationContext,
    RuleOutcome,
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
)
from .manager import (
    AlertHistory,
    AlertManager,
    NotificationHandler,
)


__all__ = [
    # Rule vocabulary
    "AGGREGATE_TARGET",
    "TriggerKind",
    "RuleScope",
    "Comparator",
    "TrendDirection",
    "LogicalOperator",
    "compare",
    "resolve_metric_path",

    # Evaluation
    "EvaluationContext",
    "RuleOutcome",

    # Rules
    "AlertRuleConfig",
    "AlertRule",
    "ThresholdRule",
    "TrendRule",
    "PatternRule",
    "CompositeRule",

    # Factory
    "build_rule",
    "rule_from_dict",
    "load_rules",
    "get_default_rules",

    # Manager
    "AlertHistory",
    "AlertManager",
    "NotificationHandler",
]
