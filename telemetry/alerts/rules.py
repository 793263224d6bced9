"""
Alert Rules.

============================================================
PURPOSE
============================================================
Declarative alert rules evaluated against one published
MetricsSample (plus retained history and the route table).

RULE KINDS:
- threshold: scalar metric compared to a limit
- trend: monotonic movement across a sliding window
- pattern: ordered sequence of issue strings within a window
- composite: AND/OR of child rules

SCOPES:
- context: every sampled context, or one named context
- aggregate: the application-wide figures
- route: every observed route, or one named route key

Rules are immutable at runtime. Lifecycle (pending, active,
cooldown, auto-resolve) lives in the AlertManager.

============================================================
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..exceptions import ConfigurationError, RuleEvaluationError
from ..models import AlertCategory, AlertSeverity, MetricsSample, Route


logger = logging.getLogger(__name__)


AGGREGATE_TARGET = "aggregate"


# ============================================================
# RULE VOCABULARY
# ============================================================

class TriggerKind(Enum):
    THRESHOLD = "threshold"
    TREND = "trend"
    PATTERN = "pattern"
    COMPOSITE = "composite"


class RuleScope(Enum):
    CONTEXT = "context"
    AGGREGATE = "aggregate"
    ROUTE = "route"


class Comparator(Enum):
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="
    NE = "!="
    CONTAINS = "contains"
    MATCHES = "matches"


class TrendDirection(Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"


class LogicalOperator(Enum):
    AND = "and"
    OR = "or"


def compare(value: Any, comparator: Comparator, limit: Any) -> bool:
    """
    Apply a comparator.

    A missing value never satisfies a comparison. Incomparable types
    raise TypeError, which the rule reports as an evaluation error.
    """
    if value is None:
        return False

    if comparator == Comparator.GT:
        return value > limit
    if comparator == Comparator.LT:
        return value < limit
    if comparator == Comparator.GTE:
        return value >= limit
    if comparator == Comparator.LTE:
        return value <= limit
    if comparator == Comparator.EQ:
        return value == limit
    if comparator == Comparator.NE:
        return value != limit
    if comparator == Comparator.CONTAINS:
        if isinstance(value, str):
            return str(limit) in value
        return any(str(limit) in str(item) for item in value)
    if comparator == Comparator.MATCHES:
        pattern = re.compile(str(limit))
        if isinstance(value, str):
            return pattern.search(value) is not None
        return any(pattern.search(str(item)) for item in value)

    raise TypeError(f"Unsupported comparator: {comparator}")


def resolve_metric_path(view: Any, path: str) -> Any:
    """
    Resolve a dot-notation path against nested mappings and lists.

    "length" on a list yields its size; numeric parts index lists.
    Missing segments resolve to None.
    """
    current = view
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)):
            if part == "length":
                current = len(current)
            elif part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return None
        else:
            return None
    return current


# ============================================================
# EVALUATION INPUT / OUTPUT
# ============================================================

@dataclass(frozen=True)
class EvaluationContext:
    """
    Everything a rule may read during one evaluation cycle.

    sample is the freshly published sample; history is oldest first
    and ends with sample.
    """

    sample: MetricsSample
    history: Tuple[MetricsSample, ...] = ()
    routes: Tuple[Route, ...] = ()

    @property
    def now(self):
        return self.sample.timestamp

    def window(self, seconds: float) -> List[MetricsSample]:
        """Samples within the last `seconds`, oldest first, ending with sample."""
        start = self.now - timedelta(seconds=seconds)
        samples = [
            s for s in self.history
            if start <= s.timestamp <= self.now and s.sample_id != self.sample.sample_id
        ]
        return samples + [self.sample]

    def route(self, key: str) -> Optional[Route]:
        for route in self.routes:
            if route.key == key:
                return route
        return None

    def targets(self, scope: RuleScope, target: Optional[str]) -> List[str]:
        if scope == RuleScope.AGGREGATE:
            return [AGGREGATE_TARGET]
        if scope == RuleScope.ROUTE:
            available = [r.key for r in self.routes]
        else:
            available = sorted(self.sample.contexts)
        if target is None:
            return available
        return [target] if target in available else []

    def view(
        self,
        scope: RuleScope,
        target: str,
        sample: Optional[MetricsSample] = None,
    ) -> Optional[Dict[str, Any]]:
        """Flat metric view of one target in a sample (default: latest)."""
        sample = sample or self.sample
        if scope == RuleScope.AGGREGATE:
            return sample.as_metrics()
        if scope == RuleScope.ROUTE:
            route = self.route(target)
            return route.as_metrics() if route else None
        metrics = sample.get(target)
        return metrics.as_metrics() if metrics else None


@dataclass(frozen=True)
class RuleOutcome:
    """Result of evaluating one rule for one target."""

    triggered: bool
    value: Any = None
    detail: str = ""


# ============================================================
# RULE CONFIG
# ============================================================

@dataclass(frozen=True)
class AlertRuleConfig:
    """Immutable rule definition."""

    rule_id: str
    rule_name: str
    kind: TriggerKind
    severity: AlertSeverity
    category: AlertCategory
    scope: RuleScope = RuleScope.CONTEXT
    target: Optional[str] = None
    description: str = ""
    enabled: bool = True

    # Seconds before a distinct alert may be raised again
    cooldown_seconds: float = 60.0
    # Consecutive true cycles before a pending alert activates
    trigger_after_cycles: int = 1

    # Threshold
    metric_path: Optional[str] = None
    comparator: Optional[Comparator] = None
    limit: Any = None

    # Trend / pattern
    window_seconds: float = 300.0
    direction: TrendDirection = TrendDirection.INCREASING
    min_delta: float = 0.0
    min_points: int = 3
    pattern: Tuple[str, ...] = ()

    # Composite
    operator: LogicalOperator = LogicalOperator.AND


# ============================================================
# RULES
# ============================================================

class AlertRule(ABC):
    """
    Base class for alert rules.

    Rules are stateless: the same inputs always give the same outcomes.
    """

    kind: TriggerKind

    def __init__(self, config: AlertRuleConfig):
        if config.kind != self.kind:
            raise ConfigurationError(
                f"Rule {config.rule_id} is {config.kind.value}, expected {self.kind.value}",
                config_key="kind",
                actual_value=config.kind.value,
            )
        if config.cooldown_seconds < 0:
            raise ConfigurationError(
                f"Rule {config.rule_id} has a negative cooldown",
                config_key="cooldown_seconds",
                actual_value=config.cooldown_seconds,
            )
        if config.trigger_after_cycles < 1:
            raise ConfigurationError(
                f"Rule {config.rule_id} needs trigger_after_cycles >= 1",
                config_key="trigger_after_cycles",
                actual_value=config.trigger_after_cycles,
            )
        self.config = config
        self.validate()

    @property
    def rule_id(self) -> str:
        return self.config.rule_id

    def validate(self) -> None:
        """Kind-specific config checks."""

    @abstractmethod
    def check(self, ctx: EvaluationContext, target: str) -> RuleOutcome:
        """Evaluate the condition for one target."""

    def evaluate(self, ctx: EvaluationContext) -> Dict[str, RuleOutcome]:
        """
        Evaluate the rule for every target in scope.

        Any failure is raised as RuleEvaluationError so the caller can
        skip this rule for the cycle.
        """
        outcomes: Dict[str, RuleOutcome] = {}
        for target in ctx.targets(self.config.scope, self.config.target):
            try:
                outcomes[target] = self.check(ctx, target)
            except RuleEvaluationError:
                raise
            except Exception as e:
                raise RuleEvaluationError(
                    f"Rule {self.rule_id} failed on {target}: {e}",
                    rule_id=self.rule_id,
                    target=target,
                    cause=e,
                ) from e
        return outcomes

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.rule_id!r})"


class ThresholdRule(AlertRule):
    """Scalar metric compared to a limit."""

    kind = TriggerKind.THRESHOLD

    def validate(self) -> None:
        if not self.config.metric_path or self.config.comparator is None:
            raise ConfigurationError(
                f"Threshold rule {self.rule_id} needs metric_path and comparator",
                config_key="metric_path",
            )

    def check(self, ctx: EvaluationContext, target: str) -> RuleOutcome:
        cfg = self.config
        value = resolve_metric_path(ctx.view(cfg.scope, target), cfg.metric_path)
        triggered = compare(value, cfg.comparator, cfg.limit)
        return RuleOutcome(
            triggered=triggered,
            value=value,
            detail=f"{cfg.metric_path}={value} {cfg.comparator.value} {cfg.limit} on {target}",
        )


class TrendRule(AlertRule):
    """Monotonic movement of a metric across a window by at least min_delta."""

    kind = TriggerKind.TREND

    def validate(self) -> None:
        cfg = self.config
        if not cfg.metric_path:
            raise ConfigurationError(f"Trend rule {self.rule_id} needs metric_path", config_key="metric_path")
        if cfg.scope == RuleScope.ROUTE:
            raise ConfigurationError(
                f"Trend rule {self.rule_id} cannot use route scope",
                config_key="scope",
                actual_value=cfg.scope.value,
            )
        if cfg.min_points < 2:
            raise ConfigurationError(
                f"Trend rule {self.rule_id} needs min_points >= 2",
                config_key="min_points",
                actual_value=cfg.min_points,
            )

    def check(self, ctx: EvaluationContext, target: str) -> RuleOutcome:
        cfg = self.config
        series = []
        for sample in ctx.window(cfg.window_seconds):
            value = resolve_metric_path(ctx.view(cfg.scope, target, sample), cfg.metric_path)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                series.append(value)

        if len(series) < cfg.min_points:
            return RuleOutcome(triggered=False, detail=f"{len(series)} points for {cfg.metric_path}")

        pairs = list(zip(series, series[1:]))
        if cfg.direction == TrendDirection.INCREASING:
            monotonic = all(b >= a for a, b in pairs)
            delta = series[-1] - series[0]
        else:
            monotonic = all(b <= a for a, b in pairs)
            delta = series[0] - series[-1]

        triggered = monotonic and delta > 0 and delta >= cfg.min_delta
        return RuleOutcome(
            triggered=triggered,
            value=series[-1],
            detail=(
                f"{cfg.metric_path} {cfg.direction.value} by {delta:g} "
                f"over {cfg.window_seconds:g}s on {target}"
            ),
        )


class PatternRule(AlertRule):
    """Ordered sequence of issue substrings seen within a window."""

    kind = TriggerKind.PATTERN

    def validate(self) -> None:
        cfg = self.config
        if not cfg.pattern:
            raise ConfigurationError(f"Pattern rule {self.rule_id} needs a pattern", config_key="pattern")
        if cfg.scope == RuleScope.ROUTE:
            raise ConfigurationError(
                f"Pattern rule {self.rule_id} cannot use route scope",
                config_key="scope",
                actual_value=cfg.scope.value,
            )

    def _issues(self, ctx: EvaluationContext, target: str) -> List[str]:
        issues: List[str] = []
        for sample in ctx.window(self.config.window_seconds):
            if self.config.scope == RuleScope.AGGREGATE:
                for cid in sorted(sample.contexts):
                    issues.extend(sample.contexts[cid].issues)
            else:
                metrics = sample.get(target)
                if metrics is not None:
                    issues.extend(metrics.issues)
        return issues

    def check(self, ctx: EvaluationContext, target: str) -> RuleOutcome:
        pattern = [p.lower() for p in self.config.pattern]
        matched = 0
        for issue in self._issues(ctx, target):
            if matched < len(pattern) and pattern[matched] in issue.lower():
                matched += 1

        return RuleOutcome(
            triggered=matched == len(pattern),
            value=matched,
            detail=f"matched {matched}/{len(pattern)} of {list(self.config.pattern)} on {target}",
        )


class CompositeRule(AlertRule):
    """AND/OR combination of child rules sharing one scope."""

    kind = TriggerKind.COMPOSITE

    def __init__(self, config: AlertRuleConfig, children: List[AlertRule]):
        self.children = list(children)
        super().__init__(config)

    def validate(self) -> None:
        if not self.children:
            raise ConfigurationError(f"Composite rule {self.rule_id} has no children", config_key="children")
        for child in self.children:
            if child.config.scope != self.config.scope:
                raise ConfigurationError(
                    f"Child {child.rule_id} of {self.rule_id} has scope {child.config.scope.value}",
                    config_key="scope",
                    actual_value=child.config.scope.value,
                )

    def check(self, ctx: EvaluationContext, target: str) -> RuleOutcome:
        outcomes = [child.check(ctx, target) for child in self.children]
        if self.config.operator == LogicalOperator.AND:
            triggered = all(o.triggered for o in outcomes)
        else:
            triggered = any(o.triggered for o in outcomes)

        joiner = f" {self.config.operator.value.upper()} "
        return RuleOutcome(
            triggered=triggered,
            value=[o.value for o in outcomes],
            detail=joiner.join(o.detail for o in outcomes),
        )


RULE_CLASSES = {
    TriggerKind.THRESHOLD: ThresholdRule,
    TriggerKind.TREND: TrendRule,
    TriggerKind.PATTERN: PatternRule,
}


def build_rule(config: AlertRuleConfig, children: Optional[List[AlertRule]] = None) -> AlertRule:
    """Instantiate the rule class matching config.kind."""
    if config.kind == TriggerKind.COMPOSITE:
        return CompositeRule(config, children or [])
    return RULE_CLASSES[config.kind](config)


def rule_from_dict(data: Dict[str, Any]) -> AlertRule:
    """
    Build a rule from a plain mapping (e.g. a YAML rule file).

    Enum fields take their string values; composite rules list their
    children under "children".
    """
    raw = dict(data)
    children = [rule_from_dict(child) for child in raw.pop("children", [])]
    try:
        config = AlertRuleConfig(
            rule_id=raw.pop("rule_id"),
            rule_name=raw.pop("rule_name", None) or raw.get("name") or "",
            kind=TriggerKind(raw.pop("kind")),
            severity=AlertSeverity(raw.pop("severity")),
            category=AlertCategory(raw.pop("category")),
            scope=RuleScope(raw.pop("scope", RuleScope.CONTEXT.value)),
            comparator=Comparator(raw.pop("comparator")) if raw.get("comparator") else None,
            direction=TrendDirection(raw.pop("direction", TrendDirection.INCREASING.value)),
            operator=LogicalOperator(raw.pop("operator", LogicalOperator.AND.value)),
            pattern=tuple(raw.pop("pattern", ())),
            **{k: v for k, v in raw.items() if k not in ("name", "comparator")},
        )
    except (KeyError, ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid rule definition: {e}", actual_value=data, cause=e) from e
    return build_rule(config, children)


def load_rules(path: Path) -> List[AlertRule]:
    """
    Load a rule set from a YAML file with a top-level "rules" list.

    Raises ConfigurationError when the file or a rule is invalid.
    """
    import yaml

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read rule file {path}: {e}", cause=e) from e

    entries = data.get("rules") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ConfigurationError(f"Rule file {path} needs a \"rules\" list", config_key="rules")

    rules = [rule_from_dict(entry) for entry in entries]
    logger.info(f"Loaded {len(rules)} alert rules from {path}")
    return rules


# ============================================================
# RULE REGISTRY
# ============================================================

def get_default_rules() -> List[AlertRule]:
    """Get default set of alert rules."""
    return [
        # Memory
        ThresholdRule(AlertRuleConfig(
            rule_id="critical-memory-usage",
            rule_name="Critical Memory Usage",
            kind=TriggerKind.THRESHOLD,
            severity=AlertSeverity.CRITICAL,
            category=AlertCategory.MEMORY,
            description="Context memory above 150MB",
            metric_path="memory_usage_mb",
            comparator=Comparator.GT,
            limit=150.0,
            cooldown_seconds=300,
        )),

        # Availability
        ThresholdRule(AlertRuleConfig(
            rule_id="context-failure",
            rule_name="Context Failure",
            kind=TriggerKind.THRESHOLD,
            severity=AlertSeverity.HIGH,
            category=AlertCategory.AVAILABILITY,
            description="Context reported unhealthy",
            metric_path="is_healthy",
            comparator=Comparator.EQ,
            limit=False,
            cooldown_seconds=180,
        )),
        PatternRule(AlertRuleConfig(
            rule_id="repeated-probe-timeouts",
            rule_name="Repeated Probe Timeouts",
            kind=TriggerKind.PATTERN,
            severity=AlertSeverity.HIGH,
            category=AlertCategory.AVAILABILITY,
            description="Three probe timeouts within two minutes",
            pattern=("timeout", "timeout", "timeout"),
            window_seconds=120,
            cooldown_seconds=180,
        )),

        # Errors
        TrendRule(AlertRuleConfig(
            rule_id="high-error-rate",
            rule_name="High Error Rate",
            kind=TriggerKind.TREND,
            severity=AlertSeverity.HIGH,
            category=AlertCategory.ERRORS,
            description="Error count rising by 5 or more within five minutes",
            metric_path="error_count",
            direction=TrendDirection.INCREASING,
            min_delta=5,
            window_seconds=300,
            cooldown_seconds=600,
        )),

        # Performance
        ThresholdRule(AlertRuleConfig(
            rule_id="slow-response-time",
            rule_name="Slow Response Time",
            kind=TriggerKind.THRESHOLD,
            severity=AlertSeverity.MEDIUM,
            category=AlertCategory.PERFORMANCE,
            description="Context response time above 2s",
            metric_path="response_time_ms",
            comparator=Comparator.GT,
            limit=2000.0,
            cooldown_seconds=900,
        )),

        # Messaging
        CompositeRule(
            AlertRuleConfig(
                rule_id="route-failure",
                rule_name="Route Failure",
                kind=TriggerKind.COMPOSITE,
                severity=AlertSeverity.HIGH,
                category=AlertCategory.MESSAGING,
                scope=RuleScope.ROUTE,
                description="Route with enough traffic failing more than half the time",
                operator=LogicalOperator.AND,
                cooldown_seconds=120,
            ),
            children=[
                ThresholdRule(AlertRuleConfig(
                    rule_id="route-failure.volume",
                    rule_name="Route Volume",
                    kind=TriggerKind.THRESHOLD,
                    severity=AlertSeverity.HIGH,
                    category=AlertCategory.MESSAGING,
                    scope=RuleScope.ROUTE,
                    metric_path="total_messages",
                    comparator=Comparator.GTE,
                    limit=5,
                )),
                ThresholdRule(AlertRuleConfig(
                    rule_id="route-failure.success-rate",
                    rule_name="Route Success Rate",
                    kind=TriggerKind.THRESHOLD,
                    severity=AlertSeverity.HIGH,
                    category=AlertCategory.MESSAGING,
                    scope=RuleScope.ROUTE,
                    metric_path="success_rate",
                    comparator=Comparator.LT,
                    limit=0.5,
                )),
            ],
        ),

        # Health
        ThresholdRule(AlertRuleConfig(
            rule_id="overall-health-degradation",
            rule_name="Overall Health Degradation",
            kind=TriggerKind.THRESHOLD,
            severity=AlertSeverity.HIGH,
            category=AlertCategory.HEALTH,
            scope=RuleScope.AGGREGATE,
            description="Mean context health below 0.6",
            metric_path="overall_health",
            comparator=Comparator.LT,
            limit=0.6,
            cooldown_seconds=1800,
        )),
    ]


__all__ = [
    "AGGREGATE_TARGET",
    "TriggerKind",
    "RuleScope",
    "Comparator",
    "TrendDirection",
    "LogicalOperator",
    "compare",
    "resolve_metric_path",
    "EvaluationContext",
    "RuleOutcome",
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
]
