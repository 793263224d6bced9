"""
Telemetry - Configuration.

============================================================
CONFIGURABLE ENGINE PARAMETERS
============================================================

All engine parameters are configurable:
- Sampling interval and per-context probe timeout
- Health score weights and normalization ceilings
- Alert resolution and history bounds
- Recovery suppression windows
- Bottleneck baseline/trailing window sizes

Configuration can be loaded from:
- Default values
- Environment variables (.env supported)
- YAML config file

============================================================
"""

import os
import logging
from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


logger = logging.getLogger(__name__)


# =============================================================
# PROBE
# =============================================================


@dataclass
class RetryPolicy:
    """Retry behavior for transient bridge failures."""
    max_retries: int = 2
    initial_delay_seconds: float = 0.05
    backoff_multiplier: float = 1.5

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number `attempt` (1-based)."""
        return self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))


@dataclass
class ProbeConfig:
    """Per-context probe settings."""
    timeout_seconds: float = 0.3
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Consecutive failed probes before a context is marked inactive
    inactive_after_failures: int = 3

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.inactive_after_failures < 1:
            raise ValueError("inactive_after_failures must be >= 1")


# =============================================================
# HEALTH SCORING
# =============================================================


@dataclass
class HealthWeights:
    """
    Weights for each health signal.

    All weights must sum to 1.0 for proper scoring.
    """
    memory: float = 0.3
    response_time: float = 0.3
    errors: float = 0.4

    def __post_init__(self) -> None:
        """Validate weights sum to 1.0."""
        if min(self.memory, self.response_time, self.errors) < 0:
            raise ValueError("health weights must be >= 0")
        total = self.total()
        if abs(total - 1.0) > 0.001:
            logger.warning(f"Health weights sum to {total}, normalizing to 1.0")
            self._normalize()

    def total(self) -> float:
        """Get sum of all weights."""
        return self.memory + self.response_time + self.errors

    def _normalize(self) -> None:
        """Normalize weights to sum to 1.0."""
        total = self.total()
        if total > 0:
            self.memory /= total
            self.response_time /= total
            self.errors /= total


@dataclass
class HealthNormalization:
    """
    Ceilings and thresholds used to turn raw signals into a score.

    - each signal is divided by its ceiling and clipped to [0, 1]
    - is_healthy:  score > healthy_threshold
    - DEGRADED:    score < degraded_threshold
    - CRITICAL:    score < critical_threshold
    """
    memory_ceiling_mb: float = 200.0
    response_ceiling_ms: float = 4000.0
    error_ceiling: float = 5.0

    # Subtracted per role-specific issue
    issue_penalty: float = 0.1

    # Score reported for a context whose probe failed
    failure_score: float = 0.1

    healthy_threshold: float = 0.7
    degraded_threshold: float = 0.8
    critical_threshold: float = 0.5

    def __post_init__(self) -> None:
        if min(self.memory_ceiling_mb, self.response_ceiling_ms, self.error_ceiling) <= 0:
            raise ValueError("normalization ceilings must be > 0")
        for name in ("failure_score", "healthy_threshold", "degraded_threshold", "critical_threshold"):
            if not 0.0 <= getattr(self, name) <= 1.0:
                raise ValueError(f"{name} must be 0-1")
        if self.critical_threshold > self.degraded_threshold:
            raise ValueError("critical_threshold must be <= degraded_threshold")


# =============================================================
# ALERTING & RECOVERY
# =============================================================


@dataclass
class AlertConfig:
    """Alert lifecycle settings."""
    # Consecutive false evaluations before an alert auto-resolves
    resolve_after_cycles: int = 3
    history_size: int = 1000
    max_active: int = 100

    def __post_init__(self) -> None:
        if self.resolve_after_cycles < 1:
            raise ValueError("resolve_after_cycles must be >= 1")
        if self.history_size < 1 or self.max_active < 1:
            raise ValueError("alert bounds must be >= 1")


@dataclass
class RecoveryConfig:
    """Recovery executor settings."""
    enabled: bool = True
    # Minimum seconds between two runs of the same action on the same target
    suppression_seconds: float = 300.0
    action_timeout_seconds: float = 5.0
    history_size: int = 200

    # Per action-type overrides of suppression_seconds
    suppression_overrides: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.suppression_seconds < 0:
            raise ValueError("suppression_seconds must be >= 0")
        if self.action_timeout_seconds <= 0:
            raise ValueError("action_timeout_seconds must be > 0")

    def suppression_for(self, action_type: str) -> float:
        """Suppression window for an action type."""
        return self.suppression_overrides.get(action_type, self.suppression_seconds)


# =============================================================
# TRACKERS
# =============================================================


@dataclass
class FlowConfig:
    """Message flow tracker settings."""
    # Weight of the newest sample in the latency moving average
    latency_smoothing: float = 0.3
    min_messages_for_flag: int = 5
    failure_rate_flag: float = 0.5
    high_latency_ms: float = 1000.0
    average_latency_warning_ms: float = 200.0
    # A route is considered active if it carried a message this recently
    active_route_seconds: float = 300.0
    recent_message_limit: int = 500

    def __post_init__(self) -> None:
        if not 0.0 < self.latency_smoothing <= 1.0:
            raise ValueError("latency_smoothing must be in (0, 1]")
        if not 0.0 <= self.failure_rate_flag <= 1.0:
            raise ValueError("failure_rate_flag must be 0-1")


@dataclass
class PropagationConfig:
    """Error propagation tracker settings."""
    causal_window_seconds: float = 2.0
    quiet_period_seconds: float = 5.0
    max_finalized_chains: int = 200

    def __post_init__(self) -> None:
        if self.causal_window_seconds < 0 or self.quiet_period_seconds < 0:
            raise ValueError("propagation windows must be >= 0")


@dataclass
class BottleneckConfig:
    """Bottleneck detector settings."""
    trailing_window_seconds: float = 60.0
    baseline_window_seconds: float = 600.0
    # Trailing/baseline ratio that counts as a deviation
    deviation_multiple: float = 1.3
    # Consecutive deviating passes before a bottleneck is reported
    sustained_passes: int = 3
    min_baseline_samples: int = 5
    min_trailing_samples: int = 1

    def __post_init__(self) -> None:
        if self.trailing_window_seconds >= self.baseline_window_seconds:
            raise ValueError("trailing window must be shorter than baseline window")
        if self.deviation_multiple <= 1.0:
            raise ValueError("deviation_multiple must be > 1.0")
        if self.sustained_passes < 1:
            raise ValueError("sustained_passes must be >= 1")


@dataclass
class DashboardConfig:
    """Dashboard aggregator settings."""
    history_size: int = 200
    recent_chain_limit: int = 20
    recent_recovery_limit: int = 20


@dataclass
class SchedulerConfig:
    """Loop cadences."""
    sampling_interval_seconds: float = 5.0
    bottleneck_interval_seconds: float = 60.0
    dashboard_interval_seconds: float = 5.0
    metrics_history_size: int = 720
    shutdown_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        for name in (
            "sampling_interval_seconds",
            "bottleneck_interval_seconds",
            "dashboard_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class TelemetryConfig:
    """
    Main configuration for the telemetry engine.

    Combines all sub-configurations.
    """
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    weights: HealthWeights = field(default_factory=HealthWeights)
    health: HealthNormalization = field(default_factory=HealthNormalization)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    propagation: PropagationConfig = field(default_factory=PropagationConfig)
    bottlenecks: BottleneckConfig = field(default_factory=BottleneckConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_env(cls, dotenv_path: Optional[Path] = None) -> "TelemetryConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - TELEMETRY_SAMPLING_INTERVAL
        - TELEMETRY_BOTTLENECK_INTERVAL
        - TELEMETRY_DASHBOARD_INTERVAL
        - TELEMETRY_PROBE_TIMEOUT
        - TELEMETRY_PROBE_MAX_RETRIES
        - TELEMETRY_INACTIVE_AFTER_FAILURES
        - TELEMETRY_WEIGHT_MEMORY
        - TELEMETRY_WEIGHT_RESPONSE_TIME
        - TELEMETRY_WEIGHT_ERRORS
        - TELEMETRY_RESOLVE_AFTER_CYCLES
        - TELEMETRY_RECOVERY_ENABLED
        - TELEMETRY_RECOVERY_SUPPRESSION
        - TELEMETRY_BASELINE_WINDOW
        - TELEMETRY_TRAILING_WINDOW

        Raises ValueError when an override fails its section's validation.
        """
        load_dotenv(dotenv_path)
        config = cls()

        # Overrides are collected per section and applied through replace(),
        # which re-runs each section's validation
        scheduler: Dict[str, Any] = {}
        probe: Dict[str, Any] = {}
        retry: Dict[str, Any] = {}
        weights: Dict[str, Any] = {}
        alerts: Dict[str, Any] = {}
        recovery: Dict[str, Any] = {}
        bottlenecks: Dict[str, Any] = {}

        # Scheduler
        if os.getenv("TELEMETRY_SAMPLING_INTERVAL"):
            scheduler["sampling_interval_seconds"] = float(os.getenv("TELEMETRY_SAMPLING_INTERVAL"))
        if os.getenv("TELEMETRY_BOTTLENECK_INTERVAL"):
            scheduler["bottleneck_interval_seconds"] = float(os.getenv("TELEMETRY_BOTTLENECK_INTERVAL"))
        if os.getenv("TELEMETRY_DASHBOARD_INTERVAL"):
            scheduler["dashboard_interval_seconds"] = float(os.getenv("TELEMETRY_DASHBOARD_INTERVAL"))

        # Probe
        if os.getenv("TELEMETRY_PROBE_TIMEOUT"):
            probe["timeout_seconds"] = float(os.getenv("TELEMETRY_PROBE_TIMEOUT"))
        if os.getenv("TELEMETRY_PROBE_MAX_RETRIES"):
            retry["max_retries"] = int(os.getenv("TELEMETRY_PROBE_MAX_RETRIES"))
        if os.getenv("TELEMETRY_INACTIVE_AFTER_FAILURES"):
            probe["inactive_after_failures"] = int(os.getenv("TELEMETRY_INACTIVE_AFTER_FAILURES"))

        # Weights are normalized again on rebuild
        if os.getenv("TELEMETRY_WEIGHT_MEMORY"):
            weights["memory"] = float(os.getenv("TELEMETRY_WEIGHT_MEMORY"))
        if os.getenv("TELEMETRY_WEIGHT_RESPONSE_TIME"):
            weights["response_time"] = float(os.getenv("TELEMETRY_WEIGHT_RESPONSE_TIME"))
        if os.getenv("TELEMETRY_WEIGHT_ERRORS"):
            weights["errors"] = float(os.getenv("TELEMETRY_WEIGHT_ERRORS"))

        # Alerting and recovery
        if os.getenv("TELEMETRY_RESOLVE_AFTER_CYCLES"):
            alerts["resolve_after_cycles"] = int(os.getenv("TELEMETRY_RESOLVE_AFTER_CYCLES"))
        if os.getenv("TELEMETRY_RECOVERY_ENABLED"):
            recovery["enabled"] = os.getenv("TELEMETRY_RECOVERY_ENABLED").lower() in ("1", "true", "yes")
        if os.getenv("TELEMETRY_RECOVERY_SUPPRESSION"):
            recovery["suppression_seconds"] = float(os.getenv("TELEMETRY_RECOVERY_SUPPRESSION"))

        # Bottleneck windows
        if os.getenv("TELEMETRY_BASELINE_WINDOW"):
            bottlenecks["baseline_window_seconds"] = float(os.getenv("TELEMETRY_BASELINE_WINDOW"))
        if os.getenv("TELEMETRY_TRAILING_WINDOW"):
            bottlenecks["trailing_window_seconds"] = float(os.getenv("TELEMETRY_TRAILING_WINDOW"))

        config.scheduler = replace(config.scheduler, **scheduler)
        config.probe = replace(config.probe, retry=replace(config.probe.retry, **retry), **probe)
        config.weights = replace(config.weights, **weights)
        config.alerts = replace(config.alerts, **alerts)
        config.recovery = replace(config.recovery, **recovery)
        config.bottlenecks = replace(config.bottlenecks, **bottlenecks)

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "TelemetryConfig":
        """
        Load configuration from YAML file.

        Top-level keys mirror the dataclass sections (probe, weights, health,
        alerts, recovery, flow, propagation, bottlenecks, dashboard, scheduler).
        """
        try:
            import yaml
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}

            config = cls()

            if 'probe' in data:
                p = dict(data['probe'])
                retry = RetryPolicy(**p.pop('retry', {}))
                config.probe = ProbeConfig(retry=retry, **p)
            if 'weights' in data:
                config.weights = HealthWeights(**data['weights'])
            if 'health' in data:
                config.health = HealthNormalization(**data['health'])
            if 'alerts' in data:
                config.alerts = AlertConfig(**data['alerts'])
            if 'recovery' in data:
                config.recovery = RecoveryConfig(**data['recovery'])
            if 'flow' in data:
                config.flow = FlowConfig(**data['flow'])
            if 'propagation' in data:
                config.propagation = PropagationConfig(**data['propagation'])
            if 'bottlenecks' in data:
                config.bottlenecks = BottleneckConfig(**data['bottlenecks'])
            if 'dashboard' in data:
                config.dashboard = DashboardConfig(**data['dashboard'])
            if 'scheduler' in data:
                config.scheduler = SchedulerConfig(**data['scheduler'])

            return config

        except Exception as e:
            logger.warning(f"Failed to load YAML config from {path}: {e}")
            return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


__all__ = [
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
]
