"""
Dashboard Aggregator.

============================================================
PURPOSE
============================================================
Assembles one consistent DashboardSnapshot from the latest
published state of every component.

PRINCIPLES:
- READ-ONLY: never writes back to a component
- Pull-based on its own cadence
- Same inputs, same snapshot
- Bounded ring of past snapshots for trends

============================================================
"""

import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, List, Optional, Tuple

from .alerts import AlertManager
from .bottlenecks import BottleneckDetector
from .clock import ClockProtocol, SystemClock
from .collectors import HealthScorer, MetricsCollector
from .config import DashboardConfig
from .flow import MessageFlowTracker
from .models import AlertSeverity, DashboardSnapshot, HealthStatus
from .propagation import ErrorPropagationTracker
from .recovery import RecoveryExecutor


logger = logging.getLogger(__name__)


# ============================================================
# DASHBOARD AGGREGATOR
# ============================================================

class DashboardAggregator:
    """
    Central read-only view over all telemetry components.

    The dashboard is a MIRROR, not a BRAIN.
    """

    def __init__(
        self,
        collector: MetricsCollector,
        alert_manager: AlertManager,
        flow: MessageFlowTracker,
        propagation: ErrorPropagationTracker,
        detector: BottleneckDetector,
        recovery: Optional[RecoveryExecutor] = None,
        config: Optional[DashboardConfig] = None,
        clock: Optional[ClockProtocol] = None,
        scorer: Optional[HealthScorer] = None,
    ):
        self._collector = collector
        self._alerts = alert_manager
        self._flow = flow
        self._propagation = propagation
        self._detector = detector
        self._recovery = recovery
        self._config = config or DashboardConfig()
        self._clock = clock or SystemClock()
        self._scorer = scorer or HealthScorer()

        self._ring: Deque[DashboardSnapshot] = deque(maxlen=self._config.history_size)
        self._sequence = 0

    # --------------------------------------------------------
    # SNAPSHOTS
    # --------------------------------------------------------

    def build_snapshot(self) -> DashboardSnapshot:
        """
        Assemble a snapshot from current component state.

        Has no side effects; refresh() is the publishing path.
        """
        cfg = self._config
        sample = self._collector.latest
        active_alerts = tuple(self._alerts.get_active_alerts())
        flagged = tuple(self._flow.flagged_routes())
        unhandled = tuple(self._propagation.unhandled_chains(cfg.recent_chain_limit))
        report = self._detector.latest_report
        recoveries = tuple(self._recovery.history(cfg.recent_recovery_limit)) if self._recovery else ()

        return DashboardSnapshot(
            sample=sample,
            overall_status=self._overall_status(sample, active_alerts),
            contexts=tuple(sorted(self._collector.contexts, key=lambda c: c.context_id)),
            active_alerts=active_alerts,
            alert_statistics=self._alerts.statistics(),
            routes=tuple(self._flow.routes()),
            flagged_routes=flagged,
            recent_chains=tuple(self._propagation.recent_chains(cfg.recent_chain_limit)),
            unhandled_chains=unhandled,
            bottlenecks=report.bottlenecks,
            performance_score=report.performance_score,
            recent_recoveries=recoveries,
            recommendations=tuple(self._recommendations(unhandled, active_alerts)),
            sequence=self._sequence,
            generated_at=self._clock.now(),
        )

    def refresh(self) -> DashboardSnapshot:
        """Build a snapshot and append it to the ring."""
        self._sequence += 1
        snapshot = self.build_snapshot()
        self._ring.append(snapshot)
        return snapshot

    @property
    def latest(self) -> Optional[DashboardSnapshot]:
        return self._ring[-1] if self._ring else None

    def history(self, limit: Optional[int] = None) -> List[DashboardSnapshot]:
        """Past snapshots, oldest first."""
        snapshots = list(self._ring)
        return snapshots[-limit:] if limit else snapshots

    def trend(self, context_id: Optional[str], metric: str) -> List[Tuple[datetime, Any]]:
        """
        (timestamp, value) series of one metric over the ring.

        With context_id None the aggregate figures are read.
        """
        series = []
        last_sample_id = None
        for snapshot in self._ring:
            sample = snapshot.sample
            if sample is None or sample.sample_id == last_sample_id:
                continue
            last_sample_id = sample.sample_id

            if context_id is None:
                view = sample.aggregate.as_metrics()
            else:
                metrics = sample.get(context_id)
                if metrics is None:
                    continue
                view = metrics.as_metrics()
            if metric in view:
                series.append((sample.timestamp, view[metric]))
        return series

    # --------------------------------------------------------
    # DERIVED VIEWS
    # --------------------------------------------------------

    def _overall_status(self, sample, active_alerts) -> HealthStatus:
        if sample is None or sample.aggregate.overall_health is None:
            return HealthStatus.UNKNOWN

        status = self._scorer.status(sample.aggregate.overall_health)
        if any(a.severity == AlertSeverity.CRITICAL for a in active_alerts):
            return HealthStatus.CRITICAL
        if status == HealthStatus.HEALTHY and any(
            a.severity == AlertSeverity.HIGH for a in active_alerts
        ):
            return HealthStatus.DEGRADED
        return status

    def _recommendations(self, unhandled, active_alerts) -> List[str]:
        advice: List[str] = []

        critical = [a for a in active_alerts if a.severity == AlertSeverity.CRITICAL]
        if critical:
            targets = ", ".join(sorted({a.target for a in critical}))
            advice.append(f"Resolve {len(critical)} critical alert(s) on: {targets}")

        for bottleneck in self._detector.current_bottlenecks():
            for line in bottleneck.recommendations:
                advice.append(f"{bottleneck.context_id}: {line}")

        if self._detector.latest_report.synchronized_degradation:
            advice.append("Most contexts degraded together; check shared dependencies")

        advice.extend(self._flow.recommendations())

        for chain in unhandled:
            advice.append(f"Add error handling along {chain.path} ({chain.chain_id})")

        # Preserve order, drop repeats
        return list(dict.fromkeys(advice))


__all__ = ["DashboardAggregator"]
