"""
Performance Bottleneck Detector.

============================================================
PURPOSE
============================================================
Classifies sustained performance degradation per context from the
retained sample history.

METHOD:
- Trailing window (recent) mean vs baseline window median
- Baseline excludes the trailing window
- A context deviates when trailing/baseline >= deviation multiple
  (throughput deviates downward)
- Reported only after N consecutive deviating passes
- Each pass supersedes the previous one

SEVERITY (by deviation ratio):
- >= 3.0  CRITICAL
- >= 2.0  HIGH
- >= 1.5  MEDIUM
- else    LOW

============================================================
"""

import logging
from datetime import datetime, timedelta
from statistics import mean, median
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .clock import ClockProtocol, SystemClock
from .config import BottleneckConfig
from .models import (
    Bottleneck,
    BottleneckReport,
    BottleneckSeverity,
    BottleneckType,
    MetricsSample,
)


logger = logging.getLogger(__name__)


# Signal read for each bottleneck type
SIGNALS: Dict[BottleneckType, str] = {
    BottleneckType.MEMORY: "memory_usage_mb",
    BottleneckType.LATENCY: "response_time_ms",
    BottleneckType.CPU: "cpu_usage",
    BottleneckType.THROUGHPUT: "throughput",
}

SEVERITY_PENALTIES: Dict[BottleneckSeverity, float] = {
    BottleneckSeverity.CRITICAL: 25.0,
    BottleneckSeverity.HIGH: 15.0,
    BottleneckSeverity.MEDIUM: 8.0,
    BottleneckSeverity.LOW: 3.0,
}

RECOMMENDATIONS: Dict[BottleneckType, Tuple[str, ...]] = {
    BottleneckType.MEMORY: (
        "Check for retained references or unbounded caches",
        "Trigger garbage collection or clear caches",
    ),
    BottleneckType.LATENCY: (
        "Profile slow operations in the context",
        "Reduce polling frequency or batch work",
    ),
    BottleneckType.CPU: (
        "Move heavy computation off the main thread",
        "Throttle periodic tasks",
    ),
    BottleneckType.THROUGHPUT: (
        "Check for blocked message handlers",
        "Verify downstream contexts are responsive",
    ),
}

# Ceiling for ratios when the trailing throughput drops to zero
MAX_RATIO = 10.0


def classify_severity(ratio: float) -> BottleneckSeverity:
    if ratio >= 3.0:
        return BottleneckSeverity.CRITICAL
    if ratio >= 2.0:
        return BottleneckSeverity.HIGH
    if ratio >= 1.5:
        return BottleneckSeverity.MEDIUM
    return BottleneckSeverity.LOW


def linear_slope(points: Sequence[Tuple[float, float]]) -> float:
    """Least-squares slope of (x, y) points; 0.0 when undefined."""
    if len(points) < 2:
        return 0.0
    x_mean = mean(x for x, _ in points)
    y_mean = mean(y for _, y in points)
    denominator = sum((x - x_mean) ** 2 for x, _ in points)
    if denominator == 0:
        return 0.0
    return sum((x - x_mean) * (y - y_mean) for x, y in points) / denominator


class BottleneckDetector:
    """
    Windowed degradation analysis over MetricsSample history.

    Runs on its own cadence, coarser than sampling.
    """

    def __init__(
        self,
        history_provider: Callable[[], List[MetricsSample]],
        config: Optional[BottleneckConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._history_provider = history_provider
        self._config = config or BottleneckConfig()
        self._clock = clock or SystemClock()
        self._streaks: Dict[str, int] = {}
        self._latest = BottleneckReport(generated_at=self._clock.now())
        self._pass_count = 0

    @property
    def latest_report(self) -> BottleneckReport:
        return self._latest

    def current_bottlenecks(self) -> Tuple[Bottleneck, ...]:
        return self._latest.bottlenecks

    # --------------------------------------------------------
    # ANALYSIS
    # --------------------------------------------------------

    def analyze(self) -> BottleneckReport:
        """Run one analysis pass and publish its report."""
        cfg = self._config
        now = self._clock.now()
        trailing_start = now - timedelta(seconds=cfg.trailing_window_seconds)
        baseline_start = now - timedelta(seconds=cfg.baseline_window_seconds)

        history = [s for s in self._history_provider() if baseline_start <= s.timestamp <= now]
        baseline = [s for s in history if s.timestamp <= trailing_start]
        trailing = [s for s in history if s.timestamp > trailing_start]

        context_ids = sorted({cid for s in trailing for cid in s.contexts})
        bottlenecks: List[Bottleneck] = []
        growth: Dict[str, float] = {}

        for cid in context_ids:
            growth[cid] = self._memory_growth(cid, history)
            deviation = self._strongest_deviation(cid, baseline, trailing)

            if deviation is None:
                self._streaks.pop(cid, None)
                continue

            streak = self._streaks.get(cid, 0) + 1
            self._streaks[cid] = streak
            if streak < cfg.sustained_passes:
                continue

            kind, ratio, base_value, trail_value = deviation
            recommendations = list(RECOMMENDATIONS[kind])
            if kind == BottleneckType.MEMORY and growth[cid] > 0:
                recommendations.append(f"Memory growing at {growth[cid]:.2f} MB/min")

            bottlenecks.append(Bottleneck(
                context_id=cid,
                bottleneck_type=kind,
                severity=classify_severity(ratio),
                estimated_slowdown_pct=(ratio - 1.0) * 100.0,
                baseline_value=base_value,
                trailing_value=trail_value,
                window_start=trailing_start,
                window_end=now,
                consecutive_passes=streak,
                recommendations=tuple(recommendations),
            ))

        # Contexts no longer sampled stop accumulating streaks
        for cid in list(self._streaks):
            if cid not in context_ids:
                del self._streaks[cid]

        penalty = sum(SEVERITY_PENALTIES[b.severity] for b in bottlenecks)
        latest_sample = history[-1] if history else None
        tracked = len(latest_sample.contexts) if latest_sample else 0
        affected = len({b.context_id for b in bottlenecks})

        report = BottleneckReport(
            generated_at=now,
            bottlenecks=tuple(bottlenecks),
            performance_score=max(0.0, 100.0 - penalty),
            memory_growth_mb_per_min=growth,
            synchronized_degradation=tracked >= 2 and affected > tracked / 2,
        )

        self._pass_count += 1
        self._latest = report
        for b in bottlenecks:
            logger.warning(
                f"Bottleneck in {b.context_id}: {b.bottleneck_type.value} "
                f"+{b.estimated_slowdown_pct:.0f}% [{b.severity.value}]"
            )
        if report.synchronized_degradation:
            logger.warning(f"Synchronized degradation across {affected}/{tracked} contexts")

        return report

    def _values(self, cid: str, samples: List[MetricsSample], attribute: str) -> List[float]:
        values = []
        for sample in samples:
            metrics = sample.get(cid)
            if metrics is None:
                continue
            value = getattr(metrics, attribute)
            if value is not None:
                values.append(value)
        return values

    def _strongest_deviation(
        self,
        cid: str,
        baseline: List[MetricsSample],
        trailing: List[MetricsSample],
    ) -> Optional[Tuple[BottleneckType, float, float, float]]:
        """(type, ratio, baseline, trailing) of the largest deviation, if any."""
        cfg = self._config
        strongest = None

        for kind, attribute in SIGNALS.items():
            base_values = self._values(cid, baseline, attribute)
            trail_values = self._values(cid, trailing, attribute)
            if len(base_values) < cfg.min_baseline_samples or len(trail_values) < cfg.min_trailing_samples:
                continue

            base_value = median(base_values)
            trail_value = mean(trail_values)
            if base_value <= 0:
                continue

            if kind == BottleneckType.THROUGHPUT:
                ratio = base_value / trail_value if trail_value > 0 else MAX_RATIO
            else:
                ratio = trail_value / base_value
            ratio = min(ratio, MAX_RATIO)

            if ratio < cfg.deviation_multiple:
                continue
            if strongest is None or ratio > strongest[1]:
                strongest = (kind, ratio, base_value, trail_value)

        return strongest

    def _memory_growth(self, cid: str, samples: List[MetricsSample]) -> float:
        """Memory slope in MB per minute across the window."""
        points = []
        origin: Optional[datetime] = None
        for sample in samples:
            metrics = sample.get(cid)
            if metrics is None or metrics.memory_usage_mb is None:
                continue
            origin = origin or sample.timestamp
            points.append(((sample.timestamp - origin).total_seconds() / 60.0, metrics.memory_usage_mb))
        return linear_slope(points)

    def stats(self) -> Dict[str, int]:
        return {
            "passes": self._pass_count,
            "tracked_streaks": len(self._streaks),
        }


__all__ = [
    "BottleneckDetector",
    "classify_severity",
    "linear_slope",
]
