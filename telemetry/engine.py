"""
Telemetry Engine.

============================================================
PURPOSE
============================================================
Owns one session's components and drives the three periodic
loops: sampling, bottleneck analysis and dashboard aggregation.

CYCLE ORDER (sampling):
1. Collector publishes a sample (observations fan out on the bus)
2. Quiet error chains are finalized; the alert manager evaluates
   that sample and queues notifications in the background
3. Newly active alerts are handed to the recovery executor,
   which runs without blocking the next cycle

SHUTDOWN:
- Loops stop after their in-flight cycle
- Stragglers are cancelled after the shutdown timeout
- Recovery actions drain, then notification deliveries

============================================================
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .alerts import AlertManager, AlertRule, EvaluationContext, NotificationHandler
from .bottlenecks import BottleneckDetector
from .bridge import InstrumentationBridge
from .clock import ClockProtocol, SystemClock
from .collectors import HealthScorer, MetricsCollector
from .config import TelemetryConfig
from .dashboard_service import DashboardAggregator
from .events import EventBus, EventTopic
from .exceptions import RecoveryActionFailure
from .flow import MessageFlowTracker
from .models import (
    Alert,
    AlertCategory,
    BottleneckReport,
    ContextRole,
    DashboardSnapshot,
    ErrorEvent,
    MessageEvent,
    MetricsSample,
    RecoveryActionType,
    Route,
)
from .probe import ContextProbeAdapter
from .propagation import ErrorPropagationTracker
from .recovery import ActionHandler, RecoveryExecutor, RecoveryPolicy


logger = logging.getLogger(__name__)


# Upper bound on how far reduce-polling may stretch the sampling interval
MAX_POLLING_BACKOFF = 4.0


class TelemetryEngine:
    """
    Coordinating scheduler for one application session.

    Components are built here and wired by injection; nothing is global.
    """

    def __init__(
        self,
        bridge: InstrumentationBridge,
        config: Optional[TelemetryConfig] = None,
        rules: Optional[List[AlertRule]] = None,
        clock: Optional[ClockProtocol] = None,
        notification_handlers: Optional[List[NotificationHandler]] = None,
        recovery_policy: Optional[RecoveryPolicy] = None,
        recovery_handlers: Optional[Dict[RecoveryActionType, ActionHandler]] = None,
        bus: Optional[EventBus] = None,
    ):
        self._config = config or TelemetryConfig()
        self._clock = clock or SystemClock()
        self._bridge = bridge
        self.bus = bus or EventBus()
        cfg = self._config

        self.adapter = ContextProbeAdapter(bridge, retry=cfg.probe.retry)
        self.scorer = HealthScorer(cfg.weights, cfg.health)
        self.collector = MetricsCollector(
            self.adapter,
            probe_config=cfg.probe,
            scorer=self.scorer,
            clock=self._clock,
            bus=self.bus,
            history_size=cfg.scheduler.metrics_history_size,
        )
        self.flow = MessageFlowTracker(cfg.flow, self._clock, role_of=self.collector.role_of)
        self.propagation = ErrorPropagationTracker(
            cfg.propagation,
            self._clock,
            is_connected=self.flow.is_connected,
            bus=self.bus,
        )
        self.detector = BottleneckDetector(self.collector.history, cfg.bottlenecks, self._clock)
        self.alerts = AlertManager(
            rules=rules,
            config=cfg.alerts,
            clock=self._clock,
            bus=self.bus,
            notification_handlers=notification_handlers,
        )

        handlers: Dict[RecoveryActionType, ActionHandler] = {
            RecoveryActionType.REDUCE_POLLING: self._reduce_polling,
            RecoveryActionType.RECONNECT_BRIDGE: self._reconnect_bridge,
        }
        handlers.update(recovery_handlers or {})
        self.recovery = RecoveryExecutor(
            self.adapter,
            config=cfg.recovery,
            clock=self._clock,
            escalate=self.alerts.escalate,
            bus=self.bus,
            policy=recovery_policy,
            handlers=handlers,
            is_context=lambda target: self.collector.role_of(target) is not None,
        )
        self.dashboard = DashboardAggregator(
            self.collector,
            self.alerts,
            self.flow,
            self.propagation,
            self.detector,
            recovery=self.recovery,
            config=cfg.dashboard,
            clock=self._clock,
            scorer=self.scorer,
        )

        # Trackers consume observations from the bus
        self.bus.subscribe(EventTopic.MESSAGE_OBSERVED, self.flow.record)
        self.bus.subscribe(EventTopic.ERROR_OBSERVED, self.propagation.record)
        self.bus.subscribe(EventTopic.RECOVERY_COMPLETED, self.alerts.record_recovery)

        self._sampling_interval = cfg.scheduler.sampling_interval_seconds
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self._cycles: Dict[str, int] = {"sampling": 0, "analysis": 0, "dashboard": 0}
        self._error_seq = 0

    @property
    def config(self) -> TelemetryConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def sampling_interval(self) -> float:
        return self._sampling_interval

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self, discover: bool = True) -> None:
        """Start the sampling, analysis and dashboard loops."""
        if self._running:
            return

        if discover:
            found = await self.collector.discover()
            logger.info(f"Discovered {found} contexts")

        sched = self._config.scheduler
        self._stop_event = asyncio.Event()
        self._running = True
        self._tasks = [
            asyncio.create_task(self._loop("sampling", lambda: self._sampling_interval, self.sample_once)),
            asyncio.create_task(self._loop(
                "analysis", lambda: sched.bottleneck_interval_seconds, self.analyze_once
            )),
            asyncio.create_task(self._loop(
                "dashboard", lambda: sched.dashboard_interval_seconds, self.refresh_dashboard
            )),
        ]
        logger.info("Telemetry engine started")

    async def stop(self) -> None:
        """
        Stop all loops.

        In-flight cycles complete (probes are timeout-bounded); loops
        still running after the shutdown timeout are cancelled. Recovery
        actions and then notification deliveries drain last.
        """
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        timeout = self._config.scheduler.shutdown_timeout_seconds

        tasks, self._tasks = self._tasks, []
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(f"Cancelled {len(pending)} loops after {timeout}s")

        await self.recovery.stop(timeout)
        # Recovery escalations may still queue notifications
        await self.alerts.stop(timeout)
        logger.info("Telemetry engine stopped")

    async def close(self) -> None:
        """Stop and release the bridge."""
        await self.stop()
        await self._bridge.close()

    async def _loop(
        self,
        name: str,
        interval: Callable[[], float],
        cycle: Callable[[], Awaitable[Any]],
    ) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                await cycle()
                self._cycles[name] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{name} cycle failed: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval())
            except asyncio.TimeoutError:
                pass

    # --------------------------------------------------------
    # CYCLES
    # --------------------------------------------------------

    async def sample_once(self) -> MetricsSample:
        """Collect, evaluate alerts, hand new alerts to recovery."""
        sample = await self.collector.collect()
        # The cycle's error batch is attached by now
        self.propagation.sweep()

        ctx = EvaluationContext(
            sample=sample,
            history=tuple(self.collector.history()),
            routes=tuple(self.flow.routes()),
        )
        activated = await self.alerts.evaluate(ctx)
        for alert in activated:
            self.recovery.submit(alert)

        self._restore_polling()
        return sample

    async def analyze_once(self) -> BottleneckReport:
        """Bottleneck pass plus propagation finalization."""
        report = self.detector.analyze()
        self.propagation.sweep()
        return report

    async def refresh_dashboard(self) -> DashboardSnapshot:
        return self.dashboard.refresh()

    # --------------------------------------------------------
    # INGESTION
    # --------------------------------------------------------

    def track_context(self, context_id: str, role: ContextRole, url: Optional[str] = None) -> bool:
        return self.collector.track_context(context_id, role, url)

    def record_message(
        self,
        source: str,
        target: str,
        success: bool,
        latency_ms: Optional[float] = None,
        error: Optional[str] = None,
        correlation_id: Optional[str] = None,
        message_type: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Route]:
        """Report an inter-context message observed outside the probes."""
        self.bus.publish(EventTopic.MESSAGE_OBSERVED, MessageEvent(
            source=source,
            target=target,
            timestamp=timestamp or self._clock.now(),
            success=success,
            latency_ms=latency_ms,
            error=error,
            correlation_id=correlation_id,
            message_type=message_type,
            payload=payload,
        ))
        return self.flow.get_route(source, target)

    def record_error(
        self,
        context_id: str,
        message: str,
        correlation_id: Optional[str] = None,
        handled: bool = False,
        recovered: bool = False,
        error_type: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> ErrorEvent:
        """Report an error observed outside the probes."""
        self._error_seq += 1
        event = ErrorEvent(
            event_id=f"reported-{self._error_seq}",
            context_id=context_id,
            timestamp=timestamp or self._clock.now(),
            message=message,
            correlation_id=correlation_id,
            handled=handled,
            recovered=recovered,
            error_type=error_type,
        )
        self.bus.publish(EventTopic.ERROR_OBSERVED, event)
        return event

    # --------------------------------------------------------
    # QUERIES (read-only)
    # --------------------------------------------------------

    def get_latest_snapshot(self) -> DashboardSnapshot:
        return self.dashboard.latest or self.dashboard.build_snapshot()

    def get_active_alerts(self) -> List[Alert]:
        return self.alerts.get_active_alerts()

    def get_route_statistics(self, source: str, target: str) -> Optional[Route]:
        return self.flow.get_route(source, target)

    def export_metrics_history(self, limit: Optional[int] = None) -> List[MetricsSample]:
        return self.collector.history(limit)

    def get_propagation_analysis(self) -> Dict[str, Any]:
        return self.propagation.analysis()

    def get_bottleneck_report(self) -> BottleneckReport:
        return self.detector.latest_report

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        return self.alerts.acknowledge(alert_id, acknowledged_by)

    def resolve_alert(self, alert_id: str, resolved_by: str) -> bool:
        return self.alerts.resolve(alert_id, resolved_by)

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "cycles": dict(self._cycles),
            "sampling_interval_seconds": self._sampling_interval,
            "tracked_contexts": len(self.collector.tracked),
            "probe": self.adapter.stats(),
            "bus": self.bus.stats(),
            "recovery": self.recovery.statistics(),
            "pending_notifications": self.alerts.pending_notifications,
            "bottlenecks": self.detector.stats(),
        }

    # --------------------------------------------------------
    # RECOVERY HANDLERS
    # --------------------------------------------------------

    async def _reduce_polling(self, action_type: RecoveryActionType, target: str) -> None:
        base = self._config.scheduler.sampling_interval_seconds
        ceiling = base * MAX_POLLING_BACKOFF
        if self._sampling_interval >= ceiling:
            raise RecoveryActionFailure(
                f"Sampling interval already at {ceiling:g}s",
                action_type=action_type.value,
                target=target,
            )
        self._sampling_interval = min(self._sampling_interval * 2, ceiling)
        logger.info(f"Sampling interval raised to {self._sampling_interval:g}s")

    def _restore_polling(self) -> None:
        base = self._config.scheduler.sampling_interval_seconds
        if self._sampling_interval == base:
            return
        if any(a.category == AlertCategory.PERFORMANCE for a in self.alerts.get_active_alerts()):
            return
        self._sampling_interval = base
        logger.info(f"Sampling interval restored to {base:g}s")

    async def _reconnect_bridge(self, action_type: RecoveryActionType, target: str) -> None:
        await self._bridge.close()
        descriptors = await self.adapter.list_contexts(self._config.probe.timeout_seconds)
        if not descriptors:
            raise RecoveryActionFailure(
                "Bridge unreachable after reconnect",
                action_type=action_type.value,
                target=target,
            )


__all__ = ["TelemetryEngine", "MAX_POLLING_BACKOFF"]
