"""
Alert Manager.

============================================================
PURPOSE
============================================================
Drives the alert lifecycle for every (rule, target) pair and
dispatches notifications.

LIFECYCLE:
- Condition true          -> Pending, Active once held for
                             trigger_after_cycles cycles
- True again while open   -> same alert, last_triggered_at updated
- False N cycles in a row -> AutoResolved
- External action         -> Acknowledged / Resolved

COOLDOWN:
- A closed alert whose condition returns before the cooldown has
  elapsed since its last trigger is reopened, not duplicated
- Only reopening after the cooldown creates a distinct alert

PRINCIPLES:
- One rule failing never blocks the others
- Published alerts are immutable; every change swaps in a new value
- Notifications are delivered in background tasks, never inside
  the evaluation cycle

============================================================
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..clock import ClockProtocol, SystemClock
from ..config import AlertConfig
from ..events import EventBus, EventTopic
from ..exceptions import RuleEvaluationError
from ..models import Alert, AlertSeverity, AlertState, RecoveryAction, RecoveryOutcome
from .rules import AlertRule, EvaluationContext, RuleOutcome, get_default_rules


logger = logging.getLogger(__name__)


# ============================================================
# ALERT HISTORY
# ============================================================

class AlertHistory:
    """
    Bounded record of every alert, latest version per id.

    Oldest alerts are evicted first.
    """

    def __init__(self, max_history: int = 1000):
        self._alerts: "OrderedDict[str, Alert]" = OrderedDict()
        self._max_history = max_history

    def __len__(self) -> int:
        return len(self._alerts)

    def add(self, alert: Alert) -> None:
        """Insert or replace an alert."""
        self._alerts[alert.alert_id] = alert
        while len(self._alerts) > self._max_history:
            self._alerts.popitem(last=False)

    def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    def get_recent(self, limit: int = 100) -> List[Alert]:
        """Get recent alerts, newest first."""
        return list(self._alerts.values())[-limit:][::-1]

    def get_by_severity(self, severity: AlertSeverity) -> List[Alert]:
        return [a for a in self._alerts.values() if a.severity == severity]

    def get_by_state(self, state: AlertState) -> List[Alert]:
        return [a for a in self._alerts.values() if a.state == state]

    def stats(self) -> Dict[str, Any]:
        by_rule: Dict[str, int] = {}
        for alert in self._alerts.values():
            by_rule[alert.rule_id] = by_rule.get(alert.rule_id, 0) + 1

        return {
            "total_alerts": len(self._alerts),
            "by_severity": {
                severity.value: len(self.get_by_severity(severity))
                for severity in AlertSeverity
            },
            "by_state": {
                state.value: len(self.get_by_state(state))
                for state in AlertState
            },
            "by_rule": by_rule,
        }


# ============================================================
# ALERT MANAGER
# ============================================================

# Type for notification handlers
NotificationHandler = Callable[[Alert], Awaitable[bool]]


@dataclass
class _RuleTargetState:
    """Lifecycle bookkeeping for one (rule, target) pair."""
    alert: Optional[Alert] = None
    true_streak: int = 0
    false_streak: int = 0


class AlertManager:
    """
    Evaluates rules against each published sample and owns all alerts.

    This is the central alert coordination point.
    """

    def __init__(
        self,
        rules: Optional[List[AlertRule]] = None,
        config: Optional[AlertConfig] = None,
        clock: Optional[ClockProtocol] = None,
        bus: Optional[EventBus] = None,
        notification_handlers: Optional[List[NotificationHandler]] = None,
    ):
        self._rules = list(rules) if rules is not None else get_default_rules()
        self._config = config or AlertConfig()
        self._clock = clock or SystemClock()
        self._bus = bus
        self._handlers = list(notification_handlers or [])
        self._history = AlertHistory(self._config.history_size)
        self._enabled = True

        # Rule lookup
        self._rules_by_id = {r.rule_id: r for r in self._rules}

        self._states: Dict[Tuple[str, str], _RuleTargetState] = {}
        self._keys_by_alert: Dict[str, Tuple[str, str]] = {}
        self._active: Tuple[Alert, ...] = ()
        self._alert_seq = 0

        self._evaluations = 0
        self._rule_errors = 0
        self._recovery_attempted = 0
        self._recovery_successful = 0

        # Evaluation lock
        self._eval_lock = asyncio.Lock()

        # In-flight notification deliveries
        self._notification_tasks: Set[asyncio.Task] = set()

    @property
    def history(self) -> AlertHistory:
        return self._history

    @property
    def rules(self) -> List[AlertRule]:
        return list(self._rules)

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self._rules_by_id.get(rule_id)

    def add_handler(self, handler: NotificationHandler) -> None:
        """Add a notification handler."""
        self._handlers.append(handler)

    def remove_handler(self, handler: NotificationHandler) -> None:
        """Remove a notification handler."""
        if handler in self._handlers:
            self._handlers.remove(handler)

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    # --------------------------------------------------------
    # EVALUATION
    # --------------------------------------------------------

    async def evaluate(self, ctx: EvaluationContext) -> List[Alert]:
        """
        Evaluate all rules against one published sample.

        Returns alerts that became Active as distinct new alerts this
        cycle; re-triggers and reopened alerts are not included.
        """
        if not self._enabled:
            return []

        async with self._eval_lock:
            self._evaluations += 1
            activated: List[Alert] = []

            for rule in self._rules:
                if not rule.config.enabled:
                    continue

                try:
                    outcomes = rule.evaluate(ctx)
                except RuleEvaluationError as e:
                    self._rule_errors += 1
                    logger.error(f"Error evaluating rule {rule.rule_id}: {e}")
                    continue

                for target, outcome in outcomes.items():
                    alert = self._apply(rule, target, outcome, ctx.now)
                    if alert is not None:
                        activated.append(alert)

            self._publish()

            for alert in activated:
                logger.info(
                    f"Alert triggered: {alert.rule_name} on {alert.target} "
                    f"[{alert.severity.value}] ({alert.alert_id})"
                )
                if self._bus is not None:
                    self._bus.publish(EventTopic.ALERT_TRIGGERED, alert)

            self._notify(activated)
            return activated

    def _apply(
        self,
        rule: AlertRule,
        target: str,
        outcome: RuleOutcome,
        now: datetime,
    ) -> Optional[Alert]:
        """Advance one (rule, target) state machine; return a newly active alert."""
        key = (rule.rule_id, target)
        state = self._states.setdefault(key, _RuleTargetState())
        alert = state.alert

        if not outcome.triggered:
            state.true_streak = 0
            state.false_streak += 1
            if alert is None:
                return None
            if alert.state == AlertState.PENDING:
                # Never activated; drop it
                self._keys_by_alert.pop(alert.alert_id, None)
                state.alert = None
            elif alert.state.is_open and state.false_streak >= self._config.resolve_after_cycles:
                self._close(key, alert, AlertState.AUTO_RESOLVED, "auto", now)
                logger.info(f"Alert auto-resolved: {alert.rule_name} on {target} ({alert.alert_id})")
            return None

        state.false_streak = 0
        state.true_streak += 1
        message = f"{rule.config.rule_name}: {outcome.detail}"
        required = rule.config.trigger_after_cycles

        if alert is not None and alert.state.is_open:
            self._store(key, replace(alert, last_triggered_at=now, value=outcome.value, message=message))
            return None

        if alert is not None and alert.state == AlertState.PENDING:
            if state.true_streak < required:
                self._store(key, replace(alert, last_triggered_at=now, value=outcome.value, message=message))
                return None
            activated = replace(
                alert,
                state=AlertState.ACTIVE,
                last_triggered_at=now,
                value=outcome.value,
                message=message,
            )
            self._store(key, activated)
            return activated

        if alert is not None and alert.state.is_closed:
            elapsed = (now - alert.last_triggered_at).total_seconds()
            if elapsed < rule.config.cooldown_seconds:
                self._store(key, replace(
                    alert,
                    state=AlertState.ACTIVE,
                    last_triggered_at=now,
                    value=outcome.value,
                    message=message,
                    resolved_by=None,
                    resolved_at=None,
                ))
                logger.info(f"Alert reopened inside cooldown: {alert.rule_name} on {target}")
                return None

        open_count = sum(1 for s in self._states.values() if s.alert is not None and s.alert.state.is_open)
        if open_count >= self._config.max_active:
            logger.warning(f"Active alert limit reached ({open_count}); dropping {rule.rule_id} on {target}")
            return None

        self._alert_seq += 1
        created = Alert(
            alert_id=f"alert-{self._alert_seq}",
            rule_id=rule.rule_id,
            rule_name=rule.config.rule_name,
            target=target,
            severity=rule.config.severity,
            category=rule.config.category,
            message=message,
            state=AlertState.ACTIVE if state.true_streak >= required else AlertState.PENDING,
            first_triggered_at=now,
            last_triggered_at=now,
            value=outcome.value,
        )
        if alert is not None:
            self._keys_by_alert.pop(alert.alert_id, None)
        self._store(key, created)
        return created if created.state == AlertState.ACTIVE else None

    def _store(self, key: Tuple[str, str], alert: Alert) -> None:
        self._states.setdefault(key, _RuleTargetState()).alert = alert
        self._keys_by_alert[alert.alert_id] = key
        if alert.state != AlertState.PENDING:
            self._history.add(alert)

    def _close(
        self,
        key: Tuple[str, str],
        alert: Alert,
        state: AlertState,
        by: str,
        at: datetime,
    ) -> Alert:
        closed = replace(alert, state=state, resolved_by=by, resolved_at=at)
        self._store(key, closed)
        if self._bus is not None:
            self._bus.publish(EventTopic.ALERT_RESOLVED, closed)
        return closed

    def _publish(self) -> None:
        """Swap in the current open-alert tuple."""
        open_alerts = [
            s.alert for s in self._states.values()
            if s.alert is not None and s.alert.state.is_open
        ]
        open_alerts.sort(key=lambda a: (-a.severity.rank, a.first_triggered_at, a.alert_id))
        self._active = tuple(open_alerts)

    def _notify(self, alerts: List[Alert]) -> None:
        """Hand alerts to the notification handlers without waiting."""
        if not alerts or not self._handlers:
            return
        task = asyncio.create_task(self._dispatch_notifications(list(alerts), list(self._handlers)))
        self._notification_tasks.add(task)
        task.add_done_callback(self._notification_tasks.discard)

    async def _dispatch_notifications(
        self,
        alerts: List[Alert],
        handlers: List[NotificationHandler],
    ) -> None:
        """Dispatch alerts to notification handlers."""
        for alert in alerts:
            for handler in handlers:
                try:
                    delivered = await handler(alert)
                    if delivered is False:
                        logger.warning(f"Notification not delivered for {alert.alert_id}")
                except Exception as e:
                    logger.error(f"Notification handler error: {e}")

    @property
    def pending_notifications(self) -> int:
        return len(self._notification_tasks)

    async def drain_notifications(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight notification deliveries."""
        if not self._notification_tasks:
            return
        await asyncio.wait(set(self._notification_tasks), timeout=timeout)

    async def stop(self, timeout: float = 10.0) -> None:
        """Let in-flight deliveries finish, cancel stragglers."""
        await self.drain_notifications(timeout)

        pending = list(self._notification_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} notification deliveries on shutdown")

    # --------------------------------------------------------
    # EXTERNAL ACTIONS
    # --------------------------------------------------------

    def acknowledge(self, alert_id: str, acknowledged_by: str) -> bool:
        """
        Acknowledge an alert.

        An Active alert becomes Acknowledged. An AutoResolved alert keeps
        its state and only records who acknowledged it.
        """
        key = self._keys_by_alert.get(alert_id)
        alert = self._current(alert_id)
        if key is None or alert is None:
            return False
        if alert.state not in (AlertState.ACTIVE, AlertState.AUTO_RESOLVED):
            return False

        new_state = AlertState.ACKNOWLEDGED if alert.state == AlertState.ACTIVE else alert.state
        self._store(key, replace(
            alert,
            state=new_state,
            acknowledged_by=acknowledged_by,
            acknowledged_at=self._clock.now(),
        ))
        self._publish()
        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")
        return True

    def resolve(self, alert_id: str, resolved_by: str) -> bool:
        """Resolve an alert manually."""
        key = self._keys_by_alert.get(alert_id)
        alert = self._current(alert_id)
        if key is None or alert is None or alert.state == AlertState.RESOLVED:
            return False

        self._close(key, alert, AlertState.RESOLVED, resolved_by, self._clock.now())
        self._publish()
        logger.info(f"Alert {alert_id} resolved by {resolved_by}")
        return True

    async def escalate(self, alert_id: str, reason: str = "") -> Optional[Alert]:
        """Raise an alert one severity tier; notifies handlers."""
        key = self._keys_by_alert.get(alert_id)
        alert = self._current(alert_id)
        if key is None or alert is None:
            return None

        escalated = replace(
            alert,
            severity=alert.severity.escalated(),
            escalations=alert.escalations + 1,
        )
        self._store(key, escalated)
        self._publish()
        logger.warning(
            f"Alert {alert_id} escalated {alert.severity.value} -> {escalated.severity.value}"
            + (f": {reason}" if reason else "")
        )
        self._notify([escalated])
        return escalated

    def record_recovery(self, action: RecoveryAction) -> None:
        """Count a completed recovery action for statistics."""
        self._recovery_attempted += 1
        if action.outcome == RecoveryOutcome.SUCCESS:
            self._recovery_successful += 1

    def _current(self, alert_id: str) -> Optional[Alert]:
        key = self._keys_by_alert.get(alert_id)
        if key is not None:
            state = self._states.get(key)
            if state is not None and state.alert is not None and state.alert.alert_id == alert_id:
                return state.alert
        return self._history.get(alert_id)

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self._current(alert_id)

    def get_active_alerts(self) -> List[Alert]:
        """Active and acknowledged alerts, most severe first."""
        return list(self._active)

    def get_pending_alerts(self) -> List[Alert]:
        return [
            s.alert for s in self._states.values()
            if s.alert is not None and s.alert.state == AlertState.PENDING
        ]

    def get_critical_alerts(self) -> List[Alert]:
        return [a for a in self._active if a.severity == AlertSeverity.CRITICAL]

    def statistics(self) -> Dict[str, Any]:
        """Alert and recovery statistics for dashboards."""
        stats = self._history.stats()
        attempted = self._recovery_attempted
        stats.update({
            "active_alerts": len(self._active),
            "pending_alerts": len(self.get_pending_alerts()),
            "evaluations": self._evaluations,
            "rule_errors": self._rule_errors,
            "recovery": {
                "attempted": attempted,
                "successful": self._recovery_successful,
                "success_rate": self._recovery_successful / attempted if attempted else 0.0,
            },
        })
        return stats


__all__ = [
    "AlertHistory",
    "AlertManager",
    "NotificationHandler",
]
