"""
Recovery Action Executor.

============================================================
PURPOSE
============================================================
Maps newly triggered alerts to at most one corrective action and
runs it without blocking the sampling cycle.

PRINCIPLES:
- First matching policy entry wins
- One action per (action type, target) per suppression window
- Every run is recorded with its outcome
- A failed action escalates the originating alert, never a new one

============================================================
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from .clock import ClockProtocol, SystemClock
from .config import RecoveryConfig
from .events import EventBus, EventTopic
from .exceptions import RecoveryActionFailure
from .models import (
    Alert,
    AlertCategory,
    AlertSeverity,
    RecoveryAction,
    RecoveryActionType,
    RecoveryOutcome,
)
from .probe import ContextProbeAdapter, ProbeFailure


logger = logging.getLogger(__name__)


# ============================================================
# POLICY
# ============================================================

@dataclass(frozen=True)
class PolicyEntry:
    """Alerts of this category (and one of these severities) get this action."""
    category: AlertCategory
    action_type: RecoveryActionType
    severities: Tuple[AlertSeverity, ...] = ()

    def matches(self, alert: Alert) -> bool:
        if alert.category != self.category:
            return False
        return not self.severities or alert.severity in self.severities


DEFAULT_POLICY: Tuple[PolicyEntry, ...] = (
    PolicyEntry(
        AlertCategory.MEMORY,
        RecoveryActionType.FORCE_GC,
        (AlertSeverity.CRITICAL, AlertSeverity.HIGH),
    ),
    PolicyEntry(AlertCategory.MEMORY, RecoveryActionType.CLEAR_CACHE, (AlertSeverity.MEDIUM,)),
    PolicyEntry(
        AlertCategory.AVAILABILITY,
        RecoveryActionType.RESTART_CONTEXT,
        (AlertSeverity.CRITICAL, AlertSeverity.HIGH),
    ),
    PolicyEntry(AlertCategory.PERFORMANCE, RecoveryActionType.REDUCE_POLLING),
    PolicyEntry(AlertCategory.MESSAGING, RecoveryActionType.RECONNECT_BRIDGE),
)


class RecoveryPolicy:
    """Ordered (category, severity) -> action mapping."""

    def __init__(self, entries: Optional[List[PolicyEntry]] = None):
        self._entries = tuple(entries) if entries is not None else DEFAULT_POLICY

    @property
    def entries(self) -> Tuple[PolicyEntry, ...]:
        return self._entries

    def action_for(self, alert: Alert) -> Optional[RecoveryActionType]:
        for entry in self._entries:
            if entry.matches(alert):
                return entry.action_type
        return None


# Actions that run inside the alert's target context
CONTEXT_ACTIONS = (
    RecoveryActionType.CLEAR_CACHE,
    RecoveryActionType.FORCE_GC,
    RecoveryActionType.RESTART_CONTEXT,
)

RECOVERY_EXPRESSIONS: Dict[RecoveryActionType, str] = {
    RecoveryActionType.CLEAR_CACHE: """
(() => {
  const cleared = [];
  if (typeof caches !== 'undefined') {
    caches.keys().then(names => names.forEach(name => caches.delete(name)));
    cleared.push('caches');
  }
  if (typeof sessionStorage !== 'undefined') {
    sessionStorage.clear();
    cleared.push('sessionStorage');
  }
  return { cleared };
})()
""",
    RecoveryActionType.FORCE_GC: """
(() => {
  if (typeof gc === 'function') { gc(); return { collected: true }; }
  return { collected: false };
})()
""",
    RecoveryActionType.RESTART_CONTEXT: """
(() => {
  if (typeof chrome !== 'undefined' && chrome.runtime && chrome.runtime.reload) {
    chrome.runtime.reload();
    return { restarted: 'runtime' };
  }
  if (typeof location !== 'undefined') {
    location.reload();
    return { restarted: 'document' };
  }
  return { restarted: false };
})()
""",
}


# (action type, target) -> completes or raises
ActionHandler = Callable[[RecoveryActionType, str], Awaitable[None]]

# (alert id, reason) -> escalated alert
EscalateCallback = Callable[[str, str], Awaitable[Optional[Alert]]]


# ============================================================
# EXECUTOR
# ============================================================

class RecoveryExecutor:
    """
    Runs recovery actions as background tasks.

    submit() returns immediately; completion is recorded in history and
    published on the bus.
    """

    def __init__(
        self,
        adapter: ContextProbeAdapter,
        config: Optional[RecoveryConfig] = None,
        clock: Optional[ClockProtocol] = None,
        escalate: Optional[EscalateCallback] = None,
        bus: Optional[EventBus] = None,
        policy: Optional[RecoveryPolicy] = None,
        handlers: Optional[Dict[RecoveryActionType, ActionHandler]] = None,
        is_context: Optional[Callable[[str], bool]] = None,
    ):
        self._adapter = adapter
        self._config = config or RecoveryConfig()
        self._clock = clock or SystemClock()
        self._escalate = escalate
        self._bus = bus
        self._policy = policy or RecoveryPolicy()
        self._handlers: Dict[RecoveryActionType, ActionHandler] = dict(handlers or {})
        self._is_context = is_context or (lambda target: True)

        self._last_run: Dict[Tuple[RecoveryActionType, str], float] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._history: Deque[RecoveryAction] = deque(maxlen=self._config.history_size)
        self._action_seq = 0
        self._suppressed = 0
        self._accepting = True

    @property
    def policy(self) -> RecoveryPolicy:
        return self._policy

    def set_handler(self, action_type: RecoveryActionType, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    # --------------------------------------------------------
    # SUBMISSION
    # --------------------------------------------------------

    def submit(self, alert: Alert) -> Optional[asyncio.Task]:
        """
        Schedule the policy's action for an alert.

        Returns the running task, or None when no action applies or the
        action is suppressed.
        """
        if not self._config.enabled or not self._accepting:
            return None

        action_type = self._policy.action_for(alert)
        if action_type is None:
            return None

        if action_type in CONTEXT_ACTIONS and not self._is_context(alert.target):
            logger.debug(f"Skipping {action_type.value}: {alert.target} is not a context")
            return None

        key = (action_type, alert.target)
        now = self._clock.timestamp()
        window = self._config.suppression_for(action_type.value)
        last = self._last_run.get(key)
        if last is not None and now - last < window:
            self._suppressed += 1
            logger.info(
                f"Recovery {action_type.value} on {alert.target} suppressed "
                f"({now - last:.0f}s < {window:.0f}s)"
            )
            return None

        self._last_run[key] = now
        task = asyncio.create_task(self._run(action_type, alert))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Recovery {action_type.value} started on {alert.target} for {alert.alert_id}")
        return task

    async def _run(self, action_type: RecoveryActionType, alert: Alert) -> RecoveryAction:
        requested_at = self._clock.now()
        handler = self._handlers.get(action_type, self._evaluate_expression)
        error: Optional[str] = None

        try:
            await asyncio.wait_for(
                handler(action_type, alert.target),
                timeout=self._config.action_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            error = f"timed out after {self._config.action_timeout_seconds}s"
        except RecoveryActionFailure as e:
            error = e.message
        except Exception as e:
            error = f"{type(e).__name__}: {e}"

        self._action_seq += 1
        action = RecoveryAction(
            action_id=f"recovery-{self._action_seq}",
            action_type=action_type,
            target=alert.target,
            alert_id=alert.alert_id,
            requested_at=requested_at,
            completed_at=self._clock.now(),
            outcome=RecoveryOutcome.SUCCESS if error is None else RecoveryOutcome.FAILURE,
            error=error,
        )
        self._history.append(action)

        if self._bus is not None:
            self._bus.publish(EventTopic.RECOVERY_COMPLETED, action)

        if error is None:
            logger.info(f"Recovery {action_type.value} succeeded on {alert.target}")
        else:
            logger.warning(f"Recovery {action_type.value} failed on {alert.target}: {error}")
            if self._escalate is not None:
                try:
                    await self._escalate(alert.alert_id, f"recovery {action_type.value} failed: {error}")
                except Exception as e:
                    logger.error(f"Escalation of {alert.alert_id} failed: {e}")

        return action

    async def _evaluate_expression(self, action_type: RecoveryActionType, target: str) -> None:
        """Default handler: run the action's expression in the target context."""
        expression = RECOVERY_EXPRESSIONS.get(action_type)
        if expression is None:
            raise RecoveryActionFailure(
                f"No handler for {action_type.value}",
                action_type=action_type.value,
                target=target,
            )

        result = await self._adapter.evaluate(target, expression, self._config.action_timeout_seconds)
        if isinstance(result, ProbeFailure):
            raise RecoveryActionFailure(
                f"{action_type.value} on {target}: {result.reason}",
                action_type=action_type.value,
                target=target,
                cause=result.error,
            )

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight actions to finish."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting work, let in-flight actions finish, cancel stragglers."""
        self._accepting = False
        await self.drain(timeout)

        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} recovery actions on shutdown")

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def history(self, limit: Optional[int] = None) -> List[RecoveryAction]:
        """Newest first."""
        actions = list(self._history)[::-1]
        return actions[:limit] if limit is not None else actions

    def statistics(self) -> Dict[str, float]:
        attempted = len(self._history)
        successful = sum(1 for a in self._history if a.outcome == RecoveryOutcome.SUCCESS)
        return {
            "attempted": attempted,
            "successful": successful,
            "failed": attempted - successful,
            "success_rate": successful / attempted if attempted else 0.0,
            "suppressed": self._suppressed,
            "in_flight": len(self._tasks),
        }


__all__ = [
    "PolicyEntry",
    "DEFAULT_POLICY",
    "RecoveryPolicy",
    "CONTEXT_ACTIONS",
    "RECOVERY_EXPRESSIONS",
    "ActionHandler",
    "EscalateCallback",
    "RecoveryExecutor",
]
