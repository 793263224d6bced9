"""
Telemetry - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines all custom exceptions for the telemetry engine.

- Provides a clear exception hierarchy
- Carries context for debugging
- Classifies errors as transient or permanent for retry decisions

============================================================
EXCEPTION HIERARCHY
============================================================
TelemetryException (base)
├── ConfigurationError
├── ProbeError
│   ├── ProbeTimeout
│   ├── ProbeUnavailable
│   └── ContextGone
├── InvalidMetric
├── RuleEvaluationError
└── RecoveryActionFailure

============================================================
PROPAGATION POLICY
============================================================
- Probe failures degrade one context, never a whole cycle
- Rule errors are isolated per rule
- Recovery failures escalate the originating alert
- Nothing here is fatal to the process

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, degrades observability."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Error can be recovered from automatically."""

    TRANSIENT = "transient"
    """Temporary error, retry may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, retrying is pointless."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class TelemetryException(Exception):
    """
    Base exception for all telemetry engine errors.

    All exceptions carry:
    - severity: for logging and alerting
    - classification: for retry decisions
    - context: for debugging
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_transient(self) -> bool:
        """Check if a retry may succeed."""
        return self.classification == ErrorClassification.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(TelemetryException):
    """Error in configuration or rule definition."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]

        super().__init__(message, context=context, **kwargs)


# ============================================================
# PROBE ERRORS
# ============================================================

class ProbeError(TelemetryException):
    """Base class for instrumentation bridge failures."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        context_ref: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if context_ref:
            context["context_ref"] = context_ref
        if operation:
            context["operation"] = operation

        super().__init__(message, context=context, **kwargs)
        self.context_ref = context_ref
        self.operation = operation


class ProbeTimeout(ProbeError):
    """Bridge call did not complete within its deadline."""

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if timeout_seconds is not None:
            context["timeout_seconds"] = timeout_seconds
        super().__init__(message, context=context, **kwargs)


class ProbeUnavailable(ProbeError):
    """Instrumentation bridge is unreachable."""

    default_severity = Severity.HIGH


class ContextGone(ProbeError):
    """The execution context no longer exists. Never retried."""

    default_classification = ErrorClassification.NON_RECOVERABLE


# ============================================================
# DATA ERRORS
# ============================================================

class InvalidMetric(TelemetryException):
    """Malformed sample data or context descriptor."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        actual: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if field:
            context["field"] = field
        if actual is not None:
            context["actual"] = str(actual)[:100]

        super().__init__(message, context=context, **kwargs)


# ============================================================
# ALERTING ERRORS
# ============================================================

class RuleEvaluationError(TelemetryException):
    """A single alert rule failed to evaluate."""

    def __init__(
        self,
        message: str,
        rule_id: Optional[str] = None,
        target: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if rule_id:
            context["rule_id"] = rule_id
        if target:
            context["target"] = target

        super().__init__(message, context=context, **kwargs)


class RecoveryActionFailure(TelemetryException):
    """A recovery action did not take effect."""

    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        action_type: Optional[str] = None,
        target: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if action_type:
            context["action_type"] = action_type
        if target:
            context["target"] = target

        super().__init__(message, context=context, **kwargs)


__all__ = [
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
]
