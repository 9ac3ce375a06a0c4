"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception hierarchy for the water production pipeline.

- Provides clear exception hierarchy
- Separates input, upstream, storage and invariant failures
- Supports error categorization for alerting
- Includes context for debugging

============================================================
EXCEPTION HIERARCHY
============================================================
PipelineException (base)
├── ConfigurationError
├── SnapshotValidationError      (malformed input, not retried)
├── TelemetrySourceError         (upstream unreachable / malformed)
├── DerivationError
├── AggregationError
│   └── RollupInvariantViolation (stored rollups do not reconcile)
└── SchedulerError

Storage failures are wrapped separately by
storage.repositories.exceptions.

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """How loudly an error should be reported."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Whether the next tick may succeed where this one failed."""
    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    NON_RECOVERABLE = "non_recoverable"


# ============================================================
# BASE EXCEPTION
# ============================================================

class PipelineException(Exception):
    """
    Base exception for all pipeline errors.

    All exceptions carry:
    - severity: for alerting
    - context: for debugging
    - classification: for retry decisions
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
        cause: Optional[Exception] = None,
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
    def is_recoverable(self) -> bool:
        """Check if error is recoverable."""
        return self.classification in (
            ErrorClassification.RECOVERABLE,
            ErrorClassification.TRANSIENT,
        )

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

class ConfigurationError(PipelineException):
    """Error in configuration."""

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
# INPUT ERRORS
# ============================================================

class SnapshotValidationError(PipelineException):
    """
    A snapshot was rejected at ingestion.

    Negative levels and unparseable timestamps point at a sensor
    fault upstream. They are logged and never retried automatically.
    """

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        machine_id: Optional[str] = None,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if machine_id:
            context["machine_id"] = machine_id
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)[:100]

        super().__init__(message, context=context, **kwargs)
        self.machine_id = machine_id
        self.field = field


# ============================================================
# UPSTREAM ERRORS
# ============================================================

class TelemetrySourceError(PipelineException):
    """The telemetry source is unreachable or returned a malformed payload."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        device_key: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if device_key:
            context["device_key"] = device_key
        if status_code is not None:
            context["status_code"] = status_code

        super().__init__(message, context=context, **kwargs)
        self.device_key = device_key
        self.status_code = status_code


# ============================================================
# PROCESSING ERRORS
# ============================================================

class DerivationError(PipelineException):
    """Production event derivation failed for a machine."""

    default_classification = ErrorClassification.TRANSIENT


class AggregationError(PipelineException):
    """Bucket aggregation failed for a machine."""

    default_classification = ErrorClassification.TRANSIENT


class RollupInvariantViolation(AggregationError):
    """
    A stored bucket does not reconcile with its stored children.

    Reported as a health issue. Historical rollups are never
    silently corrected.
    """

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        machine_id: str,
        granularity: str,
        period_key: str,
        stored_total: float,
        children_total: float,
    ):
        super().__init__(
            message=(
                f"{granularity} bucket {period_key} for {machine_id} holds "
                f"{stored_total}L but its children sum to {children_total}L"
            ),
            context={
                "machine_id": machine_id,
                "granularity": granularity,
                "period_key": period_key,
                "stored_total": stored_total,
                "children_total": children_total,
            },
        )
        self.machine_id = machine_id
        self.granularity = granularity
        self.period_key = period_key
        self.stored_total = stored_total
        self.children_total = children_total


class SchedulerError(PipelineException):
    """A periodic job could not be scheduled or stopped."""

    default_severity = Severity.HIGH


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "Severity",
    "ErrorClassification",
    "PipelineException",
    "ConfigurationError",
    "SnapshotValidationError",
    "TelemetrySourceError",
    "DerivationError",
    "AggregationError",
    "RollupInvariantViolation",
    "SchedulerError",
]
