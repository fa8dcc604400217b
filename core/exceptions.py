"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the typed failures returned by the trade idea workflow.

- Provides a clear exception hierarchy
- Enables specific error handling at the transport layer
- Includes context for debugging and audit

============================================================
EXCEPTION HIERARCHY
============================================================
WorkflowException (base)
├── ConfigurationError
│   └── InvalidConfigError
├── InvalidTransition
├── Unauthorized
│   └── Forbidden
├── BenchmarkUnavailable
├── NotFound
├── InvalidPair
└── Conflict

All failures are returned to the caller. The core never
retries; a failed command performs zero writes.

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
    """Expected rejection of a user command."""

    MEDIUM = "medium"
    """Requires attention from the caller."""

    HIGH = "high"
    """Serious issue, may indicate a data problem."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of how a caller can react to the error."""

    VALIDATION = "validation"
    """Command rejected before any write. Fix the input."""

    TRANSIENT = "transient"
    """Concurrent write lost. The caller may re-read and retry."""

    NON_RECOVERABLE = "non_recoverable"
    """Configuration or environment problem."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class WorkflowException(Exception):
    """
    Base exception for all workflow errors.

    All exceptions carry:
    - severity: for logging level selection
    - context: for debugging
    - classification: for caller retry decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.LOW
    default_classification: ErrorClassification = ErrorClassification.VALIDATION
    code: str = "workflow_error"

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
    def is_retryable(self) -> bool:
        """Whether a caller-side retry could succeed."""
        return self.classification == ErrorClassification.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/transport."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        base = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        return f"{base} | {ctx_str}" if ctx_str else base


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(WorkflowException):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE
    code = "configuration_error"


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid configuration for {key}: {reason}",
            context={"config_key": key, "actual_value": str(value)[:100], "reason": reason},
        )


# ============================================================
# COMMAND ERRORS
# ============================================================

class InvalidTransition(WorkflowException):
    """Requested stage edge does not exist, or the entity cannot move."""

    code = "invalid_transition"

    def __init__(
        self,
        message: str,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if from_state:
            context["from_state"] = from_state
        if to_state:
            context["to_state"] = to_state

        super().__init__(message, context=context, **kwargs)


class Unauthorized(WorkflowException):
    """Actor does not satisfy the required permission class."""

    code = "unauthorized"

    def __init__(
        self,
        message: str,
        actor_id: Optional[str] = None,
        required: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if actor_id:
            context["actor_id"] = actor_id
        if required:
            context["required"] = required

        super().__init__(message, context=context, **kwargs)


class Forbidden(Unauthorized):
    """Actor is known but the operation is not allowed on this record."""

    code = "forbidden"


class BenchmarkUnavailable(WorkflowException):
    """Sizing mode needs a benchmark weight that does not exist."""

    code = "benchmark_unavailable"

    def __init__(
        self,
        message: str,
        portfolio_id: Optional[str] = None,
        asset_id: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if portfolio_id:
            context["portfolio_id"] = portfolio_id
        if asset_id:
            context["asset_id"] = asset_id

        super().__init__(message, context=context, **kwargs)


class NotFound(WorkflowException):
    """Entity id is stale or never existed."""

    code = "not_found"

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if entity_type:
            context["entity_type"] = entity_type
        if entity_id is not None:
            context["entity_id"] = str(entity_id)

        super().__init__(message, context=context, **kwargs)


class InvalidPair(WorkflowException):
    """Pair trade grouping or leg-routing precondition violated."""

    code = "invalid_pair"

    def __init__(
        self,
        message: str,
        pair_trade_id: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if pair_trade_id:
            context["pair_trade_id"] = pair_trade_id

        super().__init__(message, context=context, **kwargs)


class Conflict(WorkflowException):
    """Concurrent write conflict surfaced by the persistence gateway."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.TRANSIENT
    code = "conflict"


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "Severity",
    "ErrorClassification",
    "WorkflowException",
    "ConfigurationError",
    "InvalidConfigError",
    "InvalidTransition",
    "Unauthorized",
    "Forbidden",
    "BenchmarkUnavailable",
    "NotFound",
    "InvalidPair",
    "Conflict",
]
