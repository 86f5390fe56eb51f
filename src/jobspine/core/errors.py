"""
Structured error types for the jobspine engine.

Provides a typed hierarchy of errors with metadata for retry decisions,
categorisation, alerting and root cause analysis through error chaining.

Every failure the engine surfaces to a caller is a JobSpineError subclass
and carries:
- **Category:** What kind of error (database, scheduling, validation, ...)
- **Retryable:** Whether the operation can be retried automatically
- **Retry-after:** How long to wait before retrying
- **Context:** Job id/name/type, execution id, node id, tenant and custom fields
- **Cause:** Chained underlying exception for root cause analysis

Manifesto:
    - **Typed Error Hierarchy:** Different error types for different failure modes
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry job metadata for logging and alerting
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      JobSpineError                               │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError    ValidationError        ConfigError           │
        │  (retryable=True)  (VALIDATION)           (CONFIG)              │
        │       │                 │                                        │
        │  JobTimeoutError   InvalidJobError                              │
        │                    InvalidCronExpressionError                   │
        │                                                                  │
        │  DatabaseError     SchedulingError                              │
        │  (DATABASE)        (ORCHESTRATION)                              │
        │       │                 │                                        │
        │  ConflictError     JobNotFoundError                             │
        │                    WorkerNotFoundError                          │
        │                    JobAlreadyRunningError                       │
        │                    InvalidJobStateError                         │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    Stale optimistic write:

    >>> error = ConflictError("job-1", expected_version=3, actual_version=4)
    >>> error.retryable
    True
    >>> error.category
    <ErrorCategory.DATABASE: 'DATABASE'>

    Adding job context:

    >>> error = WorkerNotFoundError("statement").with_context(job_id="job-1")
    >>> error.context.job_id
    'job-1'

Guardrails:
    ❌ DON'T: Raise generic Exception from engine code
    ✅ DO: Use the JobSpineError subclass that names the failure

    ❌ DON'T: Swallow the original exception
    ✅ DO: Pass it as cause= for error chaining

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    jobspine, observability

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories are grouped by their typical retry behavior:
    - **Infrastructure (usually transient):** DATABASE, TIMEOUT
    - **Input errors (never retryable):** VALIDATION, CONFIG
    - **Engine errors:** ORCHESTRATION, EXECUTION
    - **Internal errors:** INTERNAL, UNKNOWN

    Attributes:
        DATABASE: Store failures, optimistic-concurrency conflicts
        TIMEOUT: Worker exceeded its deadline
        VALIDATION: Malformed job definitions, bad cron expressions
        CONFIG: Missing or invalid settings
        ORCHESTRATION: Unknown jobs/workers, illegal state transitions
        EXECUTION: Errors raised by worker code
        INTERNAL: Bugs, unexpected state
        UNKNOWN: Uncategorized errors

    Tags:
        error-category, classification, alerting, retry-logic, jobspine
    """

    DATABASE = "DATABASE"
    TIMEOUT = "TIMEOUT"

    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"

    ORCHESTRATION = "ORCHESTRATION"
    EXECUTION = "EXECUTION"

    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields cover the metadata every job failure needs (job identity,
    execution id, node and tenant); anything else goes into ``metadata``.
    ``to_dict()`` serializes only the fields that are set.

    Examples:
        >>> ctx = ErrorContext(job_id="job-1", node_id="node-a")
        >>> ctx.to_dict()
        {'job_id': 'job-1', 'node_id': 'node-a'}

    Attributes:
        job_id: Job the error relates to
        job_name: Human readable job name
        job_type: Dispatch classification of the job
        execution_id: JobExecution row of the failing attempt
        node_id: Engine node that observed the error
        tenant_id: Tenant scope of the job
        metadata: Additional key-value pairs
    """

    job_id: str | None = None
    job_name: str | None = None
    job_type: str | None = None
    execution_id: str | None = None
    node_id: str | None = None
    tenant_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["job_id", "job_name", "job_type", "execution_id", "node_id", "tenant_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class JobSpineError(Exception):
    """
    Base exception for all jobspine errors.

    All JobSpineError instances carry:
    - **category:** ErrorCategory enum for classification and routing
    - **retryable:** Boolean indicating if operation can be retried
    - **retry_after:** Optional seconds to wait before retry
    - **context:** ErrorContext with structured metadata
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category`` and ``default_retryable`` class
    attributes to provide sensible defaults for their failure mode.

    Examples:
        >>> error = JobSpineError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> d = JobSpineError("boom", category=ErrorCategory.EXECUTION).to_dict()
        >>> d["category"]
        'EXECUTION'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> JobSpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise JobNotFoundError(job_id).with_context(node_id=node_id)
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Usually Retryable)
# =============================================================================


class TransientError(JobSpineError):
    """Temporary error that may succeed on retry."""

    default_category = ErrorCategory.EXECUTION
    default_retryable = True


class JobTimeoutError(TransientError, builtins.TimeoutError):
    """Worker did not settle within the job's ``timeout_seconds``.

    The worker itself is not interrupted; its thread keeps running until
    the worker returns on its own. Any side effects it performs after the
    deadline are orphaned work.
    """

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, timeout_seconds: float, **kwargs: Any):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job exceeded timeout of {timeout_seconds}s", **kwargs)


# =============================================================================
# VALIDATION / CONFIG ERRORS (Never Retryable)
# =============================================================================


class ValidationError(JobSpineError):
    """Input failed validation."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class InvalidJobError(ValidationError):
    """Job definition is malformed (missing name/type, bad limits)."""

    pass


class InvalidCronExpressionError(ValidationError):
    """Cron expression could not be parsed."""

    def __init__(self, expression: str, **kwargs: Any):
        self.expression = expression
        super().__init__(f"Invalid cron expression: {expression!r}", **kwargs)


class ConfigError(JobSpineError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# STORE ERRORS
# =============================================================================


class DatabaseError(JobSpineError):
    """Database query or transaction error."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class ConflictError(DatabaseError):
    """Conditional write presented a stale ``version``.

    The stored row is left unchanged. Callers re-read the job and retry
    their intent against the fresh version.
    """

    default_retryable = True

    def __init__(
        self,
        job_id: str,
        *,
        expected_version: int | None = None,
        actual_version: int | None = None,
        message: str | None = None,
        **kwargs: Any,
    ):
        self.job_id = job_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            message
            or f"Version conflict for job {job_id}: expected {expected_version}, found {actual_version}",
            **kwargs,
        )
        self.context.job_id = job_id


# =============================================================================
# SCHEDULING ERRORS
# =============================================================================


class SchedulingError(JobSpineError):
    """Job lookup, dispatch or lifecycle error."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class JobNotFoundError(SchedulingError):
    """Operation referenced an unknown job id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")
        self.context.job_id = job_id


class WorkerNotFoundError(SchedulingError):
    """No registered worker can handle the job's type."""

    def __init__(self, job_type: str, job_name: str | None = None):
        self.job_type = job_type
        self.job_name = job_name
        detail = f" (job {job_name!r})" if job_name else ""
        super().__init__(f"No worker registered for job type {job_type!r}{detail}")
        self.context.job_type = job_type
        self.context.job_name = job_name


class JobAlreadyRunningError(SchedulingError):
    """Manual execution requested while the job is running or leased elsewhere."""

    def __init__(self, job_id: str, holder: str | None = None):
        self.job_id = job_id
        self.holder = holder
        detail = f" (lease held by {holder})" if holder else ""
        super().__init__(f"Job {job_id} is already running{detail}")
        self.context.job_id = job_id


class InvalidJobStateError(SchedulingError):
    """Administrative transition is not allowed from the job's current status."""

    def __init__(self, job_id: str, status: str, action: str):
        self.job_id = job_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} job {job_id} in status {status}")
        self.context.job_id = job_id


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, JobSpineError):
        return error.retryable
    return isinstance(error, (ConnectionError, builtins.TimeoutError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, JobSpineError):
        return error.category
    if isinstance(error, builtins.TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.EXECUTION


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "JobSpineError",
    "TransientError",
    "JobTimeoutError",
    "ValidationError",
    "InvalidJobError",
    "InvalidCronExpressionError",
    "ConfigError",
    "DatabaseError",
    "ConflictError",
    "SchedulingError",
    "JobNotFoundError",
    "WorkerNotFoundError",
    "JobAlreadyRunningError",
    "InvalidJobStateError",
    "is_retryable",
    "categorize_error",
]
