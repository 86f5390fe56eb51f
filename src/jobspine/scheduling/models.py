"""Job engine models (``job``, ``job_execution``, ``job_lock``).

Manifesto:
    Jobs, attempts and leases need typed dataclass representations so
    the store, executor and manager exchange structured objects instead
    of rows. Timestamps are aware UTC datetimes here; the store owns the
    conversion to and from the TEXT columns.

Job lifecycle::

    schedule()
        │
        ▼
    SCHEDULED ──lease + start──► RUNNING ──success, cron──► SCHEDULED
      │  ▲                         │  └────success, one-shot──► COMPLETED
      │  │                         ├────failure, retries left─► SCHEDULED (backoff)
      │  └──resume── PAUSED        └────failure, exhausted────► FAILED
      │               ▲
      ├──pause────────┘
      └──cancel──► CANCELLED   (PAUSED ──cancel──► CANCELLED)

Tags:
    jobspine, models, scheduling, dataclasses, state-machine

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any


class JobStatus(str, Enum):
    """Lifecycle state of a job."""

    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobPriority(IntEnum):
    """Dispatch priority; higher values are polled first."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class ExecutionStatus(str, Enum):
    """Outcome snapshot of one attempt."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ExecutionTrigger(str, Enum):
    """What started an attempt."""

    SCHEDULER = "scheduler"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# job
# ---------------------------------------------------------------------------


@dataclass
class Job:
    """Job definition and scheduling state (``job``).

    ``version`` is 0 for a job that has never been persisted; the store
    assigns 1 on insert and increments it on every successful write.
    ``lock_id``/``lock_expires_at`` mirror the lease row of the node
    currently running the job.
    """

    name: str
    job_type: str
    id: str | None = None
    description: str | None = None
    cron_expression: str | None = None
    status: JobStatus = JobStatus.SCHEDULED
    priority: JobPriority = JobPriority.MEDIUM
    parameters: dict[str, Any] = field(default_factory=dict)
    next_run_time: datetime | None = None
    last_run_time: datetime | None = None
    last_completion_time: datetime | None = None
    last_failure_time: datetime | None = None
    retry_count: int = 0
    max_retries: int | None = None
    timeout_seconds: int | None = None
    is_active: bool = True
    lock_id: str | None = None
    lock_expires_at: datetime | None = None
    tenant_id: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    @property
    def is_recurring(self) -> bool:
        return bool(self.cron_expression)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "job_type": self.job_type,
            "description": self.description,
            "cron_expression": self.cron_expression,
            "status": self.status.value,
            "priority": self.priority.name,
            "parameters": self.parameters,
            "next_run_time": _iso(self.next_run_time),
            "last_run_time": _iso(self.last_run_time),
            "last_completion_time": _iso(self.last_completion_time),
            "last_failure_time": _iso(self.last_failure_time),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "timeout_seconds": self.timeout_seconds,
            "is_active": self.is_active,
            "lock_id": self.lock_id,
            "lock_expires_at": _iso(self.lock_expires_at),
            "tenant_id": self.tenant_id,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }


# ---------------------------------------------------------------------------
# job_execution
# ---------------------------------------------------------------------------


@dataclass
class JobExecution:
    """One attempt of a job (``job_execution``). Immutable once ``end_time`` is set."""

    job_id: str
    job_name: str
    job_type: str
    start_time: datetime
    node_id: str
    id: str | None = None
    tenant_id: str | None = None
    end_time: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    error_message: str | None = None
    error_stack: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    processing_time_ms: int | None = None
    trigger: ExecutionTrigger = ExecutionTrigger.SCHEDULER

    @property
    def is_finished(self) -> bool:
        return self.end_time is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "job_name": self.job_name,
            "job_type": self.job_type,
            "tenant_id": self.tenant_id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "status": self.status.value,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
            "parameters": self.parameters,
            "result": self.result,
            "processing_time_ms": self.processing_time_ms,
            "node_id": self.node_id,
            "trigger": self.trigger.value,
        }


# ---------------------------------------------------------------------------
# job_lock
# ---------------------------------------------------------------------------


@dataclass
class JobLock:
    """Lease row (``job_lock``)."""

    job_id: str
    node_id: str
    locked_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "node_id": self.node_id,
            "locked_at": _iso(self.locked_at),
            "expires_at": _iso(self.expires_at),
        }


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None
