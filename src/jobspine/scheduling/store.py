"""Job store - durable CRUD with optimistic concurrency.

Manifesto:
    Nodes share nothing but the database, so the database row is the
    only place a job's state can live. Every write to a job is a
    conditional UPDATE on ``version``; a writer holding a stale copy
    gets a ConflictError and must re-read before trying again. That
    single rule is what keeps two nodes (or an operator and a node)
    from silently overwriting each other.

Tags:
    jobspine, scheduling, repository, CRUD, optimistic-concurrency

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  JOB STORE                                                                    │
│                                                                               │
│  Job Operations:                                                              │
│  ├── get(id) / require(id)                                                   │
│  ├── list_jobs(include_inactive, job_type, status, tenant_id)                │
│  ├── upsert(job)            version 0 → INSERT (v1)                          │
│  │                          version n → UPDATE … WHERE version = n (v n+1)   │
│  ├── update(id, mutate)     re-read / mutate / upsert loop on conflict       │
│  ├── find_due_jobs(now, limit)                                               │
│  └── find_running_for_node(node) / find_orphaned_running(now)                │
│                                                                               │
│  Execution Operations (append-only):                                          │
│  ├── create_execution(execution)                                             │
│  ├── finish_execution(execution)   only while end_time IS NULL               │
│  └── list_executions(job_id, limit)   newest first                           │
│                                                                               │
│  Due query:                                                                   │
│    status = SCHEDULED AND is_active AND next_run_time <= now                 │
│    AND no lease row with expires_at >= now                                   │
│    ORDER BY priority DESC, next_run_time ASC LIMIT n                         │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from jobspine.core.dialect import Dialect, SQLiteDialect
from jobspine.core.errors import ConflictError, DatabaseError, JobNotFoundError
from jobspine.core.logging import get_logger
from jobspine.core.protocols import Connection
from jobspine.core.timestamps import from_iso8601, new_id, to_iso8601, utc_now

from .models import (
    ExecutionStatus,
    ExecutionTrigger,
    Job,
    JobExecution,
    JobPriority,
    JobStatus,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]
JobMutation = Callable[[Job], "Job | None"]

JOB_COLUMNS = [
    "id",
    "name",
    "job_type",
    "description",
    "cron_expression",
    "status",
    "priority",
    "parameters",
    "next_run_time",
    "last_run_time",
    "last_completion_time",
    "last_failure_time",
    "retry_count",
    "max_retries",
    "timeout_seconds",
    "is_active",
    "lock_id",
    "lock_expires_at",
    "tenant_id",
    "created_by",
    "updated_by",
    "created_at",
    "updated_at",
    "version",
]

EXECUTION_COLUMNS = [
    "id",
    "job_id",
    "job_name",
    "job_type",
    "tenant_id",
    "start_time",
    "end_time",
    "status",
    "error_message",
    "error_stack",
    "parameters",
    "result",
    "processing_time_ms",
    "node_id",
    "trigger",
]

_JOB_SELECT = ", ".join(f"job.{c}" for c in JOB_COLUMNS)
_EXECUTION_SELECT = ", ".join(EXECUTION_COLUMNS)


class JobStore:
    """Repository for jobs and their executions.

    Example:
        >>> store = JobStore(conn)
        >>> job = store.upsert(Job(name="eod-interest", job_type="interest",
        ...                        cron_expression="0 23 * * *",
        ...                        next_run_time=next_occurrence("0 23 * * *", utc_now())))
        >>> job.version
        1
        >>> store.update(job.id, lambda j: replace(j, priority=JobPriority.HIGH)).version
        2
    """

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize store with database connection.

        Args:
            conn: Database connection (any backend satisfying Connection protocol)
            dialect: SQL dialect for portable queries. Defaults to SQLiteDialect.
            clock: Source of "now" for updated_at stamps and due queries
        """
        self.conn = conn
        self.dialect: Dialect = dialect or SQLiteDialect()
        self.clock = clock

    def _ph(self, count: int = 1) -> str:
        """Generate placeholder string for this dialect."""
        return self.dialect.placeholders(count)

    # === Job reads ===

    def get(self, job_id: str) -> Job | None:
        """Get job by ID, or None."""
        cursor = self.conn.execute(
            f"SELECT {_JOB_SELECT} FROM job WHERE id = {self._ph()}",
            (job_id,),
        )
        row = cursor.fetchone()
        if not row:
            return None
        return self._row_to_job(row)

    def require(self, job_id: str) -> Job:
        """Get job by ID.

        Raises:
            JobNotFoundError: If no job has this id
        """
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self,
        *,
        include_inactive: bool = False,
        job_type: str | None = None,
        status: JobStatus | None = None,
        tenant_id: str | None = None,
    ) -> list[Job]:
        """List jobs, optionally filtered, ordered by name."""
        where: list[str] = []
        params: list[Any] = []
        if not include_inactive:
            where.append(f"is_active = {self.dialect.boolean_true()}")
        if job_type is not None:
            where.append(f"job_type = {self._ph()}")
            params.append(job_type)
        if status is not None:
            where.append(f"status = {self._ph()}")
            params.append(JobStatus(status).value)
        if tenant_id is not None:
            where.append(f"tenant_id = {self._ph()}")
            params.append(tenant_id)

        sql = f"SELECT {_JOB_SELECT} FROM job"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY name, id"
        cursor = self.conn.execute(sql, tuple(params))
        return [self._row_to_job(row) for row in cursor.fetchall()]

    def list_by_type(self, job_type: str) -> list[Job]:
        return self.list_jobs(include_inactive=True, job_type=job_type)

    def list_by_status(self, status: JobStatus) -> list[Job]:
        return self.list_jobs(include_inactive=True, status=status)

    def list_by_tenant(self, tenant_id: str) -> list[Job]:
        return self.list_jobs(include_inactive=True, tenant_id=tenant_id)

    def count_by_status(self) -> dict[str, int]:
        """Number of jobs per status."""
        cursor = self.conn.execute("SELECT status, COUNT(*) FROM job GROUP BY status")
        return {row[0]: row[1] for row in cursor.fetchall()}

    # === Job writes ===

    def upsert(self, job: Job) -> Job:
        """Persist ``job`` with a version-checked conditional write.

        A job with ``version == 0`` is inserted (an id is generated if
        missing). Otherwise the row is updated only if its stored version
        still equals ``job.version``.

        Returns:
            The persisted job carrying its new version

        Raises:
            ConflictError: Insert of an existing id, or stale version on update
            JobNotFoundError: Update of a job that does not exist
        """
        now = self.clock()
        if job.version == 0:
            return self._insert(job, now)

        new_version = job.version + 1
        values = self._job_values(replace(job, updated_at=now, version=new_version))
        assignments = ", ".join(f"{c} = {self._ph()}" for c in JOB_COLUMNS[1:])
        cursor = self.conn.execute(
            f"UPDATE job SET {assignments} WHERE id = {self._ph()} AND version = {self._ph()}",
            (*values[1:], job.id, job.version),
        )
        self.conn.commit()

        if cursor.rowcount == 0:
            current = self.get(job.id)  # type: ignore[arg-type]
            if current is None:
                raise JobNotFoundError(job.id)  # type: ignore[arg-type]
            raise ConflictError(
                job.id,  # type: ignore[arg-type]
                expected_version=job.version,
                actual_version=current.version,
            )
        return replace(job, updated_at=now, version=new_version)

    def _insert(self, job: Job, now: datetime) -> Job:
        stored = replace(
            job,
            id=job.id or new_id(),
            created_at=job.created_at or now,
            updated_at=now,
            version=1,
        )
        existing = self.get(stored.id)  # type: ignore[arg-type]
        if existing is not None:
            raise self._duplicate(stored.id, existing)  # type: ignore[arg-type]

        columns = ", ".join(JOB_COLUMNS)
        try:
            self.conn.execute(
                f"INSERT INTO job ({columns}) VALUES ({self._ph(len(JOB_COLUMNS))})",
                self._job_values(stored),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            # Another node may have inserted the same id since the check
            existing = self.get(stored.id)  # type: ignore[arg-type]
            if existing is not None:
                raise self._duplicate(stored.id, existing) from e  # type: ignore[arg-type]
            raise DatabaseError(f"Failed to insert job {stored.id}", cause=e).with_context(
                job_id=stored.id, job_name=stored.name
            ) from e
        logger.debug("job_inserted", job_id=stored.id, job_name=stored.name)
        return stored

    @staticmethod
    def _duplicate(job_id: str, existing: Job) -> ConflictError:
        return ConflictError(
            job_id,
            expected_version=0,
            actual_version=existing.version,
            message=f"Job {job_id} already exists",
        )

    def update(self, job_id: str, mutate: JobMutation, *, attempts: int = 5) -> Job | None:
        """Apply ``mutate`` to the latest copy of a job and persist it.

        ``mutate`` receives a fresh copy and returns the desired job, or
        None to abandon the write. It may raise to abort. On a version
        conflict the job is re-read and ``mutate`` runs again, up to
        ``attempts`` times.

        Returns:
            The persisted job, or None if ``mutate`` abandoned the write

        Raises:
            JobNotFoundError: If the job does not exist
            ConflictError: If every attempt lost the race
        """
        last_error: ConflictError | None = None
        for attempt in range(1, attempts + 1):
            current = self.require(job_id)
            desired = mutate(replace(current, parameters=dict(current.parameters)))
            if desired is None:
                return None
            try:
                return self.upsert(replace(desired, version=current.version))
            except ConflictError as e:
                last_error = e
                logger.debug("job_update_conflict", job_id=job_id, attempt=attempt)
        if last_error is None:
            raise ValueError("attempts must be at least 1")
        raise last_error

    # === Scheduling queries ===

    def find_due_jobs(self, now: datetime, limit: int) -> list[Job]:
        """Jobs that are SCHEDULED, active, due and not under a live lease."""
        if limit <= 0:
            return []
        now_iso = to_iso8601(now)
        cursor = self.conn.execute(
            f"""
            SELECT {_JOB_SELECT} FROM job
            LEFT JOIN job_lock ON job_lock.job_id = job.id
            WHERE job.status = {self._ph()}
              AND job.is_active = {self.dialect.boolean_true()}
              AND job.next_run_time IS NOT NULL
              AND job.next_run_time <= {self._ph()}
              AND (job_lock.job_id IS NULL OR job_lock.expires_at < {self._ph()})
            ORDER BY job.priority DESC, job.next_run_time ASC
            LIMIT {self._ph()}
            """,
            (JobStatus.SCHEDULED.value, now_iso, now_iso, limit),
        )
        return [self._row_to_job(row) for row in cursor.fetchall()]

    def find_running_for_node(self, node_id: str) -> list[Job]:
        """RUNNING jobs whose denormalised lock or lease row names ``node_id``."""
        cursor = self.conn.execute(
            f"""
            SELECT {_JOB_SELECT} FROM job
            WHERE job.status = {self._ph()}
              AND (job.lock_id = {self._ph()}
                   OR job.id IN (SELECT job_id FROM job_lock WHERE node_id = {self._ph()}))
            """,
            (JobStatus.RUNNING.value, node_id, node_id),
        )
        return [self._row_to_job(row) for row in cursor.fetchall()]

    def find_orphaned_running(self, now: datetime) -> list[Job]:
        """RUNNING jobs with no live lease whose recorded lease already expired."""
        now_iso = to_iso8601(now)
        cursor = self.conn.execute(
            f"""
            SELECT {_JOB_SELECT} FROM job
            LEFT JOIN job_lock ON job_lock.job_id = job.id
            WHERE job.status = {self._ph()}
              AND (job.lock_expires_at IS NULL OR job.lock_expires_at < {self._ph()})
              AND (job_lock.job_id IS NULL OR job_lock.expires_at < {self._ph()})
            """,
            (JobStatus.RUNNING.value, now_iso, now_iso),
        )
        return [self._row_to_job(row) for row in cursor.fetchall()]

    # === Execution operations ===

    def create_execution(self, execution: JobExecution) -> JobExecution:
        """Append the start record of an attempt."""
        stored = replace(execution, id=execution.id or new_id())
        self.conn.execute(
            f"INSERT INTO job_execution ({_EXECUTION_SELECT}) VALUES ({self._ph(len(EXECUTION_COLUMNS))})",
            self._execution_values(stored),
        )
        self.conn.commit()
        return stored

    def finish_execution(self, execution: JobExecution) -> JobExecution:
        """Record the outcome of an attempt.

        Raises:
            ConflictError: If the execution was already finalized
        """
        cursor = self.conn.execute(
            f"""
            UPDATE job_execution
            SET end_time = {self._ph()}, status = {self._ph()}, error_message = {self._ph()},
                error_stack = {self._ph()}, result = {self._ph()}, processing_time_ms = {self._ph()}
            WHERE id = {self._ph()} AND end_time IS NULL
            """,
            (
                to_iso8601(execution.end_time),
                execution.status.value,
                execution.error_message,
                execution.error_stack,
                _dump_json(execution.result),
                execution.processing_time_ms,
                execution.id,
            ),
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            raise ConflictError(
                execution.job_id,
                message=f"Execution {execution.id} is already finalized or missing",
            )
        return execution

    def get_execution(self, execution_id: str) -> JobExecution | None:
        cursor = self.conn.execute(
            f"SELECT {_EXECUTION_SELECT} FROM job_execution WHERE id = {self._ph()}",
            (execution_id,),
        )
        row = cursor.fetchone()
        if not row:
            return None
        return self._row_to_execution(row)

    def list_executions(self, job_id: str, limit: int = 10) -> list[JobExecution]:
        """Executions of a job, newest ``start_time`` first, at most ``limit``."""
        if limit <= 0:
            return []
        cursor = self.conn.execute(
            f"""
            SELECT {_EXECUTION_SELECT} FROM job_execution
            WHERE job_id = {self._ph()}
            ORDER BY start_time DESC, id DESC
            LIMIT {self._ph()}
            """,
            (job_id, limit),
        )
        return [self._row_to_execution(row) for row in cursor.fetchall()]

    def count_executions(self, job_id: str) -> int:
        cursor = self.conn.execute(
            f"SELECT COUNT(*) FROM job_execution WHERE job_id = {self._ph()}",
            (job_id,),
        )
        return cursor.fetchone()[0]

    # === Private Helpers ===

    def _job_values(self, job: Job) -> tuple:
        return (
            job.id,
            job.name,
            job.job_type,
            job.description,
            job.cron_expression,
            JobStatus(job.status).value,
            int(job.priority),
            _dump_json(job.parameters),
            to_iso8601(job.next_run_time),
            to_iso8601(job.last_run_time),
            to_iso8601(job.last_completion_time),
            to_iso8601(job.last_failure_time),
            job.retry_count,
            job.max_retries,
            job.timeout_seconds,
            bool(job.is_active),
            job.lock_id,
            to_iso8601(job.lock_expires_at),
            job.tenant_id,
            job.created_by,
            job.updated_by,
            to_iso8601(job.created_at),
            to_iso8601(job.updated_at),
            job.version,
        )

    def _execution_values(self, execution: JobExecution) -> tuple:
        return (
            execution.id,
            execution.job_id,
            execution.job_name,
            execution.job_type,
            execution.tenant_id,
            to_iso8601(execution.start_time),
            to_iso8601(execution.end_time),
            ExecutionStatus(execution.status).value,
            execution.error_message,
            execution.error_stack,
            _dump_json(execution.parameters),
            _dump_json(execution.result),
            execution.processing_time_ms,
            execution.node_id,
            ExecutionTrigger(execution.trigger).value,
        )

    def _row_to_job(self, row: tuple) -> Job:
        """Convert database row to Job model."""
        data = dict(zip(JOB_COLUMNS, row, strict=False))
        for key in (
            "next_run_time",
            "last_run_time",
            "last_completion_time",
            "last_failure_time",
            "lock_expires_at",
            "created_at",
            "updated_at",
        ):
            data[key] = from_iso8601(data[key])
        data["status"] = JobStatus(data["status"])
        data["priority"] = JobPriority(data["priority"])
        data["parameters"] = _load_json(data["parameters"]) or {}
        data["is_active"] = bool(data["is_active"])
        return Job(**data)

    def _row_to_execution(self, row: tuple) -> JobExecution:
        """Convert database row to JobExecution model."""
        data = dict(zip(EXECUTION_COLUMNS, row, strict=False))
        data["start_time"] = from_iso8601(data["start_time"])
        data["end_time"] = from_iso8601(data["end_time"])
        data["status"] = ExecutionStatus(data["status"])
        data["trigger"] = ExecutionTrigger(data["trigger"])
        data["parameters"] = _load_json(data["parameters"]) or {}
        data["result"] = _load_json(data["result"])
        return JobExecution(**data)


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _load_json(value: str | None) -> Any:
    if value is None:
        return None
    return json.loads(value)
