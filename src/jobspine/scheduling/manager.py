"""Job manager - the administrative facade over one node.

Manifesto:
    Operators and the admin HTTP layer talk to one object. The manager
    owns no state of its own: the store, lease table, registry, executor
    and poll scheduler are explicit fields handed in at construction, so
    two managers in one process are two independent nodes.

    Every administrative transition goes through ``JobStore.update`` and
    is therefore version-checked; wake timers are re-armed or disarmed
    afterwards, never consulted for correctness.

Tags:
    jobspine, scheduling, manager, facade, admin-api

Doc-Types:
    api-reference


Administrative transitions::

    pause   SCHEDULED ──► PAUSED        (PAUSED: no-op)
    resume  PAUSED    ──► SCHEDULED     (next_run_time recomputed)
    cancel  SCHEDULED ──► CANCELLED     (PAUSED too; CANCELLED: no-op)
    execute SCHEDULED | COMPLETED | FAILED ──► RUNNING ──► outcome
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from jobspine.core.errors import (
    InvalidJobError,
    InvalidJobStateError,
    JobAlreadyRunningError,
)
from jobspine.core.logging import get_logger
from jobspine.core.timestamps import utc_now

from .cron import next_occurrence, validate_cron_expression
from .executor import JobExecutor
from .lock_manager import LockManager
from .models import ExecutionTrigger, Job, JobExecution, JobLock, JobStatus
from .registry import Worker, WorkerRegistry
from .scheduler import PollScheduler, SchedulerHealth
from .store import JobStore

logger = get_logger(__name__)


class JobManager:
    """Facade for scheduling, inspecting and administering jobs.

    Example:
        >>> manager = create_job_manager(conn)
        >>> manager.register_worker(FunctionWorker("statement", generate_statement))
        >>> manager.start()
        >>> job = manager.schedule_job(Job(name="monthly-statements",
        ...                                job_type="statement",
        ...                                cron_expression="0 2 1 * *"))
        >>> manager.pause_job(job.id).status
        <JobStatus.PAUSED: 'PAUSED'>
    """

    def __init__(
        self,
        store: JobStore,
        lock_manager: LockManager,
        registry: WorkerRegistry,
        executor: JobExecutor,
        scheduler: PollScheduler,
        *,
        history_default_limit: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.lock_manager = lock_manager
        self.registry = registry
        self.executor = executor
        self.scheduler = scheduler
        self.history_default_limit = history_default_limit
        self.clock = clock

    @property
    def node_id(self) -> str:
        return self.executor.node_id

    # === Lifecycle ===

    def start(self) -> list[str]:
        """Recover this node's stale jobs, then start polling.

        Returns:
            Ids of jobs reset by crash recovery
        """
        recovered = self.executor.recover_stale_jobs()
        self.scheduler.start()
        logger.info("job_manager_started", node_id=self.node_id, recovered=len(recovered))
        return recovered

    def stop(self) -> None:
        self.scheduler.stop()
        logger.info("job_manager_stopped", node_id=self.node_id)

    @property
    def is_running(self) -> bool:
        return self.scheduler.is_running

    # === Workers ===

    def register_worker(self, worker: Worker) -> None:
        self.registry.register(worker)

    def unregister_worker(self, worker: Worker) -> bool:
        return self.registry.unregister(worker)

    # === Queries ===

    def list_jobs(
        self,
        include_inactive: bool = False,
        *,
        job_type: str | None = None,
        status: JobStatus | str | None = None,
        tenant_id: str | None = None,
    ) -> list[Job]:
        """List jobs ordered by name; cancelled jobs only with ``include_inactive``."""
        return self.store.list_jobs(
            include_inactive=include_inactive,
            job_type=job_type,
            status=JobStatus(status) if status is not None else None,
            tenant_id=tenant_id,
        )

    def get_job(self, job_id: str) -> Job:
        """Get a job.

        Raises:
            JobNotFoundError: Unknown id
        """
        return self.store.require(job_id)

    def get_job_execution_history(self, job_id: str, limit: int | None = None) -> list[JobExecution]:
        """Executions of a job, newest first, at most ``limit`` rows.

        Raises:
            JobNotFoundError: Unknown id
            ValueError: ``limit`` below 1
        """
        limit = self.history_default_limit if limit is None else limit
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.store.require(job_id)
        return self.store.list_executions(job_id, limit=limit)

    def list_active_locks(self) -> list[JobLock]:
        return self.lock_manager.list_active_locks()

    # === Scheduling ===

    def schedule_job(self, job: Job, *, actor: str | None = None) -> Job:
        """Validate, fill defaults, persist and arm a job.

        A new job (``version == 0``) is inserted. A job read from the
        store and modified is written back with its version checked, and
        goes back to SCHEDULED with a fresh retry budget.

        For recurring jobs without ``next_run_time`` the first cron
        occurrence after now is used; a one-shot job without one is due
        immediately.

        Raises:
            InvalidJobError: Missing name or job type
            InvalidCronExpressionError: Unparseable cron expression
            WorkerNotFoundError: No worker can take the job
            JobAlreadyRunningError: Re-scheduling a job that is running
            ConflictError: Stale ``version`` or duplicate id
        """
        if not job.name or not job.name.strip():
            raise InvalidJobError("Job name is required")
        if not job.job_type or not job.job_type.strip():
            raise InvalidJobError(f"Job type is required for job {job.name!r}")
        self.registry.resolve(job)

        now = self.clock()
        cron = validate_cron_expression(job.cron_expression) if job.cron_expression else None
        next_run = job.next_run_time
        if next_run is None:
            next_run = next_occurrence(cron, now) if cron else now

        if job.version > 0 and job.id is not None:
            stored = self.store.require(job.id)
            if stored.status is JobStatus.RUNNING:
                raise JobAlreadyRunningError(job.id, holder=stored.lock_id)

        candidate = replace(
            job,
            cron_expression=cron,
            status=JobStatus.SCHEDULED,
            is_active=True,
            next_run_time=next_run,
            retry_count=0,
            max_retries=self.executor.max_retries_for(job),
            timeout_seconds=self.executor.timeout_for(job),
            lock_id=None,
            lock_expires_at=None,
            created_by=job.created_by or actor,
            updated_by=actor or job.updated_by,
        )
        stored = self.store.upsert(candidate)
        logger.info(
            "job_scheduled",
            job_id=stored.id,
            job_name=stored.name,
            job_type=stored.job_type,
            cron_expression=stored.cron_expression,
            next_run_time=stored.next_run_time.isoformat() if stored.next_run_time else None,
            version=stored.version,
        )
        self._arm(stored)
        return stored

    def execute_job(
        self,
        job_id: str,
        parameter_overrides: dict[str, Any] | None = None,
    ) -> JobExecution:
        """Run a job now through the lease and executor path.

        ``parameter_overrides`` apply to this attempt only. A worker error
        is recorded like any failed attempt and then re-raised.

        Raises:
            JobNotFoundError: Unknown id
            WorkerNotFoundError: No worker can take the job
            JobAlreadyRunningError: Job is running or leased elsewhere
            InvalidJobStateError: Job is paused or cancelled
        """
        job = self.store.require(job_id)
        self.registry.resolve(job)
        logger.info("manual_execution_requested", job_id=job_id, job_name=job.name)
        try:
            execution = self.executor.run(
                job_id,
                trigger=ExecutionTrigger.MANUAL,
                parameter_overrides=parameter_overrides,
            )
        finally:
            refreshed = self.store.get(job_id)
            if refreshed is not None:
                self._arm(refreshed)
        if execution is None:
            raise JobAlreadyRunningError(job_id, holder=self.lock_manager.get_lock_holder(job_id))
        return execution

    def refresh_lease(self, job_id: str, ttl_seconds: int | None = None) -> bool:
        """Extend this node's lease on a running job (for long-running workers)."""
        return self.executor.refresh_lease(job_id, ttl_seconds)

    # === Administrative transitions ===

    def pause_job(self, job_id: str, *, actor: str | None = None) -> Job:
        """Stop a scheduled job from being picked up until resumed.

        Raises:
            JobNotFoundError: Unknown id
            InvalidJobStateError: Job is not SCHEDULED or PAUSED
        """

        def pause(current: Job) -> Job | None:
            if current.status is JobStatus.PAUSED:
                return None
            if current.status is not JobStatus.SCHEDULED:
                raise InvalidJobStateError(job_id, current.status.value, "pause")
            return replace(current, status=JobStatus.PAUSED, updated_by=actor or current.updated_by)

        job = self.store.update(job_id, pause) or self.store.require(job_id)
        self.scheduler.disarm(job_id)
        logger.info("job_paused", job_id=job_id, job_name=job.name)
        return job

    def resume_job(self, job_id: str, *, actor: str | None = None) -> Job:
        """Return a paused job to SCHEDULED with a recomputed ``next_run_time``.

        Raises:
            JobNotFoundError: Unknown id
            InvalidJobStateError: Job is not PAUSED
        """
        now = self.clock()

        def resume(current: Job) -> Job:
            if current.status is not JobStatus.PAUSED:
                raise InvalidJobStateError(job_id, current.status.value, "resume")
            if current.cron_expression:
                next_run = next_occurrence(current.cron_expression, now)
            elif current.next_run_time is not None and current.next_run_time > now:
                next_run = current.next_run_time
            else:
                next_run = now
            return replace(
                current,
                status=JobStatus.SCHEDULED,
                next_run_time=next_run,
                updated_by=actor or current.updated_by,
            )

        job = self.store.update(job_id, resume) or self.store.require(job_id)
        self._arm(job)
        logger.info(
            "job_resumed",
            job_id=job_id,
            job_name=job.name,
            next_run_time=job.next_run_time.isoformat() if job.next_run_time else None,
        )
        return job

    def cancel_job(self, job_id: str, *, actor: str | None = None) -> Job:
        """Stop honouring future runs of a job. Never interrupts a running attempt.

        Raises:
            JobNotFoundError: Unknown id
            InvalidJobStateError: Job is RUNNING, COMPLETED or FAILED
        """

        def cancel(current: Job) -> Job | None:
            if current.status is JobStatus.CANCELLED:
                return None
            if current.status not in (JobStatus.SCHEDULED, JobStatus.PAUSED):
                raise InvalidJobStateError(job_id, current.status.value, "cancel")
            return replace(
                current,
                status=JobStatus.CANCELLED,
                is_active=False,
                next_run_time=None,
                updated_by=actor or current.updated_by,
            )

        job = self.store.update(job_id, cancel) or self.store.require(job_id)
        self.scheduler.disarm(job_id)
        logger.info("job_cancelled", job_id=job_id, job_name=job.name)
        return job

    # === Health ===

    def health(self) -> SchedulerHealth:
        return self.scheduler.health()

    def _arm(self, job: Job) -> None:
        if self.scheduler.is_running:
            self.scheduler.arm(job)
