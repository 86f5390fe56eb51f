"""Job executor - the per-attempt state machine.

Manifesto:
    Every attempt follows the same path whether the poll loop or an
    operator triggered it: lease, mark RUNNING, run the worker against a
    deadline, record the outcome, release the lease. The lease is the
    correctness mechanism; the local in-flight set only keeps one node
    from racing itself.

Tags:
    jobspine, scheduling, executor, state-machine, retries, backoff

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  ATTEMPT FLOW                                                                 │
│                                                                               │
│   run(job_id)                                                                 │
│     │ claim job_id in local in-flight set ── taken ──► skip (or raise)       │
│     ▼                                                                         │
│   lock_manager.acquire(job_id, node, ttl) ── busy ──► abandon (or raise)     │
│     │                                                                         │
│     ▼  try                                                                    │
│   store.update: SCHEDULED ──► RUNNING, last_run_time, lock_id                │
│   store.create_execution(start)                                               │
│   registry.resolve(job) ─► run_with_deadline(worker.process, timeout)        │
│     │                                                                         │
│     ├── result ──► execution COMPLETED, retry_count = 0,                     │
│     │              cron → SCHEDULED @ next occurrence, else COMPLETED        │
│     │                                                                         │
│     └── error / JobTimeoutError ──► execution FAILED, retry_count += 1,      │
│                    retry_count <= max_retries → SCHEDULED @ now + 5^n s      │
│                    otherwise               → FAILED (terminal)               │
│     ▼  finally                                                                │
│   lock_manager.release(job_id, node)                                          │
└──────────────────────────────────────────────────────────────────────────────┘

Background attempts never raise worker errors; manual attempts record the
failure and then re-raise it to the caller.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
import traceback
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from jobspine.core.errors import (
    InvalidJobStateError,
    JobAlreadyRunningError,
    categorize_error,
)
from jobspine.core.logging import LogContext, get_logger
from jobspine.core.timestamps import utc_now

from .cron import next_occurrence
from .lock_manager import LockManager
from .models import (
    ExecutionStatus,
    ExecutionTrigger,
    Job,
    JobExecution,
    JobStatus,
)
from .registry import Worker, WorkerRegistry
from .store import JobStore
from .timeout import run_with_deadline

logger = get_logger(__name__)

MANUAL_RUNNABLE = frozenset({JobStatus.SCHEDULED, JobStatus.COMPLETED, JobStatus.FAILED})


class JobExecutor:
    """Runs single attempts of jobs on behalf of one node.

    Example:
        >>> executor = JobExecutor(store, locks, registry, node_id="node-a")
        >>> executor.recover_stale_jobs()
        >>> execution = executor.run(job.id)
        >>> execution.status
        <ExecutionStatus.COMPLETED: 'COMPLETED'>
    """

    def __init__(
        self,
        store: JobStore,
        lock_manager: LockManager,
        registry: WorkerRegistry,
        *,
        node_id: str,
        lease_ttl_seconds: int = 600,
        lease_grace_seconds: int = 30,
        default_timeout_seconds: int = 600,
        default_max_retries: int = 3,
        backoff_base_seconds: int = 5,
        max_backoff_seconds: int = 3600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.lock_manager = lock_manager
        self.registry = registry
        self.node_id = node_id
        self.lease_ttl_seconds = lease_ttl_seconds
        self.lease_grace_seconds = lease_grace_seconds
        self.default_timeout_seconds = default_timeout_seconds
        self.default_max_retries = default_max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.clock = clock

        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    # === Local in-flight tracking ===

    def _claim_local(self, job_id: str) -> bool:
        with self._in_flight_lock:
            if job_id in self._in_flight:
                return False
            self._in_flight.add(job_id)
            return True

    def _release_local(self, job_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(job_id)

    def is_in_flight(self, job_id: str) -> bool:
        with self._in_flight_lock:
            return job_id in self._in_flight

    def in_flight_ids(self) -> frozenset[str]:
        with self._in_flight_lock:
            return frozenset(self._in_flight)

    @property
    def in_flight_count(self) -> int:
        with self._in_flight_lock:
            return len(self._in_flight)

    # === Policy ===

    def timeout_for(self, job: Job) -> int:
        return job.timeout_seconds or self.default_timeout_seconds

    def max_retries_for(self, job: Job) -> int:
        return self.default_max_retries if job.max_retries is None else job.max_retries

    def lease_ttl_for(self, job: Job) -> int:
        """Lease TTL never shorter than the job's timeout plus grace."""
        return max(self.lease_ttl_seconds, self.timeout_for(job) + self.lease_grace_seconds)

    def backoff_seconds(self, retry_count: int) -> int:
        """``base ** retry_count`` seconds, capped at ``max_backoff_seconds``."""
        return min(self.backoff_base_seconds ** retry_count, self.max_backoff_seconds)

    # === Attempts ===

    def run(
        self,
        job_id: str,
        *,
        trigger: ExecutionTrigger = ExecutionTrigger.SCHEDULER,
        parameter_overrides: dict[str, Any] | None = None,
    ) -> JobExecution | None:
        """Run one attempt of ``job_id``.

        Returns:
            The finalized execution, or None when a background attempt is
            abandoned (lease held elsewhere, job no longer due)

        Raises:
            JobNotFoundError: Unknown job id
            JobAlreadyRunningError: Manual trigger while running or leased
            InvalidJobStateError: Manual trigger of a paused or cancelled job
            Exception: Manual trigger re-raises the worker's error after
                recording it
        """
        manual = trigger is ExecutionTrigger.MANUAL
        if not self._claim_local(job_id):
            if manual:
                raise JobAlreadyRunningError(job_id, holder=self.node_id)
            logger.debug("attempt_skipped_in_flight", job_id=job_id)
            return None
        try:
            with LogContext(job_id=job_id, node_id=self.node_id):
                return self._attempt(job_id, trigger, parameter_overrides)
        finally:
            self._release_local(job_id)

    def _attempt(
        self,
        job_id: str,
        trigger: ExecutionTrigger,
        parameter_overrides: dict[str, Any] | None,
    ) -> JobExecution | None:
        manual = trigger is ExecutionTrigger.MANUAL
        job = self.store.require(job_id)
        if manual:
            self._check_manual_runnable(job)

        ttl = self.lease_ttl_for(job)
        if not self.lock_manager.acquire(job.id, self.node_id, ttl):  # type: ignore[arg-type]
            if manual:
                raise JobAlreadyRunningError(job_id, holder=self.lock_manager.get_lock_holder(job_id))
            logger.debug("attempt_abandoned_lease_busy", job_id=job_id)
            return None

        try:
            started = self._mark_running(job_id, trigger, ttl)
            if started is None:
                logger.debug("attempt_abandoned_not_due", job_id=job_id)
                return None
            return self._execute(started, trigger, parameter_overrides)
        finally:
            self.lock_manager.release(job_id, self.node_id)

    def _check_manual_runnable(self, job: Job) -> None:
        if job.status is JobStatus.RUNNING:
            raise JobAlreadyRunningError(job.id, holder=job.lock_id)  # type: ignore[arg-type]
        if job.status not in MANUAL_RUNNABLE:
            raise InvalidJobStateError(job.id, job.status.value, "execute")  # type: ignore[arg-type]

    def _mark_running(self, job_id: str, trigger: ExecutionTrigger, ttl: int) -> Job | None:
        now = self.clock()

        def start(current: Job) -> Job | None:
            if trigger is ExecutionTrigger.MANUAL:
                self._check_manual_runnable(current)
            elif not _is_due(current, now):
                return None
            return replace(
                current,
                status=JobStatus.RUNNING,
                last_run_time=now,
                lock_id=self.node_id,
                lock_expires_at=now + timedelta(seconds=ttl),
            )

        return self.store.update(job_id, start)

    def _execute(
        self,
        job: Job,
        trigger: ExecutionTrigger,
        parameter_overrides: dict[str, Any] | None,
    ) -> JobExecution:
        parameters = {**job.parameters, **(parameter_overrides or {})}
        execution = self.store.create_execution(
            JobExecution(
                job_id=job.id,  # type: ignore[arg-type]
                job_name=job.name,
                job_type=job.job_type,
                tenant_id=job.tenant_id,
                start_time=self.clock(),
                node_id=self.node_id,
                parameters=parameters,
                trigger=trigger,
            )
        )
        logger.info(
            "attempt_started",
            job_id=job.id,
            job_name=job.name,
            execution_id=execution.id,
            trigger=trigger.value,
            attempt=job.retry_count + 1,
        )

        started = time.monotonic()
        try:
            worker = self.registry.resolve(job)
            result = run_with_deadline(
                lambda: _invoke(worker, job, parameters),
                self.timeout_for(job),
                name=f"jobspine-{job.id}",
            )
        except Exception as e:
            finished = self._record_failure(job, execution, e, _elapsed_ms(started))
            if trigger is ExecutionTrigger.MANUAL:
                raise
            return finished
        return self._record_success(job, execution, result, _elapsed_ms(started))

    def _record_success(
        self, job: Job, execution: JobExecution, result: Any, elapsed_ms: int
    ) -> JobExecution:
        now = self.clock()
        finished = replace(
            execution,
            end_time=now,
            status=ExecutionStatus.COMPLETED,
            result=result,
            processing_time_ms=elapsed_ms,
        )
        self.store.finish_execution(finished)

        def complete(current: Job) -> Job:
            next_run = next_occurrence(current.cron_expression, now) if current.cron_expression else None
            return replace(
                current,
                status=JobStatus.SCHEDULED if next_run else JobStatus.COMPLETED,
                retry_count=0,
                last_completion_time=now,
                next_run_time=next_run,
                lock_id=None,
                lock_expires_at=None,
            )

        updated = self.store.update(job.id, complete)  # type: ignore[arg-type]
        logger.info(
            "attempt_completed",
            job_id=job.id,
            execution_id=execution.id,
            elapsed_ms=elapsed_ms,
            status=updated.status.value if updated else None,
            next_run_time=updated.next_run_time.isoformat() if updated and updated.next_run_time else None,
        )
        return finished

    def _record_failure(
        self, job: Job, execution: JobExecution, error: Exception, elapsed_ms: int
    ) -> JobExecution:
        now = self.clock()
        finished = replace(
            execution,
            end_time=now,
            status=ExecutionStatus.FAILED,
            error_message=str(error) or error.__class__.__name__,
            error_stack="".join(traceback.format_exception(error)),
            processing_time_ms=elapsed_ms,
        )
        self.store.finish_execution(finished)

        def fail(current: Job) -> Job:
            retry_count = current.retry_count + 1
            if retry_count <= self.max_retries_for(current):
                status = JobStatus.SCHEDULED
                next_run: datetime | None = now + timedelta(seconds=self.backoff_seconds(retry_count))
            else:
                status = JobStatus.FAILED
                next_run = None
            return replace(
                current,
                status=status,
                retry_count=retry_count,
                last_failure_time=now,
                next_run_time=next_run,
                lock_id=None,
                lock_expires_at=None,
            )

        updated = self.store.update(job.id, fail)  # type: ignore[arg-type]
        logger.warning(
            "attempt_failed",
            job_id=job.id,
            execution_id=execution.id,
            error_type=error.__class__.__name__,
            error=finished.error_message,
            category=categorize_error(error).value,
            retry_count=updated.retry_count if updated else None,
            status=updated.status.value if updated else None,
            next_run_time=updated.next_run_time.isoformat() if updated and updated.next_run_time else None,
        )
        return finished

    # === Leases held by running workers ===

    def refresh_lease(self, job_id: str, ttl_seconds: int | None = None) -> bool:
        """Extend this node's lease on a running job.

        ``ttl_seconds`` defaults to the job's own lease TTL (see
        :meth:`lease_ttl_for`), so a refresh never shortens the lease the
        attempt started with. The job's ``lock_expires_at`` is kept equal
        to the lease row.

        Raises:
            JobNotFoundError: Unknown id
        """
        job = self.store.require(job_id)
        ttl = ttl_seconds or self.lease_ttl_for(job)
        if not self.lock_manager.refresh(job_id, self.node_id, ttl):
            return False

        lease = self.lock_manager.get_lock(job_id)
        if lease is None:
            return False

        def mirror(current: Job) -> Job | None:
            if current.status is not JobStatus.RUNNING or current.lock_id != self.node_id:
                return None
            if current.lock_expires_at == lease.expires_at:
                return None
            return replace(current, lock_expires_at=lease.expires_at)

        self.store.update(job_id, mirror)
        return True

    # === Recovery ===

    def recover_stale_jobs(self) -> list[str]:
        """Reset jobs this node was running before an unclean restart.

        Must run before the node starts executing: every RUNNING job whose
        lease names this node is assumed dead and goes back to SCHEDULED,
        and the node's lease rows are deleted.

        Returns:
            Ids of the recovered jobs
        """
        now = self.clock()
        recovered = []
        for job in self.store.find_running_for_node(self.node_id):

            def reset(current: Job) -> Job | None:
                if current.status is not JobStatus.RUNNING:
                    return None
                return replace(
                    current,
                    status=JobStatus.SCHEDULED,
                    next_run_time=current.next_run_time or now,
                    lock_id=None,
                    lock_expires_at=None,
                )

            if self.store.update(job.id, reset) is not None:  # type: ignore[arg-type]
                recovered.append(job.id)

        released = self.lock_manager.release_all_for_node(self.node_id)
        if recovered or released:
            logger.warning(
                "stale_jobs_recovered",
                node_id=self.node_id,
                jobs=recovered,
                leases_released=released,
            )
        return recovered

    def reap_orphaned_jobs(self) -> list[str]:
        """Reset RUNNING jobs whose lease expired without being released.

        These belong to nodes that died and never came back. The lease TTL
        is at least the job timeout plus grace, so a live attempt cannot
        still own such a job.

        Returns:
            Ids of the reset jobs
        """
        now = self.clock()
        reaped = []
        for job in self.store.find_orphaned_running(now):
            if self.is_in_flight(job.id) or self.lock_manager.is_locked(job.id):  # type: ignore[arg-type]
                continue

            def reset(current: Job) -> Job | None:
                if current.status is not JobStatus.RUNNING:
                    return None
                if current.lock_expires_at is not None and current.lock_expires_at >= now:
                    return None
                return replace(
                    current,
                    status=JobStatus.SCHEDULED,
                    next_run_time=current.next_run_time or now,
                    lock_id=None,
                    lock_expires_at=None,
                )

            if self.store.update(job.id, reset) is not None:  # type: ignore[arg-type]
                reaped.append(job.id)
                logger.warning("orphaned_job_reset", job_id=job.id, previous_holder=job.lock_id)
        return reaped


def _is_due(job: Job, now: datetime) -> bool:
    return (
        job.status is JobStatus.SCHEDULED
        and job.is_active
        and job.next_run_time is not None
        and job.next_run_time <= now
    )


def _invoke(worker: Worker, job: Job, parameters: dict[str, Any]) -> Any:
    result = worker.process(job, parameters)
    if inspect.isawaitable(result):
        return asyncio.run(_await(result))
    return result


async def _await(awaitable: Any) -> Any:
    return await awaitable


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
