"""Poll scheduler - the beat-as-poller dispatch loop.

Manifesto:
    The store's ``next_run_time`` is the only source of truth for when a
    job runs. The scheduler polls it on a fixed interval and hands every
    due job to the executor. In-process wake timers exist purely to cut
    latency: when one fires it asks the backend for an early tick, and
    that tick re-queries the store like any other. A timer that disagrees
    with the store (after a pause, resume or crash) can therefore never
    run a job early.

Tags:
    jobspine, scheduling, poller, beat-as-poller, dispatch, wake-timers

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  POLL SCHEDULER                                                               │
│                                                                               │
│   backend ──tick()──► _tick()                                                 │
│                         │                                                     │
│                         ├── every N ticks: reap orphaned RUNNING jobs,        │
│                         │                  cleanup_expired_locks()            │
│                         │                                                     │
│                         ├── free = max_concurrent_jobs - pending              │
│                         ├── source.find_due_jobs(now, free)                   │
│                         │                                                     │
│                         └── for each job not already pending / in flight:     │
│                               pool.submit(executor.run, job.id)               │
│                                                                               │
│   arm(job) ── threading.Timer(next_run_time - now) ──► backend.wake()         │
│                                                                               │
│   Background attempts are fire-and-forget: outcomes land in the store,       │
│   unexpected faults are logged and counted, nothing is raised.               │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from jobspine.core.logging import get_logger
from jobspine.core.timestamps import utc_now

from .executor import JobExecutor
from .lock_manager import LockManager
from .models import ExecutionStatus, Job, JobStatus
from .protocol import BackendHealth, SchedulerBackend
from .store import JobStore

logger = get_logger(__name__)


@runtime_checkable
class DueJobSource(Protocol):
    """Anything that can answer "which jobs are due now?".

    :class:`~jobspine.scheduling.store.JobStore` is the production source.
    """

    def find_due_jobs(self, now: datetime, limit: int) -> list[Job]:
        ...


@dataclass
class SchedulerStats:
    """Statistics for the poll scheduler."""

    tick_count: int = 0
    jobs_dispatched: int = 0
    jobs_skipped: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_reaped: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "jobs_dispatched": self.jobs_dispatched,
            "jobs_skipped": self.jobs_skipped,
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_failed": self.jobs_failed,
            "jobs_reaped": self.jobs_reaped,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


@dataclass
class SchedulerHealth:
    """Health status for one node's scheduler."""

    healthy: bool
    running: bool
    node_id: str
    backend: BackendHealth | dict
    in_flight: int = 0
    jobs_by_status: dict[str, int] = field(default_factory=dict)
    active_locks: int = 0
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "healthy": self.healthy,
            "running": self.running,
            "node_id": self.node_id,
            "backend": self.backend.to_dict() if isinstance(self.backend, BackendHealth) else self.backend,
            "in_flight": self.in_flight,
            "jobs_by_status": dict(self.jobs_by_status),
            "active_locks": self.active_locks,
            "stats": self.stats.to_dict(),
        }


class PollScheduler:
    """Polls the due-job source and dispatches attempts to the executor.

    Example:
        >>> scheduler = PollScheduler(
        ...     ThreadSchedulerBackend(), store, executor, locks,
        ...     interval_seconds=5.0, max_concurrent_jobs=10,
        ... )
        >>> scheduler.start()
        >>> scheduler.arm(job)       # optional early wake-up at job.next_run_time
        >>> scheduler.stop()
    """

    def __init__(
        self,
        backend: SchedulerBackend,
        store: JobStore,
        executor: JobExecutor,
        lock_manager: LockManager,
        *,
        source: DueJobSource | None = None,
        interval_seconds: float = 5.0,
        max_concurrent_jobs: int = 10,
        lock_cleanup_every_ticks: int = 12,
        reap_expired_running: bool = True,
        shutdown_grace_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the scheduler.

        Args:
            backend: Timing backend that calls :meth:`_tick`
            store: Job store, used for health and re-arming timers
            executor: Runs single attempts
            lock_manager: Lease table, for periodic cleanup and health
            source: Due-job source (defaults to ``store``)
            interval_seconds: Poll interval; worst-case scheduling latency
            max_concurrent_jobs: Cap on attempts pending or running on this node
            lock_cleanup_every_ticks: Maintenance cadence (0 disables)
            reap_expired_running: Reset RUNNING jobs abandoned by dead nodes
            shutdown_grace_seconds: How long ``stop()`` waits for attempts
            clock: Source of "now"
        """
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self.backend = backend
        self.store = store
        self.source: DueJobSource = source or store
        self.executor = executor
        self.lock_manager = lock_manager
        self.interval = interval_seconds
        self.max_concurrent_jobs = max_concurrent_jobs
        self.lock_cleanup_every_ticks = lock_cleanup_every_ticks
        self.reap_expired_running = reap_expired_running
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.clock = clock

        self._stats = SchedulerStats()
        self._stats_lock = threading.Lock()
        self._running = False
        self._pool: ThreadPoolExecutor | None = None
        self._pending: dict[str, Future] = {}
        self._pending_lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()

    # === Lifecycle ===

    def start(self) -> None:
        """Start polling. Idempotent."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        logger.info(
            "scheduler_starting",
            backend=self.backend.name,
            node_id=self.executor.node_id,
            interval_seconds=self.interval,
            max_concurrent_jobs=self.max_concurrent_jobs,
        )
        self._ensure_pool()
        self.backend.start(self._tick, self.interval)
        self._running = True

    def stop(self) -> None:
        """Stop polling and wait for in-flight attempts.

        Attempts still running after ``shutdown_grace_seconds`` are left to
        finish on their own; their leases expire if the process exits.
        """
        if not self._running:
            return

        logger.info("scheduler_stopping")
        self.backend.stop()
        self.disarm_all()
        self._running = False

        if not self.wait_for_idle(self.shutdown_grace_seconds):
            logger.warning("scheduler_stop_with_attempts_in_flight", in_flight=self.pending_count)
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def _ensure_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.max_concurrent_jobs,
                thread_name_prefix="jobspine-worker",
            )
        return self._pool

    # === Tick Processing ===

    async def _tick(self) -> None:
        """Single poll: maintenance, then dispatch of due jobs."""
        with self._stats_lock:
            self._stats.tick_count += 1
            self._stats.last_tick = self.clock()
            tick = self._stats.tick_count

        try:
            if self.lock_cleanup_every_ticks and tick % self.lock_cleanup_every_ticks == 0:
                self._maintenance()

            free = self.max_concurrent_jobs - self.pending_count
            if free <= 0:
                logger.debug("scheduler_at_capacity", pending=self.pending_count)
                return

            now = self.clock()
            due = self.source.find_due_jobs(now, free)
            if not due:
                logger.debug("no_jobs_due")
                return

            logger.info("jobs_due", count=len(due))
            for job in due:
                self._dispatch(job)

        except Exception as e:
            self._record(last_error=str(e))
            logger.exception("scheduler_tick_failed")

    def tick_once(self) -> None:
        """Run one poll synchronously on the calling thread."""
        asyncio.run(self._tick())

    def poll_now(self) -> None:
        """Ask the backend for an early tick."""
        if self._running:
            self.backend.wake()

    def _maintenance(self) -> None:
        if self.reap_expired_running:
            reaped = self.executor.reap_orphaned_jobs()
            self._record(jobs_reaped=len(reaped))
        self.lock_manager.cleanup_expired_locks()

    def _dispatch(self, job: Job) -> bool:
        job_id = job.id
        if job_id is None:
            raise ValueError(f"Cannot dispatch unsaved job {job.name!r}")
        with self._pending_lock:
            if job_id in self._pending or self.executor.is_in_flight(job_id):
                logger.debug("job_already_in_flight", job_id=job_id)
                self._record(jobs_skipped=1)
                return False
            future = self._ensure_pool().submit(self._run_job, job_id)
            self._pending[job_id] = future
        self._record(jobs_dispatched=1)
        logger.debug("job_dispatched", job_id=job_id, job_name=job.name, priority=job.priority.name)
        return True

    def _run_job(self, job_id: str) -> None:
        """Fire-and-forget wrapper around one background attempt."""
        try:
            execution = self.executor.run(job_id)
            if execution is None:
                self._record(jobs_skipped=1)
            elif execution.status is ExecutionStatus.COMPLETED:
                self._record(jobs_succeeded=1)
            else:
                self._record(jobs_failed=1)
            if execution is not None and self._running:
                job = self.store.get(job_id)
                if job is not None:
                    self.arm(job)
        except Exception as e:
            self._record(jobs_failed=1, last_error=str(e))
            logger.exception("background_attempt_failed", job_id=job_id)
        finally:
            with self._pending_lock:
                self._pending.pop(job_id, None)

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        """Block until every dispatched attempt has finished.

        Returns:
            True if idle, False if attempts were still running at timeout
        """
        with self._pending_lock:
            futures = list(self._pending.values())
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    # === Wake timers ===

    def arm(self, job: Job) -> bool:
        """Schedule an early tick at ``job.next_run_time``.

        Returns:
            False if the job is not waiting to run (nothing armed)
        """
        if job.id is None:
            return False
        self.disarm(job.id)
        if job.status is not JobStatus.SCHEDULED or not job.is_active or job.next_run_time is None:
            return False

        delay = max((job.next_run_time - self.clock()).total_seconds(), 0.0)
        timer = threading.Timer(delay, self._on_timer, args=(job.id,))
        timer.daemon = True
        with self._timers_lock:
            self._timers[job.id] = timer
        timer.start()
        logger.debug("wake_timer_armed", job_id=job.id, delay_seconds=round(delay, 3))
        return True

    def disarm(self, job_id: str) -> bool:
        """Cancel the wake timer for ``job_id``, if any."""
        with self._timers_lock:
            timer = self._timers.pop(job_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def disarm_all(self) -> None:
        with self._timers_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def armed_job_ids(self) -> frozenset[str]:
        with self._timers_lock:
            return frozenset(self._timers)

    def _on_timer(self, job_id: str) -> None:
        with self._timers_lock:
            self._timers.pop(job_id, None)
        logger.debug("wake_timer_fired", job_id=job_id)
        self.poll_now()

    # === Health & Stats ===

    def health(self) -> SchedulerHealth:
        """Get scheduler health status."""
        backend_health = self.backend.health()
        return SchedulerHealth(
            healthy=self._running and backend_health.get("healthy", False),
            running=self._running,
            node_id=self.executor.node_id,
            backend=backend_health,
            in_flight=self.executor.in_flight_count,
            jobs_by_status=self.store.count_by_status(),
            active_locks=len(self.lock_manager.list_active_locks()),
            stats=self.get_stats(),
        )

    def get_stats(self) -> SchedulerStats:
        """Snapshot of the counters."""
        with self._stats_lock:
            return replace(self._stats)

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = SchedulerStats()

    def _record(self, *, last_error: str | None = None, **increments: int) -> None:
        """Add to counters from any pool thread."""
        with self._stats_lock:
            for name, amount in increments.items():
                setattr(self._stats, name, getattr(self._stats, name) + amount)
            if last_error is not None:
                self._stats.last_error = last_error
