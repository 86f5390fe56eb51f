"""Distributed job scheduling for jobspine.

Manifesto:
    Background jobs in a core-banking backend (interest posting, statement
    generation, reconciliation) must run exactly once per due time even
    when several nodes poll the same database. There is no leader and no
    shared memory: nodes coordinate only through an expiring lease row per
    job and a ``version`` column on every job row. The scheduling package
    provides the store, the lease table, the worker registry, the attempt
    state machine and the poll loop, wired together by one factory.

┌──────────────────────────────────────────────────────────────────────────────┐
│  JOBSPINE SCHEDULER - Lease-Based Distributed Job Execution                   │
│                                                                               │
│  Quick Start:                                                                 │
│  ┌──────────────────────────────────────────────────────────────────────┐   │
│  │   from jobspine.scheduling import (                                  │   │
│  │       FunctionWorker, Job, create_job_manager,                       │   │
│  │   )                                                                  │   │
│  │                                                                      │   │
│  │   manager = create_job_manager(conn)                                 │   │
│  │   manager.register_worker(FunctionWorker("interest", post_interest)) │   │
│  │   manager.start()                                                    │   │
│  │                                                                      │   │
│  │   manager.schedule_job(Job(                                          │   │
│  │       name="eod-interest",                                           │   │
│  │       job_type="interest",                                           │   │
│  │       cron_expression="0 23 * * *",                                  │   │
│  │   ))                                                                 │   │
│  └──────────────────────────────────────────────────────────────────────┘   │
│                                                                               │
│  Architecture:                                                                │
│                                                                               │
│   ┌──────────────┐  tick()  ┌───────────────┐  run(id)  ┌──────────────┐    │
│   │ Thread       │ ───────► │ PollScheduler │ ────────► │ JobExecutor  │    │
│   │ Backend      │ ◄─wake── │ (due source)  │           │ (attempts)   │    │
│   └──────────────┘          └───────┬───────┘           └──────┬───────┘    │
│                                     │                          │            │
│                              ┌──────▼──────┐   ┌─────────────┐ │            │
│                              │  JobStore   │   │ LockManager │◄┤            │
│                              │ (job, exec) │   │ (job_lock)  │ │            │
│                              └─────────────┘   └─────────────┘ │            │
│                                                 ┌──────────────▼┐           │
│   JobManager: facade over all of the above      │WorkerRegistry │           │
│                                                 └───────────────┘           │
│                                                                               │
│  Tables (see jobspine.core.schema):                                           │
│  - job:           definitions and scheduling state (versioned)               │
│  - job_execution: one row per attempt, never deleted                         │
│  - job_lock:      one lease row per running job                              │
└──────────────────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ Running a job without holding its lease
    ✅ ``LockManager.acquire()`` before RUNNING, ``release()`` in ``finally``
    ❌ Writing job rows without the version check
    ✅ ``JobStore.update(job_id, mutate)`` re-reads and retries on conflict
    ❌ Trusting in-process timers for due times
    ✅ Timers only wake the poller; ``next_run_time`` in the store decides
    ❌ Constructing the components individually
    ✅ ``create_job_manager(conn)`` factory function

Tags:
    jobspine, scheduling, cron, leases, optimistic-concurrency,
    beat-as-poller, retries, backoff

Doc-Types:
    package-overview, architecture-map, module-index
"""

from __future__ import annotations

import os
import socket
from collections.abc import Callable
from datetime import datetime

from jobspine.core.dialect import Dialect
from jobspine.core.protocols import Connection
from jobspine.core.settings import JobSpineSettings, get_settings
from jobspine.core.timestamps import utc_now

# Cron
from .cron import next_occurrence, validate_cron_expression

# Executor
from .executor import JobExecutor

# Lock Manager
from .lock_manager import LockManager

# Manager
from .manager import JobManager

# Models
from .models import (
    ExecutionStatus,
    ExecutionTrigger,
    Job,
    JobExecution,
    JobLock,
    JobPriority,
    JobStatus,
)

# Protocol
from .protocol import BackendHealth, SchedulerBackend

# Registry
from .registry import FunctionWorker, Worker, WorkerRegistry

# Scheduler
from .scheduler import DueJobSource, PollScheduler, SchedulerHealth, SchedulerStats

# Store
from .store import JobStore

# Backends
from .thread_backend import ThreadSchedulerBackend

# Timeout
from .timeout import run_with_deadline

__all__ = [
    # Models
    "Job",
    "JobExecution",
    "JobLock",
    "JobStatus",
    "JobPriority",
    "ExecutionStatus",
    "ExecutionTrigger",
    # Store
    "JobStore",
    # Lock Manager
    "LockManager",
    # Registry
    "Worker",
    "FunctionWorker",
    "WorkerRegistry",
    # Cron
    "next_occurrence",
    "validate_cron_expression",
    # Executor
    "JobExecutor",
    "run_with_deadline",
    # Protocol / Backends
    "SchedulerBackend",
    "BackendHealth",
    "ThreadSchedulerBackend",
    # Scheduler
    "DueJobSource",
    "PollScheduler",
    "SchedulerStats",
    "SchedulerHealth",
    # Manager
    "JobManager",
    "create_job_manager",
]


def create_job_manager(
    conn: Connection,
    *,
    settings: JobSpineSettings | None = None,
    dialect: Dialect | None = None,
    backend: SchedulerBackend | None = None,
    registry: WorkerRegistry | None = None,
    node_id: str | None = None,
    clock: Callable[[], datetime] | None = None,
) -> JobManager:
    """Factory function to create a fully wired job manager for one node.

    This is the recommended way to build a node: every component shares
    the same connection, dialect, clock and node id.

    Args:
        conn: Database connection (tables must exist, see ``create_tables``)
        settings: Engine settings (default: ``get_settings()``)
        dialect: SQL dialect (default: SQLite)
        backend: Timing backend (default: ThreadSchedulerBackend)
        registry: Worker registry to share (default: a new, empty one)
        node_id: Overrides ``settings.node_id``
        clock: Source of "now" (default: ``utc_now``)

    Returns:
        Configured, not yet started JobManager

    Example:
        >>> manager = create_job_manager(conn, node_id="node-a")
        >>> manager.start()
    """
    settings = settings or get_settings()
    clock = clock or utc_now
    node = node_id or settings.node_id or f"{socket.gethostname()}-{os.getpid()}"

    store = JobStore(conn, dialect, clock=clock)
    lock_manager = LockManager(conn, dialect, clock=clock)
    registry = registry if registry is not None else WorkerRegistry()
    executor = JobExecutor(
        store,
        lock_manager,
        registry,
        node_id=node,
        lease_ttl_seconds=settings.lease_ttl_seconds,
        lease_grace_seconds=settings.lease_grace_seconds,
        default_timeout_seconds=settings.default_timeout_seconds,
        default_max_retries=settings.default_max_retries,
        backoff_base_seconds=settings.backoff_base_seconds,
        max_backoff_seconds=settings.max_backoff_seconds,
        clock=clock,
    )
    scheduler = PollScheduler(
        backend or ThreadSchedulerBackend(),
        store,
        executor,
        lock_manager,
        interval_seconds=settings.poll_interval_seconds,
        max_concurrent_jobs=settings.max_concurrent_jobs,
        lock_cleanup_every_ticks=settings.lock_cleanup_every_ticks,
        reap_expired_running=settings.reap_expired_running,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
        clock=clock,
    )
    return JobManager(
        store,
        lock_manager,
        registry,
        executor,
        scheduler,
        history_default_limit=settings.history_default_limit,
        clock=clock,
    )
