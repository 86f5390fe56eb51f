"""Pytest fixtures for scheduling tests."""

from datetime import UTC, datetime, timedelta

import pytest

from jobspine.core.connection import SqliteConnection
from jobspine.core.schema import create_tables
from jobspine.scheduling import (
    FunctionWorker,
    Job,
    JobExecutor,
    JobStore,
    LockManager,
    PollScheduler,
    WorkerRegistry,
)


class FakeClock:
    """Controllable clock; call it to read "now"."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


class FakeBackend:
    """Timing backend that never ticks on its own."""

    name = "fake"

    def __init__(self):
        self.started = False
        self.wakes = 0
        self.tick_callback = None

    def start(self, tick_callback, interval_seconds=5.0):
        self.started = True
        self.tick_callback = tick_callback

    def stop(self):
        self.started = False

    def wake(self):
        self.wakes += 1

    def health(self):
        return {"healthy": self.started, "backend": self.name, "tick_count": 0, "last_tick": None}


@pytest.fixture
def db_conn():
    """Create an in-memory SQLite database with the engine schema."""
    conn = SqliteConnection(":memory:")
    create_tables(conn)
    yield conn
    conn.close()


@pytest.fixture
def db_path(tmp_path):
    """Path of a file database with the engine schema (for multi-connection tests)."""
    path = str(tmp_path / "jobs.db")
    conn = SqliteConnection(path)
    conn.execute("PRAGMA journal_mode=WAL")
    create_tables(conn)
    conn.close()
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db_conn, clock):
    return JobStore(db_conn, clock=clock)


@pytest.fixture
def lock_manager(db_conn, clock):
    return LockManager(db_conn, clock=clock)


@pytest.fixture
def registry():
    return WorkerRegistry()


@pytest.fixture
def calls():
    """Records (job name, parameters) of every worker call."""
    return []


@pytest.fixture
def ok_worker(registry, calls):
    """Worker for type "report" returning {"ok": True}."""

    def process(job, params):
        calls.append((job.name, params))
        return {"ok": True}

    worker = FunctionWorker("report", process)
    registry.register(worker)
    return worker


@pytest.fixture
def failing_worker(registry, calls):
    """Worker for type "flaky" that always raises."""

    def process(job, params):
        calls.append((job.name, params))
        raise RuntimeError("ledger unavailable")

    worker = FunctionWorker("flaky", process)
    registry.register(worker)
    return worker


@pytest.fixture
def executor(store, lock_manager, registry, clock):
    return JobExecutor(store, lock_manager, registry, node_id="node-a", clock=clock)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def scheduler(backend, store, executor, lock_manager, clock):
    scheduler = PollScheduler(
        backend,
        store,
        executor,
        lock_manager,
        interval_seconds=0.05,
        max_concurrent_jobs=4,
        clock=clock,
    )
    yield scheduler
    scheduler.stop()
    scheduler.disarm_all()
    scheduler.wait_for_idle(5.0)


@pytest.fixture
def make_job(store, clock):
    """Persist a job due now (or at ``next_run_time``) and return it."""

    def _make(name="daily-report", job_type="report", **kwargs):
        kwargs.setdefault("next_run_time", clock())
        return store.upsert(Job(name=name, job_type=job_type, **kwargs))

    return _make
