"""Tests for JobStore."""

from dataclasses import replace
from datetime import timedelta

import pytest

from jobspine.core.errors import ConflictError, DatabaseError, JobNotFoundError
from jobspine.scheduling import (
    ExecutionStatus,
    ExecutionTrigger,
    Job,
    JobExecution,
    JobPriority,
    JobStatus,
)


class TestJobStoreUpsert:
    """Test inserts and version-checked updates."""

    def test_insert_assigns_id_and_version(self, store):
        """New job gets an id and version 1."""
        job = store.upsert(Job(name="eod-interest", job_type="interest"))

        assert job.id is not None
        assert job.version == 1
        assert job.created_at is not None
        assert store.get(job.id).name == "eod-interest"

    def test_round_trip_preserves_fields(self, store, clock):
        """Stored fields come back typed."""
        job = store.upsert(Job(
            name="statements",
            job_type="statement",
            cron_expression="0 2 1 * *",
            priority=JobPriority.HIGH,
            parameters={"branch": "001", "accounts": [1, 2]},
            next_run_time=clock(),
            max_retries=2,
            timeout_seconds=30,
            tenant_id="bank-1",
            created_by="ops",
        ))

        loaded = store.get(job.id)
        assert loaded.priority is JobPriority.HIGH
        assert loaded.status is JobStatus.SCHEDULED
        assert loaded.parameters == {"branch": "001", "accounts": [1, 2]}
        assert loaded.next_run_time == clock()
        assert loaded.max_retries == 2
        assert loaded.tenant_id == "bank-1"
        assert loaded.is_active is True

    def test_version_increases_on_every_write(self, store):
        """Each successful write bumps the version by one."""
        job = store.upsert(Job(name="a", job_type="t"))
        job = store.upsert(replace(job, description="first"))
        job = store.upsert(replace(job, description="second"))

        assert job.version == 3
        assert store.get(job.id).version == 3

    def test_stale_version_is_rejected(self, store):
        """A write presenting an old version fails and leaves the row unchanged."""
        original = store.upsert(Job(name="a", job_type="t", description="v1"))
        store.upsert(replace(original, description="winner"))

        with pytest.raises(ConflictError) as exc_info:
            store.upsert(replace(original, description="loser"))

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert exc_info.value.retryable is True
        stored = store.get(original.id)
        assert stored.description == "winner"
        assert stored.version == 2

    def test_insert_with_model_defaults(self, store):
        """Limits left unset are stored as NULL and fall back to node defaults."""
        job = store.upsert(Job(name="eod-interest", job_type="interest"))

        stored = store.get(job.id)
        assert stored.max_retries is None
        assert stored.timeout_seconds is None
        assert stored.status is JobStatus.SCHEDULED

    def test_constraint_failure_is_database_error(self, store):
        """A rejected row that is not a duplicate id surfaces as DatabaseError."""
        with pytest.raises(DatabaseError) as exc_info:
            store.upsert(Job(name=None, job_type="interest"))

        assert not isinstance(exc_info.value, ConflictError)
        assert store.list_jobs(include_inactive=True) == []

    def test_duplicate_insert_conflicts(self, store):
        """Inserting an existing id is a conflict."""
        job = store.upsert(Job(name="a", job_type="t"))

        with pytest.raises(ConflictError):
            store.upsert(Job(id=job.id, name="b", job_type="t"))

    def test_update_missing_job(self, store):
        """Updating an unknown id raises JobNotFoundError."""
        with pytest.raises(JobNotFoundError):
            store.upsert(Job(id="missing", name="a", job_type="t", version=3))


class TestJobStoreUpdate:
    """Test the read-mutate-write retry loop."""

    def test_update_applies_mutation(self, store):
        job = store.upsert(Job(name="a", job_type="t"))

        updated = store.update(job.id, lambda j: replace(j, priority=JobPriority.CRITICAL))

        assert updated.priority is JobPriority.CRITICAL
        assert updated.version == 2

    def test_update_abandoned_when_mutation_returns_none(self, store):
        """Returning None writes nothing."""
        job = store.upsert(Job(name="a", job_type="t"))

        assert store.update(job.id, lambda j: None) is None
        assert store.get(job.id).version == 1

    def test_update_retries_after_conflict(self, store):
        """A concurrent write between read and write is absorbed by a retry."""
        job = store.upsert(Job(name="a", job_type="t"))
        seen_versions = []

        def mutate(current):
            seen_versions.append(current.version)
            if len(seen_versions) == 1:
                # Another node writes first.
                store.upsert(replace(current, description="other node"))
            return replace(current, retry_count=current.retry_count + 1)

        updated = store.update(job.id, mutate)

        assert seen_versions == [1, 2]
        assert updated.version == 3
        assert updated.description == "other node"
        assert updated.retry_count == 1

    def test_update_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.update("missing", lambda j: j)


class TestJobStoreQueries:
    """Test listing and due-job queries."""

    def test_list_excludes_inactive_by_default(self, store):
        store.upsert(Job(name="active", job_type="t"))
        store.upsert(Job(name="cancelled", job_type="t", status=JobStatus.CANCELLED, is_active=False))

        assert [j.name for j in store.list_jobs()] == ["active"]
        assert [j.name for j in store.list_jobs(include_inactive=True)] == ["active", "cancelled"]

    def test_list_filters(self, store):
        store.upsert(Job(name="a", job_type="interest", tenant_id="bank-1"))
        store.upsert(Job(name="b", job_type="statement", tenant_id="bank-2"))
        store.upsert(Job(name="c", job_type="interest", tenant_id="bank-2", status=JobStatus.PAUSED))

        assert [j.name for j in store.list_by_type("interest")] == ["a", "c"]
        assert [j.name for j in store.list_by_tenant("bank-2")] == ["b", "c"]
        assert [j.name for j in store.list_by_status(JobStatus.PAUSED)] == ["c"]
        assert store.count_by_status() == {"SCHEDULED": 2, "PAUSED": 1}

    def test_find_due_jobs(self, store, clock):
        """Only SCHEDULED, active jobs whose next_run_time has passed are due."""
        now = clock()
        due = store.upsert(Job(name="due", job_type="t", next_run_time=now - timedelta(seconds=1)))
        store.upsert(Job(name="future", job_type="t", next_run_time=now + timedelta(minutes=1)))
        store.upsert(Job(name="no-time", job_type="t"))
        store.upsert(Job(name="paused", job_type="t", status=JobStatus.PAUSED, next_run_time=now))
        store.upsert(Job(name="inactive", job_type="t", is_active=False, next_run_time=now))

        assert [j.id for j in store.find_due_jobs(now, 10)] == [due.id]

    def test_find_due_jobs_orders_by_priority_then_time(self, store, clock):
        now = clock()
        low_early = store.upsert(Job(name="a", job_type="t", priority=JobPriority.LOW,
                                     next_run_time=now - timedelta(minutes=5)))
        high_late = store.upsert(Job(name="b", job_type="t", priority=JobPriority.HIGH,
                                     next_run_time=now - timedelta(minutes=1)))
        high_early = store.upsert(Job(name="c", job_type="t", priority=JobPriority.HIGH,
                                      next_run_time=now - timedelta(minutes=2)))

        ids = [j.id for j in store.find_due_jobs(now, 10)]

        assert ids == [high_early.id, high_late.id, low_early.id]
        assert len(store.find_due_jobs(now, 2)) == 2
        assert store.find_due_jobs(now, 0) == []

    def test_find_due_jobs_skips_live_lease(self, store, lock_manager, clock):
        """A job under a live lease is not due; an expired lease does not hide it."""
        now = clock()
        job = store.upsert(Job(name="a", job_type="t", next_run_time=now))
        lock_manager.acquire(job.id, "node-b", ttl_seconds=60)

        assert store.find_due_jobs(now, 10) == []

        clock.advance(61)
        assert [j.id for j in store.find_due_jobs(clock(), 10)] == [job.id]

    def test_find_running_for_node(self, store, lock_manager):
        mine = store.upsert(Job(name="a", job_type="t", status=JobStatus.RUNNING, lock_id="node-a"))
        leased = store.upsert(Job(name="b", job_type="t", status=JobStatus.RUNNING))
        lock_manager.acquire(leased.id, "node-a", ttl_seconds=60)
        store.upsert(Job(name="c", job_type="t", status=JobStatus.RUNNING, lock_id="node-b"))

        ids = {j.id for j in store.find_running_for_node("node-a")}

        assert ids == {mine.id, leased.id}


class TestJobStoreExecutions:
    """Test execution history rows."""

    def _start(self, store, job, when):
        return store.create_execution(JobExecution(
            job_id=job.id,
            job_name=job.name,
            job_type=job.job_type,
            start_time=when,
            node_id="node-a",
            parameters={"x": 1},
        ))

    def test_create_and_finish(self, store, clock):
        job = store.upsert(Job(name="a", job_type="t"))
        execution = self._start(store, job, clock())

        loaded = store.get_execution(execution.id)
        assert loaded.status is ExecutionStatus.RUNNING
        assert loaded.end_time is None
        assert loaded.trigger is ExecutionTrigger.SCHEDULER

        store.finish_execution(replace(
            execution,
            end_time=clock.advance(2),
            status=ExecutionStatus.COMPLETED,
            result={"ok": True},
            processing_time_ms=2000,
        ))

        loaded = store.get_execution(execution.id)
        assert loaded.status is ExecutionStatus.COMPLETED
        assert loaded.result == {"ok": True}
        assert loaded.parameters == {"x": 1}

    def test_finished_execution_is_immutable(self, store, clock):
        job = store.upsert(Job(name="a", job_type="t"))
        execution = self._start(store, job, clock())
        done = replace(execution, end_time=clock(), status=ExecutionStatus.FAILED, error_message="x")
        store.finish_execution(done)

        with pytest.raises(ConflictError):
            store.finish_execution(replace(done, status=ExecutionStatus.COMPLETED))

    def test_list_executions_newest_first_with_limit(self, store, clock):
        job = store.upsert(Job(name="a", job_type="t"))
        started = [self._start(store, job, clock.advance(10)) for _ in range(5)]

        history = store.list_executions(job.id, limit=3)

        assert [e.id for e in history] == [e.id for e in reversed(started)][:3]
        assert store.count_executions(job.id) == 5
