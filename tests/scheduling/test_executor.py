"""Tests for JobExecutor - the attempt state machine."""

import threading
from datetime import timedelta

import pytest
import structlog

from jobspine.core.errors import (
    InvalidJobStateError,
    JobAlreadyRunningError,
    JobNotFoundError,
)
from jobspine.scheduling import (
    ExecutionStatus,
    ExecutionTrigger,
    FunctionWorker,
    JobExecutor,
    JobStatus,
    next_occurrence,
)


class TestSuccessfulAttempts:
    """Test outcomes of attempts whose worker returns."""

    def test_one_shot_completes(self, executor, store, lock_manager, make_job, ok_worker):
        """One-shot job: COMPLETED, no next run, one COMPLETED execution with the result."""
        job = make_job()

        execution = executor.run(job.id)

        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.result == {"ok": True}
        loaded = store.get(job.id)
        assert loaded.status is JobStatus.COMPLETED
        assert loaded.next_run_time is None
        assert loaded.retry_count == 0
        assert loaded.lock_id is None
        assert loaded.last_completion_time is not None
        history = store.list_executions(job.id)
        assert len(history) == 1
        assert history[0].status is ExecutionStatus.COMPLETED
        assert history[0].result == {"ok": True}
        assert history[0].node_id == "node-a"
        assert lock_manager.get_lock(job.id) is None

    def test_recurring_reschedules_at_next_cron_time(self, executor, store, make_job, ok_worker, clock):
        """Recurring job goes back to SCHEDULED at the next occurrence after completion."""
        job = make_job(cron_expression="0 * * * *")

        executor.run(job.id)

        loaded = store.get(job.id)
        assert loaded.status is JobStatus.SCHEDULED
        assert loaded.next_run_time == next_occurrence("0 * * * *", clock())
        assert loaded.next_run_time > clock()

    def test_success_resets_retry_count(self, executor, store, make_job, ok_worker):
        job = make_job(cron_expression="0 * * * *", retry_count=2)

        executor.run(job.id)

        assert store.get(job.id).retry_count == 0

    def test_async_worker(self, executor, store, registry, make_job):
        """Coroutine workers are awaited."""

        async def process(job, params):
            return {"async": True}

        registry.register(FunctionWorker("async-report", process))
        job = make_job(job_type="async-report")

        execution = executor.run(job.id)

        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.result == {"async": True}

    def test_execution_snapshots_job(self, executor, make_job, ok_worker, calls):
        job = make_job(parameters={"branch": "001"}, tenant_id="bank-1")

        execution = executor.run(job.id)

        assert calls == [("daily-report", {"branch": "001"})]
        assert execution.parameters == {"branch": "001"}
        assert execution.job_name == "daily-report"
        assert execution.job_type == "report"
        assert execution.tenant_id == "bank-1"
        assert execution.trigger is ExecutionTrigger.SCHEDULER


class TestFailedAttempts:
    """Test retries, backoff and terminal failure."""

    def test_failure_schedules_retry_with_backoff(self, executor, store, make_job, failing_worker, clock):
        job = make_job(job_type="flaky", max_retries=3)

        execution = executor.run(job.id)

        assert execution.status is ExecutionStatus.FAILED
        assert execution.error_message == "ledger unavailable"
        assert "RuntimeError" in execution.error_stack
        loaded = store.get(job.id)
        assert loaded.status is JobStatus.SCHEDULED
        assert loaded.retry_count == 1
        assert loaded.next_run_time == clock() + timedelta(seconds=5)
        assert loaded.last_failure_time == clock()

    def test_max_retries_two_always_failing(self, executor, store, make_job, failing_worker, clock):
        """SCHEDULED→RUNNING→SCHEDULED(+5s)→RUNNING→SCHEDULED(+25s)→RUNNING→FAILED."""
        job = make_job(job_type="flaky", max_retries=2)
        statuses = []

        executor.run(job.id)
        statuses.append(store.get(job.id).status)
        clock.advance(5)
        executor.run(job.id)
        statuses.append(store.get(job.id).status)
        clock.advance(25)
        executor.run(job.id)
        statuses.append(store.get(job.id).status)

        assert statuses == [JobStatus.SCHEDULED, JobStatus.SCHEDULED, JobStatus.FAILED]
        final = store.get(job.id)
        assert final.next_run_time is None
        assert final.retry_count == 3

        history = list(reversed(store.list_executions(job.id)))
        assert len(history) == 3
        assert all(e.status is ExecutionStatus.FAILED for e in history)
        gaps = [
            (b.start_time - a.start_time).total_seconds()
            for a, b in zip(history, history[1:])
        ]
        assert gaps == [5.0, 25.0]

    def test_retry_not_run_before_backoff(self, executor, store, make_job, failing_worker, clock, calls):
        """A background attempt before next_run_time is abandoned without an execution."""
        job = make_job(job_type="flaky", max_retries=2)
        executor.run(job.id)
        clock.advance(4)

        assert executor.run(job.id) is None
        assert len(calls) == 1
        assert store.count_executions(job.id) == 1

    def test_retry_exhaustion_is_terminal_for_recurring_jobs(self, executor, store, make_job, failing_worker):
        job = make_job(job_type="flaky", cron_expression="*/5 * * * *", max_retries=0)

        executor.run(job.id)

        loaded = store.get(job.id)
        assert loaded.status is JobStatus.FAILED
        assert loaded.next_run_time is None

    def test_timeout_is_a_failed_attempt(self, executor, store, registry, make_job):
        """Worker exceeding timeout_seconds: FAILED execution, retry scheduled."""
        release = threading.Event()

        def slow(job, params):
            release.wait(10)
            return "late"

        registry.register(FunctionWorker("slow", slow))
        job = make_job(job_type="slow", timeout_seconds=1, max_retries=1)

        try:
            execution = executor.run(job.id)
        finally:
            release.set()

        assert execution.status is ExecutionStatus.FAILED
        assert "timeout" in execution.error_message
        assert store.get(job.id).status is JobStatus.SCHEDULED

    def test_missing_worker_is_a_failed_attempt(self, executor, store, make_job, lock_manager):
        job = make_job(job_type="unregistered", max_retries=0)

        execution = executor.run(job.id)

        assert execution.status is ExecutionStatus.FAILED
        assert store.get(job.id).status is JobStatus.FAILED
        assert lock_manager.get_lock(job.id) is None

    def test_lease_released_after_failure(self, executor, make_job, failing_worker, lock_manager):
        job = make_job(job_type="flaky")

        executor.run(job.id)

        assert lock_manager.get_lock(job.id) is None


class TestLeaseContention:
    """Test attempts that cannot take the lease."""

    def test_lease_held_elsewhere_abandons(self, executor, store, make_job, ok_worker, lock_manager, calls):
        job = make_job()
        lock_manager.acquire(job.id, "node-b", ttl_seconds=60)

        assert executor.run(job.id) is None
        assert calls == []
        assert store.get(job.id).status is JobStatus.SCHEDULED
        assert lock_manager.get_lock_holder(job.id) == "node-b"

    def test_in_flight_job_not_started_twice(self, executor, registry, make_job):
        """A second attempt for a job this node is already running is skipped."""
        inner = {}

        def process(job, params):
            inner["in_flight"] = executor.is_in_flight(job.id)
            inner["second"] = executor.run(job.id)
            return "done"

        registry.register(FunctionWorker("nested", process))
        job = make_job(job_type="nested")

        executor.run(job.id)

        assert inner == {"in_flight": True, "second": None}
        assert executor.in_flight_count == 0

    def test_lease_ttl_covers_timeout(self, executor, make_job):
        job = make_job(timeout_seconds=3600)

        assert executor.lease_ttl_for(job) == 3630
        assert executor.lease_ttl_for(make_job(name="short", timeout_seconds=10)) == 600

    def test_backoff_is_capped(self, store, lock_manager, registry):
        executor = JobExecutor(store, lock_manager, registry, node_id="n", max_backoff_seconds=100)

        assert [executor.backoff_seconds(n) for n in (1, 2, 3, 4)] == [5, 25, 100, 100]

    def test_log_context_bound_for_worker(self, executor, registry, make_job):
        seen = {}

        def process(job, params):
            seen.update(structlog.contextvars.get_contextvars())

        registry.register(FunctionWorker("ctx", process))
        job = make_job(job_type="ctx")

        executor.run(job.id)

        assert seen["job_id"] == job.id
        assert seen["node_id"] == "node-a"


class TestManualAttempts:
    """Test trigger=MANUAL semantics."""

    def test_manual_failure_is_recorded_then_raised(self, executor, store, make_job, failing_worker):
        job = make_job(job_type="flaky", max_retries=3)

        with pytest.raises(RuntimeError, match="ledger unavailable"):
            executor.run(job.id, trigger=ExecutionTrigger.MANUAL)

        history = store.list_executions(job.id)
        assert len(history) == 1
        assert history[0].status is ExecutionStatus.FAILED
        assert history[0].trigger is ExecutionTrigger.MANUAL
        assert store.get(job.id).retry_count == 1

    def test_manual_runs_before_due_time(self, executor, store, make_job, ok_worker, clock):
        job = make_job(next_run_time=clock() + timedelta(hours=1))

        execution = executor.run(job.id, trigger=ExecutionTrigger.MANUAL)

        assert execution.status is ExecutionStatus.COMPLETED

    def test_manual_parameter_overrides(self, executor, store, make_job, ok_worker, calls):
        """Overrides apply to the attempt only."""
        job = make_job(parameters={"branch": "001", "dry_run": False})

        execution = executor.run(
            job.id, trigger=ExecutionTrigger.MANUAL, parameter_overrides={"dry_run": True}
        )

        assert calls == [("daily-report", {"branch": "001", "dry_run": True})]
        assert execution.parameters == {"branch": "001", "dry_run": True}
        assert store.get(job.id).parameters == {"branch": "001", "dry_run": False}

    @pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.FAILED])
    def test_manual_rerun_of_finished_job(self, executor, store, make_job, ok_worker, status):
        job = make_job(status=status, next_run_time=None)

        execution = executor.run(job.id, trigger=ExecutionTrigger.MANUAL)

        assert execution.status is ExecutionStatus.COMPLETED
        assert store.get(job.id).status is JobStatus.COMPLETED

    def test_manual_while_running(self, executor, make_job, ok_worker):
        job = make_job(status=JobStatus.RUNNING, lock_id="node-b")

        with pytest.raises(JobAlreadyRunningError):
            executor.run(job.id, trigger=ExecutionTrigger.MANUAL)

    def test_manual_while_leased_elsewhere(self, executor, make_job, ok_worker, lock_manager):
        job = make_job()
        lock_manager.acquire(job.id, "node-b", ttl_seconds=60)

        with pytest.raises(JobAlreadyRunningError) as exc_info:
            executor.run(job.id, trigger=ExecutionTrigger.MANUAL)

        assert exc_info.value.holder == "node-b"

    @pytest.mark.parametrize("status", [JobStatus.PAUSED, JobStatus.CANCELLED])
    def test_manual_on_administrative_state(self, executor, make_job, ok_worker, status):
        job = make_job(status=status)

        with pytest.raises(InvalidJobStateError):
            executor.run(job.id, trigger=ExecutionTrigger.MANUAL)

    def test_unknown_job(self, executor):
        with pytest.raises(JobNotFoundError):
            executor.run("missing", trigger=ExecutionTrigger.MANUAL)


class TestRecovery:
    """Test crash recovery and the orphan reaper."""

    def test_recover_stale_jobs_for_this_node(self, executor, store, lock_manager, make_job, clock):
        mine = make_job(name="mine", status=JobStatus.RUNNING, lock_id="node-a",
                        lock_expires_at=clock() + timedelta(minutes=10))
        lock_manager.acquire(mine.id, "node-a", ttl_seconds=600)
        theirs = make_job(name="theirs", status=JobStatus.RUNNING, lock_id="node-b",
                          lock_expires_at=clock() + timedelta(minutes=10))
        lock_manager.acquire(theirs.id, "node-b", ttl_seconds=600)

        recovered = executor.recover_stale_jobs()

        assert recovered == [mine.id]
        loaded = store.get(mine.id)
        assert loaded.status is JobStatus.SCHEDULED
        assert loaded.lock_id is None
        assert loaded.next_run_time <= clock()
        assert lock_manager.get_lock(mine.id) is None
        assert store.get(theirs.id).status is JobStatus.RUNNING
        assert lock_manager.get_lock_holder(theirs.id) == "node-b"

    def test_recovered_job_is_due(self, executor, store, make_job, clock):
        job = make_job(status=JobStatus.RUNNING, lock_id="node-a")

        executor.recover_stale_jobs()

        assert [j.id for j in store.find_due_jobs(clock(), 10)] == [job.id]

    def test_reap_orphaned_running_job(self, executor, store, make_job, clock):
        """A RUNNING job whose lease expired without release is reset by any node."""
        job = make_job(status=JobStatus.RUNNING, lock_id="node-dead",
                       lock_expires_at=clock() - timedelta(seconds=1))

        assert executor.reap_orphaned_jobs() == [job.id]
        assert store.get(job.id).status is JobStatus.SCHEDULED

    def test_reaper_leaves_live_lease_alone(self, executor, store, lock_manager, make_job, clock):
        job = make_job(status=JobStatus.RUNNING, lock_id="node-b",
                       lock_expires_at=clock() + timedelta(minutes=5))
        lock_manager.acquire(job.id, "node-b", ttl_seconds=300)

        assert executor.reap_orphaned_jobs() == []
        assert store.get(job.id).status is JobStatus.RUNNING


class TestLeaseRefresh:
    """Test refresh_lease() for long-running workers."""

    @pytest.fixture
    def running_job(self, make_job, lock_manager, clock):
        """A job this node is running with a timeout-sized lease."""
        ttl = 3630
        job = make_job(
            status=JobStatus.RUNNING,
            timeout_seconds=3600,
            lock_id="node-a",
            lock_expires_at=clock() + timedelta(seconds=ttl),
        )
        lock_manager.acquire(job.id, "node-a", ttl_seconds=ttl)
        return job

    def test_default_ttl_is_the_job_lease_ttl(self, executor, store, lock_manager, running_job, clock):
        """A refresh without a TTL keeps the timeout-sized lease."""
        clock.advance(60)

        assert executor.refresh_lease(running_job.id) is True

        expected = clock() + timedelta(seconds=3630)
        assert lock_manager.get_lock(running_job.id).expires_at == expected
        assert store.get(running_job.id).lock_expires_at == expected

    def test_short_ttl_never_shortens_lease(self, executor, store, lock_manager, running_job):
        """An explicit TTL below the remaining time leaves the expiry alone."""
        before = lock_manager.get_lock(running_job.id).expires_at

        assert executor.refresh_lease(running_job.id, 10) is True

        assert lock_manager.get_lock(running_job.id).expires_at == before
        assert store.get(running_job.id).lock_expires_at == before

    def test_lease_taken_over(self, executor, lock_manager, running_job, clock):
        clock.advance(3631)
        lock_manager.acquire(running_job.id, "node-b", ttl_seconds=600)

        assert executor.refresh_lease(running_job.id) is False

    def test_unknown_job(self, executor):
        with pytest.raises(JobNotFoundError):
            executor.refresh_lease("missing")
