"""Tests for the jobspine error hierarchy."""

import pytest

from jobspine.core.errors import (
    ConfigError,
    ConflictError,
    DatabaseError,
    ErrorCategory,
    InvalidCronExpressionError,
    InvalidJobStateError,
    JobAlreadyRunningError,
    JobNotFoundError,
    JobSpineError,
    JobTimeoutError,
    SchedulingError,
    TransientError,
    ValidationError,
    WorkerNotFoundError,
    categorize_error,
    is_retryable,
)


class TestJobSpineError:
    def test_defaults(self):
        error = JobSpineError("Something went wrong")

        assert error.category is ErrorCategory.INTERNAL
        assert error.retryable is False
        assert str(error) == "Something went wrong"

    def test_with_context(self):
        error = JobNotFoundError("job-1").with_context(node_id="node-a", attempt=3)

        assert error.context.job_id == "job-1"
        assert error.context.node_id == "node-a"
        assert error.context.metadata == {"attempt": 3}

    def test_to_dict(self):
        cause = OSError("disk full")
        d = DatabaseError("write failed", cause=cause).to_dict()

        assert d["error_type"] == "DatabaseError"
        assert d["category"] == "DATABASE"
        assert d["cause"] == "disk full"

    def test_cause_is_chained(self):
        cause = ValueError("bad")
        error = ConfigError("invalid", cause=cause)

        assert error.__cause__ is cause


class TestHierarchy:
    @pytest.mark.parametrize(
        ("error", "base", "category"),
        [
            (JobNotFoundError("j"), SchedulingError, ErrorCategory.ORCHESTRATION),
            (WorkerNotFoundError("t"), SchedulingError, ErrorCategory.ORCHESTRATION),
            (JobAlreadyRunningError("j"), SchedulingError, ErrorCategory.ORCHESTRATION),
            (InvalidJobStateError("j", "PAUSED", "execute"), SchedulingError, ErrorCategory.ORCHESTRATION),
            (InvalidCronExpressionError("x"), ValidationError, ErrorCategory.VALIDATION),
            (ConflictError("j"), DatabaseError, ErrorCategory.DATABASE),
            (ConfigError("c"), JobSpineError, ErrorCategory.CONFIG),
        ],
    )
    def test_categories(self, error, base, category):
        assert isinstance(error, base)
        assert error.category is category

    def test_timeout_is_builtin_timeout(self):
        error = JobTimeoutError(30)

        assert isinstance(error, TransientError)
        assert isinstance(error, TimeoutError)
        assert error.category is ErrorCategory.TIMEOUT
        assert error.retryable is True
        assert "30" in str(error)

    def test_conflict_details(self):
        error = ConflictError("job-1", expected_version=2, actual_version=3)

        assert error.retryable is True
        assert "expected 2" in str(error)
        assert error.context.job_id == "job-1"

    def test_worker_not_found_message(self):
        error = WorkerNotFoundError("custom", "eod-interest")

        assert "custom" in str(error)
        assert "eod-interest" in str(error)

    def test_invalid_state_message(self):
        error = InvalidJobStateError("job-1", "PAUSED", "execute")

        assert str(error) == "Cannot execute job job-1 in status PAUSED"


class TestHelpers:
    def test_is_retryable(self):
        assert is_retryable(ConflictError("j")) is True
        assert is_retryable(JobNotFoundError("j")) is False
        assert is_retryable(ConnectionError()) is True
        assert is_retryable(RuntimeError()) is False

    def test_categorize_error(self):
        assert categorize_error(JobTimeoutError(1)) is ErrorCategory.TIMEOUT
        assert categorize_error(TimeoutError()) is ErrorCategory.TIMEOUT
        assert categorize_error(ValueError()) is ErrorCategory.VALIDATION
        assert categorize_error(RuntimeError()) is ErrorCategory.EXECUTION
