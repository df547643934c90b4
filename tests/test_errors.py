"""
Tests for the error taxonomy.
"""
import asyncio

import pytest

from job_runtime.errors import (
    # Base
    ErrorCode,
    ErrorContext,
    JobRuntimeError,
    # Submission
    SubmissionError,
    InvalidSubmissionError,
    # Lookup
    JobLookupError,
    JobNotFoundError,
    JobGoneError,
    JobNotCompletedError,
    # State machine
    IllegalTransitionError,
    InvalidProgressError,
    StateError,
    # Coordination
    CoordinationError,
    ConflictError,
    LeaseLostError,
    JobAlreadyExistsError,
    # Store
    StoreError,
    StoreUnavailableError,
    # Config
    ConfigError,
    InvalidConfigError,
    # Execution
    ExecutionError,
    TransientJobError,
    PermanentJobError,
    # Utilities
    is_retryable,
)


class TestErrorCodes:
    """Test error code enumeration."""

    def test_error_codes_are_prefixed(self):
        assert all(code.value.startswith("JOB_") for code in ErrorCode)

    def test_error_codes_unique(self):
        values = [e.value for e in ErrorCode]
        assert len(values) == len(set(values))


class TestErrorContext:
    def test_extra_is_flattened(self):
        context = ErrorContext(job_id="job_1", operation="claim", extra={"lease": 30})
        data = context.to_dict()
        assert data["job_id"] == "job_1"
        assert data["operation"] == "claim"
        assert data["lease"] == 30
        assert "worker_id" not in data

    def test_empty_context_is_empty(self):
        assert ErrorContext().to_dict() == {}
        assert JobRuntimeError("boom").to_dict()["context"] == {}


class TestBaseError:
    """Test JobRuntimeError behaviour shared by the hierarchy."""

    def test_str_includes_code_and_job(self):
        err = JobRuntimeError("boom", context=ErrorContext(job_id="job_9"))
        assert str(err) == "[JOB_9000] boom (job_id=job_9)"

    def test_overrides(self):
        err = JobRuntimeError("x", code=ErrorCode.CONFLICT, retryable=True)
        assert err.code is ErrorCode.CONFLICT
        assert err.retryable

    def test_to_dict(self):
        cause = ValueError("bad")
        data = StoreError("write failed", cause=cause).to_dict()
        assert data["error_type"] == "StoreError"
        assert data["code"] == ErrorCode.STORE_ERROR.value
        assert data["cause"] == "bad"
        assert data["retryable"] is False


class TestHierarchy:
    @pytest.mark.parametrize(
        "error_cls, base",
        [
            (InvalidSubmissionError, SubmissionError),
            (JobNotFoundError, JobLookupError),
            (JobGoneError, JobLookupError),
            (JobNotCompletedError, JobLookupError),
            (IllegalTransitionError, StateError),
            (InvalidProgressError, StateError),
            (ConflictError, CoordinationError),
            (LeaseLostError, CoordinationError),
            (JobAlreadyExistsError, CoordinationError),
            (StoreUnavailableError, StoreError),
            (InvalidConfigError, ConfigError),
            (TransientJobError, ExecutionError),
            (PermanentJobError, ExecutionError),
        ],
    )
    def test_subclassing(self, error_cls, base):
        assert issubclass(error_cls, base)
        assert issubclass(error_cls, JobRuntimeError)


class TestSpecificErrors:
    def test_invalid_submission_errors(self):
        err = InvalidSubmissionError(errors=[{"loc": ["type"], "msg": "required"}])
        assert err.to_dict()["errors"] == [{"loc": ["type"], "msg": "required"}]

    def test_not_found_and_gone_messages(self):
        assert "job_1" in str(JobNotFoundError(job_id="job_1"))
        gone = JobGoneError(job_id="job_2")
        assert gone.message == "Job expired: job_2"
        assert gone.context.job_id == "job_2"

    def test_illegal_transition_message(self):
        err = IllegalTransitionError(from_state="completed", to_state="cancelled")
        assert err.message == "Illegal transition: completed -> cancelled"

    def test_conflict_message(self):
        err = ConflictError(job_id="job_1", expected_state="queued", actual_state="running")
        assert "expected queued, found running" in err.message
        assert err.retryable

    def test_execution_kind(self):
        err = PermanentJobError("malformed", kind="validation")
        assert err.kind == "validation"
        assert not err.retryable


class TestIsRetryable:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (TransientJobError("blip"), True),
            (PermanentJobError("nope"), False),
            (StoreUnavailableError(), True),
            (InvalidConfigError("x"), False),
            (ConnectionError(), True),
            (asyncio.TimeoutError(), True),
            (ValueError("x"), False),
        ],
    )
    def test_classification(self, error, expected):
        assert is_retryable(error) is expected
