"""
Exceptions raised by job-runtime.

Every exception carries a ``JOB_xxxx`` code, a ``retryable`` flag and an
ErrorContext naming the job, worker and operation involved. The families
map onto who has to react:

- submission and lookup errors go back to the API caller
- coordination errors are races resolved by re-reading and retrying
- store errors are infrastructure trouble and never become a job outcome
- execution errors are raised by work units to state their retryability

Only permanent execution errors and exhausted retries ever end up inside a
job's ``error`` field.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes for the job runtime."""

    # Submission errors (1xxx)
    SUBMISSION_ERROR = "JOB_1000"
    INVALID_SUBMISSION = "JOB_1001"

    # Lookup errors (2xxx)
    LOOKUP_ERROR = "JOB_2000"
    JOB_NOT_FOUND = "JOB_2001"
    JOB_GONE = "JOB_2002"
    JOB_NOT_COMPLETED = "JOB_2003"

    # State machine errors (3xxx)
    STATE_ERROR = "JOB_3000"
    ILLEGAL_TRANSITION = "JOB_3001"
    INVALID_PROGRESS = "JOB_3002"

    # Coordination errors (4xxx)
    COORDINATION_ERROR = "JOB_4000"
    CONFLICT = "JOB_4001"
    LEASE_LOST = "JOB_4002"
    ALREADY_EXISTS = "JOB_4003"

    # Store errors (5xxx)
    STORE_ERROR = "JOB_5000"
    STORE_UNAVAILABLE = "JOB_5001"

    # Configuration errors (6xxx)
    CONFIG_ERROR = "JOB_6000"
    INVALID_CONFIG = "JOB_6001"

    # Execution errors raised by work units (7xxx)
    EXECUTION_ERROR = "JOB_7000"
    TRANSIENT_EXECUTION = "JOB_7001"
    PERMANENT_EXECUTION = "JOB_7002"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "JOB_9000"


@dataclass
class ErrorContext:
    """Where an error happened, attached to logs and ``to_dict()``."""

    job_id: str | None = None
    job_type: str | None = None
    worker_id: str | None = None
    operation: str | None = None
    attempt: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Set fields only, with ``extra`` flattened in."""
        fields = {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "worker_id": self.worker_id,
            "operation": self.operation,
            "attempt": self.attempt,
        }
        return {**{k: v for k, v in fields.items() if v is not None}, **self.extra}


class JobRuntimeError(Exception):
    """
    Base exception for all job runtime errors.

    Attributes:
        code: ``JOB_xxxx`` code callers can switch on
        message: Human-readable description
        retryable: Whether repeating the same call may succeed
        context: Job, worker and operation involved
        cause: Underlying exception, if any
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.context = context or ErrorContext()
        self.cause = cause

    def __str__(self) -> str:
        parts = [f"[{self.code.value}] {self.message}"]
        if self.context.job_id:
            parts.append(f"(job_id={self.context.job_id})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Flatten for structured logs and API error bodies."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }


# =============================================================================
# Submission Errors
# =============================================================================


class SubmissionError(JobRuntimeError):
    """Base class for errors detected before a job is created."""

    code = ErrorCode.SUBMISSION_ERROR
    retryable = False


class InvalidSubmissionError(SubmissionError):
    """Submission request failed validation. Never stored as a job."""

    code = ErrorCode.INVALID_SUBMISSION

    def __init__(
        self,
        message: str = "Invalid job submission",
        *,
        errors: list[dict[str, Any]] | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["errors"] = self.errors
        return d


# =============================================================================
# Lookup Errors
# =============================================================================


class JobLookupError(JobRuntimeError):
    """Base class for job lookup errors."""

    code = ErrorCode.LOOKUP_ERROR
    retryable = False


class JobNotFoundError(JobLookupError):
    """The job id never existed (as far as this store knows)."""

    code = ErrorCode.JOB_NOT_FOUND

    def __init__(
        self,
        message: str = "Job not found",
        *,
        job_id: str | None = None,
        **kwargs,
    ):
        if job_id:
            message = f"Job not found: {job_id}"
            kwargs.setdefault("context", ErrorContext(job_id=job_id))
        super().__init__(message, **kwargs)
        self.job_id = job_id


class JobGoneError(JobLookupError):
    """The job existed but its retention window has passed."""

    code = ErrorCode.JOB_GONE

    def __init__(
        self,
        message: str = "Job expired",
        *,
        job_id: str | None = None,
        **kwargs,
    ):
        if job_id:
            message = f"Job expired: {job_id}"
            kwargs.setdefault("context", ErrorContext(job_id=job_id))
        super().__init__(message, **kwargs)
        self.job_id = job_id


class JobNotCompletedError(JobLookupError):
    """A result was requested for a job that has no output."""

    code = ErrorCode.JOB_NOT_COMPLETED


# =============================================================================
# State Machine Errors
# =============================================================================


class StateError(JobRuntimeError):
    """Base class for state machine violations."""

    code = ErrorCode.STATE_ERROR
    retryable = False


class IllegalTransitionError(StateError):
    """Requested transition is not allowed from the current state."""

    code = ErrorCode.ILLEGAL_TRANSITION

    def __init__(
        self,
        message: str = "Illegal state transition",
        *,
        from_state: str | None = None,
        to_state: str | None = None,
        **kwargs,
    ):
        if from_state and to_state:
            message = f"Illegal transition: {from_state} -> {to_state}"
        super().__init__(message, **kwargs)
        self.from_state = from_state
        self.to_state = to_state


class InvalidProgressError(StateError):
    """Progress value outside 0..100."""

    code = ErrorCode.INVALID_PROGRESS


# =============================================================================
# Coordination Errors
# =============================================================================


class CoordinationError(JobRuntimeError):
    """Base class for expected races between concurrent actors.

    These are resolved locally by re-reading and retrying, never surfaced
    as a job outcome.
    """

    code = ErrorCode.COORDINATION_ERROR
    retryable = True


class ConflictError(CoordinationError):
    """Compare-and-swap rejected: stored state differs from the expected one."""

    code = ErrorCode.CONFLICT

    def __init__(
        self,
        message: str = "Compare-and-swap conflict",
        *,
        job_id: str | None = None,
        expected_state: str | None = None,
        actual_state: str | None = None,
        **kwargs,
    ):
        if job_id and expected_state and actual_state:
            message = (
                f"Conflict on job {job_id}: expected {expected_state}, found {actual_state}"
            )
        super().__init__(message, **kwargs)
        self.job_id = job_id
        self.expected_state = expected_state
        self.actual_state = actual_state


class LeaseLostError(CoordinationError):
    """The caller no longer owns the running job."""

    code = ErrorCode.LEASE_LOST


class JobAlreadyExistsError(CoordinationError):
    """A job with the same id is already stored."""

    code = ErrorCode.ALREADY_EXISTS
    retryable = False


# =============================================================================
# Store Errors
# =============================================================================


class StoreError(JobRuntimeError):
    """Base class for persistence failures."""

    code = ErrorCode.STORE_ERROR
    retryable = False


class StoreUnavailableError(StoreError):
    """Backing store could not be reached. Retryable."""

    code = ErrorCode.STORE_UNAVAILABLE
    retryable = True

    def __init__(
        self,
        message: str = "Job store unavailable",
        **kwargs,
    ):
        super().__init__(message, **kwargs)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(JobRuntimeError):
    """Settings could not be loaded."""

    code = ErrorCode.CONFIG_ERROR
    retryable = False


class InvalidConfigError(ConfigError):
    """A setting is missing, malformed or out of range."""

    code = ErrorCode.INVALID_CONFIG


# =============================================================================
# Execution Errors (raised by work units)
# =============================================================================


class ExecutionError(JobRuntimeError):
    """Base class work units may raise to state their own retryability."""

    code = ErrorCode.EXECUTION_ERROR
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.kind = kind


class TransientJobError(ExecutionError):
    """Network blip, timeout, throttling. Retried with backoff."""

    code = ErrorCode.TRANSIENT_EXECUTION
    retryable = True


class PermanentJobError(ExecutionError):
    """Malformed input or business rule violation. Fails the job at once."""

    code = ErrorCode.PERMANENT_EXECUTION
    retryable = False


# =============================================================================
# Utilities
# =============================================================================


_TRANSIENT_BUILTINS = (asyncio.TimeoutError, TimeoutError, ConnectionError)


def is_retryable(error: BaseException) -> bool:
    """True for runtime errors flagged retryable and for timeouts or dropped connections."""
    if isinstance(error, JobRuntimeError):
        return error.retryable
    return isinstance(error, _TRANSIENT_BUILTINS)


__all__ = [
    # Base
    "ErrorCode",
    "ErrorContext",
    "JobRuntimeError",
    # Submission
    "SubmissionError",
    "InvalidSubmissionError",
    # Lookup
    "JobLookupError",
    "JobNotFoundError",
    "JobGoneError",
    "JobNotCompletedError",
    # State machine
    "StateError",
    "IllegalTransitionError",
    "InvalidProgressError",
    # Coordination
    "CoordinationError",
    "ConflictError",
    "LeaseLostError",
    "JobAlreadyExistsError",
    # Store
    "StoreError",
    "StoreUnavailableError",
    # Config
    "ConfigError",
    "InvalidConfigError",
    # Execution
    "ExecutionError",
    "TransientJobError",
    "PermanentJobError",
    # Utilities
    "is_retryable",
]
