"""
Job state machine.

Every function here is pure: it takes the current record and returns the
record that should replace it, or raises. Persisting the result is the
caller's job, through ``JobStore.compare_and_swap`` with the state the
caller read. That pairing is what makes each transition a single atomic
check-and-set.
"""

from __future__ import annotations

from typing import Any

from ..errors import IllegalTransitionError, InvalidProgressError, LeaseLostError, ErrorContext
from ..resilience import BackoffPolicy
from .retention import RetentionPolicy
from .types import ErrorInfo, JobRecord, JobState


# Valid stored transitions. RUNNING -> QUEUED is the internal retry path.
VALID_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.QUEUED: {JobState.RUNNING, JobState.CANCELLED},
    JobState.RUNNING: {
        JobState.RUNNING,
        JobState.QUEUED,
        JobState.COMPLETED,
        JobState.FAILED,
        JobState.CANCELLED,
    },
    # Terminal states are sinks
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
    JobState.CANCELLED: set(),
    JobState.EXPIRED: set(),
}

LEASE_EXPIRED_KIND = "lease_expired"


def can_transition(current: JobState, target: JobState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def _require(job: JobRecord, target: JobState) -> None:
    if not can_transition(job.state, target):
        raise IllegalTransitionError(
            from_state=job.state.value,
            to_state=target.value,
            context=ErrorContext(job_id=job.job_id, job_type=job.type),
        )


def _require_owner(job: JobRecord, owner_token: str) -> None:
    if job.owner_token != owner_token:
        raise LeaseLostError(
            f"Lease on job {job.job_id} is held by another worker",
            context=ErrorContext(job_id=job.job_id, job_type=job.type),
        )


def new_job(
    job_type: str,
    input: Any,
    *,
    now: float,
    max_retries: int,
    idempotency_key: str | None = None,
    correlation_id: str | None = None,
) -> JobRecord:
    """Build the initial QUEUED record for a submission."""
    return JobRecord(
        type=job_type,
        state=JobState.QUEUED,
        input=input,
        idempotency_key=idempotency_key,
        correlation_id=correlation_id,
        max_retries=max_retries,
        submitted_at=now,
        updated_at=now,
        visible_at=now,
    )


def claim(job: JobRecord, owner_token: str, *, now: float, lease_timeout: float) -> JobRecord:
    """QUEUED -> RUNNING for the worker holding ``owner_token``.

    Progress starts at 0 on the first claim and is carried over on a retry,
    so pollers never see it go backwards.
    """
    if job.state != JobState.QUEUED:
        raise IllegalTransitionError(from_state=job.state.value, to_state=JobState.RUNNING.value)
    if job.visible_at > now:
        raise IllegalTransitionError(
            f"Job {job.job_id} is not visible until {job.visible_at}",
            context=ErrorContext(job_id=job.job_id, job_type=job.type),
        )
    return job.replace(
        state=JobState.RUNNING,
        owner_token=owner_token,
        started_at=now,
        heartbeat_at=now,
        lease_expires_at=now + lease_timeout,
        # A retried job keeps the progress earlier attempts reached.
        progress=job.progress or 0,
        updated_at=now,
    )


def heartbeat(
    job: JobRecord,
    owner_token: str,
    *,
    now: float,
    lease_timeout: float,
    progress: int | None = None,
) -> JobRecord:
    """RUNNING -> RUNNING: extend the lease and optionally record progress.

    Progress never moves backwards; a lower value than the stored one is
    ignored.
    """
    if job.state != JobState.RUNNING:
        raise IllegalTransitionError(from_state=job.state.value, to_state=JobState.RUNNING.value)
    _require_owner(job, owner_token)
    new_progress = job.progress
    if progress is not None:
        if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
            raise InvalidProgressError(
                f"progress must be an integer between 0 and 100, got {progress!r}",
                context=ErrorContext(job_id=job.job_id, job_type=job.type),
            )
        new_progress = max(job.progress or 0, progress)
    return job.replace(
        progress=new_progress,
        heartbeat_at=now,
        lease_expires_at=now + lease_timeout,
        updated_at=now,
    )


def complete(
    job: JobRecord,
    owner_token: str,
    output: Any,
    *,
    now: float,
    retention: RetentionPolicy,
) -> JobRecord:
    """RUNNING -> COMPLETED, storing ``output`` exactly once."""
    _require(job, JobState.COMPLETED)
    _require_owner(job, owner_token)
    return job.replace(
        state=JobState.COMPLETED,
        output=output,
        error=None,
        terminal_at=now,
        expires_at=retention.expires_at(job, JobState.COMPLETED, now, output),
        owner_token=None,
        lease_expires_at=None,
        updated_at=now,
    )


def fail(
    job: JobRecord,
    owner_token: str | None,
    error: ErrorInfo,
    *,
    now: float,
    retention: RetentionPolicy,
    backoff: BackoffPolicy,
) -> JobRecord:
    """Handle a failed attempt.

    Retryable errors with retries left requeue the job (state QUEUED,
    ``retry_count + 1``, visible after ``backoff.delay(retry_count)``).
    Anything else is terminal FAILED; exhausted retries are recorded as
    non-retryable whatever the original error said.

    ``owner_token=None`` skips the ownership check (lease reclaim).
    """
    _require(job, JobState.FAILED)
    if owner_token is not None:
        _require_owner(job, owner_token)

    if error.retryable and job.retry_count < job.max_retries:
        retry_count = job.retry_count + 1
        return job.replace(
            state=JobState.QUEUED,
            retry_count=retry_count,
            owner_token=None,
            heartbeat_at=None,
            lease_expires_at=None,
            visible_at=now + backoff.delay(retry_count),
            updated_at=now,
        )

    if error.retryable:
        error = ErrorInfo(
            kind=error.kind,
            message=f"{error.message} (gave up after {job.retry_count + 1} attempts)",
            retryable=False,
        )
    return job.replace(
        state=JobState.FAILED,
        error=error,
        output=None,
        terminal_at=now,
        expires_at=retention.expires_at(job, JobState.FAILED, now),
        owner_token=None,
        lease_expires_at=None,
        updated_at=now,
    )


def cancel(
    job: JobRecord,
    *,
    now: float,
    retention: RetentionPolicy,
    cancelled_by: str = "client",
) -> JobRecord:
    """QUEUED | RUNNING -> CANCELLED. Progress is frozen at its last value."""
    _require(job, JobState.CANCELLED)
    return job.replace(
        state=JobState.CANCELLED,
        cancelled_by=cancelled_by,
        terminal_at=now,
        expires_at=retention.expires_at(job, JobState.CANCELLED, now),
        owner_token=None,
        lease_expires_at=None,
        updated_at=now,
    )


def reclaim(
    job: JobRecord,
    *,
    now: float,
    retention: RetentionPolicy,
    backoff: BackoffPolicy,
) -> JobRecord:
    """Recover a RUNNING job whose owner stopped heartbeating.

    A crashed attempt counts as a transient failure, so a job that keeps
    killing its workers still ends up FAILED once retries run out.
    """
    if not job.lease_expired(now):
        raise IllegalTransitionError(
            f"Lease on job {job.job_id} has not expired",
            context=ErrorContext(job_id=job.job_id, job_type=job.type),
        )
    error = ErrorInfo(
        kind=LEASE_EXPIRED_KIND,
        message=f"Worker lease expired at {job.lease_expires_at:.3f} without a heartbeat",
        retryable=True,
    )
    return fail(job, None, error, now=now, retention=retention, backoff=backoff)


__all__ = [
    "VALID_TRANSITIONS",
    "LEASE_EXPIRED_KIND",
    "can_transition",
    "new_job",
    "claim",
    "heartbeat",
    "complete",
    "fail",
    "cancel",
    "reclaim",
]
