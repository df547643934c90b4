"""
Job types for job-runtime.

This module defines the JobState enum, the ErrorInfo value object and the
JobRecord dataclass that form the core of the job lifecycle system.
"""

from __future__ import annotations

import base64
import dataclasses
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobState(str, Enum):
    """Job lifecycle states.

    State transitions:
    - QUEUED -> RUNNING (claimed by a coordinator worker)
    - RUNNING -> RUNNING (heartbeat / progress)
    - RUNNING -> COMPLETED (work unit returned)
    - RUNNING -> QUEUED (internal retry after a transient failure; never observable)
    - RUNNING -> FAILED (permanent error or retries exhausted)
    - QUEUED | RUNNING -> CANCELLED (external request)

    EXPIRED is never stored: it is how a lookup reports a job whose
    retention window has passed.
    """
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        """Check if the job is still active."""
        return self in {JobState.QUEUED, JobState.RUNNING}


TERMINAL_STATES: frozenset[JobState] = frozenset({
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.CANCELLED,
    JobState.EXPIRED,
})


def generate_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class ErrorInfo:
    """Structured failure recorded on a terminally failed job."""
    kind: str
    message: str
    retryable: bool = False

    def __post_init__(self) -> None:
        if not self.message:
            raise ValueError("ErrorInfo.message must not be empty")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorInfo:
        return cls(
            kind=data.get("kind", "error"),
            message=data.get("message") or "unknown error",
            retryable=bool(data.get("retryable", False)),
        )


@dataclass(frozen=True)
class JobRecord:
    """Persistent record of a tracked job.

    Records are never mutated in place: the state machine builds a new record
    with ``dataclasses.replace`` and the store swaps it in atomically.
    """
    # Identity
    type: str
    job_id: str = field(default_factory=generate_job_id)

    # Status
    state: JobState = JobState.QUEUED
    progress: int | None = None

    # Payloads
    input: Any = None
    output: Any = None
    error: ErrorInfo | None = None

    # Correlation
    idempotency_key: str | None = None
    correlation_id: str | None = None

    # Retry bookkeeping
    retry_count: int = 0
    max_retries: int = 3

    # Timestamps (epoch seconds)
    submitted_at: float = 0.0
    updated_at: float = 0.0
    started_at: float | None = None
    terminal_at: float | None = None
    expires_at: float | None = None
    visible_at: float = 0.0

    # Lease
    owner_token: str | None = None
    heartbeat_at: float | None = None
    lease_expires_at: float | None = None

    # Cancellation
    cancelled_by: str | None = None

    # Optimistic concurrency
    version: int = 0

    @property
    def attempt(self) -> int:
        """1-based attempt number of the current (or next) execution."""
        return self.retry_count + 1

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def lease_expired(self, now: float) -> bool:
        return (
            self.state == JobState.RUNNING
            and self.lease_expires_at is not None
            and self.lease_expires_at <= now
        )

    def replace(self, **changes: Any) -> JobRecord:
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "job_id": self.job_id,
            "type": self.type,
            "state": self.state.value,
            "progress": self.progress,
            "input": encode_payload(self.input),
            "output": encode_payload(self.output),
            "error": self.error.to_dict() if self.error else None,
            "idempotency_key": self.idempotency_key,
            "correlation_id": self.correlation_id,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "submitted_at": self.submitted_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "terminal_at": self.terminal_at,
            "expires_at": self.expires_at,
            "visible_at": self.visible_at,
            "owner_token": self.owner_token,
            "heartbeat_at": self.heartbeat_at,
            "lease_expires_at": self.lease_expires_at,
            "cancelled_by": self.cancelled_by,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobRecord:
        """Deserialize from dictionary."""
        return cls(
            job_id=data["job_id"],
            type=data["type"],
            state=JobState(data.get("state", "queued")),
            progress=data.get("progress"),
            input=decode_payload(data.get("input")),
            output=decode_payload(data.get("output")),
            error=ErrorInfo.from_dict(data["error"]) if data.get("error") else None,
            idempotency_key=data.get("idempotency_key"),
            correlation_id=data.get("correlation_id"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            submitted_at=data.get("submitted_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
            started_at=data.get("started_at"),
            terminal_at=data.get("terminal_at"),
            expires_at=data.get("expires_at"),
            visible_at=data.get("visible_at", 0.0),
            owner_token=data.get("owner_token"),
            heartbeat_at=data.get("heartbeat_at"),
            lease_expires_at=data.get("lease_expires_at"),
            cancelled_by=data.get("cancelled_by"),
            version=data.get("version", 0),
        )


# Bytes payloads are wrapped so JSON-backed stores can round-trip them.
_BYTES_MARKER = "__bytes_b64__"


def encode_payload(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {_BYTES_MARKER: base64.b64encode(bytes(value)).decode("ascii")}
    return value


def decode_payload(value: Any) -> Any:
    if isinstance(value, dict) and set(value) == {_BYTES_MARKER}:
        return base64.b64decode(value[_BYTES_MARKER])
    return value


@dataclass
class JobFilter:
    """Filter criteria for listing jobs."""
    state: JobState | set[JobState] | None = None
    type: str | None = None
    idempotency_key: str | None = None
    submitted_before: float | None = None
    limit: int = 100
    offset: int = 0
    order_by: str = "submitted_at"
    order_desc: bool = False

    def matches(self, job: JobRecord) -> bool:
        """Check if a job matches this filter."""
        if self.type and job.type != self.type:
            return False
        if self.idempotency_key and job.idempotency_key != self.idempotency_key:
            return False
        if self.submitted_before is not None and job.submitted_at >= self.submitted_before:
            return False
        if self.state:
            if isinstance(self.state, set):
                if job.state not in self.state:
                    return False
            elif job.state != self.state:
                return False
        return True


__all__ = [
    "JobState",
    "TERMINAL_STATES",
    "ErrorInfo",
    "JobRecord",
    "JobFilter",
    "generate_job_id",
    "encode_payload",
    "decode_payload",
]
