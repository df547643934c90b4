"""
Job model, persistence contracts and execution primitives.

The coordinator, sweeper and service live in submodules that depend on
``job_runtime.config``; import them from there or from ``job_runtime``.
"""

from .idempotency import IdempotencyGuard, derive_idempotency_key, validate_idempotency_key
from .notifier import InMemoryNotifier, JobNotifier
from .retention import DEFAULT_RETENTION_TABLE, RetentionPolicy, SizeClass, payload_size
from .store import IdempotencyIndex, InMemoryJobStore, JobStore
from .types import ErrorInfo, JobFilter, JobRecord, JobState, TERMINAL_STATES, generate_job_id
from .work import (
    DefaultClassifier,
    ExceptionTypeClassifier,
    FailureClassifier,
    Registration,
    WorkContext,
    WorkRegistry,
    WorkUnit,
)

__all__ = [
    # Types
    "JobState",
    "TERMINAL_STATES",
    "JobRecord",
    "ErrorInfo",
    "JobFilter",
    "generate_job_id",
    # Persistence
    "JobStore",
    "IdempotencyIndex",
    "InMemoryJobStore",
    # Retention
    "RetentionPolicy",
    "SizeClass",
    "DEFAULT_RETENTION_TABLE",
    "payload_size",
    # Work units
    "WorkContext",
    "WorkUnit",
    "WorkRegistry",
    "Registration",
    "FailureClassifier",
    "DefaultClassifier",
    "ExceptionTypeClassifier",
    # Idempotency
    "IdempotencyGuard",
    "derive_idempotency_key",
    "validate_idempotency_key",
    # Wakeups
    "JobNotifier",
    "InMemoryNotifier",
]
