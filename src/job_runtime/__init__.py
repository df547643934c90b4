"""
Job Runtime - asynchronous job tracking for long-running work.

Callers submit a job and get an id back immediately, then poll for status
and results while a pool of workers executes registered work units:
- Durable job records with an explicit state machine
  (queued, running, completed, failed, cancelled)
- Idempotent submission keyed by client-supplied keys
- Leases and heartbeats so crashed workers' jobs are reclaimed
- Retries with exponential backoff for transient failures
- Cooperative cancellation and progress reporting
- Size- and outcome-based retention with tombstones for expired jobs

Example:
    ```python
    from job_runtime import ExecutionCoordinator, InMemoryJobStore, JobService, WorkRegistry

    registry = WorkRegistry()

    @registry.work_unit("echo")
    async def echo(ctx, payload):
        await ctx.report_progress(50)
        return payload

    store = InMemoryJobStore()
    async with ExecutionCoordinator(store, registry) as coordinator:
        service = JobService(store, coordinator=coordinator)
        ack = await service.submit("echo", {"text": "hi"}, idempotency_key="k1")
        status = await service.get_status(ack.job_id)
    ```
"""

from .cancellation import CancellationToken, CancelledError
from .clock import Clock, ManualClock, SystemClock
from .errors import (
    ConfigError,
    ConflictError,
    CoordinationError,
    ErrorCode,
    ErrorContext,
    ExecutionError,
    IllegalTransitionError,
    InvalidConfigError,
    InvalidProgressError,
    InvalidSubmissionError,
    JobAlreadyExistsError,
    JobGoneError,
    JobLookupError,
    JobNotCompletedError,
    JobNotFoundError,
    JobRuntimeError,
    LeaseLostError,
    PermanentJobError,
    StateError,
    StoreError,
    StoreUnavailableError,
    SubmissionError,
    TransientJobError,
    is_retryable,
)
from .resilience import BackoffPolicy
from .telemetry import DurationTracker, JobMetrics, MetricRegistry, TelemetryConfig
from .config import (
    CoordinatorConfig,
    LoggingConfig,
    RetentionConfig,
    Settings,
    StoreConfig,
    SubmissionConfig,
    SweeperConfig,
    configure,
    get_settings,
    load_env,
    reset_settings,
)
from .logging import StructuredLogger, configure_logging, get_logger
from .jobs import (
    DefaultClassifier,
    ErrorInfo,
    ExceptionTypeClassifier,
    IdempotencyIndex,
    InMemoryJobStore,
    InMemoryNotifier,
    JobFilter,
    JobNotifier,
    JobRecord,
    JobState,
    JobStore,
    RetentionPolicy,
    SizeClass,
    WorkContext,
    WorkRegistry,
    WorkUnit,
    derive_idempotency_key,
)
from .jobs.coordinator import ExecutionCoordinator
from .jobs.status import ErrorInfoView, JobStatusView, StatusQueryService
from .jobs.sweeper import RetentionSweeper, SweepReport
from .jobs.service import JobService, SubmitRequest, SubmitResult
from .storage import open_notifier, open_store

__version__ = "0.1.0"

__all__ = [
    # Service
    "JobService",
    "SubmitRequest",
    "SubmitResult",
    "JobStatusView",
    "ErrorInfoView",
    "StatusQueryService",
    # Execution
    "ExecutionCoordinator",
    "RetentionSweeper",
    "SweepReport",
    "WorkRegistry",
    "WorkUnit",
    "WorkContext",
    "DefaultClassifier",
    "ExceptionTypeClassifier",
    "CancellationToken",
    "CancelledError",
    # Model
    "JobState",
    "JobRecord",
    "ErrorInfo",
    "JobFilter",
    "RetentionPolicy",
    "SizeClass",
    "derive_idempotency_key",
    # Storage
    "JobStore",
    "IdempotencyIndex",
    "InMemoryJobStore",
    "JobNotifier",
    "InMemoryNotifier",
    "open_store",
    "open_notifier",
    # Config
    "Settings",
    "CoordinatorConfig",
    "SweeperConfig",
    "RetentionConfig",
    "StoreConfig",
    "SubmissionConfig",
    "LoggingConfig",
    "TelemetryConfig",
    "get_settings",
    "configure",
    "reset_settings",
    "load_env",
    # Observability
    "StructuredLogger",
    "get_logger",
    "configure_logging",
    "JobMetrics",
    "DurationTracker",
    "MetricRegistry",
    # Time and retries
    "Clock",
    "SystemClock",
    "ManualClock",
    "BackoffPolicy",
    # Errors
    "ErrorCode",
    "ErrorContext",
    "JobRuntimeError",
    "SubmissionError",
    "InvalidSubmissionError",
    "JobLookupError",
    "JobNotFoundError",
    "JobGoneError",
    "JobNotCompletedError",
    "StateError",
    "IllegalTransitionError",
    "InvalidProgressError",
    "CoordinationError",
    "ConflictError",
    "LeaseLostError",
    "JobAlreadyExistsError",
    "StoreError",
    "StoreUnavailableError",
    "ConfigError",
    "InvalidConfigError",
    "ExecutionError",
    "TransientJobError",
    "PermanentJobError",
    "is_retryable",
]
