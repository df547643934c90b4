"""
Job service facade.

The entry point callers use for the asynchronous request/acknowledge/poll
pattern: ``submit`` returns at once with a job id, and ``get_status`` /
``get_result`` are polled until the job is terminal. Nothing here waits on
job execution.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from ..clock import Clock, SystemClock
from ..config import CoordinatorConfig, Settings, SubmissionConfig
from ..errors import (
    ConflictError,
    ErrorContext,
    IllegalTransitionError,
    InvalidSubmissionError,
    JobGoneError,
    JobNotFoundError,
)
from ..logging import current_context, generate_trace_id, get_logger, timed, warn_if_slow
from ..telemetry import DurationTracker, JobMetrics
from . import state_machine as sm
from .coordinator import ExecutionCoordinator
from .idempotency import IdempotencyGuard
from .notifier import InMemoryNotifier, JobNotifier
from .retention import RetentionPolicy, payload_size
from .status import JobStatusView, StatusQueryService
from .store import IdempotencyIndex, JobStore
from .types import JobFilter, JobState, encode_payload

logger = get_logger("job_runtime.service")

_CANCEL_ATTEMPTS = 3


class SubmitRequest(BaseModel):
    """Validated submission. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    type: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.:/-]*$")
    input: Any = None
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)
    max_retries: int | None = Field(default=None, ge=0)
    correlation_id: str | None = Field(default=None, min_length=1, max_length=255)

    @field_validator("input")
    @classmethod
    def _serializable(cls, value: Any) -> Any:
        try:
            json.dumps(encode_payload(value))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"input must be JSON-serializable or bytes: {exc}") from exc
        return value


class SubmitResult(BaseModel):
    """Acknowledgement returned by ``submit``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str
    state: JobState
    submitted_at: float
    created: bool = True

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def _validation_details(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(p) for p in err["loc"]], "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]


class JobService:
    """
    Submit, cancel and query jobs.

    Example:
        ```python
        store = InMemoryJobStore()
        service = JobService(store)

        ack = await service.submit("echo", {"text": "hi"}, idempotency_key="k1")
        view = await service.get_status(ack.job_id)
        ```
    """

    def __init__(
        self,
        store: JobStore,
        *,
        index: IdempotencyIndex | None = None,
        settings: Settings | None = None,
        retention: RetentionPolicy | None = None,
        notifier: JobNotifier | None = None,
        clock: Clock | None = None,
        metrics: JobMetrics | None = None,
        durations: DurationTracker | None = None,
        coordinator: ExecutionCoordinator | None = None,
    ) -> None:
        settings = settings or Settings()
        self.store = store
        self.submission: SubmissionConfig = settings.submission
        self.limits: CoordinatorConfig = settings.coordinator
        self.retention = retention or settings.retention.policy()
        self.notifier = notifier or InMemoryNotifier()
        self.clock = clock or SystemClock()
        self.metrics = metrics or JobMetrics()
        self.coordinator = coordinator

        if index is None and isinstance(store, IdempotencyIndex):
            index = store
        self.guard = IdempotencyGuard(index, self.metrics) if index is not None else None

        self.status = StatusQueryService(
            store,
            clock=self.clock,
            durations=durations or (coordinator.durations if coordinator else DurationTracker()),
            slow_operation_ms=self.submission.slow_operation_ms,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        type: str,
        input: Any = None,
        *,
        idempotency_key: str | None = None,
        max_retries: int | None = None,
        correlation_id: str | None = None,
    ) -> SubmitResult:
        """
        Create a job in ``queued`` or return the live job for ``idempotency_key``.

        Raises:
            InvalidSubmissionError: If the request fails validation
        """
        request = self._validate(
            type=type,
            input=input,
            idempotency_key=idempotency_key,
            max_retries=max_retries,
            correlation_id=correlation_id,
        )
        if request.idempotency_key and self.guard is None:
            raise InvalidSubmissionError(
                "idempotency keys are not supported by this store",
                errors=[{"loc": ["idempotency_key"], "msg": "store has no idempotency index"}],
            )
        ctx = current_context()
        correlation = request.correlation_id or ctx.correlation_id or ctx.trace_id or generate_trace_id()
        retries = self.limits.default_max_retries if request.max_retries is None else request.max_retries

        with timed() as timer:
            now = self.clock.now()

            def factory():
                return sm.new_job(
                    request.type,
                    request.input,
                    now=now,
                    max_retries=retries,
                    idempotency_key=request.idempotency_key,
                    correlation_id=correlation,
                )

            if request.idempotency_key:
                job, created = await self.guard.reserve(request.idempotency_key, factory, now=now)
            else:
                job, created = await self.store.create(factory()), True

        with logger.job_context(job_id=job.job_id, job_type=job.type, correlation_id=job.correlation_id):
            if created:
                self.metrics.record("submitted", job.type)
                logger.info("Job submitted", idempotency_key=job.idempotency_key, max_retries=job.max_retries)
                await self.notifier.notify(job.type)
            warn_if_slow(logger, "submit", timer.elapsed_ms, self.submission.slow_operation_ms)

        return SubmitResult(
            job_id=job.job_id,
            state=job.state,
            submitted_at=job.submitted_at,
            created=created,
        )

    def _validate(self, **fields: Any) -> SubmitRequest:
        try:
            request = SubmitRequest(**fields)
        except ValidationError as exc:
            details = _validation_details(exc)
            raise InvalidSubmissionError(
                f"Invalid job submission: {details[0]['msg'] if details else exc}",
                errors=details,
                cause=exc,
            ) from exc

        problems: list[dict[str, Any]] = []
        if len(request.type) > self.submission.max_type_length:
            problems.append({
                "loc": ["type"],
                "msg": f"at most {self.submission.max_type_length} characters",
            })
        if request.max_retries is not None and request.max_retries > self.limits.max_retries_limit:
            problems.append({
                "loc": ["max_retries"],
                "msg": f"must be <= {self.limits.max_retries_limit}",
            })
        size = payload_size(request.input)
        if size > self.submission.max_input_bytes:
            problems.append({
                "loc": ["input"],
                "msg": f"{size} bytes exceeds the {self.submission.max_input_bytes} byte limit",
            })
        if problems:
            raise InvalidSubmissionError(
                f"Invalid job submission: {problems[0]['loc'][0]} {problems[0]['msg']}",
                errors=problems,
            )
        return request

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str, cancelled_by: str = "client") -> JobStatusView:
        """
        Cancel a queued or running job.

        Cancelling an already cancelled job returns its status unchanged.

        Raises:
            JobNotFoundError: If the id never existed
            JobGoneError: If the job expired
            IllegalTransitionError: If the job already completed or failed
        """
        for _ in range(_CANCEL_ATTEMPTS):
            job = await self.store.get(job_id)
            if job is None:
                if await self.store.is_tombstoned(job_id):
                    raise JobGoneError(job_id=job_id)
                raise JobNotFoundError(job_id=job_id)
            if job.is_expired(self.clock.now()):
                raise JobGoneError(job_id=job_id)
            if job.state == JobState.CANCELLED:
                return await self.status.project(job)
            if job.state.is_terminal:
                raise IllegalTransitionError(
                    from_state=job.state.value,
                    to_state=JobState.CANCELLED.value,
                    context=ErrorContext(job_id=job_id, job_type=job.type, operation="cancel"),
                )

            now = self.clock.now()
            try:
                updated = await self.store.compare_and_swap(
                    job_id,
                    job.state,
                    lambda cur: sm.cancel(cur, now=now, retention=self.retention, cancelled_by=cancelled_by),
                )
            except ConflictError:
                # queued -> running (or a retry requeue) raced us; re-read.
                continue

            self.metrics.record("cancelled", updated.type)
            with logger.job_context(job_id=job_id, job_type=updated.type, correlation_id=updated.correlation_id):
                logger.log_transition(job_id, job.state.value, "cancelled", cancelled_by=cancelled_by)
            if self.coordinator is not None:
                self.coordinator.signal_cancelled(job_id, reason=f"cancelled by {cancelled_by}")
            return await self.status.project(updated)

        raise ConflictError(
            f"Job {job_id} kept changing state during cancellation",
            job_id=job_id,
            context=ErrorContext(job_id=job_id, operation="cancel"),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, job_id: str) -> JobStatusView:
        return await self.status.get_status(job_id)

    async def get_result(self, job_id: str) -> Any:
        return await self.status.get_result(job_id)

    async def list_jobs(self, filter: JobFilter | None = None) -> list[JobStatusView]:
        return await self.status.list_jobs(filter)


__all__ = ["JobService", "SubmitRequest", "SubmitResult"]
