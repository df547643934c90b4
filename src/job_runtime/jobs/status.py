"""
Status and result queries.

Read-only projections of job records into the polling contract. Each state
exposes its own field set; lease internals (owner token, heartbeat, lease
expiry) never leave this module.

    view = await status.get_status(job_id)
    view.to_payload()
    # {"jobId": "job_...", "type": "report", "state": "running",
    #  "progress": 40, "startedAt": 1718000000.0, ...}
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..clock import Clock, SystemClock
from ..errors import ErrorContext, JobGoneError, JobNotCompletedError, JobNotFoundError
from ..logging import get_logger, timed, warn_if_slow
from ..telemetry import DurationTracker
from .store import JobStore
from .types import JobFilter, JobRecord, JobState

logger = get_logger("job_runtime.status")


class _ContractModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_payload(self) -> dict[str, Any]:
        """camelCase dict without null fields."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ErrorInfoView(_ContractModel):
    kind: str
    message: str
    retryable: bool


class JobStatusView(_ContractModel):
    """Public status of one job."""

    job_id: str
    state: JobState
    type: str | None = None
    gone: bool | None = None

    # queued
    submitted_at: float | None = None
    queue_position: int | None = None

    # running
    progress: int | None = None
    started_at: float | None = None
    estimated_completion_at: float | None = None

    # terminal
    terminal_at: float | None = None
    output_ref: str | None = None
    error_info: ErrorInfoView | None = None
    retry_count: int | None = None
    max_retries: int | None = None
    cancelled_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class StatusQueryService:
    """Projects stored jobs into status views."""

    def __init__(
        self,
        store: JobStore,
        *,
        clock: Clock | None = None,
        durations: DurationTracker | None = None,
        output_ref_template: str = "/jobs/{job_id}/result",
        slow_operation_ms: float | None = 200.0,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.durations = durations or DurationTracker()
        self.output_ref_template = output_ref_template
        self.slow_operation_ms = slow_operation_ms

    async def get_status(self, job_id: str) -> JobStatusView:
        """
        Current status of a job.

        Raises:
            JobNotFoundError: If the id never existed
        """
        with timed() as timer:
            job = await self._load(job_id)
            view = await self.project(job) if job is not None else _gone(job_id)
        warn_if_slow(logger, "get_status", timer.elapsed_ms, self.slow_operation_ms, job_id=job_id)
        return view

    async def get_result(self, job_id: str) -> Any:
        """
        Output of a completed job.

        Raises:
            JobNotFoundError: If the id never existed
            JobGoneError: If the job expired
            JobNotCompletedError: If the job has not completed successfully
        """
        with timed() as timer:
            job = await self._load(job_id)
        warn_if_slow(logger, "get_result", timer.elapsed_ms, self.slow_operation_ms, job_id=job_id)
        if job is None:
            raise JobGoneError(job_id=job_id)
        if job.state != JobState.COMPLETED:
            raise JobNotCompletedError(
                f"Job {job_id} has no result (state: {job.state.value})",
                context=ErrorContext(job_id=job_id, job_type=job.type),
            )
        return job.output

    async def list_jobs(self, filter: JobFilter | None = None) -> list[JobStatusView]:
        now = self.clock.now()
        jobs = await self.store.list(filter or JobFilter())
        return [
            _gone(job.job_id) if job.is_expired(now) else await self.project(job)
            for job in jobs
        ]

    async def _load(self, job_id: str) -> JobRecord | None:
        """Stored record, None for an expired job, or JobNotFoundError."""
        job = await self.store.get(job_id)
        if job is None:
            if await self.store.is_tombstoned(job_id):
                return None
            raise JobNotFoundError(job_id=job_id)
        if job.is_expired(self.clock.now()):
            # Past retention but not swept yet
            return None
        return job

    async def project(self, job: JobRecord) -> JobStatusView:
        base: dict[str, Any] = {"job_id": job.job_id, "type": job.type, "state": job.state}

        if job.state == JobState.QUEUED:
            return JobStatusView(
                **base,
                submitted_at=job.submitted_at,
                queue_position=await self.store.count_queued_before(job),
            )

        if job.state == JobState.RUNNING:
            return JobStatusView(
                **base,
                progress=job.progress,
                started_at=job.started_at,
                estimated_completion_at=self.durations.estimate_completion(job.type, job.started_at),
            )

        if job.state == JobState.COMPLETED:
            return JobStatusView(
                **base,
                started_at=job.started_at,
                terminal_at=job.terminal_at,
                output_ref=self.output_ref_template.format(job_id=job.job_id),
            )

        if job.state == JobState.FAILED:
            error = job.error
            return JobStatusView(
                **base,
                terminal_at=job.terminal_at,
                error_info=ErrorInfoView(**error.to_dict()) if error else None,
                retry_count=job.retry_count,
                max_retries=job.max_retries,
            )

        if job.state == JobState.CANCELLED:
            return JobStatusView(
                **base,
                terminal_at=job.terminal_at,
                cancelled_by=job.cancelled_by,
            )

        return _gone(job.job_id)


def _gone(job_id: str) -> JobStatusView:
    return JobStatusView(job_id=job_id, state=JobState.EXPIRED, gone=True)


__all__ = ["JobStatusView", "ErrorInfoView", "StatusQueryService"]
