"""
Execution coordinator.

Claims queued jobs, runs their work units and records the outcome. Any
number of coordinators (asyncio tasks in one process, or processes sharing a
durable store) may run side by side; there is no global lock. Every state
change goes through ``JobStore.compare_and_swap`` so exactly one coordinator
wins each claim and a worker that lost its job can never overwrite it.

Lifecycle of one attempt:

    claim (queued -> running, owner token + lease)
      -> work unit runs; a heartbeat task extends the lease
      -> success:  running -> completed
      -> failure:  running -> queued (retry with backoff) or failed
      -> lease lost / cancelled: result discarded

Crashed workers are detected by their lapsed lease and reclaimed here,
either directly or through ``reclaim_channel`` fed by the sweeper.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..cancellation import CancellationToken, CancelledError
from ..clock import Clock, SystemClock
from ..concurrency import call_maybe_async
from ..config import CoordinatorConfig
from ..errors import (
    ConflictError,
    IllegalTransitionError,
    JobNotFoundError,
    LeaseLostError,
    StoreError,
    TransientJobError,
)
from ..logging import generate_worker_id, get_logger
from ..resilience import BackoffPolicy
from ..telemetry import DurationTracker, JobMetrics
from . import state_machine as sm
from .notifier import InMemoryNotifier, JobNotifier
from .retention import RetentionPolicy
from .store import JobStore
from .types import ErrorInfo, JobRecord, JobState
from .work import Registration, WorkContext, WorkRegistry, is_infrastructure_error

logger = get_logger("job_runtime.coordinator")

# Errors meaning "this job is no longer ours to write".
_LOST = (ConflictError, LeaseLostError, JobNotFoundError)


@dataclass
class _Attempt:
    """In-flight execution owned by this coordinator."""

    job: JobRecord
    owner_token: str
    token: CancellationToken = field(default_factory=CancellationToken)
    lost: bool = False
    lost_reason: str | None = None


class ExecutionCoordinator:
    """
    Runs registered work units for claimed jobs.

    Example:
        ```python
        coordinator = ExecutionCoordinator(store, registry, config=CoordinatorConfig(workers=2))
        await coordinator.start()
        ...
        await coordinator.stop()
        ```
    """

    def __init__(
        self,
        store: JobStore,
        registry: WorkRegistry,
        *,
        config: CoordinatorConfig | None = None,
        retention: RetentionPolicy | None = None,
        notifier: JobNotifier | None = None,
        clock: Clock | None = None,
        metrics: JobMetrics | None = None,
        durations: DurationTracker | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.config = config or CoordinatorConfig()
        self.retention = retention or RetentionPolicy()
        self.notifier = notifier or InMemoryNotifier()
        self.clock = clock or SystemClock()
        self.metrics = metrics or JobMetrics()
        self.durations = durations or DurationTracker(self.metrics.registry.config.duration_window)
        self.worker_id = worker_id or generate_worker_id("coord")
        self.backoff: BackoffPolicy = self.config.backoff_policy()

        # Stale job ids pushed by the sweeper
        self.reclaim_channel: asyncio.Queue[str] = asyncio.Queue()

        self._active: dict[str, _Attempt] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def active_jobs(self) -> list[str]:
        return list(self._active)

    async def start(self) -> None:
        """Start ``config.workers`` worker tasks."""
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"{self.worker_id}-{i}")
            for i in range(self.config.workers)
        ]
        logger.info("Coordinator started", worker_id=self.worker_id, workers=self.config.workers)

    async def stop(self, grace_period: float | None = None) -> None:
        """Stop the workers.

        Idle workers exit at once. Busy workers finish their current job
        unless ``grace_period`` elapses first, in which case they are
        cancelled and their jobs are recovered later through lease expiry.
        """
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=grace_period)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Coordinator stopped", worker_id=self.worker_id, abandoned=len(pending))

    async def __aenter__(self) -> ExecutionCoordinator:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def _worker(self, index: int) -> None:
        with logger.job_context(worker_id=f"{self.worker_id}-{index}"):
            while not self._stopping.is_set():
                try:
                    await self.process_reclaims()
                    executed = await self.run_once()
                except StoreError as exc:
                    self.metrics.record("store_errors")
                    logger.log_error(exc, "Store error in coordinator loop; backing off")
                    await self._idle(self.config.store_error_backoff)
                    continue
                except Exception:
                    logger.exception("Unexpected error in coordinator loop")
                    await self._idle(self.config.store_error_backoff)
                    continue
                if not executed:
                    await self._idle(self.config.poll_interval)

    async def _idle(self, timeout: float) -> None:
        """Wait for a notification, the timeout, or shutdown."""
        wakeup = asyncio.ensure_future(self.notifier.wait(timeout))
        stopping = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({wakeup, stopping}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (wakeup, stopping):
                if not fut.done():
                    fut.cancel()
            await asyncio.gather(wakeup, stopping, return_exceptions=True)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def _new_owner_token(self) -> str:
        return f"{self.worker_id}:{uuid.uuid4().hex[:12]}"

    async def claim_next(self) -> JobRecord | None:
        """Claim the oldest visible job of a registered type.

        Losing a claim race is normal; the loser moves on to the next
        candidate.
        """
        types = self.registry.types
        if not types:
            return None
        now = self.clock.now()
        candidates = await self.store.list_pending(
            self.config.claim_batch_size, now=now, types=types
        )
        for candidate in candidates:
            owner_token = self._new_owner_token()
            try:
                claimed = await self.store.compare_and_swap(
                    candidate.job_id,
                    JobState.QUEUED,
                    lambda cur: sm.claim(
                        cur, owner_token, now=now, lease_timeout=self.config.lease_timeout
                    ),
                )
            except (ConflictError, JobNotFoundError, IllegalTransitionError):
                self.metrics.record("claim_conflicts", candidate.type)
                logger.debug("Lost claim race", job_id=candidate.job_id)
                continue
            self.metrics.record("claimed", claimed.type)
            logger.log_transition(
                claimed.job_id, "queued", "running",
                job_type=claimed.type, attempt=claimed.attempt,
            )
            return claimed
        return None

    async def run_once(self) -> bool:
        """Claim and execute at most one job. Returns True if a job ran."""
        job = await self.claim_next()
        if job is None:
            return False
        await self.execute(job)
        return True

    async def run_until_idle(self, max_jobs: int | None = None) -> int:
        """Execute claimable jobs until none is left. Returns the count."""
        executed = 0
        while max_jobs is None or executed < max_jobs:
            await self.process_reclaims()
            if not await self.run_once():
                break
            executed += 1
        return executed

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, job: JobRecord) -> JobRecord | None:
        """Run the work unit of a job this coordinator has claimed.

        Returns the record as stored after the attempt, or None when the
        outcome was discarded.
        """
        if job.owner_token is None or job.state != JobState.RUNNING:
            raise IllegalTransitionError(f"Job {job.job_id} is not claimed by a worker")

        attempt = _Attempt(job=job, owner_token=job.owner_token)
        self._active[job.job_id] = attempt
        self.metrics.running.inc()
        try:
            with logger.job_context(
                job_id=job.job_id,
                job_type=job.type,
                correlation_id=job.correlation_id,
                attempt=job.attempt,
            ):
                return await self._execute(attempt)
        finally:
            self._active.pop(job.job_id, None)
            self.metrics.running.dec()

    async def _execute(self, attempt: _Attempt) -> JobRecord | None:
        job = attempt.job
        registration = self.registry.get(job.type)
        if registration is None:
            error = ErrorInfo(
                kind="no_work_unit",
                message=f"No work unit registered for job type {job.type!r}",
                retryable=False,
            )
            return await self._record_failure(attempt, error)

        ctx = WorkContext(
            job_id=job.job_id,
            job_type=job.type,
            attempt=job.attempt,
            cancellation_token=attempt.token,
            correlation_id=job.correlation_id,
            _reporter=lambda pct: self._report_progress(attempt, pct),
        )

        heartbeat_task = asyncio.create_task(self._heartbeat_loop(attempt))
        started = time.perf_counter()
        output: Any = None
        cancelled: CancelledError | None = None
        failure: Exception | None = None
        try:
            output = await self._invoke(registration, ctx, job)
        except CancelledError as exc:
            cancelled = exc
        except Exception as exc:
            failure = exc
        finally:
            heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task
        self.metrics.observe_duration(job.type, (time.perf_counter() - started) * 1000)

        if cancelled is not None:
            return await self._acknowledge_cancel(attempt, cancelled)
        if attempt.lost:
            return await self._discard(attempt, attempt.lost_reason or "lease lost")
        if failure is not None and is_infrastructure_error(failure):
            return await self._abandon(attempt, failure)
        if failure is not None:
            error = registration.classifier.classify(failure)
            logger.log_error(failure, f"Work unit failed: {error.message}", level=logging.WARNING, kind=error.kind)
            return await self._record_failure(attempt, error)
        return await self._record_success(attempt, output)

    async def _invoke(self, registration: Registration, ctx: WorkContext, job: JobRecord) -> Any:
        timeout = registration.execution_timeout or self.config.execution_timeout
        if timeout is None:
            return await call_maybe_async(registration.unit, ctx, job.input)
        try:
            return await asyncio.wait_for(call_maybe_async(registration.unit, ctx, job.input), timeout)
        except asyncio.TimeoutError as exc:
            attempt = self._active.get(job.job_id)
            if attempt is not None:
                attempt.token.cancel("execution timeout")
            raise TransientJobError(
                f"Execution exceeded {timeout:g}s", kind="timeout", cause=exc
            ) from exc

    # ------------------------------------------------------------------
    # Heartbeats and progress
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self, attempt: _Attempt) -> None:
        while not attempt.lost:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                await self._heartbeat(attempt)
            except StoreError as exc:
                # The lease may lapse if this keeps failing; reclaim handles that.
                self.metrics.record("store_errors", attempt.job.type)
                logger.log_error(exc, "Heartbeat failed", level=logging.WARNING)

    async def _report_progress(self, attempt: _Attempt, percent: int) -> None:
        try:
            await self._heartbeat(attempt, progress=percent)
        except StoreError as exc:
            # Dropped; the next report or heartbeat carries progress again.
            self.metrics.record("store_errors", attempt.job.type)
            logger.log_error(exc, "Progress report failed", level=logging.WARNING, progress=percent)

    async def _heartbeat(self, attempt: _Attempt, progress: int | None = None) -> None:
        if attempt.lost:
            return
        now = self.clock.now()
        try:
            attempt.job = await self.store.compare_and_swap(
                attempt.job.job_id,
                JobState.RUNNING,
                lambda cur: sm.heartbeat(
                    cur,
                    attempt.owner_token,
                    now=now,
                    lease_timeout=self.config.lease_timeout,
                    progress=progress,
                ),
                expected_owner=attempt.owner_token,
            )
        except _LOST:
            await self._mark_lost(attempt)

    async def _mark_lost(self, attempt: _Attempt) -> None:
        current = await self.store.get(attempt.job.job_id)
        if current is not None and current.state == JobState.CANCELLED:
            reason = f"cancelled by {current.cancelled_by or 'client'}"
        else:
            reason = "lease lost"
        attempt.lost = True
        attempt.lost_reason = reason
        attempt.token.cancel(reason)
        logger.warning("Job no longer owned by this worker", reason=reason)

    def signal_cancelled(self, job_id: str, reason: str = "cancelled") -> bool:
        """Trip the token of a local attempt after an external cancel.

        The heartbeat would notice on its next beat; this only shortens the
        delay when the canceller shares the process.
        """
        attempt = self._active.get(job_id)
        if attempt is None:
            return False
        attempt.lost = True
        attempt.lost_reason = reason
        attempt.token.cancel(reason)
        return True

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _record_success(self, attempt: _Attempt, output: Any) -> JobRecord | None:
        now = self.clock.now()
        try:
            updated = await self.store.compare_and_swap(
                attempt.job.job_id,
                JobState.RUNNING,
                lambda cur: sm.complete(
                    cur, attempt.owner_token, output, now=now, retention=self.retention
                ),
                expected_owner=attempt.owner_token,
            )
        except _LOST:
            return await self._discard(attempt, "job changed before completion was recorded")

        if updated.started_at is not None:
            self.durations.record(updated.type, now - updated.started_at)
        self.metrics.record("completed", updated.type)
        logger.log_transition(updated.job_id, "running", "completed", expires_at=updated.expires_at)
        return updated

    async def _record_failure(self, attempt: _Attempt, error: ErrorInfo) -> JobRecord | None:
        now = self.clock.now()
        try:
            updated = await self.store.compare_and_swap(
                attempt.job.job_id,
                JobState.RUNNING,
                lambda cur: sm.fail(
                    cur,
                    attempt.owner_token,
                    error,
                    now=now,
                    retention=self.retention,
                    backoff=self.backoff,
                ),
                expected_owner=attempt.owner_token,
            )
        except _LOST:
            return await self._discard(attempt, "job changed before failure was recorded")

        if updated.state == JobState.QUEUED:
            self.metrics.record("retried", updated.type)
            logger.info(
                "Retry scheduled",
                kind=error.kind,
                retry_count=updated.retry_count,
                max_retries=updated.max_retries,
                visible_at=updated.visible_at,
            )
        else:
            self.metrics.record("failed", updated.type)
            logger.log_transition(
                updated.job_id, "running", "failed",
                kind=updated.error.kind if updated.error else error.kind,
                retry_count=updated.retry_count,
            )
        return updated

    async def _acknowledge_cancel(self, attempt: _Attempt, exc: CancelledError) -> JobRecord | None:
        if attempt.lost:
            return await self._discard(attempt, attempt.lost_reason or exc.reason or "cancelled")
        # The unit raised CancelledError on its own; treat it as cancellation by the worker.
        now = self.clock.now()
        try:
            updated = await self.store.compare_and_swap(
                attempt.job.job_id,
                JobState.RUNNING,
                lambda cur: sm.cancel(
                    cur, now=now, retention=self.retention, cancelled_by=f"worker:{self.worker_id}"
                ),
                expected_owner=attempt.owner_token,
            )
        except _LOST:
            return await self._discard(attempt, "job changed before cancellation was recorded")
        self.metrics.record("cancelled", updated.type)
        logger.log_transition(updated.job_id, "running", "cancelled", cancelled_by=updated.cancelled_by)
        return updated

    async def _abandon(self, attempt: _Attempt, exc: Exception) -> None:
        """Leave the job running without an owner heartbeat.

        A store failure is not the job's fault, so nothing is written to
        ``error``; the lapsed lease hands the job back through reclaim.
        """
        self.metrics.record("store_errors", attempt.job.type)
        self.metrics.record("discarded", attempt.job.type)
        logger.log_error(
            exc,
            "Store failed during execution; attempt left for lease reclaim",
            level=logging.WARNING,
            lease_expires_at=attempt.job.lease_expires_at,
        )
        return None

    async def _discard(self, attempt: _Attempt, reason: str) -> None:
        current = await self.store.get(attempt.job.job_id)
        self.metrics.record("discarded", attempt.job.type)
        logger.warning(
            "Attempt outcome discarded",
            reason=reason,
            current_state=current.state.value if current else None,
        )
        return None

    # ------------------------------------------------------------------
    # Lease reclaim
    # ------------------------------------------------------------------

    async def reclaim(self, job_id: str) -> JobRecord | None:
        """Recover one RUNNING job whose lease expired.

        Returns the updated record, or None if the job no longer needs it.
        """
        if job_id in self._active:
            # Our own attempt; its heartbeat is late, not dead.
            return None
        job = await self.store.get(job_id)
        now = self.clock.now()
        if job is None or not job.lease_expired(now):
            return None
        try:
            updated = await self.store.compare_and_swap(
                job_id,
                JobState.RUNNING,
                lambda cur: sm.reclaim(cur, now=now, retention=self.retention, backoff=self.backoff),
                expected_owner=job.owner_token,
            )
        except (*_LOST, IllegalTransitionError):
            return None

        self.metrics.record("reclaimed", updated.type)
        with logger.job_context(job_id=job_id, job_type=updated.type, correlation_id=updated.correlation_id):
            logger.warning(
                "Reclaimed job with expired lease",
                previous_owner=job.owner_token,
                new_state=updated.state.value,
                retry_count=updated.retry_count,
            )
        if updated.state == JobState.QUEUED:
            await self.notifier.notify(updated.type)
        else:
            self.metrics.record("failed", updated.type)
        return updated

    async def reclaim_expired_leases(self, limit: int | None = None) -> int:
        """Scan the store for lapsed leases and reclaim them."""
        stale = await self.store.list_expired_leases(
            self.clock.now(), limit or self.config.claim_batch_size
        )
        reclaimed = 0
        for job in stale:
            if await self.reclaim(job.job_id) is not None:
                reclaimed += 1
        return reclaimed

    async def process_reclaims(self) -> int:
        """Drain job ids the sweeper queued on ``reclaim_channel``."""
        reclaimed = 0
        while True:
            try:
                job_id = self.reclaim_channel.get_nowait()
            except asyncio.QueueEmpty:
                return reclaimed
            try:
                if await self.reclaim(job_id) is not None:
                    reclaimed += 1
            finally:
                self.reclaim_channel.task_done()


__all__ = ["ExecutionCoordinator"]
