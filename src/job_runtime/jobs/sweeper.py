"""
Retention sweeper.

Periodic maintenance over the job store:
- deletes terminal jobs whose ``expires_at`` has passed, leaving a tombstone
  and releasing their idempotency key
- hands RUNNING jobs with lapsed leases to the coordinator for reclaim
- forgets tombstones older than ``tombstone_ttl``

Only one sweeper needs to run per store, but running several is safe: a
record deleted twice is a no-op and reclaim goes through CAS.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..clock import Clock, SystemClock
from ..config import SweeperConfig
from ..errors import StoreError
from ..logging import get_logger, timed
from ..telemetry import JobMetrics
from .idempotency import IdempotencyGuard
from .store import IdempotencyIndex, JobStore

if TYPE_CHECKING:
    from .coordinator import ExecutionCoordinator

logger = get_logger("job_runtime.sweeper")


@dataclass
class SweepReport:
    deleted: int = 0
    # Stale leases reclaimed by this sweep
    reclaimed: int = 0
    # Stale leases handed to a running coordinator's reclaim_channel
    routed: int = 0
    purged: int = 0
    duration_ms: float = 0.0

    @property
    def empty(self) -> bool:
        return not (self.deleted or self.reclaimed or self.routed or self.purged)


class RetentionSweeper:
    """Deletes expired jobs and routes stale leases to a coordinator."""

    def __init__(
        self,
        store: JobStore,
        *,
        index: IdempotencyIndex | None = None,
        coordinator: ExecutionCoordinator | None = None,
        config: SweeperConfig | None = None,
        clock: Clock | None = None,
        metrics: JobMetrics | None = None,
    ) -> None:
        self.store = store
        if index is None and isinstance(store, IdempotencyIndex):
            index = store
        self.guard = IdempotencyGuard(index, metrics) if index is not None else None
        self.coordinator = coordinator
        self.config = config or SweeperConfig()
        self.clock = clock or SystemClock()
        self.metrics = metrics or JobMetrics()
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        with timed() as timer:
            now = self.clock.now()
            report.deleted = await self._delete_expired(now)
            await self._route_stale_leases(now, report)
            report.purged = await self.store.purge_tombstones(now - self.config.tombstone_ttl)
        report.duration_ms = timer.elapsed_ms

        if not report.empty:
            logger.info(
                "Sweep finished",
                deleted=report.deleted,
                reclaimed=report.reclaimed,
                routed=report.routed,
                purged=report.purged,
                duration_ms=round(report.duration_ms, 3),
            )
        return report

    async def _delete_expired(self, now: float) -> int:
        deleted = 0
        for job in await self.store.list_expired(now, self.config.batch_size):
            if not await self.store.delete(job.job_id, tombstone=True):
                continue
            if self.guard is not None:
                await self.guard.release(job)
            deleted += 1
            self.metrics.record("swept", job.type)
            logger.debug("Deleted expired job", job_id=job.job_id, state=job.state.value)
        return deleted

    async def _route_stale_leases(self, now: float, report: SweepReport) -> None:
        stale = await self.store.list_expired_leases(now, self.config.batch_size)
        if not stale:
            return
        if self.coordinator is None:
            logger.warning("Stale leases found but no coordinator attached", count=len(stale))
            return
        if self.coordinator.running:
            # Message passing: the coordinator's workers pick these up.
            for job in stale:
                self.coordinator.reclaim_channel.put_nowait(job.job_id)
            await self.coordinator.notifier.notify()
            report.routed = len(stale)
            return
        for job in stale:
            if await self.coordinator.reclaim(job.job_id) is not None:
                report.reclaimed += 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running or not self.config.enabled:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="retention-sweeper")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except StoreError as exc:
                self.metrics.record("store_errors")
                logger.log_error(exc, "Sweep failed; retrying next interval")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.config.interval)


__all__ = ["RetentionSweeper", "SweepReport"]
