"""
Job store implementations.

This module provides the JobStore and IdempotencyIndex interfaces and the
in-memory implementation of both. The store is the only shared mutable
resource in the engine; ``compare_and_swap`` is its sole mutation primitive
for existing records.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Callable

from ..errors import ConflictError, ErrorContext, JobAlreadyExistsError, JobNotFoundError
from .types import JobFilter, JobRecord, JobState

Mutator = Callable[[JobRecord], JobRecord]
JobFactory = Callable[[], JobRecord]


class JobStore(ABC):
    """Abstract interface for job persistence.

    Implementations must be safe for concurrent access.
    """

    @abstractmethod
    async def create(self, job: JobRecord) -> JobRecord:
        """Create a new job record.

        Raises:
            JobAlreadyExistsError: If job_id already exists
        """
        ...

    @abstractmethod
    async def get(self, job_id: str) -> JobRecord | None:
        """Get a job by ID."""
        ...

    @abstractmethod
    async def compare_and_swap(
        self,
        job_id: str,
        expected_state: JobState,
        mutator: Mutator,
        *,
        expected_owner: str | None = None,
    ) -> JobRecord:
        """Atomically replace a job if its stored state is ``expected_state``.

        ``mutator`` receives the stored record and returns the replacement.
        When ``expected_owner`` is given the stored owner token must match too.
        The store increments ``version`` on the written record.

        Raises:
            JobNotFoundError: If the job doesn't exist
            ConflictError: If the stored state or owner differs
        """
        ...

    @abstractmethod
    async def list_pending(
        self,
        limit: int,
        *,
        now: float,
        types: set[str] | None = None,
    ) -> list[JobRecord]:
        """QUEUED jobs visible at ``now``, oldest submission first."""
        ...

    @abstractmethod
    async def delete(self, job_id: str, *, tombstone: bool = True) -> bool:
        """Delete a job by ID. Returns True if deleted.

        With ``tombstone`` the id is remembered so lookups can tell an
        expired job from one that never existed.
        """
        ...

    @abstractmethod
    async def list(self, filter: JobFilter | None = None) -> list[JobRecord]:
        """List jobs matching the filter."""
        ...

    @abstractmethod
    async def count(self, filter: JobFilter | None = None) -> int:
        """Count jobs matching the filter."""
        ...

    @abstractmethod
    async def list_expired(self, now: float, limit: int) -> list[JobRecord]:
        """Terminal jobs whose ``expires_at`` is at or before ``now``."""
        ...

    @abstractmethod
    async def list_expired_leases(self, now: float, limit: int) -> list[JobRecord]:
        """RUNNING jobs whose lease ran out."""
        ...

    @abstractmethod
    async def is_tombstoned(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def purge_tombstones(self, older_than: float) -> int:
        """Forget tombstones recorded before ``older_than``. Returns the count."""
        ...

    async def count_queued_before(self, job: JobRecord) -> int:
        """Number of QUEUED jobs submitted before ``job``."""
        return await self.count(JobFilter(state=JobState.QUEUED, submitted_before=job.submitted_at))

    async def close(self) -> None:
        """Release resources held by the store."""
        return None


class IdempotencyIndex(ABC):
    """Maps client idempotency keys to job ids with insert-if-absent semantics."""

    @abstractmethod
    async def reserve_or_get(
        self,
        key: str,
        job_factory: JobFactory,
        *,
        now: float,
    ) -> tuple[JobRecord, bool]:
        """Return the live job for ``key`` or create one atomically.

        Returns:
            Tuple of (job, created). ``created`` is False when the key already
            maps to a job that has not expired.
        """
        ...

    @abstractmethod
    async def lookup(self, key: str) -> str | None:
        """Job id currently mapped to ``key``."""
        ...

    @abstractmethod
    async def release(self, key: str, job_id: str) -> bool:
        """Remove the mapping if it still points at ``job_id``."""
        ...


class InMemoryJobStore(JobStore, IdempotencyIndex):
    """In-memory job store and co-located idempotency index.

    Suitable for testing and single-process deployments.
    Every operation runs under one asyncio.Lock, which makes CAS and
    reserve-or-get atomic with respect to each other.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._idempotency_index: dict[str, str] = {}  # key -> job_id
        self._tombstones: dict[str, float] = {}  # job_id -> deleted_at
        self._lock = asyncio.Lock()

    async def create(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            return self._insert(job)

    def _insert(self, job: JobRecord) -> JobRecord:
        if job.job_id in self._jobs or job.job_id in self._tombstones:
            raise JobAlreadyExistsError(
                f"Job {job.job_id} already exists",
                context=ErrorContext(job_id=job.job_id, job_type=job.type),
            )
        job = job.replace(version=1)
        self._jobs[job.job_id] = job
        return job

    async def get(self, job_id: str) -> JobRecord | None:
        async with self._lock:
            return self._jobs.get(job_id)

    async def compare_and_swap(
        self,
        job_id: str,
        expected_state: JobState,
        mutator: Mutator,
        *,
        expected_owner: str | None = None,
    ) -> JobRecord:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id=job_id)
            if current.state != expected_state:
                raise ConflictError(
                    job_id=job_id,
                    expected_state=expected_state.value,
                    actual_state=current.state.value,
                )
            if expected_owner is not None and current.owner_token != expected_owner:
                raise ConflictError(f"Job {job_id} is owned by another worker", job_id=job_id)

            updated = mutator(current)
            if updated.job_id != job_id:
                raise ValueError("mutator must not change job_id")
            updated = updated.replace(version=current.version + 1)
            self._jobs[job_id] = updated
            return updated

    async def list_pending(
        self,
        limit: int,
        *,
        now: float,
        types: set[str] | None = None,
    ) -> list[JobRecord]:
        async with self._lock:
            pending = [
                j for j in self._jobs.values()
                if j.state == JobState.QUEUED
                and j.visible_at <= now
                and (types is None or j.type in types)
            ]
        pending.sort(key=lambda j: (j.submitted_at, j.job_id))
        return pending[:limit]

    async def delete(self, job_id: str, *, tombstone: bool = True) -> bool:
        async with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            if tombstone:
                self._tombstones[job_id] = job.expires_at or job.updated_at
            return True

    async def list(self, filter: JobFilter | None = None) -> list[JobRecord]:
        async with self._lock:
            jobs = list(self._jobs.values())

        if filter:
            jobs = [j for j in jobs if filter.matches(j)]

            # Sort
            reverse = filter.order_desc
            key = lambda j: getattr(j, filter.order_by, j.submitted_at)
            jobs.sort(key=key, reverse=reverse)

            # Paginate
            jobs = jobs[filter.offset:filter.offset + filter.limit]

        return jobs

    async def count(self, filter: JobFilter | None = None) -> int:
        async with self._lock:
            if filter:
                return sum(1 for j in self._jobs.values() if filter.matches(j))
            return len(self._jobs)

    async def list_expired(self, now: float, limit: int) -> list[JobRecord]:
        async with self._lock:
            expired = [j for j in self._jobs.values() if j.is_expired(now)]
        expired.sort(key=lambda j: j.expires_at or 0.0)
        return expired[:limit]

    async def list_expired_leases(self, now: float, limit: int) -> list[JobRecord]:
        async with self._lock:
            stale = [j for j in self._jobs.values() if j.lease_expired(now)]
        stale.sort(key=lambda j: j.lease_expires_at or 0.0)
        return stale[:limit]

    async def is_tombstoned(self, job_id: str) -> bool:
        async with self._lock:
            return job_id in self._tombstones

    async def purge_tombstones(self, older_than: float) -> int:
        async with self._lock:
            stale = [jid for jid, at in self._tombstones.items() if at < older_than]
            for jid in stale:
                del self._tombstones[jid]
            return len(stale)

    # IdempotencyIndex

    async def reserve_or_get(
        self,
        key: str,
        job_factory: JobFactory,
        *,
        now: float,
    ) -> tuple[JobRecord, bool]:
        async with self._lock:
            job_id = self._idempotency_index.get(key)
            if job_id:
                existing = self._jobs.get(job_id)
                if existing is not None and not existing.is_expired(now):
                    return existing, False

            job = job_factory()
            if job.idempotency_key != key:
                job = job.replace(idempotency_key=key)
            # Insert the record first: if it fails, the key is left untouched.
            job = self._insert(job)
            self._idempotency_index[key] = job.job_id
            return job, True

    async def lookup(self, key: str) -> str | None:
        async with self._lock:
            return self._idempotency_index.get(key)

    async def release(self, key: str, job_id: str) -> bool:
        async with self._lock:
            if self._idempotency_index.get(key) != job_id:
                return False
            del self._idempotency_index[key]
            return True


__all__ = [
    "JobStore",
    "IdempotencyIndex",
    "InMemoryJobStore",
    "Mutator",
    "JobFactory",
]
