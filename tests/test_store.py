"""Tests for InMemoryJobStore and its co-located idempotency index."""

from __future__ import annotations

import asyncio

import pytest

from job_runtime.errors import ConflictError, JobAlreadyExistsError, JobNotFoundError
from job_runtime.jobs import state_machine as sm
from job_runtime.jobs.store import InMemoryJobStore
from job_runtime.jobs.types import JobFilter, JobState

from conftest import START, make_job


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_create_sets_version(self, store):
        job = await store.create(make_job())
        assert job.version == 1
        assert await store.get(job.job_id) == job

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        job = await store.create(make_job())
        with pytest.raises(JobAlreadyExistsError):
            await store.create(job)

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get("job_missing") is None


class TestCompareAndSwap:
    """Test the single mutation primitive."""

    @pytest.mark.asyncio
    async def test_swap_applies_mutator_and_bumps_version(self, store):
        job = await store.create(make_job())
        updated = await store.compare_and_swap(
            job.job_id, JobState.QUEUED,
            lambda cur: sm.claim(cur, "w1", now=START, lease_timeout=30.0),
        )
        assert updated.state == JobState.RUNNING
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_state_mismatch_conflicts(self, store):
        job = await store.create(make_job())
        with pytest.raises(ConflictError) as exc_info:
            await store.compare_and_swap(job.job_id, JobState.RUNNING, lambda cur: cur)
        assert exc_info.value.actual_state == "queued"
        assert (await store.get(job.job_id)).version == 1

    @pytest.mark.asyncio
    async def test_owner_mismatch_conflicts(self, store):
        job = await store.create(make_job())
        await store.compare_and_swap(
            job.job_id, JobState.QUEUED,
            lambda cur: sm.claim(cur, "w1", now=START, lease_timeout=30.0),
        )
        with pytest.raises(ConflictError):
            await store.compare_and_swap(
                job.job_id, JobState.RUNNING, lambda cur: cur, expected_owner="w2"
            )

    @pytest.mark.asyncio
    async def test_missing_job(self, store):
        with pytest.raises(JobNotFoundError):
            await store.compare_and_swap("job_missing", JobState.QUEUED, lambda cur: cur)

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, store):
        job = await store.create(make_job())

        async def attempt(owner: str):
            try:
                return await store.compare_and_swap(
                    job.job_id, JobState.QUEUED,
                    lambda cur: sm.claim(cur, owner, now=START, lease_timeout=30.0),
                )
            except ConflictError:
                return None

        results = await asyncio.gather(*(attempt(f"w{i}") for i in range(10)))
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert (await store.get(job.job_id)).owner_token == winners[0].owner_token


class TestListPending:
    @pytest.mark.asyncio
    async def test_oldest_first(self, store):
        late = await store.create(make_job(now=START + 5))
        early = await store.create(make_job(now=START))
        pending = await store.list_pending(10, now=START + 10)
        assert [j.job_id for j in pending] == [early.job_id, late.job_id]

    @pytest.mark.asyncio
    async def test_respects_visibility_and_types(self, store):
        await store.create(make_job("echo").replace(visible_at=START + 100))
        other = await store.create(make_job("report"))
        assert await store.list_pending(10, now=START, types={"echo"}) == []
        pending = await store.list_pending(10, now=START)
        assert [j.job_id for j in pending] == [other.job_id]

    @pytest.mark.asyncio
    async def test_limit(self, store):
        for i in range(5):
            await store.create(make_job(now=START + i))
        assert len(await store.list_pending(2, now=START + 10)) == 2


class TestDeleteAndTombstones:
    """Test deletion, tombstones and purging."""

    @pytest.mark.asyncio
    async def test_delete_leaves_tombstone(self, store):
        job = await store.create(make_job())
        assert await store.delete(job.job_id)
        assert await store.get(job.job_id) is None
        assert await store.is_tombstoned(job.job_id)

    @pytest.mark.asyncio
    async def test_delete_without_tombstone(self, store):
        job = await store.create(make_job())
        await store.delete(job.job_id, tombstone=False)
        assert not await store.is_tombstoned(job.job_id)

    @pytest.mark.asyncio
    async def test_delete_missing_returns_false(self, store):
        assert not await store.delete("job_missing")

    @pytest.mark.asyncio
    async def test_tombstoned_id_cannot_be_reused(self, store):
        job = await store.create(make_job())
        await store.delete(job.job_id)
        with pytest.raises(JobAlreadyExistsError):
            await store.create(job)

    @pytest.mark.asyncio
    async def test_purge_old_tombstones(self, store):
        job = await store.create(make_job())
        await store.delete(job.job_id)
        assert await store.purge_tombstones(START - 1) == 0
        assert await store.purge_tombstones(START + 1) == 1
        assert not await store.is_tombstoned(job.job_id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_with_filter_and_pagination(self, store):
        for i in range(4):
            await store.create(make_job("echo", now=START + i))
        await store.create(make_job("report"))

        echoes = await store.list(JobFilter(type="echo", limit=2, offset=1))
        assert len(echoes) == 2
        assert all(j.type == "echo" for j in echoes)
        assert echoes[0].submitted_at == START + 1

        newest = await store.list(JobFilter(type="echo", order_desc=True, limit=1))
        assert newest[0].submitted_at == START + 3

    @pytest.mark.asyncio
    async def test_count_and_queue_position(self, store):
        jobs = [await store.create(make_job(now=START + i)) for i in range(3)]
        assert await store.count() == 3
        assert await store.count(JobFilter(state={JobState.QUEUED, JobState.RUNNING})) == 3
        assert await store.count_queued_before(jobs[2]) == 2
        assert await store.count_queued_before(jobs[0]) == 0

    @pytest.mark.asyncio
    async def test_list_expired_and_expired_leases(self, store):
        job = await store.create(make_job())
        await store.compare_and_swap(
            job.job_id, JobState.QUEUED,
            lambda cur: sm.claim(cur, "w1", now=START, lease_timeout=30.0),
        )
        assert await store.list_expired_leases(START + 10, 10) == []
        stale = await store.list_expired_leases(START + 30, 10)
        assert [j.job_id for j in stale] == [job.job_id]

        done = await store.create(make_job().replace(state=JobState.COMPLETED, expires_at=START + 5))
        assert await store.list_expired(START + 4, 10) == []
        assert [j.job_id for j in await store.list_expired(START + 5, 10)] == [done.job_id]


class TestIdempotencyIndex:
    """Test reserve-or-get semantics."""

    @pytest.mark.asyncio
    async def test_reserve_creates_once(self, store):
        first, created = await store.reserve_or_get("k1", make_job, now=START)
        second, created_again = await store.reserve_or_get("k1", make_job, now=START)
        assert created and not created_again
        assert first.job_id == second.job_id
        assert first.idempotency_key == "k1"
        assert await store.lookup("k1") == first.job_id

    @pytest.mark.asyncio
    async def test_concurrent_reservations_create_one_job(self):
        store = InMemoryJobStore()
        results = await asyncio.gather(
            *(store.reserve_or_get("k1", make_job, now=START) for _ in range(20))
        )
        assert len({job.job_id for job, _ in results}) == 1
        assert sum(created for _, created in results) == 1
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_expired_job_frees_key(self, store):
        first, _ = await store.reserve_or_get("k1", make_job, now=START)
        await store.compare_and_swap(
            first.job_id, JobState.QUEUED,
            lambda cur: cur.replace(state=JobState.CANCELLED, expires_at=START + 1),
        )
        second, created = await store.reserve_or_get("k1", make_job, now=START + 2)
        assert created
        assert second.job_id != first.job_id

    @pytest.mark.asyncio
    async def test_release_only_matching_job(self, store):
        job, _ = await store.reserve_or_get("k1", make_job, now=START)
        assert not await store.release("k1", "job_other")
        assert await store.release("k1", job.job_id)
        assert await store.lookup("k1") is None
