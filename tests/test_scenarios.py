"""
End-to-end scenarios through JobService, ExecutionCoordinator and
RetentionSweeper on a manual clock.
"""

from __future__ import annotations

import pytest

from job_runtime.errors import JobGoneError, JobNotFoundError
from job_runtime.jobs.coordinator import ExecutionCoordinator
from job_runtime.jobs.retention import RetentionPolicy
from job_runtime.jobs.service import JobService
from job_runtime.jobs.sweeper import RetentionSweeper
from job_runtime.jobs.types import JobState
from job_runtime.jobs.work import WorkRegistry

from conftest import FlakyUnit, always_transient, echo_unit


class TestEchoWithTransientFailures:
    @pytest.mark.asyncio
    async def test_two_transient_failures_then_success(self, service, store, registry, coordinator, clock):
        """Attempts 1 and 2 fail transiently, attempt 3 echoes the input."""
        flaky = FlakyUnit(failures=2)
        registry.register("flaky-echo", flaky)
        ack = await service.submit("flaky-echo", {"text": "hello"}, max_retries=2)

        await coordinator.run_until_idle()
        view = await service.get_status(ack.job_id)
        # The internal requeue is reported as queued, never as failed.
        assert view.state == JobState.QUEUED

        clock.advance(2.0)
        await coordinator.run_until_idle()
        clock.advance(4.0)
        await coordinator.run_until_idle()

        assert flaky.attempts == [1, 2, 3]
        view = await service.get_status(ack.job_id)
        assert view.state == JobState.COMPLETED
        assert await service.get_result(ack.job_id) == {"text": "hello"}
        # The last allowed attempt succeeded with no retries left.
        stored = await store.get(ack.job_id)
        assert stored.retry_count == stored.max_retries == 2
        assert stored.error is None

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_as_non_retryable(self, service, registry, coordinator, clock):
        registry.register("down", always_transient)
        ack = await service.submit("down", 1, max_retries=1)

        await coordinator.run_until_idle()
        clock.advance(2.0)
        await coordinator.run_until_idle()

        payload = (await service.get_status(ack.job_id)).to_payload()
        assert payload["state"] == "failed"
        assert payload["errorInfo"]["retryable"] is False
        assert payload["retryCount"] == 1
        assert payload["maxRetries"] == 1


class TestIdempotentResubmission:
    @pytest.mark.asyncio
    async def test_k1_resubmission_after_completion_and_expiry(
        self, service, coordinator, sweeper, clock
    ):
        """The key returns the same job while it lives and a new one after expiry."""
        first = await service.submit("echo", {"n": 1}, idempotency_key="k1")
        again = await service.submit("echo", {"n": 1}, idempotency_key="k1")
        assert again.job_id == first.job_id
        assert again.state == JobState.QUEUED

        await coordinator.run_until_idle()
        done = await service.submit("echo", {"n": 1}, idempotency_key="k1")
        assert done.job_id == first.job_id
        assert done.state == JobState.COMPLETED
        assert not done.created

        clock.advance(24 * 3600)
        await sweeper.run_once()
        fresh = await service.submit("echo", {"n": 1}, idempotency_key="k1")
        assert fresh.created
        assert fresh.job_id != first.job_id
        assert fresh.state == JobState.QUEUED


class TestCancelWhileQueued:
    @pytest.mark.asyncio
    async def test_cancelled_job_never_runs(self, service, registry, coordinator):
        calls = []

        async def record(ctx, payload):
            calls.append(payload)
            return payload

        registry.register("record", record)
        ack = await service.submit("record", "x")
        view = await service.cancel(ack.job_id)
        assert view.state == JobState.CANCELLED

        assert await coordinator.run_until_idle() == 0
        assert calls == []
        payload = (await service.get_status(ack.job_id)).to_payload()
        assert payload["cancelledBy"] == "client"
        assert "outputRef" not in payload
        assert "errorInfo" not in payload


class TestShortRetention:
    @pytest.mark.asyncio
    async def test_one_second_retention(self, store, clock, metrics, settings):
        """A completed job with 1s retention reads as gone 1.1s later."""
        retention = RetentionPolicy().with_type_retention("echo", JobState.COMPLETED, 1.0)
        registry = WorkRegistry()
        registry.register("echo", echo_unit)
        coordinator = ExecutionCoordinator(
            store, registry, config=settings.coordinator, retention=retention, clock=clock, metrics=metrics
        )
        service = JobService(
            store, settings=settings, retention=retention, clock=clock, metrics=metrics, coordinator=coordinator
        )
        sweeper = RetentionSweeper(store, coordinator=coordinator, config=settings.sweeper, clock=clock, metrics=metrics)

        ack = await service.submit("echo", "short-lived")
        await coordinator.run_until_idle()
        assert await service.get_result(ack.job_id) == "short-lived"

        clock.advance(1.1)
        view = await service.get_status(ack.job_id)
        assert view.gone is True
        with pytest.raises(JobGoneError):
            await service.get_result(ack.job_id)

        report = await sweeper.run_once()
        assert report.deleted == 1
        assert (await service.get_status(ack.job_id)).gone is True


class TestGoneVersusNeverExisted:
    @pytest.mark.asyncio
    async def test_lookups_distinguish_gone_from_unknown(self, service, coordinator, sweeper, clock):
        ack = await service.submit("echo", 1)
        await coordinator.run_until_idle()
        clock.advance(24 * 3600)
        await sweeper.run_once()

        assert (await service.get_status(ack.job_id)).gone is True
        with pytest.raises(JobNotFoundError):
            await service.get_status("job_never_existed")


class TestOutputErrorExclusivity:
    @pytest.mark.asyncio
    async def test_terminal_jobs_hold_output_or_error(self, service, registry, coordinator, store, clock):
        registry.register("down", always_transient)
        ok = await service.submit("echo", 1)
        bad = await service.submit("down", 1, max_retries=0)
        cancelled = await service.submit("echo", 2)
        await service.cancel(cancelled.job_id)
        await coordinator.run_until_idle()

        ok_job = await store.get(ok.job_id)
        bad_job = await store.get(bad.job_id)
        cancelled_job = await store.get(cancelled.job_id)
        assert ok_job.output == 1 and ok_job.error is None
        assert bad_job.output is None and bad_job.error is not None
        assert cancelled_job.output is None and cancelled_job.error is None
