"""
Shared test fixtures for job-runtime tests.

This module provides:
- A ManualClock so retention, backoff and leases run on test time
- An isolated MetricRegistry per test
- In-memory store, registry, coordinator, sweeper and service wiring
- Sample work units (echo, flaky, always failing, blocking)
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from job_runtime.clock import ManualClock
from job_runtime.config import CoordinatorConfig, Settings, SubmissionConfig, SweeperConfig
from job_runtime.errors import PermanentJobError, TransientJobError
from job_runtime.jobs import state_machine as sm
from job_runtime.jobs.coordinator import ExecutionCoordinator
from job_runtime.jobs.notifier import InMemoryNotifier
from job_runtime.jobs.retention import RetentionPolicy
from job_runtime.jobs.service import JobService
from job_runtime.jobs.store import InMemoryJobStore
from job_runtime.jobs.sweeper import RetentionSweeper
from job_runtime.jobs.types import JobRecord
from job_runtime.jobs.work import WorkContext, WorkRegistry
from job_runtime.telemetry import JobMetrics, MetricRegistry

START = 1_700_000_000.0


# =============================================================================
# Record Factories
# =============================================================================


def make_job(
    job_type: str = "echo",
    input: Any = None,
    *,
    now: float = START,
    max_retries: int = 3,
    idempotency_key: str | None = None,
) -> JobRecord:
    """Create a QUEUED JobRecord."""
    return sm.new_job(
        job_type,
        input if input is not None else {"text": "hi"},
        now=now,
        max_retries=max_retries,
        idempotency_key=idempotency_key,
    )


# =============================================================================
# Sample Work Units
# =============================================================================


async def echo_unit(ctx: WorkContext, payload: Any) -> Any:
    await ctx.report_progress(50)
    return payload


class FlakyUnit:
    """Fails transiently on the first ``failures`` attempts, then echoes."""

    def __init__(self, failures: int = 2) -> None:
        self.failures = failures
        self.attempts: list[int] = []

    async def __call__(self, ctx: WorkContext, payload: Any) -> Any:
        self.attempts.append(ctx.attempt)
        if ctx.attempt <= self.failures:
            raise TransientJobError(f"upstream timeout on attempt {ctx.attempt}")
        return payload


async def always_transient(ctx: WorkContext, payload: Any) -> Any:
    raise TransientJobError("upstream unavailable")


async def always_permanent(ctx: WorkContext, payload: Any) -> Any:
    raise PermanentJobError("malformed input", kind="validation")


class BlockingUnit:
    """Waits until released or cancelled; exposes ``started`` for the test."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, ctx: WorkContext, payload: Any) -> Any:
        self.started.set()
        while not self.release.is_set():
            ctx.check_cancelled()
            await asyncio.sleep(0.01)
        return payload


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=START)


@pytest.fixture
def metrics() -> JobMetrics:
    return JobMetrics(MetricRegistry())


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def retention() -> RetentionPolicy:
    return RetentionPolicy()


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def coordinator_config() -> CoordinatorConfig:
    return CoordinatorConfig(
        workers=2,
        poll_interval=0.05,
        lease_timeout=30.0,
        heartbeat_interval=10.0,
        base_delay=1.0,
        max_delay=60.0,
    )


@pytest.fixture
def registry() -> WorkRegistry:
    registry = WorkRegistry()
    registry.register("echo", echo_unit)
    return registry


@pytest.fixture
def coordinator(store, registry, coordinator_config, retention, notifier, clock, metrics) -> ExecutionCoordinator:
    return ExecutionCoordinator(
        store,
        registry,
        config=coordinator_config,
        retention=retention,
        notifier=notifier,
        clock=clock,
        metrics=metrics,
        worker_id="coord_test",
    )


@pytest.fixture
def settings(coordinator_config) -> Settings:
    return Settings(
        coordinator=coordinator_config,
        submission=SubmissionConfig(max_input_bytes=4096),
        sweeper=SweeperConfig(interval=0.05, tombstone_ttl=3600.0),
    )


@pytest.fixture
def service(store, settings, retention, notifier, clock, metrics, coordinator) -> JobService:
    return JobService(
        store,
        settings=settings,
        retention=retention,
        notifier=notifier,
        clock=clock,
        metrics=metrics,
        coordinator=coordinator,
    )


@pytest.fixture
def sweeper(store, coordinator, settings, clock, metrics) -> RetentionSweeper:
    return RetentionSweeper(
        store,
        coordinator=coordinator,
        config=settings.sweeper,
        clock=clock,
        metrics=metrics,
    )
