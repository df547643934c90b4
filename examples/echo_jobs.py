#!/usr/bin/env python3
"""
Example: Submitting and polling jobs

Demonstrates:
1. Registering sync and async work units
2. Idempotent submission
3. Polling status until a job is terminal
4. Transient failures retried with backoff
5. Cancelling a queued job

Set JOBS_STORE_BACKEND=postgres and POSTGRES_DSN (plus REDIS_URL for
cross-process wakeups) to run against real infrastructure.
"""
import asyncio
import random
import sys
from pathlib import Path

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from job_runtime import (
    CoordinatorConfig,
    ExecutionCoordinator,
    JobService,
    RetentionSweeper,
    Settings,
    TransientJobError,
    WorkContext,
    configure_logging,
    load_env,
    open_notifier,
    open_store,
)
from job_runtime.jobs import WorkRegistry

registry = WorkRegistry()


@registry.work_unit("echo")
async def echo(ctx: WorkContext, payload):
    for percent in (25, 50, 75):
        await asyncio.sleep(0.1)
        await ctx.report_progress(percent)
    return payload


@registry.work_unit("word-count")
def word_count(ctx: WorkContext, payload):
    # Runs in the shared thread pool.
    ctx.check_cancelled()
    return {"words": len(str(payload.get("text", "")).split())}


@registry.work_unit("flaky")
async def flaky(ctx: WorkContext, payload):
    if ctx.attempt < 3 and random.random() < 0.9:
        raise TransientJobError(f"upstream timeout on attempt {ctx.attempt}")
    return {"attempts": ctx.attempt}


async def wait_for(service: JobService, job_id: str, interval: float = 0.2):
    while True:
        view = await service.get_status(job_id)
        if view.state.is_terminal:
            return view
        print(f"  {job_id[:12]}… {view.state.value} progress={view.progress}")
        await asyncio.sleep(interval)


async def main():
    load_env()
    settings = Settings.from_env()
    settings.coordinator = CoordinatorConfig(workers=2, poll_interval=0.2, base_delay=0.25, max_delay=2.0)
    configure_logging(settings.logging, level="WARNING")

    store = await open_store(settings.store)
    notifier = await open_notifier(settings.store)
    coordinator = ExecutionCoordinator(
        store,
        registry,
        config=settings.coordinator,
        retention=settings.retention.policy(),
        notifier=notifier,
    )
    service = JobService(store, settings=settings, notifier=notifier, coordinator=coordinator)
    sweeper = RetentionSweeper(store, coordinator=coordinator, config=settings.sweeper)

    print("=" * 60)
    print("JOB RUNTIME EXAMPLE")
    print("=" * 60)

    async with coordinator:
        await sweeper.start()
        try:
            # === Example 1: Echo with progress ===
            ack = await service.submit("echo", {"text": "hello"}, idempotency_key="example-echo")
            again = await service.submit("echo", {"text": "hello"}, idempotency_key="example-echo")
            print(f"\nSubmitted {ack.job_id} (resubmission returned same id: {again.job_id == ack.job_id})")
            view = await wait_for(service, ack.job_id)
            print(f"  -> {view.state.value}: {await service.get_result(ack.job_id)}")

            # === Example 2: Sync work unit ===
            ack = await service.submit("word-count", {"text": "the quick brown fox"})
            await wait_for(service, ack.job_id)
            print(f"\nword-count -> {await service.get_result(ack.job_id)}")

            # === Example 3: Retries ===
            ack = await service.submit("flaky", None, max_retries=5)
            view = await wait_for(service, ack.job_id)
            print(f"\nflaky -> {view.to_payload()}")

            # === Example 4: Cancellation ===
            ack = await service.submit("echo", {"text": "never mind"})
            view = await service.cancel(ack.job_id, cancelled_by="example")
            print(f"\ncancelled -> {view.to_payload()}")
        finally:
            await sweeper.stop()
            await notifier.stop()
            close = getattr(store, "close", None)
            if close is not None:
                await close()


if __name__ == "__main__":
    asyncio.run(main())
