"""
Running caller-supplied callables from the coordinator's event loop.

Work units may be plain synchronous functions (file conversion, CPU-bound
report generation). Those are handed to one process-wide thread pool so a
slow unit never stalls claiming or heartbeats.
"""

from __future__ import annotations

import asyncio
import inspect
import os
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar

T = TypeVar("T")

_POLL_SECONDS = 0.001

_work_pool = ThreadPoolExecutor(
    max_workers=min(32, (os.cpu_count() or 1) + 4),
    thread_name_prefix="job-work",
)


async def _await_thread_future(future: Future[T]) -> T:
    # Polled rather than bridged with call_soon_threadsafe(); some sandboxed
    # loops drop cross-thread wakeups.
    try:
        while not future.done():
            await asyncio.sleep(_POLL_SECONDS)
    except asyncio.CancelledError:
        future.cancel()
        raise
    return future.result()


async def run_sync(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    """Run ``func(*args, **kwargs)`` in the work pool and wait for it."""
    return await _await_thread_future(_work_pool.submit(func, *args, **kwargs))


def _is_async_callable(func: Any) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


async def call_maybe_async(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    """Await coroutine functions directly; push everything else to the pool."""
    if _is_async_callable(func):
        return await func(*args, **kwargs)
    return await run_sync(func, *args, **kwargs)


__all__ = ["run_sync", "call_maybe_async"]
