"""
Storage backends for the job runtime.

- memory: InMemoryJobStore + InMemoryNotifier (single process, tests)
- postgres: PostgresJobStore, optionally with RedisJobNotifier for
  cross-process wakeups
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..config import StoreConfig
from ..jobs.notifier import InMemoryNotifier, JobNotifier
from ..jobs.store import InMemoryJobStore, JobStore

if TYPE_CHECKING:
    from .postgres import PostgresJobStore
    from .redis import RedisJobNotifier


async def open_store(config: StoreConfig | None = None) -> JobStore:
    """Create the job store selected by ``config.backend``."""
    config = config or StoreConfig()
    if config.backend == "postgres":
        from .postgres import PostgresJobStore

        return await PostgresJobStore.connect(
            config.pg_dsn,
            config.jobs_table,
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
        )
    return InMemoryJobStore()


async def open_notifier(config: StoreConfig | None = None) -> JobNotifier:
    """Redis notifier when ``redis_url`` is set, in-process otherwise.

    The returned notifier is already started.
    """
    config = config or StoreConfig()
    if config.redis_url:
        from .redis import RedisJobNotifier

        notifier: JobNotifier = RedisJobNotifier.from_url(config.redis_url, config.notify_channel)
    else:
        notifier = InMemoryNotifier()
    await notifier.start()
    return notifier


__all__ = ["open_store", "open_notifier", "PostgresJobStore", "RedisJobNotifier"]


def __getattr__(name: str):
    if name == "PostgresJobStore":
        from .postgres import PostgresJobStore

        return PostgresJobStore
    if name == "RedisJobNotifier":
        from .redis import RedisJobNotifier

        return RedisJobNotifier
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
