"""
Redis pub/sub wakeups for coordinators in separate processes.

Every process subscribes to one channel. ``notify`` publishes a message and
each listener sets the local waiter events, so an idle coordinator anywhere
picks up new work without waiting for its poll interval.

Requires redis to be installed: pip install redis
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

try:
    import redis.asyncio as redis
    REDIS_AVAILABLE = True
except ImportError:
    redis = None  # type: ignore
    REDIS_AVAILABLE = False

from ..errors import StoreUnavailableError
from ..jobs.notifier import JobNotifier
from ..logging import get_logger

logger = get_logger("job_runtime.storage.redis")


def _require_redis() -> None:
    """Raise ImportError if redis is not available."""
    if not REDIS_AVAILABLE:
        raise ImportError(
            "Redis notifications require redis. "
            "Install with: pip install redis"
        )


class RedisJobNotifier(JobNotifier):
    """JobNotifier backed by a Redis pub/sub channel.

    Example:
        ```python
        client = redis.Redis.from_url("redis://localhost:6379")
        notifier = RedisJobNotifier(client)
        await notifier.start()

        coordinator = ExecutionCoordinator(store, registry, notifier=notifier)
        ```
    """

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        channel: str = "job_runtime:wakeup",
        *,
        owns_client: bool = False,
    ):
        _require_redis()
        self._client = client
        self._channel = channel
        self._owns_client = owns_client
        self._pubsub: Any = None
        self._listener_task: asyncio.Task[None] | None = None
        self._waiters: set[asyncio.Event] = set()
        self._pending = False

    @classmethod
    def from_url(cls, url: str, channel: str = "job_runtime:wakeup") -> RedisJobNotifier:
        _require_redis()
        return cls(redis.Redis.from_url(url), channel, owns_client=True)

    @property
    def channel(self) -> str:
        return self._channel

    async def start(self) -> None:
        """Subscribe and start the background listener."""
        if self._listener_task is not None:
            return
        try:
            self._pubsub = self._client.pubsub()
            await self._pubsub.subscribe(self._channel)
        except (OSError, redis.RedisError) as exc:
            raise StoreUnavailableError(f"Redis unavailable: {exc}", cause=exc) from exc
        self._listener_task = asyncio.create_task(self._listen(), name="redis-job-notifier")

    async def stop(self) -> None:
        """Stop the listener and close the subscription."""
        if self._listener_task:
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
            self._listener_task = None

        if self._pubsub:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            self._pubsub = None

        if self._owns_client:
            await self._client.aclose()

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                self._wake()
        except asyncio.CancelledError:
            raise
        except (OSError, redis.RedisError) as exc:
            # Waiters fall back to polling until the notifier is restarted.
            logger.log_error(exc, "Redis wakeup listener stopped", level=logging.WARNING)

    def _wake(self) -> None:
        if not self._waiters:
            self._pending = True
            return
        for event in self._waiters:
            event.set()

    async def notify(self, job_type: str | None = None) -> None:
        payload = json.dumps({"type": job_type})
        try:
            await self._client.publish(self._channel, payload)
        except (OSError, redis.RedisError) as exc:
            # A lost wakeup only delays pickup by one poll interval.
            logger.warning("Failed to publish wakeup", channel=self._channel, error=str(exc))
            self._wake()

    async def wait(self, timeout: float) -> bool:
        if self._pending:
            self._pending = False
            return True
        event = asyncio.Event()
        self._waiters.add(event)
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self._waiters.discard(event)


__all__ = ["RedisJobNotifier"]
