"""Queue backends holding the ids of jobs waiting to be dispatched.

The orchestrator only needs FIFO hand-off of job ids; job state itself lives in
the record store. Two interchangeable implementations exist and the one in use
is picked explicitly from configuration by :func:`create_backend`:

* ``InMemoryQueueBackend`` for single-node and test deployments.
* ``RedisQueueBackend`` for a durable queue that survives process restarts.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque

import redis.asyncio as redis
import structlog

from scenedesk.core.config import Settings

logger = structlog.get_logger()


class QueueBackend(ABC):
    """Abstract FIFO of job ids."""

    # Whether queued ids survive a restart of this process
    durable = False

    @abstractmethod
    async def push(self, job_id: str) -> None:
        """Append a job id to the tail of the queue."""

    @abstractmethod
    async def pop(self, timeout: float) -> str | None:
        """Remove and return the head job id, waiting up to ``timeout`` seconds.

        Returns None when nothing arrived in time.
        """

    @abstractmethod
    async def remove(self, job_id: str) -> bool:
        """Drop a waiting job id. Returns True if it was queued."""

    @abstractmethod
    async def size(self) -> int:
        """Number of waiting job ids."""

    async def close(self) -> None:
        pass


class InMemoryQueueBackend(QueueBackend):
    def __init__(self) -> None:
        self._items: deque[str] = deque()
        self._available = asyncio.Condition()

    async def push(self, job_id: str) -> None:
        async with self._available:
            self._items.append(job_id)
            self._available.notify()
        logger.debug("job_enqueued", job_id=job_id, backend="memory")

    async def pop(self, timeout: float) -> str | None:
        async with self._available:
            if not self._items:
                try:
                    await asyncio.wait_for(self._available.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    return None
            if not self._items:
                return None
            return self._items.popleft()

    async def remove(self, job_id: str) -> bool:
        async with self._available:
            try:
                self._items.remove(job_id)
            except ValueError:
                return False
            return True

    async def size(self) -> int:
        return len(self._items)


class RedisQueueBackend(QueueBackend):
    """Redis list used as a FIFO: LPUSH at the tail, BRPOP from the head."""

    durable = True

    def __init__(self, client, key: str = "scenedesk:queue") -> None:
        self.client = client
        self.key = key

    @classmethod
    def from_url(cls, url: str, key: str = "scenedesk:queue") -> "RedisQueueBackend":
        return cls(redis.from_url(url, decode_responses=True), key=key)

    async def push(self, job_id: str) -> None:
        await self.client.lpush(self.key, job_id)
        logger.debug("job_enqueued", job_id=job_id, backend="redis", queue=self.key)

    async def pop(self, timeout: float) -> str | None:
        item = await self.client.brpop([self.key], timeout=timeout)
        if item is None:
            return None
        _, job_id = item
        return job_id.decode() if isinstance(job_id, bytes) else job_id

    async def remove(self, job_id: str) -> bool:
        removed = await self.client.lrem(self.key, 0, job_id)
        return removed > 0

    async def size(self) -> int:
        return await self.client.llen(self.key)

    async def close(self) -> None:
        await self.client.aclose()


def create_backend(settings: Settings) -> QueueBackend:
    if settings.queue_backend == "redis":
        logger.info("queue_backend_selected", backend="redis", queue=settings.redis_queue_key)
        return RedisQueueBackend.from_url(settings.redis_url, key=settings.redis_queue_key)
    if settings.queue_backend == "memory":
        logger.info("queue_backend_selected", backend="memory")
        return InMemoryQueueBackend()
    raise ValueError(f"Unknown queue backend: {settings.queue_backend}")
