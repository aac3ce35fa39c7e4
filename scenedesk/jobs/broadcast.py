"""Fan-out of lifecycle events to live-update subscribers.

Each subscriber owns an outbox and a sender task, so :meth:`EventBroadcaster.emit`
never waits on a transport: a slow client only delays its own queue, and the
events a single producer emits reach each subscriber in emission order.
Subscribers only see events emitted after they registered; there is no replay.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from scenedesk.schemas.events import EventType, LiveEvent

logger = structlog.get_logger()

SendFunc = Callable[[str], Awaitable[None]]
CloseFunc = Callable[[], Awaitable[None]]


class Subscriber:
    def __init__(
        self,
        subscriber_id: str,
        send: SendFunc,
        on_failure: Callable[["Subscriber"], None],
        close_transport: CloseFunc | None = None,
    ) -> None:
        self.id = subscriber_id
        self.connected_at = time.time()
        self._send = send
        self._close_transport = close_transport
        self._on_failure = on_failure
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump(), name=f"subscriber-{self.id}")

    def offer(self, message: str) -> None:
        self._outbox.put_nowait(message)

    @property
    def pending(self) -> int:
        return self._outbox.qsize()

    async def flush(self) -> None:
        """Wait until every offered message has been handed to the transport."""
        await self._outbox.join()

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # release anyone blocked in flush()
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    async def _pump(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self._send(message)
            except Exception as e:
                logger.warning("subscriber_send_failed", subscriber_id=self.id, error=str(e))
                self._outbox.task_done()
                self._on_failure(self)
                await self._shut_transport()
                return
            self._outbox.task_done()

    async def _shut_transport(self) -> None:
        if self._close_transport is None:
            return
        try:
            await self._close_transport()
        except Exception as e:
            logger.warning("subscriber_close_failed", subscriber_id=self.id, error=str(e))


class SubscriberRegistry:
    """Tracks live-update connections, one entry per connected client."""

    def __init__(self) -> None:
        self._subscribers: dict[str, Subscriber] = {}

    def register(
        self, send: SendFunc, subscriber_id: str | None = None, close: CloseFunc | None = None
    ) -> Subscriber:
        """Add a subscriber. ``close`` shuts its transport if a send fails."""
        subscriber_id = subscriber_id or uuid.uuid4().hex[:8]
        subscriber = Subscriber(subscriber_id, send, on_failure=self._drop, close_transport=close)
        self._subscribers[subscriber_id] = subscriber
        subscriber.start()
        logger.info("subscriber_connected", subscriber_id=subscriber_id, total=len(self._subscribers))
        return subscriber

    async def unregister(self, subscriber_id: str) -> bool:
        subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return False
        await subscriber.close()
        logger.info("subscriber_disconnected", subscriber_id=subscriber_id, total=len(self._subscribers))
        return True

    async def close(self) -> None:
        for subscriber_id in list(self._subscribers):
            await self.unregister(subscriber_id)

    def subscribers(self) -> list[Subscriber]:
        return list(self._subscribers.values())

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, subscriber_id: str) -> bool:
        return subscriber_id in self._subscribers

    def _drop(self, subscriber: Subscriber) -> None:
        # Called from the subscriber's own sender task, which exits right after.
        if self._subscribers.get(subscriber.id) is subscriber:
            del self._subscribers[subscriber.id]
            logger.info("subscriber_dropped", subscriber_id=subscriber.id, total=len(self._subscribers))


class EventBroadcaster:
    def __init__(self, registry: SubscriberRegistry) -> None:
        self.registry = registry

    def emit(self, event_type: EventType, data: dict[str, Any]) -> int:
        """Queue an event for every current subscriber. Returns how many were targeted."""
        message = LiveEvent(type=event_type, data=data).model_dump_json()
        subscribers = self.registry.subscribers()
        for subscriber in subscribers:
            subscriber.offer(message)
        logger.debug("event_broadcast", type=event_type.value, subscribers=len(subscribers))
        return len(subscribers)
