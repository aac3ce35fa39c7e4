"""Reconnecting consumer of the live-update WebSocket."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog
import websockets
from pydantic import ValidationError

from scenedesk.core.config import Settings
from scenedesk.schemas.events import LiveEvent

logger = structlog.get_logger()


class LiveUpdateClient:
    """Follows the server's event stream and keeps the latest event at hand.

    After a dropped or refused connection the client waits
    ``min(base_delay * 2 ** attempts, max_delay)`` seconds before trying again;
    ``attempts`` goes back to zero as soon as a connection opens.
    Messages that are not valid events are logged and skipped, as are errors
    raised by ``on_message``; neither drops the connection.
    """

    def __init__(
        self,
        url: str,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        on_message: Callable[[LiveEvent], Any] | None = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.on_message = on_message
        self.connected = False
        self.last_message: LiveEvent | None = None
        self.attempts = 0
        self._connect = connect
        self._connection = None
        self._stopped = asyncio.Event()

    @classmethod
    def from_settings(cls, url: str, settings: Settings, **kwargs: Any) -> LiveUpdateClient:
        """Build a client whose backoff follows the ``reconnect_*`` settings."""
        return cls(
            url,
            base_delay=settings.reconnect_base_seconds,
            max_delay=settings.reconnect_max_seconds,
            **kwargs,
        )

    def next_delay(self) -> float:
        return min(self.base_delay * 2 ** self.attempts, self.max_delay)

    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                async with self._connect(self.url) as connection:
                    self._connection = connection
                    self.connected = True
                    self.attempts = 0
                    logger.info("live_connected", url=self.url)
                    async for raw in connection:
                        self._handle(raw)
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning("live_connection_error", url=self.url, error=str(e))
            finally:
                self.connected = False
                self._connection = None

            if self._stopped.is_set():
                break

            delay = self.next_delay()
            self.attempts += 1
            logger.info("live_reconnecting", url=self.url, delay=delay, attempt=self.attempts)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        self._stopped.set()
        if self._connection is not None:
            await self._connection.close()

    def _handle(self, raw: str | bytes) -> None:
        try:
            event = LiveEvent.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("live_message_ignored", error_count=e.error_count())
            return
        self.last_message = event
        if self.on_message is None:
            return
        try:
            self.on_message(event)
        except Exception as e:
            logger.error("live_callback_failed", type=event.type.value, error=str(e))
