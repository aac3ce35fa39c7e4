"""Progress reporting and cooperative cancellation for worker processors."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from scenedesk.core.errors import JobCancelledError

ProgressSink = Callable[[int], Awaitable[None]]


class CancellationToken:
    """Cancellation flag for one run of one job.

    Processors call :meth:`raise_if_cancelled` (or :meth:`sleep`) at every
    suspension point so a cancelled run stops at the next opportunity.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError("Job was cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early and raising if the run is cancelled meanwhile."""
        self.raise_if_cancelled()
        if seconds > 0:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        else:
            await asyncio.sleep(0)
        self.raise_if_cancelled()


class ProgressReporter:
    """The only channel a processor has to report partial completion.

    Reports go to the orchestrator through ``sink``. Once the run's token is
    cancelled, reports are silently dropped.
    """

    def __init__(self, sink: ProgressSink, token: CancellationToken) -> None:
        self._sink = sink
        self._token = token
        self.last_reported: int | None = None

    async def report(self, progress: int) -> None:
        if self._token.cancelled:
            return
        self.last_reported = progress
        await self._sink(progress)
