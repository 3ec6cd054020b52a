"""Base class for periodic async work that stops on a shared shutdown event."""

from __future__ import annotations

import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)


class BackgroundLoop:
    """Runs :meth:`_tick` every *interval* seconds until shutdown.

    Subclasses override :meth:`_tick` and optionally :meth:`_should_start`.
    """

    def __init__(
        self,
        shutdown_event: asyncio.Event,
        interval: int | float,
    ) -> None:
        self._shutdown_event = shutdown_event
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        if self.running or not self._should_start():
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the loop task and wait for it to unwind."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------ #
    # Override points
    # ------------------------------------------------------------------ #

    def _should_start(self) -> bool:
        return True

    async def _tick(self) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    async def _shutdown_aware_sleep(self, duration: float) -> bool:
        """Wait up to *duration* seconds; ``True`` means shutdown was signalled."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=duration)
        except TimeoutError:
            return False
        return True

    async def _loop(self) -> None:
        try:
            while not self._shutdown_event.is_set():
                if await self._shutdown_aware_sleep(self._interval):
                    return
                await self._tick()
        except asyncio.CancelledError:
            return
