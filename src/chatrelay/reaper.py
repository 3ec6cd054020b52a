"""Periodic sweep that ends sessions left idle past the timeout."""

from __future__ import annotations

import asyncio
import logging

from chatrelay.background_loop import BackgroundLoop
from chatrelay.constants import DEFAULT_SWEEP_INTERVAL
from chatrelay.registry import SessionRegistry

logger = logging.getLogger(__name__)


class IdleReaper(BackgroundLoop):
    """Calls :meth:`SessionRegistry.sweep_idle` once per *interval*."""

    def __init__(
        self,
        registry: SessionRegistry,
        shutdown_event: asyncio.Event,
        interval: float = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        super().__init__(shutdown_event, interval)
        self._registry = registry

    def _should_start(self) -> bool:
        return self._registry.idle_timeout > 0

    async def _tick(self) -> None:
        try:
            reaped = await self._registry.sweep_idle()
        except Exception:
            logger.exception("Idle sweep failed")
            return
        if reaped:
            logger.info("Reaped %d idle session(s)", len(reaped))
