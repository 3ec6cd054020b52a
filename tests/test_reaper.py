"""Tests for the background loop base class and the idle reaper."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

from chatrelay.background_loop import BackgroundLoop
from chatrelay.reaper import IdleReaper


def _make_registry(idle_timeout: float = 1800.0) -> MagicMock:
    registry = MagicMock()
    registry.idle_timeout = idle_timeout
    registry.sweep_idle = AsyncMock(return_value=[])
    return registry


class _CountingLoop(BackgroundLoop):
    def __init__(self, shutdown_event: asyncio.Event, interval: float) -> None:
        super().__init__(shutdown_event, interval)
        self.ticks = 0

    async def _tick(self) -> None:
        self.ticks += 1


class TestBackgroundLoop:
    async def test_ticks_until_stopped(self) -> None:
        loop = _CountingLoop(asyncio.Event(), interval=0.02)
        await loop.start()
        assert loop.running
        await asyncio.sleep(0.2)
        await loop.stop()
        assert loop.ticks >= 2
        assert not loop.running

    async def test_shutdown_event_ends_loop(self) -> None:
        shutdown = asyncio.Event()
        loop = _CountingLoop(shutdown, interval=60)
        await loop.start()
        shutdown.set()
        await asyncio.sleep(0.05)
        assert not loop.running
        assert loop.ticks == 0

    async def test_start_twice_keeps_one_task(self) -> None:
        loop = _CountingLoop(asyncio.Event(), interval=60)
        await loop.start()
        task = loop._task
        await loop.start()
        assert loop._task is task
        await loop.stop()

    async def test_stop_without_start(self) -> None:
        await _CountingLoop(asyncio.Event(), interval=1).stop()

    async def test_shutdown_aware_sleep(self) -> None:
        shutdown = asyncio.Event()
        loop = _CountingLoop(shutdown, interval=1)
        assert await loop._shutdown_aware_sleep(0.01) is False
        shutdown.set()
        assert await loop._shutdown_aware_sleep(10) is True


class TestIdleReaper:
    async def test_sweeps_periodically(self) -> None:
        registry = _make_registry()
        reaper = IdleReaper(registry, asyncio.Event(), interval=0.02)
        await reaper.start()
        await asyncio.sleep(0.2)
        await reaper.stop()
        assert registry.sweep_idle.await_count >= 2

    async def test_sweep_errors_are_survived(self) -> None:
        registry = _make_registry()
        registry.sweep_idle.side_effect = RuntimeError("sweep failed")
        reaper = IdleReaper(registry, asyncio.Event(), interval=0.02)
        await reaper.start()
        await asyncio.sleep(0.2)
        assert reaper.running
        await reaper.stop()
        assert registry.sweep_idle.await_count >= 2

    async def test_disabled_without_timeout(self) -> None:
        registry = _make_registry(idle_timeout=0)
        reaper = IdleReaper(registry, asyncio.Event(), interval=0.02)
        await reaper.start()
        assert not reaper.running
