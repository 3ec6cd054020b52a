"""Shared constants and type aliases for the chatrelay runtime."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from chatrelay.session.models import ChatId, ProgressEvent

#: Reason reported when the idle reaper ends a session.
REASON_IDLE_TIMEOUT = "idle timeout"

#: Reason reported for every session still open at host shutdown.
REASON_HOST_SHUTDOWN = "host shutdown"

#: Default idle timeout before a session is reaped (30 minutes).
DEFAULT_IDLE_TIMEOUT = 1800.0

#: Default interval between idle sweeps.
DEFAULT_SWEEP_INTERVAL = 60.0

#: Quiet period after which a synthetic "still working" event is emitted.
DEFAULT_QUIET_INTERVAL = 45.0

#: Callback invoked with every progress event during a send.
ProgressCallback = Callable[[ChatId, ProgressEvent], Awaitable[None]]

#: Callback invoked when a session ends other than by an explicit kill.
SessionEndCallback = Callable[[ChatId, str], Awaitable[None]]
