"""Session registry: per-chat session state and the send lifecycle."""

from __future__ import annotations

import enum
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from chatrelay.agent.backends import Backend
from chatrelay.agent.runner import EventHandler, ProcessRunner
from chatrelay.constants import (
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_QUIET_INTERVAL,
    REASON_HOST_SHUTDOWN,
    REASON_IDLE_TIMEOUT,
    ProgressCallback,
    SessionEndCallback,
)
from chatrelay.session.models import ChatId, ProgressEvent, Response

logger = logging.getLogger(__name__)

NO_SESSION_DETAIL = "No active session. Use /start to begin."
BUSY_DETAIL = "Still working on the previous message. Use /stop to interrupt it."


class SessionState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"


@dataclass
class Session:
    """One chat's conversation with the backend.  Never persisted."""

    chat_id: ChatId
    conversation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started: bool = False
    last_activity: float = 0.0
    state: SessionState = SessionState.IDLE
    runner: ProcessRunner | None = None

    @property
    def is_busy(self) -> bool:
        return self.state is SessionState.SENDING


class SessionRegistry:
    """Maps chat ids to sessions and runs one backend subprocess per send.

    The session map is the only shared mutable state.  Every state change
    goes through :meth:`_begin_send`, :meth:`_finish_send` or
    :meth:`_discard`; each runs without awaiting, so on a single event loop
    a kill racing a send is settled by whichever transition runs first.

    Sessions are created explicitly with :meth:`create`.  A second send on
    a session that is already sending is rejected as ``busy``.
    """

    def __init__(
        self,
        backend: Backend,
        on_progress: ProgressCallback | None = None,
        on_session_end: SessionEndCallback | None = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        quiet_interval: float = DEFAULT_QUIET_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._on_progress = on_progress
        self._on_session_end = on_session_end
        self._idle_timeout = idle_timeout
        self._quiet_interval = quiet_interval
        self._clock = clock
        self._sessions: dict[ChatId, Session] = {}

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def idle_timeout(self) -> float:
        return self._idle_timeout

    @property
    def chat_ids(self) -> list[ChatId]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------ #
    # Callbacks
    # ------------------------------------------------------------------ #

    def set_progress_callback(self, callback: ProgressCallback | None) -> None:
        self._on_progress = callback

    def set_session_end_callback(self, callback: SessionEndCallback | None) -> None:
        self._on_session_end = callback

    # ------------------------------------------------------------------ #
    # Session lifecycle
    # ------------------------------------------------------------------ #

    def create(self, chat_id: ChatId) -> Session:
        """Return the session for *chat_id*, creating it if needed."""
        existing = self._sessions.get(chat_id)
        if existing is not None:
            return existing
        session = Session(chat_id=chat_id, last_activity=self._clock())
        self._sessions[chat_id] = session
        logger.info("Created session for chat %s", chat_id)
        return session

    def exists(self, chat_id: ChatId) -> bool:
        return chat_id in self._sessions

    def get(self, chat_id: ChatId) -> Session | None:
        return self._sessions.get(chat_id)

    def terminate(self, chat_id: ChatId) -> bool:
        """Kill any active process and remove the session."""
        session = self._sessions.get(chat_id)
        if session is None:
            return False
        self._discard(session)
        logger.info("Terminated session for chat %s", chat_id)
        return True

    def interrupt(self, chat_id: ChatId) -> bool:
        """Send SIGINT to the active process; the session survives."""
        session = self._sessions.get(chat_id)
        if session is None or session.runner is None:
            return False
        interrupted = session.runner.interrupt()
        if interrupted:
            logger.info("Interrupted active process for chat %s", chat_id)
        return interrupted

    # ------------------------------------------------------------------ #
    # Sending
    # ------------------------------------------------------------------ #

    async def send(self, chat_id: ChatId, text: str) -> Response:
        """Send *text* to the backend and wait for the subprocess to exit."""
        session = self._sessions.get(chat_id)
        if session is None:
            return Response.failed("no_session", NO_SESSION_DETAIL)
        if session.is_busy:
            logger.warning("Rejected send for chat %s: session is busy", chat_id)
            return Response.failed("busy", BUSY_DETAIL)

        first_send = not session.started
        if first_send:
            invocation = self._backend.build_new(session.conversation_id, text)
        else:
            invocation = self._backend.build_resume(session.conversation_id, text)

        runner = ProcessRunner(
            name=f"{self._backend.name}[{chat_id}]",
            on_event=self._make_event_handler(session),
            quiet_interval=self._quiet_interval,
        )
        self._begin_send(session, runner)
        try:
            response = await runner.run(invocation)
        finally:
            self._finish_send(session, runner)

        if first_send and response.error_kind == "spawn":
            # Nothing was created on the backend side; the next send starts over.
            session.started = False
            return response

        reported = runner.conversation_id
        if first_send and reported and reported != session.conversation_id:
            logger.debug(
                "Chat %s: backend assigned conversation %s", chat_id, reported
            )
            session.conversation_id = reported
        return response

    async def send_image(
        self,
        chat_id: ChatId,
        path: str | Path,
        caption: str | None = None,
    ) -> Response:
        """Tell the backend about an image saved at *path*."""
        instruction = caption or "Please inspect this image."
        return await self.send(chat_id, f"User sent an image: {path}\n{instruction}")

    def _make_event_handler(self, session: Session) -> EventHandler:
        async def _handle(event: ProgressEvent) -> None:
            # Synthetic still-working notices are not output from the process.
            if event.kind != "still_working":
                session.last_activity = self._clock()
            if self._on_progress is not None:
                await self._on_progress(session.chat_id, event)

        return _handle

    # ------------------------------------------------------------------ #
    # State transitions
    # ------------------------------------------------------------------ #

    def _begin_send(self, session: Session, runner: ProcessRunner) -> None:
        session.state = SessionState.SENDING
        session.runner = runner
        session.started = True
        session.last_activity = self._clock()

    def _finish_send(self, session: Session, runner: ProcessRunner) -> None:
        # The session may have been discarded (or replaced) mid-send.
        if session.runner is runner:
            session.runner = None
            session.state = SessionState.IDLE
        session.last_activity = self._clock()

    def _discard(self, session: Session) -> bool:
        """Remove *session* if it is still registered; kill its process."""
        if self._sessions.get(session.chat_id) is not session:
            return False
        del self._sessions[session.chat_id]
        runner = session.runner
        if runner is not None:
            runner.terminate()
        return True

    # ------------------------------------------------------------------ #
    # Idle sweep & shutdown
    # ------------------------------------------------------------------ #

    async def sweep_idle(self) -> list[ChatId]:
        """Terminate sessions idle longer than the timeout.

        Returns the chat ids that were reaped.  Iterates over a snapshot so
        sessions created or removed during the sweep are tolerated.
        """
        now = self._clock()
        expired = [
            session
            for session in list(self._sessions.values())
            if now - session.last_activity > self._idle_timeout
        ]
        reaped: list[ChatId] = []
        for session in expired:
            if not self._discard(session):
                continue
            logger.info("Session for chat %s timed out", session.chat_id)
            reaped.append(session.chat_id)
            await self._notify_end(session.chat_id, REASON_IDLE_TIMEOUT)
        return reaped

    async def shutdown(self) -> None:
        """Terminate every session and notify the host."""
        for session in list(self._sessions.values()):
            if self._discard(session):
                await self._notify_end(session.chat_id, REASON_HOST_SHUTDOWN)

    async def _notify_end(self, chat_id: ChatId, reason: str) -> None:
        if self._on_session_end is None:
            return
        try:
            await self._on_session_end(chat_id, reason)
        except Exception:
            logger.exception("Session end callback failed for chat %s", chat_id)

    # ------------------------------------------------------------------ #
    # Host-facing names
    # ------------------------------------------------------------------ #

    create_session = create
    has_session = exists
    kill_session = terminate
    interrupt_session = interrupt
    send_message = send
