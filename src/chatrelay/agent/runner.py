"""Process runner: one AI CLI subprocess per send, parsed as it streams."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from chatrelay.agent.helpers import format_stderr_preview
from chatrelay.agent.parsing import ParsedLine
from chatrelay.constants import DEFAULT_QUIET_INTERVAL
from chatrelay.session.models import ProgressEvent, Response

logger = logging.getLogger(__name__)

#: Bytes requested from stdout per read.
_READ_CHUNK = 65_536

#: Maximum bytes per output line (1 MB); longer lines are dropped.
_MAX_LINE_BYTES = 1_048_576

#: Seconds to wait after SIGTERM before SIGKILL.
_SIGTERM_WAIT = 3.0

LineParser = Callable[[str, str], ParsedLine]
EventHandler = Callable[[ProgressEvent], Awaitable[None]]


@dataclass(frozen=True)
class Invocation:
    """Everything needed to spawn one backend subprocess."""

    executable: str
    args: tuple[str, ...]
    parse_line: LineParser
    input_text: str = ""
    cwd: str | None = None
    env: dict[str, str] | None = field(default=None, compare=False)
    label: str = "subprocess"
    install_hint: str | None = None

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]


class LineBuffer:
    """Splits a byte stream into complete lines.

    The incomplete trailing line is held in ``_pending`` until its newline
    arrives or :meth:`flush` is called at EOF.  A line growing past
    *max_line_bytes* is discarded up to its terminating newline.
    """

    def __init__(self, max_line_bytes: int = _MAX_LINE_BYTES) -> None:
        self._pending = bytearray()
        self._max_line_bytes = max_line_bytes
        self._discarding = False

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    def feed(self, chunk: bytes) -> list[str]:
        """Append *chunk* and return every line it completed."""
        self._pending.extend(chunk)
        lines: list[str] = []
        while True:
            newline = self._pending.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._pending[:newline])
            del self._pending[: newline + 1]
            if self._discarding:
                self._discarding = False
                continue
            if len(raw) > self._max_line_bytes:
                logger.warning("output line exceeds %d bytes, skipping", self._max_line_bytes)
                continue
            lines.append(raw.decode(errors="replace").rstrip("\r"))

        if len(self._pending) > self._max_line_bytes:
            logger.warning("output line exceeds %d bytes, skipping", self._max_line_bytes)
            self._pending.clear()
            self._discarding = True
        return lines

    def flush(self) -> str | None:
        """Return the unterminated trailing line, if any, and reset."""
        if self._discarding or not self._pending:
            self._pending.clear()
            self._discarding = False
            return None
        line = self._pending.decode(errors="replace").rstrip("\r")
        self._pending.clear()
        return line


class ProcessRunner:
    """Runs a single :class:`Invocation` and resolves to a :class:`Response`.

    Progress events reach *on_event* in the order their lines were written.
    If no event arrives for *quiet_interval* seconds a synthetic
    ``still_working`` event is emitted, repeating every interval.

    A runner is single-use.  :meth:`interrupt` and :meth:`terminate` may be
    called from other tasks while :meth:`run` is pending.
    """

    def __init__(
        self,
        name: str,
        on_event: EventHandler | None = None,
        quiet_interval: float = DEFAULT_QUIET_INTERVAL,
        max_line_bytes: int = _MAX_LINE_BYTES,
    ) -> None:
        self.name = name
        self._on_event = on_event
        self._quiet_interval = quiet_interval
        self._buffer = LineBuffer(max_line_bytes)

        self._process: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task[object]] = []
        self._text = ""
        self._conversation_id: str | None = None
        self._last_message: str | None = None
        self._event_count = 0

        # Loop-clock timestamps.
        self._started_at = 0.0
        self._quiet_since = 0.0

        self._ran = False
        self._finished = False
        self._terminated = False
        self._interrupted = False

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def is_running(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._finished
        )

    @property
    def conversation_id(self) -> str | None:
        """Conversation id reported by the backend during this run."""
        return self._conversation_id

    @property
    def event_count(self) -> int:
        """Progress events delivered so far (result records excluded)."""
        return self._event_count

    # ------------------------------------------------------------------ #
    # Cancellation handles
    # ------------------------------------------------------------------ #

    def interrupt(self) -> bool:
        """Send SIGINT, like pressing Ctrl+C.  No-op once the process exited."""
        proc = self._process
        if proc is None or proc.returncode is not None or self._finished:
            return False
        self._interrupted = True
        _signal_group(proc, signal.SIGINT)
        return True

    def terminate(self) -> bool:
        """Send SIGTERM, escalating to SIGKILL.  No-op once the process exited."""
        if self._finished:
            return False
        proc = self._process
        if proc is not None and proc.returncode is not None:
            return False
        if self._terminated:
            return True
        self._terminated = True
        if proc is not None:
            self._send_terminate(proc)
        return True

    def _send_terminate(self, proc: asyncio.subprocess.Process) -> None:
        _signal_group(proc, signal.SIGTERM)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _signal_group(proc, signal.SIGKILL)
            return
        self._tasks.append(loop.create_task(self._escalate_kill(proc)))

    async def _escalate_kill(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=_SIGTERM_WAIT)
        except TimeoutError:
            logger.warning("%s: process ignored SIGTERM, sending SIGKILL", self.name)
            _signal_group(proc, signal.SIGKILL)

    # ------------------------------------------------------------------ #
    # Run
    # ------------------------------------------------------------------ #

    async def run(self, invocation: Invocation) -> Response:
        """Spawn the subprocess, stream its output, and build the response."""
        if self._ran:
            msg = f"ProcessRunner '{self.name}' has already been used"
            raise RuntimeError(msg)
        self._ran = True

        if self._terminated:
            self._finished = True
            return Response.failed("terminated", "Send was cancelled before the process started")

        try:
            proc = await asyncio.create_subprocess_exec(
                *invocation.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=invocation.cwd,
                env=invocation.env,
                start_new_session=True,
            )
        except FileNotFoundError:
            detail = f"{invocation.label} not found: {invocation.executable}"
            if invocation.install_hint:
                detail += f"\n{invocation.install_hint}"
            logger.error("%s: %s", self.name, detail)
            self._finished = True
            return Response.failed("spawn", detail)
        except OSError as exc:
            detail = f"Failed to spawn {invocation.label}: {exc}"
            logger.error("%s: %s", self.name, detail)
            self._finished = True
            return Response.failed("spawn", detail)

        self._process = proc
        loop = asyncio.get_running_loop()
        self._started_at = self._quiet_since = loop.time()
        logger.debug("%s: spawned pid %s: %s", self.name, proc.pid, invocation.argv[:4])

        if self._terminated:
            # terminate() arrived while the spawn was in flight.
            self._send_terminate(proc)

        stderr_task = loop.create_task(self._collect_stderr(proc))
        self._tasks.extend(
            [
                loop.create_task(self._write_input(proc, invocation.input_text)),
                stderr_task,
                loop.create_task(self._watch_staleness()),
            ]
        )

        try:
            await self._consume_stdout(proc, invocation.parse_line)
            stderr_text = await stderr_task
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                _signal_group(proc, signal.SIGKILL)
            raise
        finally:
            await self._cleanup()

        return self._finalize(returncode, stderr_text)

    async def _write_input(self, proc: asyncio.subprocess.Process, text: str) -> None:
        stdin = proc.stdin
        if stdin is None:
            return
        try:
            if text:
                stdin.write(text.encode())
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("%s: failed to write stdin: %s", self.name, exc)
        finally:
            with contextlib.suppress(OSError):
                stdin.close()

    async def _collect_stderr(self, proc: asyncio.subprocess.Process) -> str:
        if proc.stderr is None:
            return ""
        data = await proc.stderr.read()
        return data.decode(errors="replace")

    async def _consume_stdout(
        self,
        proc: asyncio.subprocess.Process,
        parse_line: LineParser,
    ) -> None:
        stdout = proc.stdout
        if stdout is None:
            return
        while True:
            chunk = await stdout.read(_READ_CHUNK)
            if not chunk:
                break
            for line in self._buffer.feed(chunk):
                await self._handle_line(line, parse_line)

        tail = self._buffer.flush()
        if tail is not None:
            await self._handle_line(tail, parse_line)

    async def _handle_line(self, line: str, parse_line: LineParser) -> None:
        if not line.strip():
            return
        try:
            parsed = parse_line(line, self._text)
        except Exception:
            logger.exception("%s: parser failed on line: %s", self.name, line[:200])
            return

        self._text = parsed.text
        if parsed.conversation_id:
            self._conversation_id = parsed.conversation_id

        event = parsed.event
        if event is None:
            return
        self._quiet_since = asyncio.get_running_loop().time()
        if parsed.is_result:
            # The result payload is already in the accumulator.
            return
        self._last_message = event.message
        await self._emit(event)

    async def _watch_staleness(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            remaining = self._quiet_since + self._quiet_interval - loop.time()
            if remaining > 0:
                await asyncio.sleep(remaining)
                continue
            now = loop.time()
            self._quiet_since = now
            await self._emit(self._still_working(now - self._started_at))

    def _still_working(self, elapsed: float) -> ProgressEvent:
        minutes = int(elapsed // 60)
        time_str = f" ({minutes}m elapsed)" if minutes > 0 else ""
        last_str = f" Last: {self._last_message}" if self._last_message else ""
        return ProgressEvent(
            kind="still_working",
            message=f"Still working...{time_str}{last_str}",
            elapsed_s=round(elapsed, 1),
        )

    async def _emit(self, event: ProgressEvent) -> None:
        self._event_count += 1
        if self._on_event is None:
            return
        try:
            await self._on_event(event)
        except Exception:
            logger.exception("%s: progress callback failed", self.name)

    async def _cleanup(self) -> None:
        """Cancel helper tasks.  Runs once per run, whichever path ends it."""
        if self._finished:
            return
        self._finished = True
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

    def _finalize(self, returncode: int, stderr_text: str) -> Response:
        text = self._text.strip()
        if self._terminated:
            return Response.failed("terminated", "Process was terminated before it finished", text)
        if self._interrupted:
            return Response.failed("interrupted", "Process was interrupted", text)
        if returncode == 0:
            return Response.ok(text)

        stderr_text = stderr_text.strip()
        preview = format_stderr_preview(stderr_text)
        logger.warning(
            "%s: exited with status %d%s",
            self.name,
            returncode,
            f": {preview}" if preview else "",
        )
        detail = stderr_text or f"Process exited with status {returncode}"
        return Response.failed("exit", detail, text)


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """Signal the subprocess's process group (it leads its own session)."""
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except (PermissionError, AttributeError):
        with contextlib.suppress(ProcessLookupError):
            proc.send_signal(sig)
