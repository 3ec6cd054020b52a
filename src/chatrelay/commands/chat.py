"""chatrelay chat: drive a relay session from the terminal."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

import click

from chatrelay.agent.backends import Backend, create_backend
from chatrelay.agent.helpers import format_elapsed
from chatrelay.config.models import RelayConfig
from chatrelay.config.parser import ConfigError, load_config
from chatrelay.reaper import IdleReaper
from chatrelay.registry import SessionRegistry
from chatrelay.session.models import ChatId, ProgressEvent, Response

logger = logging.getLogger(__name__)

#: Chat id used for the single terminal conversation.
LOCAL_CHAT: ChatId = "local"

#: Longest input line accepted from the terminal.
_MAX_INPUT_BYTES = 1_048_576

HELP_TEXT = """\
  /start                 start a new session
  /kill                  end the session and kill any running process
  /stop                  interrupt the running process, keep the session
  /status                show session state
  /image <path> [text]   send an image path with an optional caption
  /quit                  exit"""


@click.command()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def chat(config_file: str | None, verbose: bool) -> None:
    """Chat with the configured AI CLI from the terminal."""
    configure_logging(verbose)
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    backend = build_backend(config)
    for warning in backend.warnings:
        click.echo(f"Warning: {warning}", err=True)

    asyncio.run(_run_chat(config, backend))


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_backend(config: RelayConfig) -> Backend:
    return create_backend(
        config.backend,
        executable=config.executable,
        working_dir=config.working_dir,
        system_prompt_file=config.system_prompt_file,
    )


# ------------------------------------------------------------------ #
# Host callbacks
# ------------------------------------------------------------------ #


async def print_progress(chat_id: ChatId, event: ProgressEvent) -> None:
    click.echo(f"  … {event.message}")
    for question in event.questions or []:
        if question.question != event.message:
            click.echo(f"    {question.question}")
        for index, option in enumerate(question.options, start=1):
            suffix = f" ({option.description})" if option.description else ""
            click.echo(f"    {index}. {option.label}{suffix}")


async def print_session_end(chat_id: ChatId, reason: str) -> None:
    click.echo(f"Session ended: {reason}")


def print_response(response: Response, elapsed: float) -> None:
    if response.succeeded:
        click.echo(response.text or "(no output)")
        click.echo(click.style(f"  done in {format_elapsed(elapsed)}", dim=True))
        return
    click.echo(f"Error: {response.failure_detail}", err=True)
    if response.text:
        click.echo(response.text)


# ------------------------------------------------------------------ #
# Session runner
# ------------------------------------------------------------------ #


async def _run_chat(config: RelayConfig, backend: Backend) -> None:
    registry = SessionRegistry(
        backend,
        on_progress=print_progress,
        on_session_end=print_session_end,
        idle_timeout=config.idle_timeout,
        quiet_interval=config.quiet_interval,
    )
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    reaper = IdleReaper(registry, shutdown_event, interval=config.sweep_interval)
    await reaper.start()

    click.echo(f"\n  chatrelay -- {backend.label} ({backend.executable})")
    click.echo("  Type /start to begin, /help for commands.\n")

    pending: set[asyncio.Task[None]] = set()
    try:
        await _repl_loop(registry, shutdown_event, pending)
    finally:
        shutdown_event.set()
        await reaper.stop()
        await registry.shutdown()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


async def _repl_loop(
    registry: SessionRegistry,
    shutdown_event: asyncio.Event,
    pending: set[asyncio.Task[None]],
) -> None:
    """Read lines until ``/quit``, EOF or shutdown; dispatch each one."""
    readline = await _open_stdin()
    shutdown_wait = asyncio.create_task(shutdown_event.wait())
    try:
        while not shutdown_event.is_set():
            click.echo(prompt_for(registry), nl=False)
            read = asyncio.ensure_future(readline())
            await asyncio.wait({read, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED)
            if not read.done():
                read.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await read
                break

            raw = read.result()
            if not raw:
                break
            line = raw.decode(errors="replace").strip()
            if not line:
                continue

            if line.startswith("/"):
                if await handle_command(line, registry, pending):
                    break
                continue

            _dispatch(registry.send(LOCAL_CHAT, line), pending)
    finally:
        shutdown_wait.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await shutdown_wait


def _dispatch(send: Awaitable[Response], pending: set[asyncio.Task[None]]) -> None:
    """Run a send in the background so ``/stop`` stays responsive."""

    async def _run() -> None:
        started = time.monotonic()
        response = await send
        print_response(response, time.monotonic() - started)

    task = asyncio.create_task(_run())
    pending.add(task)
    task.add_done_callback(pending.discard)


async def handle_command(
    line: str,
    registry: SessionRegistry,
    pending: set[asyncio.Task[None]],
) -> bool:
    """Process a slash command. Returns ``True`` if the REPL should exit."""
    parts = line.split(None, 1)
    cmd = parts[0].lower()
    rest = parts[1].strip() if len(parts) > 1 else ""

    if cmd in ("/quit", "/exit"):
        return True

    if cmd == "/help":
        click.echo(HELP_TEXT)
        return False

    if cmd == "/start":
        if registry.exists(LOCAL_CHAT):
            click.echo("Session already active. Use /kill to end it first.")
        else:
            session = registry.create(LOCAL_CHAT)
            click.echo(f"Session started ({session.conversation_id}).")
        return False

    if cmd == "/kill":
        if registry.terminate(LOCAL_CHAT):
            click.echo("Session ended.")
        else:
            click.echo("No active session.")
        return False

    if cmd == "/stop":
        if registry.interrupt(LOCAL_CHAT):
            click.echo("Interrupted.")
        else:
            click.echo("Nothing to interrupt.")
        return False

    if cmd == "/status":
        session = registry.get(LOCAL_CHAT)
        if session is None:
            click.echo("Status: no session")
        else:
            idle = time.monotonic() - session.last_activity
            click.echo(
                f"Status: {session.state.value} | conversation {session.conversation_id}"
                f" | idle {format_elapsed(idle)}"
            )
        return False

    if cmd == "/image":
        if not rest:
            click.echo("Usage: /image <path> [caption]")
            return False
        path_text, _, caption = rest.partition(" ")
        path = Path(path_text).expanduser()
        if not path.is_file():
            click.echo(f"Image not found: {path}")
            return False
        _dispatch(
            registry.send_image(LOCAL_CHAT, path.resolve(), caption.strip() or None),
            pending,
        )
        return False

    click.echo(f"Unknown command: {cmd}")
    return False


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def prompt_for(registry: SessionRegistry) -> str:
    """Input prompt showing whether the local session exists or is busy."""
    session = registry.get(LOCAL_CHAT)
    if session is None:
        return "(no session) > "
    if session.is_busy:
        return "(working) > "
    return "> "


async def _open_stdin() -> Callable[[], Awaitable[bytes]]:
    """Async line reader over stdin; empty bytes means EOF.

    Pipes and terminals are read through the event loop.  A regular file
    redirected to stdin cannot be, so it is read in the default executor.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=_MAX_INPUT_BYTES)
    try:
        await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer
        )
    except ValueError:
        return lambda: loop.run_in_executor(None, sys.stdin.buffer.readline)
    return reader.readline
