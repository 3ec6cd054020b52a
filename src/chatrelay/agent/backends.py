"""Backend adapters: translate send/resume intents into AI CLI invocations.

Each backend knows how to locate its executable, build the command line
for a new or resumed conversation, and parse one line of the CLI's
structured output into a :class:`ParsedLine`.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, ClassVar

from chatrelay.agent.parsing import (
    DEFAULT_TOOL_FORMATTER,
    ParsedLine,
    ToolFormatter,
    load_record,
    result_event,
    thinking_event,
    tool_event,
)
from chatrelay.agent.runner import Invocation

logger = logging.getLogger(__name__)

#: Directories searched for a CLI binary before falling back to ``PATH``.
_SEARCH_DIRS = ("~/.local/bin", "/usr/local/bin", "/opt/homebrew/bin")

#: Max V8 heap size (MB) for Node.js CLI subprocesses (e.g. Claude CLI).
_NODE_HEAP_LIMIT_MB = 2048

#: Terminal type given to CLIs when the host has none.
_DEFAULT_TERM = "xterm-256color"


def find_executable(command: str, explicit: str | None = None) -> str:
    """Locate *command*, preferring an explicitly configured path.

    Search order: *explicit*, the common install directories, then ``PATH``.
    Falls back to the bare command name so a missing binary surfaces as a
    spawn failure rather than here.
    """
    if explicit:
        path = Path(explicit).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
        found = shutil.which(explicit)
        if found:
            return found
        logger.warning("Configured executable %r is not usable, searching for %r", explicit, command)

    for directory in _SEARCH_DIRS:
        candidate = Path(directory).expanduser() / command
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)

    return shutil.which(command) or command


class Backend:
    """Base class for AI CLI backends.

    Subclasses set the class attributes and implement :meth:`build_new`,
    :meth:`build_resume` and :meth:`parse_line`.
    """

    name: ClassVar[str] = ""
    command: ClassVar[str] = ""
    label: ClassVar[str] = ""
    install_hint: ClassVar[str | None] = None

    def __init__(
        self,
        executable: str | None = None,
        working_dir: str | Path | None = None,
        system_prompt_file: str | Path | None = None,
        formatter: ToolFormatter | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.executable = find_executable(self.command, executable)
        self.working_dir = str(Path(working_dir).expanduser()) if working_dir else os.getcwd()
        self.formatter = formatter or DEFAULT_TOOL_FORMATTER
        self.warnings: list[str] = []
        self._extra_env = dict(extra_env or {})
        self.system_prompt = self._load_system_prompt(system_prompt_file)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(executable={self.executable!r})"

    # ------------------------------------------------------------------ #
    # Backend protocol
    # ------------------------------------------------------------------ #

    def build_new(self, conversation_id: str, text: str) -> Invocation:
        """Invocation that starts a new conversation."""
        raise NotImplementedError

    def build_resume(self, conversation_id: str, text: str) -> Invocation:
        """Invocation that continues *conversation_id*."""
        raise NotImplementedError

    def parse_line(self, line: str, accumulated: str) -> ParsedLine:
        """Parse one output line; never raises on malformed input."""
        raise NotImplementedError

    # ------------------------------------------------------------------ #
    # Shared helpers
    # ------------------------------------------------------------------ #

    def _load_system_prompt(self, path: str | Path | None) -> str | None:
        if path is None:
            return None
        prompt_path = Path(path).expanduser()
        try:
            text = prompt_path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as exc:
            warning = (
                f"System prompt file {prompt_path} is not readable ({exc}); "
                "continuing without it"
            )
            logger.warning("%s: %s", self.name, warning)
            self.warnings.append(warning)
            return None
        logger.info("%s: using system prompt from %s", self.name, prompt_path)
        return text or None

    def environment(self) -> dict[str, str]:
        """Environment for the CLI subprocess."""
        env = dict(os.environ)
        env["HOME"] = str(Path.home())
        env.setdefault("TERM", _DEFAULT_TERM)
        env.update(self._extra_env)
        return env

    def _invocation(self, args: list[str], input_text: str) -> Invocation:
        return Invocation(
            executable=self.executable,
            args=tuple(args),
            parse_line=self.parse_line,
            input_text=input_text,
            cwd=self.working_dir,
            env=self.environment(),
            label=self.label,
            install_hint=self.install_hint,
        )


# ------------------------------------------------------------------ #
# Claude Code CLI
# ------------------------------------------------------------------ #


class ClaudeBackend(Backend):
    """Claude Code CLI in print mode with verbose ``stream-json`` output.

    Output records:

    * ``system``      init record carrying ``session_id``.
    * ``assistant``   API message whose ``message.content[]`` holds
      ``text``, ``tool_use`` and ``thinking`` blocks.
    * ``user``        tool results fed back to the model (ignored).
    * ``result``      final aggregated answer in ``result``.
    """

    name = "claude"
    command = "claude"
    label = "Claude CLI"
    install_hint = "Install: npm install -g @anthropic-ai/claude-code"

    _BASE_ARGS = (
        "-p",
        "--dangerously-skip-permissions",
        "--output-format",
        "stream-json",
        "--verbose",
    )

    def build_new(self, conversation_id: str, text: str) -> Invocation:
        return self._invocation(
            [*self._common_args(), "--session-id", conversation_id], text
        )

    def build_resume(self, conversation_id: str, text: str) -> Invocation:
        return self._invocation(
            [*self._common_args(), "--resume", conversation_id], text
        )

    def _common_args(self) -> list[str]:
        args = list(self._BASE_ARGS)
        if self.system_prompt:
            args.extend(["--append-system-prompt", self.system_prompt])
        return args

    def environment(self) -> dict[str, str]:
        # Cap the Node.js heap so one runaway CLI cannot exhaust the host.
        env = super().environment()
        node_opts = env.get("NODE_OPTIONS", "")
        if "--max-old-space-size" not in node_opts:
            separator = " " if node_opts else ""
            env["NODE_OPTIONS"] = f"{node_opts}{separator}--max-old-space-size={_NODE_HEAP_LIMIT_MB}"
        return env

    def parse_line(self, line: str, accumulated: str) -> ParsedLine:
        record = load_record(line)
        if record is None:
            return ParsedLine(None, accumulated)

        record_type = record.get("type")

        if record_type == "system":
            session_id = record.get("session_id")
            return ParsedLine(
                None,
                accumulated,
                session_id if isinstance(session_id, str) and session_id else None,
            )

        if record_type == "assistant":
            message = record.get("message")
            blocks = message.get("content") if isinstance(message, dict) else None
            if not isinstance(blocks, list):
                return ParsedLine(None, accumulated)
            return self._parse_content_blocks(blocks, accumulated)

        if record_type == "result":
            result = record.get("result")
            text = result if isinstance(result, str) and result else accumulated
            return ParsedLine(result_event(), text)

        return ParsedLine(None, accumulated)

    def _parse_content_blocks(self, blocks: list[Any], accumulated: str) -> ParsedLine:
        """Collect text blocks and surface the first tool or thinking block."""
        event = None
        text = accumulated
        for block in blocks:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                chunk = block.get("text")
                if isinstance(chunk, str) and chunk:
                    text = f"{text}\n\n{chunk}" if text else chunk
            elif block_type == "tool_use" and event is None:
                tool_name = block.get("name")
                if isinstance(tool_name, str) and tool_name:
                    event = tool_event(tool_name, block.get("input"), self.formatter)
            elif block_type in ("thinking", "redacted_thinking") and event is None:
                event = thinking_event()
        return ParsedLine(event, text)


# ------------------------------------------------------------------ #
# OpenAI Codex CLI
# ------------------------------------------------------------------ #


class CodexBackend(Backend):
    """OpenAI Codex CLI ``exec --json`` output.

    Codex versions disagree on field names, so both shapes are accepted:

    * item events: ``thread.started`` (``thread_id``), ``item.started`` /
      ``item.completed`` wrapping ``command_execution``, ``file_change``,
      ``mcp_tool_call``, ``web_search``, ``todo_list``, ``reasoning`` and
      ``agent_message`` items, plus ``turn.failed`` / ``error``.
    * flat events: ``function_call`` / ``tool_call`` (``name`` or
      ``function.name``), ``thinking`` / ``reasoning``, ``message`` with
      content blocks, ``assistant`` with ``text``, and ``result`` / ``done``
      / ``complete`` carrying ``output``, ``text`` or ``content``.

    Lines that are not JSON objects are plain-text output and are appended
    to the result.
    """

    name = "codex"
    command = "codex"
    label = "Codex CLI"
    install_hint = "Install: npm install -g @openai/codex"

    _FLAGS = ("--json", "--full-auto")

    def build_new(self, conversation_id: str, text: str) -> Invocation:
        prompt = f"{self.system_prompt}\n\n{text}" if self.system_prompt else text
        return self._invocation(["exec", *self._FLAGS], prompt)

    def build_resume(self, conversation_id: str, text: str) -> Invocation:
        return self._invocation(["exec", "resume", conversation_id, *self._FLAGS], text)

    def parse_line(self, line: str, accumulated: str) -> ParsedLine:
        record = load_record(line)
        if record is None:
            stripped = line.strip()
            if stripped and not stripped.startswith("{"):
                return ParsedLine(None, f"{accumulated}{line}\n")
            return ParsedLine(None, accumulated)

        record_type = record.get("type")

        if record_type == "thread.started":
            thread_id = record.get("thread_id")
            return ParsedLine(
                None,
                accumulated,
                thread_id if isinstance(thread_id, str) and thread_id else None,
            )

        if record_type in ("item.started", "item.completed"):
            item = record.get("item")
            if not isinstance(item, dict):
                return ParsedLine(None, accumulated)
            return self._parse_item(item, accumulated, completed=record_type == "item.completed")

        if record_type in ("turn.failed", "error"):
            error = record.get("error", record.get("message"))
            if isinstance(error, dict):
                error = error.get("message")
            if error:
                logger.warning("%s: Codex reported an error: %s", self.name, error)
            return ParsedLine(None, accumulated)

        if record_type in ("function_call", "tool_call"):
            function = record.get("function")
            function = function if isinstance(function, dict) else {}
            tool_name = record.get("name") or function.get("name") or "unknown tool"
            arguments = record.get("arguments") or function.get("arguments") or record.get("input")
            return ParsedLine(tool_event(str(tool_name), arguments, self.formatter), accumulated)

        if record_type in ("thinking", "reasoning"):
            return ParsedLine(thinking_event(), accumulated)

        if record_type == "message":
            return self._parse_message(record.get("content"), accumulated)

        if record_type == "assistant":
            text = record.get("text")
            if isinstance(text, str) and text:
                return ParsedLine(None, accumulated + text)
            return ParsedLine(None, accumulated)

        if record_type in ("result", "done", "complete"):
            payload = record.get("output") or record.get("text") or record.get("content")
            text = payload if isinstance(payload, str) and payload else accumulated
            return ParsedLine(result_event(), text)

        return ParsedLine(None, accumulated)

    def _parse_item(self, item: dict[str, Any], accumulated: str, *, completed: bool) -> ParsedLine:
        item_type = item.get("type")

        # Tool-like items are reported when they start; the completion is noise.
        if not completed:
            if item_type == "command_execution":
                return ParsedLine(
                    tool_event("command_execution", {"command": item.get("command")}, self.formatter),
                    accumulated,
                )
            if item_type == "mcp_tool_call":
                tool_name = item.get("tool")
                return ParsedLine(
                    tool_event(
                        tool_name if isinstance(tool_name, str) and tool_name else "mcp",
                        item.get("arguments"),
                        self.formatter,
                    ),
                    accumulated,
                )
            if item_type == "web_search":
                return ParsedLine(
                    tool_event("web_search", {"query": item.get("query")}, self.formatter),
                    accumulated,
                )
            return ParsedLine(None, accumulated)

        if item_type == "agent_message":
            text = item.get("text")
            # The last agent message is the final answer.
            if isinstance(text, str) and text:
                return ParsedLine(None, text)
        elif item_type == "reasoning":
            return ParsedLine(thinking_event(), accumulated)
        elif item_type == "file_change":
            changes = item.get("changes")
            path = None
            if isinstance(changes, list) and changes and isinstance(changes[0], dict):
                path = changes[0].get("path")
            return ParsedLine(
                tool_event("file_change", {"path": path}, self.formatter),
                accumulated,
            )
        elif item_type == "todo_list":
            return ParsedLine(
                tool_event("TodoWrite", {"todos": item.get("items")}, self.formatter),
                accumulated,
            )
        elif item_type == "error":
            logger.warning("%s: Codex item error: %s", self.name, item.get("message", item.get("text")))

        return ParsedLine(None, accumulated)

    def _parse_message(self, content: object, accumulated: str) -> ParsedLine:
        if not content:
            return ParsedLine(None, accumulated)
        blocks = content if isinstance(content, list) else [content]
        event = None
        text = accumulated
        for block in blocks:
            if isinstance(block, str):
                text += block
            elif isinstance(block, dict):
                block_type = block.get("type")
                if block_type == "text" and isinstance(block.get("text"), str):
                    text += block["text"]
                elif block_type in ("tool_use", "function_call") and event is None:
                    tool_name = block.get("name") or "unknown tool"
                    event = tool_event(
                        str(tool_name),
                        block.get("input") or block.get("arguments"),
                        self.formatter,
                    )
        return ParsedLine(event, text)


_BACKEND_MAP: dict[str, type[Backend]] = {
    ClaudeBackend.name: ClaudeBackend,
    CodexBackend.name: CodexBackend,
}


def create_backend(name: str, **kwargs: Any) -> Backend:
    """Instantiate the backend registered under *name*.

    Raises ``ValueError`` for unknown backends.
    """
    backend_cls = _BACKEND_MAP.get(name)
    if backend_cls is None:
        known = ", ".join(sorted(_BACKEND_MAP))
        msg = f"Unknown backend {name!r} -- supported backends: {known}"
        raise ValueError(msg)
    return backend_cls(**kwargs)
