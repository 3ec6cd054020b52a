"""Event parsing primitives shared by every backend.

Backends turn one line of subprocess output into a :class:`ParsedLine`.
Tool invocations are summarised through a :class:`ToolFormatter`, a
lookup table from lower-cased tool name to a formatting function, so new
tool vocabularies are added by registering entries rather than editing a
conditional.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from chatrelay.session.models import (
    ProgressEvent,
    Question,
    QuestionOption,
    TaskAction,
)

logger = logging.getLogger(__name__)

#: Maximum length of a command shown in a ``Running:`` message.
_MAX_COMMAND_CHARS = 100

THINKING_MESSAGE = "Thinking..."

ToolFormatFn = Callable[[dict[str, Any]], str]
SpecialToolFn = Callable[[str, dict[str, Any]], ProgressEvent]


@dataclass(frozen=True)
class ParsedLine:
    """Outcome of parsing one output line.

    ``text`` is the new value of the caller's result accumulator (the
    previous value when the line contributes nothing).
    """

    event: ProgressEvent | None
    text: str
    conversation_id: str | None = None

    @property
    def is_result(self) -> bool:
        return self.event is not None and self.event.kind == "result"


def load_record(line: str) -> dict[str, Any] | None:
    """Decode *line* as a JSON object, returning ``None`` for anything else."""
    try:
        record = json.loads(line)
    except (ValueError, RecursionError):
        logger.debug("skipping non-JSON line: %s", line[:200])
        return None
    if not isinstance(record, dict):
        return None
    return record


def coerce_input(raw: object) -> dict[str, Any]:
    """Normalise tool arguments that may arrive as a dict or a JSON string."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        decoded = load_record(raw)
        if decoded is not None:
            return decoded
    return {}


def truncate(text: str, limit: int = _MAX_COMMAND_CHARS) -> str:
    """Cut *text* to *limit* characters, marking the cut with ``...``."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _first_str(tool_input: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


# ------------------------------------------------------------------ #
# Tool formatter table
# ------------------------------------------------------------------ #


class ToolFormatter:
    """Maps tool names to functions producing a one-line activity summary.

    Lookups are case-insensitive; unknown tools fall back to
    ``"Using <tool-name>..."``.
    """

    def __init__(self) -> None:
        self._formatters: dict[str, ToolFormatFn] = {}

    def register(self, *names: str) -> Callable[[ToolFormatFn], ToolFormatFn]:
        """Decorator registering a formatter under one or more tool names."""

        def _decorator(fn: ToolFormatFn) -> ToolFormatFn:
            self.add(names, fn)
            return fn

        return _decorator

    def add(self, names: tuple[str, ...] | list[str], fn: ToolFormatFn) -> None:
        for name in names:
            self._formatters[name.lower()] = fn

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._formatters

    def format(self, tool_name: str, tool_input: dict[str, Any]) -> str:
        fn = self._formatters.get(tool_name.lower())
        if fn is None:
            return f"Using {tool_name}..."
        return fn(tool_input)

    def copy(self) -> ToolFormatter:
        clone = ToolFormatter()
        clone._formatters = dict(self._formatters)
        return clone


def _build_default_formatter() -> ToolFormatter:
    table = ToolFormatter()

    @table.register("bash", "shell", "command_execution", "local_shell")
    def _running(tool_input: dict[str, Any]) -> str:
        command = tool_input.get("command")
        if isinstance(command, list):
            command = " ".join(str(part) for part in command)
        if isinstance(command, str) and command:
            return f"Running: {truncate(command)}"
        return "Running command..."

    @table.register("read", "read_file")
    def _reading(tool_input: dict[str, Any]) -> str:
        path = _first_str(tool_input, "file_path", "path")
        return f"Reading: {path}" if path else "Reading file..."

    @table.register("write", "write_file")
    def _writing(tool_input: dict[str, Any]) -> str:
        path = _first_str(tool_input, "file_path", "path")
        return f"Writing: {path}" if path else "Writing file..."

    @table.register(
        "edit", "edit_file", "multiedit", "notebookedit", "apply_patch", "file_change"
    )
    def _editing(tool_input: dict[str, Any]) -> str:
        path = _first_str(tool_input, "file_path", "notebook_path", "path")
        return f"Editing: {path}" if path else "Editing file..."

    @table.register("glob", "list_dir", "ls")
    def _listing(tool_input: dict[str, Any]) -> str:
        target = _first_str(tool_input, "path", "pattern")
        return f"Listing: {target}" if target else "Listing directory..."

    @table.register("grep", "search")
    def _searching(tool_input: dict[str, Any]) -> str:
        pattern = _first_str(tool_input, "pattern", "query")
        if not pattern:
            return "Searching content..."
        path = _first_str(tool_input, "path")
        where = f" in {path}" if path else ""
        return f'Searching for: "{pattern}"{where}'

    @table.register("webfetch", "web_fetch")
    def _fetching(tool_input: dict[str, Any]) -> str:
        url = _first_str(tool_input, "url")
        return f"Fetching: {url}" if url else "Fetching page..."

    @table.register("websearch", "web_search")
    def _web_searching(tool_input: dict[str, Any]) -> str:
        query = _first_str(tool_input, "query")
        return f"Searching web: {query}" if query else "Searching web..."

    @table.register("task", "agent")
    def _delegating(tool_input: dict[str, Any]) -> str:
        description = _first_str(tool_input, "description", "prompt")
        return f"Delegating: {truncate(description)}" if description else "Delegating..."

    return table


#: Formatter table used by backends unless one is injected.
DEFAULT_TOOL_FORMATTER = _build_default_formatter()


# ------------------------------------------------------------------ #
# Tools with dedicated event kinds
# ------------------------------------------------------------------ #


def _plan_enter(name: str, tool_input: dict[str, Any]) -> ProgressEvent:
    return ProgressEvent(kind="plan_enter", message="Entering plan mode", tool=name)


def _plan_exit(name: str, tool_input: dict[str, Any]) -> ProgressEvent:
    return ProgressEvent(kind="plan_exit", message="Plan ready, leaving plan mode", tool=name)


def _task_create(name: str, tool_input: dict[str, Any]) -> ProgressEvent:
    subject = _first_str(tool_input, "subject", "title", "description")
    message = f"Creating task: {subject}" if subject else "Creating task..."
    return ProgressEvent(
        kind="task_update",
        message=message,
        tool=name,
        task=TaskAction(action="create", subject=subject),
    )


def _task_update(name: str, tool_input: dict[str, Any]) -> ProgressEvent:
    subject = _first_str(tool_input, "subject", "status")
    message = f"Updating task: {subject}" if subject else "Updating task..."
    return ProgressEvent(
        kind="task_update",
        message=message,
        tool=name,
        task=TaskAction(action="update", subject=subject),
    )


def _task_list(name: str, tool_input: dict[str, Any]) -> ProgressEvent:
    return ProgressEvent(
        kind="task_update",
        message="Checking task list...",
        tool=name,
        task=TaskAction(action="list"),
    )


def _todo_write(name: str, tool_input: dict[str, Any]) -> ProgressEvent:
    todos = tool_input.get("todos")
    count = len(todos) if isinstance(todos, list) else 0
    subject = f"{count} items" if count else None
    message = f"Updating todo list ({subject})" if subject else "Updating todo list..."
    return ProgressEvent(
        kind="task_update",
        message=message,
        tool=name,
        task=TaskAction(action="plan", subject=subject),
    )


def parse_questions(raw: object) -> list[Question]:
    """Parse an ``AskUserQuestion``-style question list, skipping bad entries."""
    if not isinstance(raw, list):
        return []
    questions: list[Question] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        text = entry.get("question")
        if not isinstance(text, str) or not text:
            continue
        options: list[QuestionOption] = []
        raw_options = entry.get("options")
        for option in raw_options if isinstance(raw_options, list) else []:
            if isinstance(option, str) and option:
                options.append(QuestionOption(label=option))
            elif isinstance(option, dict) and isinstance(option.get("label"), str):
                description = option.get("description")
                options.append(
                    QuestionOption(
                        label=option["label"],
                        description=description if isinstance(description, str) else None,
                    )
                )
        header = entry.get("header")
        questions.append(
            Question(
                question=text,
                header=header if isinstance(header, str) else None,
                options=options,
                multi_select=bool(entry.get("multiSelect", entry.get("multi_select", False))),
            )
        )
    return questions


def _ask_user(name: str, tool_input: dict[str, Any]) -> ProgressEvent:
    questions = parse_questions(tool_input.get("questions"))
    if not questions:
        # Single-question shape: {"question": ..., "options": [...]}
        questions = parse_questions([tool_input])
    message = questions[0].question if questions else "Waiting for your input..."
    return ProgressEvent(
        kind="user_input_needed",
        message=message,
        tool=name,
        questions=questions,
    )


_SPECIAL_TOOLS: dict[str, SpecialToolFn] = {
    "enterplanmode": _plan_enter,
    "exitplanmode": _plan_exit,
    "taskcreate": _task_create,
    "taskupdate": _task_update,
    "tasklist": _task_list,
    "todowrite": _todo_write,
    "askuserquestion": _ask_user,
    "request_user_input": _ask_user,
}


def tool_event(
    tool_name: str,
    tool_input: object,
    formatter: ToolFormatter = DEFAULT_TOOL_FORMATTER,
) -> ProgressEvent:
    """Build the progress event for one tool invocation."""
    args = coerce_input(tool_input)
    special = _SPECIAL_TOOLS.get(tool_name.lower())
    if special is not None:
        return special(tool_name, args)
    return ProgressEvent(
        kind="tool_use",
        message=formatter.format(tool_name, args),
        tool=tool_name,
    )


def thinking_event() -> ProgressEvent:
    return ProgressEvent(kind="thinking", message=THINKING_MESSAGE)


def result_event() -> ProgressEvent:
    return ProgressEvent(kind="result", message="Completed")
