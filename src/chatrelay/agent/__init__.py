"""AI CLI backends, output parsing and the subprocess runner."""

from chatrelay.agent.backends import (
    Backend,
    ClaudeBackend,
    CodexBackend,
    create_backend,
    find_executable,
)
from chatrelay.agent.parsing import (
    DEFAULT_TOOL_FORMATTER,
    ParsedLine,
    ToolFormatter,
    tool_event,
)
from chatrelay.agent.runner import Invocation, LineBuffer, ProcessRunner

__all__ = [
    "DEFAULT_TOOL_FORMATTER",
    "Backend",
    "ClaudeBackend",
    "CodexBackend",
    "Invocation",
    "LineBuffer",
    "ParsedLine",
    "ProcessRunner",
    "ToolFormatter",
    "create_backend",
    "find_executable",
    "tool_event",
]
