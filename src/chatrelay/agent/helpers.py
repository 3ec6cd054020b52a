"""Shared helper functions for backends and the process runner."""

from __future__ import annotations


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Return the last *max_lines* non-empty stderr lines, indented for display."""
    lines = [line for line in stderr_text.splitlines() if line.strip()]
    return "\n  ".join(lines[-max_lines:])


def format_elapsed(seconds: float) -> str:
    """Format a duration as '1m 22s' or '34.2s'."""
    if seconds >= 60:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs:02d}s"
    return f"{seconds:.1f}s"
