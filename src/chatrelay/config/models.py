"""Pydantic v2 models for chatrelay.yaml configuration."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.constants import (
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_QUIET_INTERVAL,
    DEFAULT_SWEEP_INTERVAL,
)


class RelayConfig(BaseModel):
    """Top-level chatrelay.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    backend: Literal["claude", "codex"] = Field(
        default="claude",
        description="AI CLI that serves every chat",
    )
    executable: str | None = Field(
        default=None,
        description="Explicit path to the backend executable",
    )
    working_dir: str | None = Field(
        default=None,
        description="Working directory for backend subprocesses (defaults to the current directory)",
    )
    system_prompt_file: str | None = Field(
        default=None,
        description="File whose contents are appended to the backend's system prompt",
    )
    idle_timeout: float = Field(
        default=DEFAULT_IDLE_TIMEOUT,
        gt=0,
        description="Seconds of inactivity before a session is ended",
    )
    sweep_interval: float = Field(
        default=DEFAULT_SWEEP_INTERVAL,
        gt=0,
        description="Seconds between idle sweeps",
    )
    quiet_interval: float = Field(
        default=DEFAULT_QUIET_INTERVAL,
        gt=0,
        description="Seconds without output before a still-working notice",
    )

    @field_validator("executable", "working_dir", "system_prompt_file")
    @classmethod
    def _blank_is_unset(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value
