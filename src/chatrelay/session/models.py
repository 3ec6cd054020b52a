"""Pydantic v2 models for progress events and send responses."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

#: Opaque, stable identifier of a remote conversation.
ChatId = int | str

ProgressKind = Literal[
    "tool_use",
    "thinking",
    "still_working",
    "plan_enter",
    "plan_exit",
    "task_update",
    "user_input_needed",
    "result",
]

ErrorKind = Literal[
    "no_session",
    "busy",
    "spawn",
    "exit",
    "terminated",
    "interrupted",
]


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class QuestionOption(_FrozenModel):
    """One selectable answer offered to the user."""

    label: str = Field(description="Short option label")
    description: str | None = Field(
        default=None,
        description="Optional explanation shown next to the label",
    )


class Question(_FrozenModel):
    """A question the subprocess wants the user to answer."""

    question: str = Field(description="Question text")
    header: str | None = Field(default=None, description="Short heading")
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(
        default=False,
        description="Whether more than one option may be chosen",
    )


class TaskAction(_FrozenModel):
    """Task-list activity reported by the subprocess."""

    action: Literal["create", "update", "list", "plan"] = Field(
        description="What happened to the task list",
    )
    subject: str | None = Field(
        default=None,
        description="Task subject or status, when known",
    )


class ProgressEvent(_FrozenModel):
    """Interim notification of subprocess activity, emitted once."""

    kind: ProgressKind = Field(description="Event category")
    message: str = Field(description="Human-readable summary")
    tool: str | None = Field(
        default=None,
        description="Tool name for tool_use events",
    )
    questions: list[Question] | None = Field(
        default=None,
        description="Parsed questions for user_input_needed events",
    )
    task: TaskAction | None = Field(
        default=None,
        description="Action and subject for task_update events",
    )
    elapsed_s: float | None = Field(
        default=None,
        description="Wall-clock seconds since spawn for still_working events",
    )


class Response(_FrozenModel):
    """Terminal result of one message send."""

    succeeded: bool
    text: str = Field(default="", description="Accumulated natural-language output")
    failure_detail: str | None = Field(
        default=None,
        description="Why the send failed (only when succeeded is false)",
    )
    error_kind: ErrorKind | None = Field(
        default=None,
        description="Failure category (only when succeeded is false)",
    )

    @model_validator(mode="after")
    def _failure_fields_match_outcome(self) -> Response:
        if self.succeeded:
            if self.failure_detail is not None or self.error_kind is not None:
                msg = "A successful response cannot carry failure details"
                raise ValueError(msg)
        elif self.failure_detail is None or self.error_kind is None:
            msg = "A failed response requires failure_detail and error_kind"
            raise ValueError(msg)
        return self

    @classmethod
    def ok(cls, text: str) -> Response:
        return cls(succeeded=True, text=text)

    @classmethod
    def failed(cls, kind: ErrorKind, detail: str, text: str = "") -> Response:
        return cls(succeeded=False, text=text, failure_detail=detail, error_kind=kind)
