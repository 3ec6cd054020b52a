"""Session data model: progress events and send responses."""

from chatrelay.session.models import (
    ChatId,
    ErrorKind,
    ProgressEvent,
    ProgressKind,
    Question,
    QuestionOption,
    Response,
    TaskAction,
)

__all__ = [
    "ChatId",
    "ErrorKind",
    "ProgressEvent",
    "ProgressKind",
    "Question",
    "QuestionOption",
    "Response",
    "TaskAction",
]
