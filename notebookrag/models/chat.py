"""Chat session and message models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from notebookrag.models.document import utc_now
from notebookrag.models.rag import Citation

_TITLE_LENGTH = 50


class ChatRole(str, Enum):  # noqa: UP042 - StrEnum requires Python 3.11+
    USER = "user"
    ASSISTANT = "assistant"


class ChatSession(BaseModel):
    """A conversation scoped to one notebook."""

    model_config = ConfigDict(frozen=True)

    id: str
    notebook_id: str
    title: str = ""
    created_at: datetime = Field(default_factory=utc_now)

    @staticmethod
    def title_from_message(message: str) -> str:
        """Session title: the first 50 characters, with '...' when truncated."""
        text = " ".join(message.split())
        if len(text) > _TITLE_LENGTH:
            return text[:_TITLE_LENGTH] + "..."
        return text


class ChatMessage(BaseModel):
    """One turn of a conversation.

    Assistant messages record the chunks used as context in ``citations``.
    ``incomplete`` marks a reply whose generation was cancelled or failed
    mid-stream; its ``content`` holds what was streamed before that point.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    role: ChatRole
    content: str
    citations: list[Citation] = Field(default_factory=list)
    incomplete: bool = False
    created_at: datetime = Field(default_factory=utc_now)
