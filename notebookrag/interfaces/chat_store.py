"""Abstract base class for chat session persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod

from notebookrag.models.chat import ChatMessage, ChatSession


# Concrete implementation: SQLiteChatStore (notebookrag/providers/storage/)
class IChatStore(ABC):
    """Contract for chat sessions and their ordered messages."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create backing tables if needed."""

    @abstractmethod
    async def create_session(self, session: ChatSession) -> ChatSession:
        """Insert a new session."""

    @abstractmethod
    async def get_session(self, session_id: str) -> ChatSession:
        """Return a session or raise ``NotFoundError``."""

    @abstractmethod
    async def list_sessions(self, notebook_id: str) -> list[ChatSession]:
        """Sessions of a notebook, newest first."""

    @abstractmethod
    async def add_message(self, message: ChatMessage) -> ChatMessage:
        """Append a message to its session."""

    @abstractmethod
    async def get_messages(self, session_id: str, limit: int | None = None) -> list[ChatMessage]:
        """Messages oldest first; with *limit*, only the most recent *limit*."""
