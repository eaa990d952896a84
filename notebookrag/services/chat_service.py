"""RAG-grounded chat over a notebook's documents.

Each reply follows the retrieval-augmented pattern:

  1. SESSION  -- load the session, or create it titled from the first
                 message.
  2. PERSIST  -- store the user's message before anything can fail.
  3. REWRITE  -- short follow-ups ("what about its budget?") are prefixed
                 with the previous user turn so retrieval has a subject.
  4. RETRIEVE -- top-k chunks from the notebook, numbered for citation.
  5. STREAM   -- the system prompt, numbered context and recent turns go
                 to :meth:`ILLMProvider.stream`; fragments are buffered as
                 they are yielded to the caller.
  6. PERSIST  -- the assistant message is stored with its citations when
                 the stream ends, or with ``incomplete=True`` when it is
                 cancelled or the provider fails mid-stream.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING

import structlog

from notebookrag.models.chat import ChatMessage, ChatRole, ChatSession
from notebookrag.models.rag import Citation, RetrievedChunk
from notebookrag.services.retriever import format_context
from notebookrag.utils.concurrency import get_throttle
from notebookrag.utils.errors import ConsistencyError, ValidationError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from notebookrag.interfaces.chat_store import IChatStore
    from notebookrag.interfaces.llm_provider import ILLMProvider
    from notebookrag.services.retriever import VectorRetriever

logger: structlog.BoundLogger = structlog.get_logger(logger_name=__name__)

_SYSTEM_PROMPT = (
    "You are a research assistant answering questions about the documents in "
    "the user's notebook.\n\n"
    "Guidelines:\n"
    "- Answer from the numbered context passages and cite them inline as [n]\n"
    "- If the passages don't contain the answer, say so plainly instead of guessing\n"
    "- Keep answers focused; use short paragraphs or lists where they help\n"
    "- Use the conversation history only to resolve what the question refers to"
)

_NO_CONTEXT = "(No passages in the notebook matched this question.)"

_FOLLOW_UP_PRONOUNS = frozenset(
    {
        "it", "its", "they", "them", "their", "theirs", "this", "that",
        "these", "those", "he", "him", "his", "she", "her", "hers",
    }
)
_SHORT_MESSAGE_WORDS = 4
_WORD_RE = re.compile(r"[A-Za-z']+")


def rewrite_query(message: str, previous_user_message: str | None) -> str:
    """Retrieval query for *message*, given the previous user turn.

    Short messages and messages that open with a pronoun are treated as
    follow-ups and prefixed with the previous user turn.
    """
    message = message.strip()
    if not previous_user_message:
        return message
    words = _WORD_RE.findall(message.lower())
    if len(words) < _SHORT_MESSAGE_WORDS or (words and words[0] in _FOLLOW_UP_PRONOUNS):
        return f"{previous_user_message.strip()} {message}"
    return message


class ChatStream:
    """Async iterator over one assistant reply.

    Iterating yields text fragments as the provider produces them.  The
    assistant message is persisted exactly once: when the provider stream
    ends, when :meth:`cancel` is called, or when the provider fails (in
    which case the error is re-raised after persisting).
    """

    def __init__(
        self,
        store: IChatStore,
        session: ChatSession,
        chunks: list[RetrievedChunk],
        fragments: AsyncIterator[str],
        provider_name: str,
    ) -> None:
        self._store = store
        self._session = session
        self._citations = [rc.to_citation() for rc in chunks]
        self._fragments = fragments
        self._provider_name = provider_name
        self._buffer: list[str] = []
        self._message_id = str(uuid.uuid4())
        self._message: ChatMessage | None = None
        self._stack: AsyncExitStack | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def message_id(self) -> str:
        return self._message_id

    @property
    def text(self) -> str:
        return "".join(self._buffer)

    @property
    def citations(self) -> list[Citation]:
        return list(self._citations)

    @property
    def incomplete(self) -> bool:
        return self._message is not None and self._message.incomplete

    @property
    def finished(self) -> bool:
        return self._message is not None

    @property
    def message(self) -> ChatMessage | None:
        """The persisted assistant message, once the stream has finished."""
        return self._message

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def __aiter__(self) -> ChatStream:
        return self

    async def __anext__(self) -> str:
        if self._message is not None:
            raise StopAsyncIteration
        if self._stack is None:
            self._stack = AsyncExitStack()
            await self._stack.enter_async_context(get_throttle(self._provider_name).slot())
        try:
            fragment = await self._fragments.__anext__()
        except StopAsyncIteration:
            await self._finish(incomplete=False)
            raise
        except asyncio.CancelledError:
            await self._close_fragments()
            await self._finish(incomplete=True)
            raise
        except Exception as exc:
            logger.warning(
                "chat_stream_failed",
                session_id=self._session.id,
                error=str(exc),
                partial_chars=len(self.text),
            )
            await self._finish(incomplete=True, exc=exc)
            raise
        self._buffer.append(fragment)
        return fragment

    async def cancel(self) -> ChatMessage | None:
        """Stop generation and persist the partial reply as incomplete."""
        if self._message is not None:
            return self._message
        await self._close_fragments()
        logger.info("chat_stream_cancelled", session_id=self._session.id, partial_chars=len(self.text))
        return await self._finish(incomplete=True)

    async def collect(self) -> ChatMessage:
        """Consume the remaining fragments and return the stored message."""
        async for _ in self:
            pass
        return self._message

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _close_fragments(self) -> None:
        aclose = getattr(self._fragments, "aclose", None)
        if aclose is not None:
            await aclose()

    async def _finish(self, incomplete: bool, exc: BaseException | None = None) -> ChatMessage:
        if self._stack is not None:
            stack, self._stack = self._stack, None
            if exc is not None:
                await stack.__aexit__(type(exc), exc, exc.__traceback__)
            else:
                await stack.aclose()
        message = ChatMessage(
            id=self._message_id,
            session_id=self._session.id,
            role=ChatRole.ASSISTANT,
            content=self.text,
            citations=self._citations,
            incomplete=incomplete,
        )
        self._message = await self._store.add_message(message)
        logger.info(
            "chat_reply_stored",
            session_id=self._session.id,
            message_id=message.id,
            incomplete=incomplete,
            chars=len(message.content),
            citations=len(message.citations),
        )
        return self._message


class ChatService:
    """Answers notebook questions with retrieval-grounded, streamed replies.

    Parameters
    ----------
    chat_store:
        Session and message persistence.
    retriever:
        Scoped retrieval over the notebook's chunks.
    llm:
        Provider used for streaming generation.
    top_k:
        Chunks retrieved per question.
    threshold:
        Retrieval threshold; ``None`` uses the retriever's default.
    history_turns:
        Prior messages included in the prompt.
    """

    def __init__(
        self,
        chat_store: IChatStore,
        retriever: VectorRetriever,
        llm: ILLMProvider,
        top_k: int = 5,
        threshold: float | None = None,
        history_turns: int = 10,
        max_tokens: int = 2000,
        temperature: float = 0.3,
    ) -> None:
        self._store = chat_store
        self._retriever = retriever
        self._llm = llm
        self._top_k = top_k
        self._threshold = threshold
        self._history_turns = history_turns
        self._max_tokens = max_tokens
        self._temperature = temperature

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def stream_reply(
        self,
        session_id: str | None,
        notebook_id: str,
        message: str,
    ) -> ChatStream:
        """Persist the user turn and return a stream of the assistant reply.

        Nothing is sent to the LLM until the returned stream is iterated.

        Raises
        ------
        ValidationError
            For an empty message.
        ConsistencyError
            If *session_id* belongs to a different notebook.
        NotFoundError
            If *session_id* does not exist.
        """
        if not message or not message.strip():
            raise ValidationError(message="Message must not be empty")
        message = message.strip()

        session = await self._get_or_create_session(session_id, notebook_id, message)
        history = await self._store.get_messages(session.id, limit=self._history_turns)
        await self._store.add_message(
            ChatMessage(
                id=str(uuid.uuid4()),
                session_id=session.id,
                role=ChatRole.USER,
                content=message,
            )
        )

        previous = next((m.content for m in reversed(history) if m.role == ChatRole.USER), None)
        query = rewrite_query(message, previous)
        chunks = await self._retriever.retrieve(
            query=query,
            notebook_id=session.notebook_id,
            top_k=self._top_k,
            threshold=self._threshold,
        )
        logger.info(
            "chat_context_retrieved",
            session_id=session.id,
            rewritten=query != message,
            chunks=len(chunks),
        )

        user_prompt = (
            f"Context:\n{format_context(chunks) if chunks else _NO_CONTEXT}\n\n"
            f"Question: {message}"
        )
        fragments = self._llm.stream(
            system_prompt=_SYSTEM_PROMPT,
            user_prompt=user_prompt,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            history=[{"role": m.role.value, "content": m.content} for m in history if m.content],
        )
        return ChatStream(self._store, session, chunks, fragments, self._llm.get_provider_name())

    async def reply(self, session_id: str | None, notebook_id: str, message: str) -> ChatMessage:
        """Non-streaming variant of :meth:`stream_reply`."""
        stream = await self.stream_reply(session_id, notebook_id, message)
        return await stream.collect()

    async def list_sessions(self, notebook_id: str) -> list[ChatSession]:
        return await self._store.list_sessions(notebook_id)

    async def get_messages(self, session_id: str) -> list[ChatMessage]:
        await self._store.get_session(session_id)
        return await self._store.get_messages(session_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_or_create_session(
        self,
        session_id: str | None,
        notebook_id: str,
        first_message: str,
    ) -> ChatSession:
        if session_id:
            session = await self._store.get_session(session_id)
            if session.notebook_id != notebook_id:
                raise ConsistencyError(
                    message=f"Session {session_id} belongs to notebook {session.notebook_id}"
                )
            return session
        session = ChatSession(
            id=str(uuid.uuid4()),
            notebook_id=notebook_id,
            title=ChatSession.title_from_message(first_message),
        )
        logger.info("chat_session_created", session_id=session.id, notebook_id=notebook_id)
        return await self._store.create_session(session)
