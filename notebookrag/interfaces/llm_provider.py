"""Abstract base class for LLM generation providers.

Defines the contract for any chat/completion backend used for metadata
extraction, report section generation and chat replies.  Implementations
wrap OpenAI (or an OpenAI-compatible server), Anthropic, or a local Ollama
server.  Business logic only ever sees this interface; the concrete class is
chosen once at assembly time from configuration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator


# Concrete implementations: AnthropicLLMProvider, OpenAILLMProvider, OllamaLLMProvider
# Located in: notebookrag/providers/llm/
class ILLMProvider(ABC):
    """Contract for text generation backends.

    Every method that contacts the backend maps SDK failures onto the
    provider error kinds of :mod:`notebookrag.utils.errors`:
    :class:`ProviderError` (and :class:`RateLimitError`) for transient
    failures, :class:`ProviderFatalError` for auth / quota / rejected
    requests.
    """

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> str:
        """Generate a complete text response.

        Parameters
        ----------
        system_prompt:
            Instructions that set the model's behaviour.
        user_prompt:
            The request, including any retrieved context.
        temperature:
            Sampling temperature.
        max_tokens:
            Upper bound on response length.

        Returns
        -------
        str
            The model's text response.

        Raises
        ------
        notebookrag.utils.errors.ProviderError
            On transient failures.
        notebookrag.utils.errors.ProviderFatalError
            On failures that retrying cannot fix.
        """

    @abstractmethod
    def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
        history: list[dict[str, str]] | None = None,
    ) -> AsyncIterator[str]:
        """Stream the response as text fragments.

        Returns a lazy, finite, non-restartable async iterator.  Nothing is
        sent to the backend until the first fragment is requested.  Closing
        the iterator (``aclose()``) or cancelling the consuming task stops
        generation; backends that cannot abort mid-call are drained and the
        rest of their output discarded.

        Parameters
        ----------
        history:
            Prior conversation turns as ``{"role": ..., "content": ...}``
            dicts, oldest first, placed before *user_prompt*.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return the provider identifier, e.g. ``"openai"``."""

    @abstractmethod
    def get_model_name(self) -> str:
        """Return the model used for generation."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured (no network call)."""

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """Make a lightweight API call to confirm the credentials work."""
