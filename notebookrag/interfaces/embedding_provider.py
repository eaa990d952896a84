"""Abstract base class for text-embedding providers.

Implementations wrap OpenAI ``text-embedding-3-small`` (or an
OpenAI-compatible endpoint) and Nomic ``nomic-embed-text`` served by Ollama.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   OpenAIEmbeddingProvider  - text-embedding-3-small (requires API key)
#   NomicEmbeddingProvider   - nomic-embed-text via Ollama (local)
# Located in: notebookrag/providers/embedding/
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services.

    Vectors produced here are stored by
    :class:`~notebookrag.interfaces.vector_store_provider.IVectorStoreProvider`
    under the label returned by :meth:`get_model_label`.
    """

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Parameters
        ----------
        texts:
            Texts to embed.  Callers keep batches within the provider's
            per-call limit; implementations may still split internally.

        Returns
        -------
        list[list[float]]
            One vector per input text, in input order.

        Raises
        ------
        notebookrag.utils.errors.ProviderError
            On transient failures; the whole call is considered failed.
        notebookrag.utils.errors.ProviderFatalError
            On auth / quota / rejected-request failures.
        """

    @abstractmethod
    async def embed_single(self, text: str) -> list[float]:
        """Embed a single text (e.g. a search query)."""

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the vector dimensionality, e.g. ``1536`` or ``768``."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return the provider identifier, e.g. ``"openai"`` or ``"ollama"``."""

    @abstractmethod
    def get_model_name(self) -> str:
        """Return the embedding model name, e.g. ``"text-embedding-3-small"``."""

    def get_model_label(self) -> str:
        """Return the ``"{provider}-{model}"`` label stored with each vector."""
        return f"{self.get_provider_name()}-{self.get_model_name()}"

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured and reachable."""
