"""Nomic embedding provider adapter (local/free via Ollama).

Uses Ollama's OpenAI-compatible ``/v1`` endpoint with ``nomic-embed-text``
(768 dimensions).  No API key is required.
"""

from __future__ import annotations

import httpx
import openai
import structlog

from notebookrag.config.settings import Settings
from notebookrag.interfaces.embedding_provider import IEmbeddingProvider
from notebookrag.providers.errors import map_openai_error
from notebookrag.utils.errors import ConsistencyError

logger = structlog.get_logger(logger_name=__name__)

_OLLAMA_BATCH_LIMIT = 512


class NomicEmbeddingProvider(IEmbeddingProvider):
    """Embedding provider backed by ``nomic-embed-text`` served via Ollama."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._base_url = settings.ollama_base_url.rstrip("/")
        self._client = openai.AsyncOpenAI(
            base_url=f"{self._base_url}/v1",
            api_key="ollama",
            max_retries=0,
        )
        self._model = settings.ollama_embedding_model or "nomic-embed-text"
        self._dimension = 768

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts* in slices of 512 for the Ollama backend."""
        if not texts:
            return []

        all_embeddings: list[list[float]] = []
        for start in range(0, len(texts), _OLLAMA_BATCH_LIMIT):
            batch = texts[start : start + _OLLAMA_BATCH_LIMIT]
            try:
                response = await self._client.embeddings.create(input=batch, model=self._model)
            except openai.APIError as exc:
                raise map_openai_error(exc, self.get_provider_name()) from exc
            if len(response.data) != len(batch):
                raise ConsistencyError(
                    message=f"expected {len(batch)} vectors, got {len(response.data)}",
                    provider_name=self.get_provider_name(),
                )
            all_embeddings.extend(item.embedding for item in response.data)
            logger.info("nomic_embedding_batch", model=self._model, batch_size=len(batch))
        return all_embeddings

    async def embed_single(self, text: str) -> list[float]:
        result = await self.embed([text])
        return result[0]

    def get_dimension(self) -> int:
        """Return 768 (nomic-embed-text dimension)."""
        return self._dimension

    def get_provider_name(self) -> str:
        return "ollama"

    def get_model_name(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Return ``True`` if the Ollama server is reachable."""
        if not self._base_url:
            return False
        try:
            response = httpx.get(f"{self._base_url}/api/tags", timeout=3.0)
            return response.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False
