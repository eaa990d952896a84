"""Ollama LLM provider adapter (local/free).

Ollama exposes an OpenAI-compatible ``/v1`` API, so this adapter reuses
:class:`OpenAILLMProvider` with a different client and model defaults.
Reachability is checked against Ollama's native ``/api/tags`` endpoint.
"""

from __future__ import annotations

import httpx
import openai
import structlog

from notebookrag.config.settings import Settings
from notebookrag.providers.llm.openai_provider import OpenAILLMProvider

logger = structlog.get_logger(logger_name=__name__)


class OllamaLLMProvider(OpenAILLMProvider):
    """LLM provider backed by a local Ollama server (default model ``llama3.1``)."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._api_key = ""
        self._base_url = settings.ollama_base_url.rstrip("/")
        # The openai SDK requires a non-empty key; Ollama ignores it.
        self._client = openai.AsyncOpenAI(
            base_url=f"{self._base_url}/v1",
            api_key="ollama",
            timeout=openai.Timeout(120.0, connect=5.0),
            max_retries=0,
        )
        self._model = settings.ollama_text_model or "llama3.1"
        self._provider_label = "ollama"

    def is_available(self) -> bool:
        """Return ``True`` if the Ollama base URL is configured."""
        return bool(self._base_url)

    async def validate_credentials(self) -> bool:
        """Check that the Ollama server answers on ``/api/tags``."""
        if not self.is_available():
            return False
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self._base_url}/api/tags")
                return response.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("ollama_unreachable", base_url=self._base_url, error=str(exc))
            return False
