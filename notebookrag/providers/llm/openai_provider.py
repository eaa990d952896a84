"""OpenAI-compatible LLM provider adapter.

Wraps the ``openai`` async client to implement :class:`ILLMProvider`.  When
``openai_base_url`` is configured (TogetherAI, vLLM, Fireworks, ...), the
client points at that URL instead of the default OpenAI endpoint, so one
adapter covers every OpenAI-compatible backend.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import openai
import structlog

from notebookrag.config.settings import Settings
from notebookrag.interfaces.llm_provider import ILLMProvider
from notebookrag.providers.errors import map_openai_error
from notebookrag.utils.errors import ProviderError

logger = structlog.get_logger(logger_name=__name__)


def build_messages(
    system_prompt: str,
    user_prompt: str,
    history: list[dict[str, str]] | None = None,
) -> list[dict[str, str]]:
    """Chat-completions message list: system, prior turns, then the prompt."""
    messages = [{"role": "system", "content": system_prompt}]
    for turn in history or []:
        messages.append({"role": turn["role"], "content": turn["content"]})
    messages.append({"role": "user", "content": user_prompt})
    return messages


class OpenAILLMProvider(ILLMProvider):
    """LLM provider backed by an OpenAI-compatible chat completions API.

    Uses ``gpt-4o-mini`` by default; override with ``OPENAI_TEXT_MODEL``.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._api_key = settings.openai_api_key
        client_kwargs: dict = {
            "api_key": self._api_key,
            "timeout": openai.Timeout(60.0, connect=5.0),
            # Retries are owned by the embedding generator / job orchestrator.
            "max_retries": 0,
        }
        if settings.openai_base_url:
            client_kwargs["base_url"] = settings.openai_base_url
        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = settings.openai_text_model or "gpt-4o-mini"
        self._provider_label = "openai-compatible" if settings.openai_base_url else "openai"

    # ------------------------------------------------------------------
    # ILLMProvider implementation
    # ------------------------------------------------------------------

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=build_messages(system_prompt, user_prompt),
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.APIError as exc:
            raise map_openai_error(exc, self.get_provider_name()) from exc

        content = response.choices[0].message.content if response.choices else None
        if content is None:
            raise ProviderError(
                message=f"{self._provider_label} returned empty response",
                provider_name=self.get_provider_name(),
            )
        logger.info(
            "openai_completion",
            model=self._model,
            provider=self._provider_label,
            tokens=response.usage.total_tokens if response.usage else None,
        )
        return content

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
        history: list[dict[str, str]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas from a streamed chat completion.

        The HTTP stream is closed in ``finally`` so that ``aclose()`` or task
        cancellation stops generation server-side.
        """
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=build_messages(system_prompt, user_prompt, history),
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
        except openai.APIError as exc:
            raise map_openai_error(exc, self.get_provider_name()) from exc

        fragments = 0
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    fragments += 1
                    yield delta
        except openai.APIError as exc:
            raise map_openai_error(exc, self.get_provider_name()) from exc
        finally:
            await response.close()
            logger.info("openai_stream_closed", model=self._model, fragments=fragments)

    def get_provider_name(self) -> str:
        """Return 'openai' or 'openai-compatible' depending on configuration."""
        return self._provider_label

    def get_model_name(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Return ``True`` if an API key is configured (doesn't verify it works)."""
        return bool(self._api_key)

    async def validate_credentials(self) -> bool:
        """List models to verify the API key without inference cost."""
        if not self.is_available():
            return False
        try:
            await self._client.models.list()
            return True
        except openai.APIError:
            return False
