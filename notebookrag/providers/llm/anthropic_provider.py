"""Anthropic Claude LLM provider adapter.

Wraps ``anthropic.AsyncAnthropic`` to implement :class:`ILLMProvider`.  The
system prompt is a top-level parameter of the Messages API rather than a
message in the list; streaming goes through ``messages.stream``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import anthropic
import structlog

from notebookrag.config.settings import Settings
from notebookrag.interfaces.llm_provider import ILLMProvider
from notebookrag.providers.errors import map_anthropic_error
from notebookrag.utils.errors import ProviderError

logger = structlog.get_logger(logger_name=__name__)


class AnthropicLLMProvider(ILLMProvider):
    """LLM provider backed by the Anthropic Messages API.

    Defaults to ``claude-sonnet-4-20250514``; override with ``ANTHROPIC_MODEL``.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._api_key = settings.anthropic_api_key
        self._client = anthropic.AsyncAnthropic(api_key=self._api_key, max_retries=0)
        self._model = settings.anthropic_model or "claude-sonnet-4-20250514"

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
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                temperature=temperature,
            )
        except anthropic.APIError as exc:
            raise map_anthropic_error(exc, self.get_provider_name()) from exc

        text_blocks = [block.text for block in response.content if block.type == "text"]
        if not text_blocks:
            raise ProviderError(
                message="Anthropic returned no text content",
                provider_name=self.get_provider_name(),
            )
        logger.info(
            "anthropic_completion",
            model=self._model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return "\n".join(text_blocks)

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
        history: list[dict[str, str]] | None = None,
    ) -> AsyncIterator[str]:
        messages = [{"role": t["role"], "content": t["content"]} for t in history or []]
        messages.append({"role": "user", "content": user_prompt})
        fragments = 0
        try:
            async with self._client.messages.stream(
                model=self._model,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=messages,
                temperature=temperature,
            ) as stream:
                async for text in stream.text_stream:
                    fragments += 1
                    yield text
        except anthropic.APIError as exc:
            raise map_anthropic_error(exc, self.get_provider_name()) from exc
        finally:
            logger.info("anthropic_stream_closed", model=self._model, fragments=fragments)

    def get_provider_name(self) -> str:
        return "anthropic"

    def get_model_name(self) -> str:
        return self._model

    def is_available(self) -> bool:
        return bool(self._api_key)

    async def validate_credentials(self) -> bool:
        """Send a one-token request to confirm the API key."""
        if not self.is_available():
            return False
        try:
            await self._client.messages.create(
                model=self._model,
                max_tokens=1,
                messages=[{"role": "user", "content": "ping"}],
            )
            return True
        except anthropic.APIError:
            return False
