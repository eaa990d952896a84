"""Translation of SDK exceptions into the provider error kinds.

Each adapter catches its SDK's exceptions and re-raises the result of one of
these functions ``from exc``, so services only ever handle
:class:`ProviderError` / :class:`RateLimitError` (retry) and
:class:`ProviderFatalError` (surface immediately).
"""

from __future__ import annotations

import anthropic
import httpx
import openai

from notebookrag.utils.errors import (
    NotebookRAGError,
    ProviderError,
    ProviderFatalError,
    ProviderTimeoutError,
    RateLimitError,
)

# Error codes that arrive as HTTP 429 but will not clear by waiting.
_QUOTA_CODES = frozenset({"insufficient_quota", "billing_hard_limit_reached"})


def _retry_after(response: httpx.Response | None) -> float | None:
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def map_openai_error(exc: Exception, provider_name: str) -> NotebookRAGError:
    """Map an ``openai`` SDK exception (also used for Ollama's /v1 API)."""
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeoutError(message=f"{provider_name} timed out: {exc}", provider_name=provider_name)
    if isinstance(exc, openai.RateLimitError):
        if getattr(exc, "code", None) in _QUOTA_CODES:
            return ProviderFatalError(message=f"{provider_name} quota exhausted: {exc}", provider_name=provider_name)
        return RateLimitError(
            message=f"{provider_name} rate limit: {exc}",
            provider_name=provider_name,
            retry_after=_retry_after(exc.response),
        )
    if isinstance(
        exc,
        (
            openai.AuthenticationError,
            openai.PermissionDeniedError,
            openai.BadRequestError,
            openai.NotFoundError,
            openai.UnprocessableEntityError,
        ),
    ):
        return ProviderFatalError(message=f"{provider_name} rejected request: {exc}", provider_name=provider_name)
    return ProviderError(message=f"{provider_name} API error: {exc}", provider_name=provider_name)


def map_anthropic_error(exc: Exception, provider_name: str) -> NotebookRAGError:
    """Map an ``anthropic`` SDK exception."""
    if isinstance(exc, anthropic.APITimeoutError):
        return ProviderTimeoutError(message=f"{provider_name} timed out: {exc}", provider_name=provider_name)
    if isinstance(exc, anthropic.RateLimitError):
        return RateLimitError(
            message=f"{provider_name} rate limit: {exc}",
            provider_name=provider_name,
            retry_after=_retry_after(exc.response),
        )
    if isinstance(
        exc,
        (
            anthropic.AuthenticationError,
            anthropic.PermissionDeniedError,
            anthropic.BadRequestError,
            anthropic.NotFoundError,
            anthropic.UnprocessableEntityError,
        ),
    ):
        return ProviderFatalError(message=f"{provider_name} rejected request: {exc}", provider_name=provider_name)
    return ProviderError(message=f"{provider_name} API error: {exc}", provider_name=provider_name)
