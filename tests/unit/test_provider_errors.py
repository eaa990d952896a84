"""Unit tests for SDK exception mapping and the error hierarchy."""

from __future__ import annotations

import anthropic
import httpx
import openai
import pytest

from notebookrag.models.job import JobError
from notebookrag.providers.errors import map_anthropic_error, map_openai_error
from notebookrag.utils.errors import (
    NON_RETRYABLE_ERRORS,
    RETRYABLE_ERRORS,
    ConsistencyError,
    NotFoundError,
    PartialFailure,
    ProviderError,
    ProviderFatalError,
    ProviderTimeoutError,
    RateLimitError,
    ValidationError,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


def _response(status: int, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(status, headers=headers or {}, request=_REQUEST)


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class TestMapOpenAIError:
    def test_rate_limit_carries_retry_after(self) -> None:
        exc = openai.RateLimitError(
            "slow down", response=_response(429, {"retry-after": "12"}), body=None
        )

        mapped = map_openai_error(exc, "openai")

        assert isinstance(mapped, RateLimitError)
        assert mapped.retry_after == 12.0
        assert mapped.provider_name == "openai"

    def test_unparseable_retry_after_is_ignored(self) -> None:
        exc = openai.RateLimitError(
            "slow down", response=_response(429, {"retry-after": "soon"}), body=None
        )
        assert map_openai_error(exc, "openai").retry_after is None

    def test_exhausted_quota_is_fatal(self) -> None:
        exc = openai.RateLimitError(
            "quota", response=_response(429), body={"code": "insufficient_quota"}
        )
        assert isinstance(map_openai_error(exc, "openai"), ProviderFatalError)

    def test_timeout(self) -> None:
        mapped = map_openai_error(openai.APITimeoutError(request=_REQUEST), "ollama")
        assert isinstance(mapped, ProviderTimeoutError)
        assert str(mapped).startswith("[ollama]")

    @pytest.mark.parametrize(
        "exc_class, status",
        [
            (openai.AuthenticationError, 401),
            (openai.PermissionDeniedError, 403),
            (openai.BadRequestError, 400),
            (openai.NotFoundError, 404),
        ],
    )
    def test_rejected_requests_are_fatal(self, exc_class, status) -> None:
        exc = exc_class("rejected", response=_response(status), body=None)
        assert isinstance(map_openai_error(exc, "openai"), ProviderFatalError)

    def test_server_error_is_transient(self) -> None:
        exc = openai.InternalServerError("oops", response=_response(500), body=None)
        mapped = map_openai_error(exc, "openai")
        assert type(mapped) is ProviderError

    def test_connection_error_is_transient(self) -> None:
        mapped = map_openai_error(openai.APIConnectionError(request=_REQUEST), "openai")
        assert type(mapped) is ProviderError


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class TestMapAnthropicError:
    def test_rate_limit(self) -> None:
        exc = anthropic.RateLimitError(
            "slow down", response=_response(429, {"retry-after": "3"}), body=None
        )
        mapped = map_anthropic_error(exc, "anthropic")
        assert isinstance(mapped, RateLimitError)
        assert mapped.retry_after == 3.0

    def test_authentication_is_fatal(self) -> None:
        exc = anthropic.AuthenticationError("bad key", response=_response(401), body=None)
        assert isinstance(map_anthropic_error(exc, "anthropic"), ProviderFatalError)

    def test_timeout(self) -> None:
        mapped = map_anthropic_error(anthropic.APITimeoutError(request=_REQUEST), "anthropic")
        assert isinstance(mapped, ProviderTimeoutError)

    def test_overload_is_transient(self) -> None:
        exc = anthropic.InternalServerError("overloaded", response=_response(529), body=None)
        assert type(map_anthropic_error(exc, "anthropic")) is ProviderError


# ---------------------------------------------------------------------------
# Hierarchy and job payloads
# ---------------------------------------------------------------------------


class TestErrorHierarchy:
    def test_str_prefixes_provider(self) -> None:
        assert str(ProviderError(message="down", provider_name="openai")) == "[openai] down"
        assert str(ValidationError(message="bad input")) == "bad input"

    @pytest.mark.parametrize(
        "exc, retryable",
        [
            (RateLimitError(), True),
            (ProviderTimeoutError(), True),
            (PartialFailure(), True),
            (ProviderFatalError(), False),
            (NotFoundError(), False),
            (ValidationError(), False),
        ],
    )
    def test_retry_classification(self, exc, retryable) -> None:
        assert isinstance(exc, RETRYABLE_ERRORS) is retryable
        assert isinstance(exc, NON_RETRYABLE_ERRORS) is not retryable

    def test_not_found_is_consistency_error(self) -> None:
        assert issubclass(NotFoundError, ConsistencyError)

    def test_job_error_from_partial_failure(self) -> None:
        exc = PartialFailure(
            message="1 of 3 failed", succeeded=["a", "b"], failed=["c"], provider_name="openai"
        )

        error = JobError.from_exception(exc)

        assert error.kind == "PartialFailure"
        assert error.message == "1 of 3 failed"
        assert error.provider == "openai"
        assert error.details == {"succeeded": ["a", "b"], "failed": ["c"]}

    def test_job_error_from_unexpected_exception(self) -> None:
        error = JobError.from_exception(KeyError("missing"))
        assert error.kind == "KeyError"
        assert error.provider is None
