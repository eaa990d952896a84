"""Exception hierarchy for notebook-rag.

Every application error derives from :class:`NotebookRAGError`, which
carries an optional ``provider_name`` naming the external backend
("openai", "ollama", "sqlite", ...) involved in the failure.

    NotebookRAGError
    +-- ValidationError       malformed input or schema; never retried
    +-- ProviderError         transient backend failure; retried with backoff
    |   +-- RateLimitError
    |   +-- ProviderTimeoutError
    +-- ProviderFatalError    auth / quota / bad request; surfaced immediately
    +-- ConsistencyError      store state contradicts the request; not retried
    |   +-- NotFoundError
    +-- PartialFailure        some items of a multi-item operation failed
    +-- ConfigurationError    startup / missing config

The job orchestrator uses the class of an exception to decide whether a
job is re-enqueued (:data:`RETRYABLE_ERRORS`) or failed permanently.
"""

from __future__ import annotations

from collections.abc import Sequence


class NotebookRAGError(Exception):
    """Base exception for all notebook-rag errors.

    ``__str__`` prefixes the provider name in brackets, e.g.
    ``[openai] Rate limit exceeded``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    @property
    def kind(self) -> str:
        """Error kind as reported in job and section error payloads."""
        return type(self).__name__

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Input errors
# ---------------------------------------------------------------------------

class ValidationError(NotebookRAGError):
    """Raised for malformed input, schemas or templates."""

    def __init__(
        self,
        message: str = "Invalid input",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ProviderError(NotebookRAGError):
    """Raised for transient provider failures (network, 5xx, overload)."""

    def __init__(
        self,
        message: str = "Provider call failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class RateLimitError(ProviderError):
    """Raised when a provider rejects a call with a rate limit.

    ``retry_after`` is the server-suggested delay in seconds, if any.  The
    provider throttle uses it to push back every caller of that provider.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self._retry_after = retry_after

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds its timeout."""

    def __init__(
        self,
        message: str = "Provider call timed out",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ProviderFatalError(NotebookRAGError):
    """Raised for provider failures that retrying cannot fix.

    Authentication failures, exhausted quota and rejected requests all
    land here.
    """

    def __init__(
        self,
        message: str = "Provider call failed permanently",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Store / state errors
# ---------------------------------------------------------------------------

class ConsistencyError(NotebookRAGError):
    """Raised when stored state contradicts an operation.

    Examples: embedding a chunk that does not exist, a vector count that
    does not match the request, or an illegal job state transition.
    """

    def __init__(
        self,
        message: str = "Inconsistent state",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class NotFoundError(ConsistencyError):
    """Raised when a referenced record does not exist."""

    def __init__(
        self,
        message: str = "Record not found",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class PartialFailure(NotebookRAGError):
    """Raised when a multi-item operation succeeded for only some items.

    ``succeeded`` and ``failed`` hold the item identifiers of each side of
    the split.  Together they cover every submitted item exactly once.
    """

    def __init__(
        self,
        message: str = "Operation partially failed",
        succeeded: Sequence[str] = (),
        failed: Sequence[str] = (),
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self._succeeded = list(succeeded)
        self._failed = list(failed)

    @property
    def succeeded(self) -> list[str]:
        return list(self._succeeded)

    @property
    def failed(self) -> list[str]:
        return list(self._failed)


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------

class ConfigurationError(NotebookRAGError):
    """Raised when configuration is invalid or missing at startup."""

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# Errors for which a failed job is re-enqueued.  Anything not listed and
# not a NotebookRAGError (an unexpected bug) is also retried; the classes
# in NON_RETRYABLE_ERRORS always fail permanently.
RETRYABLE_ERRORS: tuple[type[NotebookRAGError], ...] = (ProviderError, PartialFailure)
NON_RETRYABLE_ERRORS: tuple[type[NotebookRAGError], ...] = (
    ValidationError,
    ProviderFatalError,
    ConsistencyError,
    ConfigurationError,
)
