"""Utility modules for notebook-rag.

- **errors** -- exception hierarchy rooted at NotebookRAGError; the job
  orchestrator maps error classes onto retry decisions.
- **concurrency** -- per-provider throttles and a semaphore-bounded gather.
- **logging** -- structlog setup (console in development, JSON in production).
- **text_normalizer** -- document text normalization, content hashing and
  fuzzy matching of enumerated metadata values.
"""

from notebookrag.utils.concurrency import (
    ProviderThrottle,
    get_throttle,
    reset_throttles,
    throttled_gather,
)
from notebookrag.utils.errors import (
    ConfigurationError,
    ConsistencyError,
    NotebookRAGError,
    NotFoundError,
    PartialFailure,
    ProviderError,
    ProviderFatalError,
    ProviderTimeoutError,
    RateLimitError,
    ValidationError,
)
from notebookrag.utils.logging import configure_logging, get_logger
from notebookrag.utils.text_normalizer import content_hash, match_allowed_value, normalize_text

__all__ = [
    "ConfigurationError",
    "ConsistencyError",
    "NotFoundError",
    "NotebookRAGError",
    "PartialFailure",
    "ProviderError",
    "ProviderFatalError",
    "ProviderThrottle",
    "ProviderTimeoutError",
    "RateLimitError",
    "ValidationError",
    "configure_logging",
    "content_hash",
    "get_logger",
    "get_throttle",
    "match_allowed_value",
    "normalize_text",
    "reset_throttles",
    "throttled_gather",
]
