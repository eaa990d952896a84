"""Shared concurrency primitives for provider calls.

Two patterns are exposed:

1. **ProviderThrottle** -- one throttling policy object per provider name.
   It caps the number of in-flight calls with a semaphore and holds a
   backoff deadline shared by every caller, so a rate limit seen by the
   chat engine also slows the embedding generator.  Instances are obtained
   through :func:`get_throttle`, never constructed per caller.

2. **throttled_gather** -- ``asyncio.gather`` where each awaitable first
   acquires a semaphore.  Used for fan-out work such as batch metadata
   extraction.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog

from notebookrag.utils.errors import RateLimitError
from notebookrag.utils.logging import get_logger

_T = TypeVar("_T")

_logger: structlog.BoundLogger = get_logger(__name__)


class ProviderThrottle:
    """Concurrency cap plus shared backoff for a single provider.

    Parameters
    ----------
    name:
        Provider name, used for logging.
    max_concurrency:
        Maximum number of calls in flight at once across all callers.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        max_concurrency: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._name = name
        self._max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._clock = clock
        self._resume_at = 0.0

    @property
    def name(self) -> str:
        return self._name

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def backoff_remaining(self) -> float:
        """Seconds left until calls may resume, 0 when not backing off."""
        return max(0.0, self._resume_at - self._clock())

    def back_off(self, seconds: float) -> None:
        """Hold all callers of this provider for at least *seconds*."""
        resume_at = self._clock() + max(0.0, seconds)
        if resume_at > self._resume_at:
            self._resume_at = resume_at
            _logger.warning("provider_backoff", provider=self._name, seconds=round(seconds, 2))

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Acquire a call slot, waiting out any shared backoff first.

        No lock other than the semaphore is held while the caller awaits the
        provider.  A :class:`RateLimitError` raised inside the block extends
        the shared backoff before propagating.
        """
        async with self._semaphore:
            delay = self.backoff_remaining()
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                yield
            except RateLimitError as exc:
                self.back_off(exc.retry_after if exc.retry_after is not None else 1.0)
                raise

    async def call(self, fn: Callable[[], Awaitable[_T]]) -> _T:
        """Run ``fn()`` inside a throttle slot and return its result."""
        async with self.slot():
            return await fn()


_THROTTLES: dict[str, ProviderThrottle] = {}


def get_throttle(provider_name: str, max_concurrency: int | None = None) -> ProviderThrottle:
    """Return the process-wide throttle for *provider_name*, creating it once.

    *max_concurrency* only applies on first creation.
    """
    throttle = _THROTTLES.get(provider_name)
    if throttle is None:
        throttle = ProviderThrottle(provider_name, max_concurrency or 4)
        _THROTTLES[provider_name] = throttle
    return throttle


def reset_throttles() -> None:
    """Drop every registered throttle (used between tests and app restarts)."""
    _THROTTLES.clear()


async def throttled_gather(
    coros: list[Awaitable[_T]],
    semaphore: asyncio.Semaphore | None = None,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Run awaitables concurrently, at most ``semaphore`` at a time.

    Parameters
    ----------
    coros:
        Awaitable objects to execute.
    semaphore:
        Concurrency limit; a fresh semaphore of 5 when omitted.
    return_exceptions:
        Mirrors ``asyncio.gather``.

    Returns
    -------
    list[_T | BaseException]
        Results in input order.
    """
    if semaphore is None:
        semaphore = asyncio.Semaphore(5)

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    return await asyncio.gather(*(_wrapped(c) for c in coros), return_exceptions=return_exceptions)
