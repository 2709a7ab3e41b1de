"""RateLimiter: Sliding-window request throttling with exponential backoff.

All keys share one request window (a global request budget), but each key has
its own retry counter. When the window is full, or when the wrapped operation
is rejected upstream as "too many requests", the call sleeps for
``retry_after_seconds * 2 ** retries`` and tries again. Once a key has been
retried ``max_retries`` times the call fails with RateLimitExceeded.

.. code-block:: python

    >>> limiter = RateLimiter(max_requests=5, window_seconds=60.0)
    >>> quote = await limiter.execute("btc-usd", lambda: provider.fetch_price("btc", "usd"))
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from .errors import RateLimitExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")

THROTTLING_MESSAGES = ("429", "too many requests")
THROTTLING_CODE = "ERR_RATE_LIMITED"


def is_throttling_error(error: BaseException) -> bool:
    """Check if an exception signals an upstream "too many requests" rejection.

    Recognizes an HTTP 429 status on the exception itself or on an attached
    response, the ``ERR_RATE_LIMITED`` error code, and messages mentioning
    429 or "too many requests".

    :param error: Exception raised by the wrapped operation.
    :returns: True if the error is a throttling rejection.
    """
    if getattr(error, "status_code", None) == 429:
        return True

    response: Any = getattr(error, "response", None)
    if response is not None and getattr(response, "status_code", None) == 429:
        return True

    if getattr(error, "code", None) == THROTTLING_CODE:
        return True

    message = str(error).lower()
    return any(text in message for text in THROTTLING_MESSAGES)


class RateLimiter:
    """Throttles calls keyed by an arbitrary string.

    :ivar max_requests: Maximum calls allowed within one window.
    :ivar window_seconds: Length of the sliding window.
    :ivar retry_after_seconds: Base backoff delay, doubled on each retry.
    :ivar max_retries: Retries allowed per key before giving up.

    .. code-block:: python

        >>> limiter = RateLimiter(max_requests=1, window_seconds=1.0, retry_after_seconds=0.1)
        >>> await limiter.execute("a", fetch)   # runs immediately
        >>> await limiter.execute("a", fetch)   # sleeps 0.1s, 0.2s, ... until the window frees up
    """

    DEFAULT_RETRY_AFTER_SECONDS = 1.0
    DEFAULT_MAX_RETRIES = 3

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        retry_after_seconds: float = DEFAULT_RETRY_AFTER_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        """Initialize the rate limiter.

        :param max_requests: Maximum calls allowed within one window.
        :param window_seconds: Length of the sliding window in seconds.
        :param retry_after_seconds: Base backoff delay in seconds.
        :param max_retries: Retries allowed per key before RateLimitExceeded.
        :raises ValueError: If parameters are invalid.
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if retry_after_seconds < 0:
            raise ValueError("retry_after_seconds must not be negative")
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.retry_after_seconds = retry_after_seconds
        self.max_retries = max_retries

        self._requests: list[float] = []
        self._retry_counts: dict[str, int] = {}

    async def execute(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation within the request budget.

        :param key: Key for per-key retry accounting (e.g., "BTC-USD").
        :param operation: Zero-argument callable returning an awaitable.
        :returns: Result of the operation.
        :raises RateLimitExceeded: If the retry ceiling for ``key`` is reached,
            either on local saturation or on repeated upstream throttling.
        """
        while True:
            now = time.time()
            self._prune(now)

            if len(self._requests) >= self.max_requests:
                await self._backoff(key)
                continue

            self._requests.append(now)

            try:
                result = await operation()
            except Exception as e:
                if not is_throttling_error(e):
                    self._retry_counts.pop(key, None)
                    raise
                logger.debug(f"[{key}] Upstream throttling: {e}")
                await self._backoff(key, cause=e)
                continue

            self._retry_counts.pop(key, None)
            return result

    async def _backoff(self, key: str, cause: BaseException | None = None) -> None:
        """Sleep before the next attempt, or fail if retries are exhausted.

        :param key: Key being retried.
        :param cause: Upstream throttling error, if that triggered the retry.
        :raises RateLimitExceeded: If ``key`` already used all its retries.
        """
        retries = self._retry_counts.get(key, 0)

        if retries >= self.max_retries:
            self._retry_counts.pop(key, None)
            logger.warning(f"[{key}] Rate limit exceeded after {retries} retries")
            raise RateLimitExceeded(key, retries) from cause

        delay = self.retry_after_seconds * (2 ** retries)
        logger.debug(f"[{key}] Backing off {delay:.2f}s (retry {retries + 1})")
        await asyncio.sleep(delay)
        self._retry_counts[key] = retries + 1

    def _prune(self, now: float) -> None:
        """Drop call timestamps that fell out of the window."""
        self._requests = [t for t in self._requests if now - t < self.window_seconds]

    def get_retry_count(self, key: str) -> int:
        """Get the current retry count for a key.

        :param key: Rate limiter key.
        :returns: Retries performed so far, 0 if none pending.
        """
        return self._retry_counts.get(key, 0)

    def get_recent_request_count(self) -> int:
        """Get the number of calls recorded in the current window."""
        self._prune(time.time())
        return len(self._requests)

    def reset(self) -> None:
        """Clear the window history and all retry counters."""
        self._requests = []
        self._retry_counts.clear()
