"""
Bounded exponential backoff for calls to the scrobble service.

delay(n) = min(base_delay * 2**n, max_delay). Errors flagged non-retryable
(auth failures, contract breaks) go straight back to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import RateLimited, is_retryable

log = logging.getLogger("scrobbler.retry")

T = TypeVar("T")


class RetryPolicy:
    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 8.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def delay(self, attempt: int) -> float:
        # Clamp the exponent so far-out attempts can't overflow the float
        return min(self.base_delay * (2.0 ** min(attempt, 62)), self.max_delay)

    def _next_delay(self, attempt: int, error: BaseException) -> float:
        delay = self.delay(attempt)
        if isinstance(error, RateLimited) and error.retry_after:
            delay = max(delay, min(error.retry_after, self.max_delay))
        return delay

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e):
                    raise
                if attempt + 1 >= self.max_attempts:
                    log.debug("Giving up after %s attempts: %s", self.max_attempts, e)
                    raise
                delay = self._next_delay(attempt, e)
                log.debug("Attempt %s/%s failed (%s); retrying in %.1fs",
                          attempt + 1, self.max_attempts, e, delay)
                await self._sleep(delay)
                attempt += 1
