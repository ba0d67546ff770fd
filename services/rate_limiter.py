"""Process-wide fixed-window rate limiter for LLM provider calls.

The provider's free tier allows a fixed number of requests per minute.
Every LLM call acquires a slot here first; callers over the limit wait
(asyncio sleep) until the window resets rather than failing.
"""

import asyncio
import time

from config import get_settings
from utils.logging import get_logger
from utils.metrics import RATE_LIMIT_WAITS

logger = get_logger(__name__)


class RateLimiter:
    """At most max_requests acquisitions per window seconds.

    The window starts with the first acquisition after a reset and the
    counter resets once the window has elapsed. Waiters are served in
    arrival order because the lock is held while sleeping.
    """

    def __init__(
        self,
        max_requests: int | None = None,
        window: float | None = None,
    ):
        settings = get_settings()
        self.max_requests = max_requests or settings.rate_limit_requests
        self.window = window or settings.rate_limit_window
        self._count = 0
        self._window_start: float | None = None
        self._lock = asyncio.Lock()

        logger.debug(
            f"Rate limiter initialized: limit={self.max_requests}/{self.window}s"
        )

    def _reset_if_elapsed(self, now: float) -> None:
        if self._window_start is None or now - self._window_start >= self.window:
            self._count = 0
            self._window_start = now

    async def acquire(self) -> None:
        """Wait until a slot is free in the current window, then take it."""
        async with self._lock:
            now = time.monotonic()
            self._reset_if_elapsed(now)

            if self._count >= self.max_requests:
                wait_time = max(0.0, self._window_start + self.window - now)
                RATE_LIMIT_WAITS.inc()
                logger.info(
                    f"Rate limit reached, waiting {wait_time:.2f}s before next request",
                    extra={"count": self._count, "limit": self.max_requests},
                )
                await asyncio.sleep(wait_time)
                self._count = 0
                self._window_start = time.monotonic()

            self._count += 1

    def get_remaining(self) -> tuple[int, float]:
        """Get remaining requests and seconds until the window resets."""
        if self._window_start is None:
            return self.max_requests, 0.0

        now = time.monotonic()
        elapsed = now - self._window_start
        if elapsed >= self.window:
            return self.max_requests, 0.0
        return max(0, self.max_requests - self._count), self.window - elapsed


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide rate limiter shared by every LLM caller."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Drop the shared limiter so the next call builds a fresh one."""
    global _rate_limiter
    _rate_limiter = None
