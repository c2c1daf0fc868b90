"""Authentication and rate limiting for the Harvest API."""

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

# Fractional refills leave rounding residue on the level
_EPSILON = 1e-9
# Shortest wait, so a sleep always moves the clock forward
_MIN_WAIT = 1e-6


class _TokenBucket:
    """Token accounting shared by the sync and async rate limiters.

    Tokens regenerate continuously at one per ``interval`` seconds up to
    ``capacity``. The level is recomputed from the clock on every call, so
    no background timer is needed. Callers must hold their own lock.
    """

    def __init__(
        self,
        capacity: int,
        interval: float,
        clock: Callable[[], float],
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if interval <= 0:
            raise ValueError("interval must be greater than 0")

        self.capacity = capacity
        self.interval = interval
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()

    def check(self, n: int) -> None:
        if n < 1 or n > self.capacity:
            raise ValueError(f"Cannot acquire {n} tokens from a bucket of {self.capacity}")

    def take(self, n: int) -> float:
        """Take ``n`` tokens if available.

        Returns:
            0.0 when the tokens were taken, otherwise the number of seconds
            until enough tokens will have accumulated
        """
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(float(self.capacity), self._tokens + elapsed / self.interval)
        self._last_refill = now

        if self._tokens >= n - _EPSILON:
            self._tokens = max(0.0, self._tokens - n)
            return 0.0
        return max((n - self._tokens) * self.interval, _MIN_WAIT)


class RateLimiter:
    """Token bucket rate limiter implementing Harvest's constraints:
    - Maximum 100 requests per 15 seconds
    - Bursts of up to the full capacity are allowed

    A single instance is shared by every request a client makes, from
    any number of threads.
    """

    def __init__(
        self,
        capacity: int = 100,
        interval: float = 0.15,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize rate limiter.

        Args:
            capacity: Maximum number of tokens (burst size)
            interval: Seconds needed to regenerate one token
            clock: Monotonic clock function
            sleep: Function used to wait for tokens
        """
        self._lock = threading.Lock()
        self._bucket = _TokenBucket(capacity, interval, clock)
        self._sleep = sleep

    @property
    def capacity(self) -> int:
        return self._bucket.capacity

    @property
    def interval(self) -> float:
        return self._bucket.interval

    def acquire(self, n: int = 1) -> None:
        """Block until ``n`` tokens are available, then take them.

        Raises:
            ValueError: If ``n`` is not between 1 and the bucket capacity
        """
        self._bucket.check(n)
        while True:
            with self._lock:
                wait = self._bucket.take(n)
            if not wait:
                return
            logger.debug("Rate limit reached, waiting %.3fs for %d token(s)", wait, n)
            # Never sleep while holding the lock
            self._sleep(wait)


class AsyncRateLimiter:
    """Async token bucket rate limiter, see :class:`RateLimiter`."""

    def __init__(
        self,
        capacity: int = 100,
        interval: float = 0.15,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize async rate limiter.

        Args:
            capacity: Maximum number of tokens (burst size)
            interval: Seconds needed to regenerate one token
            clock: Monotonic clock function
            sleep: Coroutine function used to wait for tokens
        """
        self._lock = asyncio.Lock()
        self._bucket = _TokenBucket(capacity, interval, clock)
        self._sleep = sleep

    @property
    def capacity(self) -> int:
        return self._bucket.capacity

    @property
    def interval(self) -> float:
        return self._bucket.interval

    async def acquire(self, n: int = 1) -> None:
        """Wait until ``n`` tokens are available, then take them (async version)."""
        self._bucket.check(n)
        while True:
            async with self._lock:
                wait = self._bucket.take(n)
            if not wait:
                return
            logger.debug("Rate limit reached, waiting %.3fs for %d token(s)", wait, n)
            await self._sleep(wait)


class TokenAuth:
    """Authentication using a personal access token and account ID."""

    def __init__(self, account_id: int, token: str) -> None:
        """Initialize token authentication.

        Args:
            account_id: Harvest account ID
            token: Personal access token
        """
        self.account_id = account_id
        self.token = token

    def get_headers(self) -> dict[str, str]:
        """Get authentication headers."""
        return {
            "Harvest-Account-ID": str(self.account_id),
            "Authorization": f"Bearer {self.token}",
        }
