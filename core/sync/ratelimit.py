"""
Token bucket rate limiting for remote API calls.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Classic token bucket refilled continuously at ``rate_per_minute``.

    ``acquire`` suspends only the calling task; other categories and paths
    keep flowing while one bucket is empty.
    """

    def __init__(
        self,
        rate_per_minute: float,
        capacity: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        if rate_per_minute <= 0:
            raise ValueError("rate_per_minute must be positive")

        self.rate_per_second = rate_per_minute / 60.0
        self.capacity = float(capacity if capacity is not None else max(1.0, rate_per_minute / 10.0))
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._last_refill = clock()
        self._lock = asyncio.Lock()

        self.acquired = 0
        self.waited_seconds = 0.0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate_per_second)
        self._last_refill = now

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self) -> bool:
        """Take a token if one is available right now"""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            self.acquired += 1
            return True
        return False

    async def acquire(self) -> None:
        """Wait until a token is available and take it"""
        # Waiters queue on the lock so tokens are handed out in arrival order
        async with self._lock:
            while not self.try_acquire():
                wait = (1.0 - self._tokens) / self.rate_per_second
                self.waited_seconds += wait
                await self._sleep(wait)

    def get_status(self) -> Dict[str, Any]:
        return {
            "rate_per_minute": self.rate_per_second * 60.0,
            "capacity": self.capacity,
            "tokens": round(self.tokens, 3),
            "acquired": self.acquired,
            "waited_seconds": round(self.waited_seconds, 3),
        }
