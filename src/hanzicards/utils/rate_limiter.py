"""Token bucket throttling shared by every worker that calls one provider."""

import asyncio
import logging
import time
from typing import Optional

from hanzicards.config import RateLimit

logger = logging.getLogger(__name__)


class TokenBucket:
    """Asyncio token bucket.

    Holds up to ``burst`` tokens and refills ``rate`` tokens per second.
    ``acquire()`` waits until a token is available, so a bucket shared across
    workers caps the combined request rate against one provider.
    """

    def __init__(self, rate: float, burst: int, name: str = ""):
        if rate <= 0 or burst < 1:
            raise ValueError(f"Invalid rate limit: rate={rate}, burst={burst}")
        self.rate = rate
        self.burst = burst
        self.name = name
        self._tokens = float(burst)
        self._updated = time.monotonic()
        self._lock: Optional[asyncio.Lock] = None

    @classmethod
    def from_config(cls, limit: RateLimit, name: str = "") -> "TokenBucket":
        return cls(rate=limit.rate, burst=limit.burst, name=name)

    def _get_lock(self) -> asyncio.Lock:
        """Get or create the lock lazily so the bucket can be built outside a loop."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self) -> None:
        # The lock serializes waiters so tokens are handed out in arrival order
        async with self._get_lock():
            self._refill()
            if self._tokens < 1:
                wait = (1 - self._tokens) / self.rate
                logger.debug(f"Rate limit {self.name}: waiting {wait:.2f}s")
                await asyncio.sleep(wait)
                self._refill()
            self._tokens -= 1

    async def __aenter__(self) -> "TokenBucket":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None
