"""Async dual token-bucket rate limiter for outbound RPC calls."""

from __future__ import annotations

import asyncio
import time

from src.core.config import RateLimitConfig


class TokenBucket:
    """A token bucket that refills at a fixed rate up to its capacity."""

    def __init__(self, rate: float, capacity: float) -> None:
        self.rate = rate
        self.capacity = capacity
        self.tokens = capacity
        self._last_refill = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now

    def try_acquire(self) -> bool:
        """Consume one token if available."""
        self._refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def refund(self) -> None:
        self.tokens = min(self.capacity, self.tokens + 1.0)

    def time_until_available(self) -> float:
        """Seconds until at least one token is available."""
        self._refill()
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.rate


class RateLimiter:
    """Burst + sustained limiter shared by every RPC call of the keeper.

    Both buckets must have a token for a call to proceed; ``acquire()``
    suspends until they do, so one busy market never starves the others
    of the event loop.
    """

    def __init__(self, burst_per_sec: int = 40, sustained_per_sec: int = 10) -> None:
        self._burst = TokenBucket(rate=float(burst_per_sec), capacity=float(burst_per_sec))
        self._sustained = TokenBucket(
            rate=float(sustained_per_sec), capacity=float(sustained_per_sec),
        )
        self._throttled = 0

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> RateLimiter:
        return cls(config.burst_per_sec, config.sustained_per_sec)

    @property
    def throttled_count(self) -> int:
        """How many acquisitions had to wait for a token."""
        return self._throttled

    async def acquire(self) -> None:
        waited = False
        while True:
            if self._burst.try_acquire():
                if self._sustained.try_acquire():
                    if waited:
                        self._throttled += 1
                    return
                self._burst.refund()

            waited = True
            delay = max(
                self._burst.time_until_available(),
                self._sustained.time_until_available(),
                0.001,
            )
            await asyncio.sleep(delay)
