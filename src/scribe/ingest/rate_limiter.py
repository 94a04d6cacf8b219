"""Minimum-interval rate limiter for provider calls."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Enforces a minimum interval between consecutive provider calls.

    Shared by every caller of one provider. The timestamp of the last call is
    the only mutable state and is guarded by an ``asyncio.Lock``, so waiters
    queue up and are released one interval apart.

    Args:
        min_interval: Seconds between calls. ``0`` disables limiting.
        clock: Monotonic clock, injectable for tests.
        sleep: Coroutine used to wait, injectable for tests.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_quota(cls, requests_per_minute: int, **kwargs) -> RateLimiter:
        """Build a limiter from a provider's requests-per-minute quota."""
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be >= 1")
        return cls(60.0 / requests_per_minute, **kwargs)

    async def acquire(self) -> None:
        """Wait until a call is allowed, then record it."""
        async with self._lock:
            if self._last_call is not None:
                wait = self._last_call + self.min_interval - self._clock()
                if wait > 0:
                    logger.debug("Rate limited: waiting %.3fs", wait)
                    await self._sleep(wait)
            self._last_call = self._clock()
