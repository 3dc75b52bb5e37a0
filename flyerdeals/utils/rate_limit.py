"""Pacing for outbound calls that share a quota."""

from __future__ import annotations

import asyncio
import time
from typing import Callable


class RateLimiter:
    """Hand out call slots at least ``interval`` seconds apart per key.

    Each caller reserves the next free slot before sleeping, so concurrent
    callers queue up in arrival order without holding a lock while they wait.
    """

    def __init__(self, interval: float = 0.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval = max(0.0, interval)
        self._clock = clock
        self._next_slot: dict[str, float] = {}

    @classmethod
    def every(cls, seconds: float) -> "RateLimiter":
        return cls(interval=seconds)

    async def wait(self, key: str) -> float:
        """Sleep until the caller's slot for ``key``; returns the delay."""
        if not self.interval:
            return 0.0
        now = self._clock()
        slot = max(now, self._next_slot.get(key, now))
        self._next_slot[key] = slot + self.interval
        delay = slot - now
        if delay > 0:
            await asyncio.sleep(delay)
        return delay
