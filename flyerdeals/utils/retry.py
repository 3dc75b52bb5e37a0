"""Retry helpers for async network calls."""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable

import httpx

RETRY_EXCEPTIONS = (OSError, asyncio.TimeoutError, httpx.TransportError)


def backoff_delays(attempts: int, base_delay: float, *, linear: bool = False) -> list[float]:
    """Sleep durations between consecutive attempts."""
    delays = []
    for retry in range(1, attempts):
        delays.append(base_delay * retry if linear else base_delay * 2 ** (retry - 1))
    return delays


def retry_async(
    func: Callable[..., Awaitable] | None = None,
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    linear: bool = False,
    exceptions: tuple[type[BaseException], ...] = RETRY_EXCEPTIONS,
):
    def decorate(inner: Callable[..., Awaitable]):
        @functools.wraps(inner)
        async def wrapper(*args, **kwargs):
            delays = backoff_delays(attempts, base_delay, linear=linear)
            for attempt in range(attempts):
                try:
                    return await inner(*args, **kwargs)
                except exceptions:
                    if attempt == attempts - 1:
                        raise
                    delay = delays[attempt]
                    if not linear and delay:
                        delay += random.random()
                    await asyncio.sleep(delay)
        return wrapper

    if func is not None:
        return decorate(func)
    return decorate
