"""Retry helpers for outbound HTTP calls."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS = (httpx.TransportError, OSError, asyncio.TimeoutError)


def retry_async(
    func: Callable[..., Awaitable] | None = None,
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
):
    """Retry transport failures with jittered exponential backoff.

    Usable bare (``retry_async(fn)``) or configured
    (``retry_async(attempts=2)(fn)``). The final failure is re-raised so
    callers can classify it.
    """

    def decorate(inner: Callable[..., Awaitable]):
        @functools.wraps(inner)
        async def wrapper(*args, **kwargs):
            delay = base_delay
            for attempt in range(attempts):
                try:
                    return await inner(*args, **kwargs)
                except RETRY_EXCEPTIONS as exc:
                    if attempt == attempts - 1:
                        raise
                    logger.debug("Retrying after %s (attempt %s/%s)", exc, attempt + 1, attempts)
                    await asyncio.sleep(delay + random.random() * delay)
                    delay *= 2
        return wrapper

    if func is not None:
        return decorate(func)
    return decorate
