"""Per-host request pacing."""

from __future__ import annotations

import asyncio
import os
import time
from collections import defaultdict

DEFAULT_RATE = float(os.environ.get("CATALOG_REQUESTS_PER_SECOND", 2.0))


class RateLimiter:
    """Spaces requests to the same host at least ``1 / rate`` seconds apart.

    A rate of zero or less disables pacing, which tests rely on.
    """

    def __init__(self, *, rate: float = DEFAULT_RATE) -> None:
        self.rate = rate
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._next_slot: dict[str, float] = defaultdict(float)

    @property
    def enabled(self) -> bool:
        return self.rate > 0

    async def wait_for_host(self, host: str) -> None:
        if not self.enabled:
            return
        async with self._locks[host]:
            now = time.monotonic()
            wait = self._next_slot[host] - now
            if wait > 0:
                await asyncio.sleep(wait)
            self._next_slot[host] = max(now, self._next_slot[host]) + 1.0 / self.rate
