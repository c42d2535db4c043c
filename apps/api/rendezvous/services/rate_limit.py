"""Per-client fixed-window request counter."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

from ..core.exceptions import RateLimited

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allow ``limit`` requests per client within each ``window_seconds``.

    A window opens on a client's first request and is replaced once it has
    passed its reset time.
    """

    def __init__(
        self,
        limit: int = 60,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock or time.monotonic
        self._windows: Dict[str, _Window] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    async def hit(self, client: str) -> bool:
        """Count one request and report whether it is within the allowance."""

        async with self._lock:
            now = self._clock()
            window = self._windows.get(client)
            if window is None or now > window.reset_at:
                window = _Window(count=0, reset_at=now + self._window)
                self._windows[client] = window
            window.count += 1
            return window.count <= self._limit

    async def check(self, client: str) -> None:
        if not await self.hit(client):
            logger.warning("Rate limit exceeded for %s", client)
            raise RateLimited(client)

    async def sweep(self) -> int:
        """Forget windows that have already reset."""

        async with self._lock:
            now = self._clock()
            stale = [client for client, window in self._windows.items() if now > window.reset_at]
            for client in stale:
                self._windows.pop(client, None)
        return len(stale)
