"""Background task that periodically sweeps expired state."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Protocol


class Sweepable(Protocol):
    async def sweep(self) -> int: ...


logger = logging.getLogger(__name__)


class Reaper:
    """Run ``sweep()`` on every target once per ``interval`` seconds."""

    def __init__(self, interval: float, *targets: Sweepable) -> None:
        self._interval = interval
        self._targets = targets
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rendezvous-reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> int:
        removed = 0
        for target in self._targets:
            removed += await target.sweep()
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep sweeping on the next tick
                logger.exception("Periodic sweep failed")
