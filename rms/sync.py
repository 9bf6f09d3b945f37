"""
Periodic world sync.

Every interval the scheduler asks the supervisor to save the world, which
flushes the server and copies the live world to the backup directory.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


def describe_period(period_ms: int) -> str:
    """Render a period the way intervals are written in the config."""
    for unit, size in (("h", 3_600_000), ("m", 60_000), ("s", 1000)):
        if period_ms >= size and period_ms % size == 0:
            return f"{period_ms // size}{unit}"
    return f"{period_ms}ms"


class SyncScheduler:
    """Calls save() every period_ms milliseconds until stopped."""

    def __init__(self, period_ms: int, save: Callable[[], Awaitable[None]]):
        self.period_ms = period_ms
        self._save = save
        self._running = False
        self._task = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start the sync loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._sync_loop())
        logger.debug(f"Sync scheduled every {describe_period(self.period_ms)}")

    async def stop(self):
        """Stop the sync loop."""
        self._running = False
        task, self._task = self._task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _sync_loop(self):
        while self._running:
            await asyncio.sleep(self.period_ms / 1000)
            if not self._running:
                break

            logger.info(f"Syncing. Next sync in about {describe_period(self.period_ms)}")
            try:
                await self._save()
            except Exception as e:
                logger.error(f"Sync failed: {e}")
