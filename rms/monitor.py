"""
Cache quota monitoring for the live world directory.

Instead of polling, the monitor samples the hosting volume each time the
server writes to the world. When occupancy reaches the quota it raises a
critical signal on every qualifying change (the orchestrator decides what
to do with repeats) and, at most once per alert interval, broadcasts a
warning to the players.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import psutil
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .stopwatch import ElapsedTimer

logger = logging.getLogger(__name__)


@dataclass
class QuotaState:
    """One occupancy sample of the volume hosting the world."""

    total: int
    free: int
    occupied: int
    quota: float
    percent: int
    critical: bool = False
    alerted: bool = False

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "free": self.free,
            "occupied": self.occupied,
            "quota": self.quota,
            "percent": self.percent,
            "critical": self.critical,
            "alerted": self.alerted,
        }


class WorldChangeHandler(FileSystemEventHandler):
    """Forwards world file changes from the observer thread to the monitor."""

    def __init__(self, monitor: "QuotaMonitor"):
        super().__init__()
        self.monitor = monitor

    def on_created(self, event: FileSystemEvent):
        self.monitor.notify_change(event.src_path)

    def on_modified(self, event: FileSystemEvent):
        self.monitor.notify_change(event.src_path)


class QuotaMonitor:
    """Watches the world directory and checks the cache quota on changes."""

    def __init__(
        self,
        path,
        percentage: float,
        on_critical: Callable[[], None],
        send_command: Callable[[str], bool] | None = None,
        auto_restart: bool = True,
        alert: bool = True,
        alert_interval: float = 60.0,
        timer: ElapsedTimer | None = None,
        disk_usage=psutil.disk_usage,
    ):
        self.path = Path(path)
        self.percentage = percentage
        self.auto_restart = auto_restart
        self.alert = alert
        self.alert_interval = alert_interval
        self.last_state: QuotaState | None = None
        self._on_critical = on_critical
        self._send_command = send_command
        self._timer = timer or ElapsedTimer()
        self._disk_usage = disk_usage
        self._observer = None
        self._loop = None
        self._pending: set[asyncio.Task] = set()

    @property
    def watching(self) -> bool:
        return self._observer is not None

    def start(self):
        """Start watching the world directory."""
        if self._observer is not None:
            return

        self._loop = asyncio.get_running_loop()
        observer = Observer()
        observer.schedule(WorldChangeHandler(self), str(self.path), recursive=True)
        observer.start()
        self._observer = observer
        self._timer.start()
        logger.debug(f"Watching {self.path} for quota changes")

    def close(self):
        """Stop watching and drop pending checks."""
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)

        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

    def notify_change(self, src_path=None):
        """Called from the observer thread for every change."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule_check)

    def _schedule_check(self):
        if self._observer is None:
            return
        task = asyncio.create_task(self.check())
        self._pending.add(task)
        task.add_done_callback(self._check_done)

    def _check_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Quota check failed: {error}")

    async def check(self) -> QuotaState:
        """Sample the volume, raise the critical signal and alert if needed."""
        usage = await asyncio.to_thread(self._disk_usage, str(self.path))
        total = usage.total
        free = usage.free

        occupied = total - free
        quota = (self.percentage / 100) * total
        percent = (occupied * 100) // total if total else 0
        over_quota = total > 0 and occupied >= quota

        state = QuotaState(
            total=total,
            free=free,
            occupied=occupied,
            quota=quota,
            percent=percent,
        )

        if over_quota and self.auto_restart:
            state.critical = True
            self._on_critical()

        if over_quota and self._timer.elapsed >= self.alert_interval:
            self._broadcast(percent)
            state.alerted = True
            self._timer.reset()

        self.last_state = state
        return state

    def _broadcast(self, percent: int):
        message = (
            f"Your world size has reached {self.percentage}% capacity of total "
            f"allocated cache. Currently occupied: {percent}%"
        )
        logger.warning(message)

        if self.alert and self._send_command is not None:
            self._send_command(f"say {message}")
