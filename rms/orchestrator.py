"""
Top-level control loop.

Prepares the directories, mounts the cache volume, starts the server and
then reacts to supervisor events. A critical quota event starts a recovery
cycle: warn the players, wait a grace period, stop the server (saving the
world), remount a fresh volume sized from the backup and start again.
"""

import asyncio
import logging
from enum import Enum

from .config import Config
from .errors import RecoveryError, ServerNotRunningError, VolumeEjectError
from .files import is_empty_dir, mirror_tree
from .process import EventKind, ServerEvent, ServerSupervisor
from .ramdisk import CacheVolume

logger = logging.getLogger(__name__)

CRITICAL_WARNING = "say Cache size critical. Your server will be restarted in 1 minute."


class RunState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    RESTARTING = "restarting"


class Orchestrator:
    """Runs the server and the quota recovery cycle until the server exits."""

    def __init__(
        self,
        config: Config,
        supervisor: ServerSupervisor | None = None,
        volume: CacheVolume | None = None,
        console=None,
        handle_signals: bool = True,
    ):
        self.config = config
        self.events: asyncio.Queue = asyncio.Queue()

        if supervisor is None:
            supervisor = ServerSupervisor(
                config,
                events=self.events,
                console=console,
                handle_signals=handle_signals,
            )
        else:
            supervisor.events = self.events
        supervisor.restart_blocked = lambda: self.restarting
        self.supervisor = supervisor

        if volume is None and config.cache.active:
            volume = CacheVolume(
                config.minecraft.level_name,
                config.world_dir,
                config.backup_root,
                min_size=config.cache_min_size,
            )
        self.volume = volume

        self.state = RunState.IDLE
        self.restarting = False
        self._recovery: asyncio.Task | None = None

    async def run(self) -> int:
        """Start everything and handle events until the server exits."""
        logger.info("Initialization started.")
        try:
            await self.prepare()
            await self.launch()

            while True:
                event: ServerEvent = await self.events.get()

                if event.kind is EventKind.CRITICAL:
                    self.on_critical()
                elif event.kind is EventKind.EXITED:
                    return 0
                elif event.kind is EventKind.FAILED:
                    raise RecoveryError(f"Recovery failed: {event.error}") from event.error
        finally:
            await self.shutdown()

    async def prepare(self):
        """Create the directories and seed an empty backup from an existing world."""
        backup_root = self.config.backup_root
        world_dir = self.config.world_dir
        backup_world = self.config.backup_world_dir

        for path in (backup_root, world_dir):
            if path.exists():
                logger.info(f"{path} found.")
            else:
                logger.info(f"Creating {path}")
                path.mkdir(parents=True, exist_ok=True)

        # The first start would otherwise wipe the world with an empty backup.
        if is_empty_dir(backup_world) and not is_empty_dir(world_dir):
            logger.info(f"Backup {world_dir} to {backup_world}")
            await asyncio.to_thread(mirror_tree, world_dir, backup_world, False)

    async def launch(self):
        """Mount the cache volume if enabled, then start the server."""
        logger.info("Run started.")
        if self.volume is not None:
            logger.info("Using cache.")
            await self.volume.mount()
        else:
            logger.info("Cache disabled.")

        await self.supervisor.start()
        self.state = RunState.RUNNING

    def on_critical(self):
        """Schedule a recovery cycle unless one is already in flight."""
        if self.restarting:
            logger.debug("Cache critical, restart already scheduled")
            return
        if self.state is not RunState.RUNNING:
            logger.debug(f"Cache critical while {self.state.value}, ignored")
            return

        self.restarting = True
        self.state = RunState.RESTARTING
        grace = self.config.cache.quota.grace_period
        logger.error(f"Cache is critical. Scheduling restart in {grace:.0f} seconds.")
        self.supervisor.send_command(CRITICAL_WARNING)
        self._recovery = asyncio.create_task(self.recover())

    async def recover(self):
        """Stop, remount and start again. Failures are reported as a FAILED event."""
        try:
            await asyncio.sleep(self.config.cache.quota.grace_period)
            await self.supervisor.stop(restart=True)

            if self.volume is not None:
                try:
                    await self.volume.unmount()
                except VolumeEjectError as e:
                    # Unmounted all the same, only the old device is left over.
                    logger.warning(f"Continuing restart, old cache device not released: {e}")

            await self.launch()
            logger.info("Restart after critical cache size completed.")
        except Exception as e:
            logger.error(f"Restart after critical cache size failed: {e}")
            self.events.put_nowait(ServerEvent(EventKind.FAILED, error=e))
        finally:
            self.restarting = False

    async def shutdown(self):
        """
        Stop a server that is still running, then release the cache volume.

        Errors are logged so that an exception ending the run is not masked.
        """
        logger.info("Cleaning.")
        if self._recovery is not None and not self._recovery.done():
            self._recovery.cancel()
            try:
                await self._recovery
            except asyncio.CancelledError:
                pass

        if self.supervisor.is_running:
            try:
                await self.supervisor.stop()
            except Exception as e:
                logger.error(f"Failed to stop server: {e}")

        if self.volume is not None and self.volume.mounted:
            try:
                await self.volume.unmount()
            except Exception as e:
                logger.error(f"Failed to release cache volume: {e}")

        self.state = RunState.IDLE
        logger.info("Exit.")

    async def stop(self):
        """Stop the server; the run ends once it has closed."""
        try:
            await self.supervisor.stop()
        except ServerNotRunningError:
            pass

    def status(self) -> dict:
        monitor = self.supervisor.monitor
        quota = monitor.last_state if monitor is not None else None
        return {
            "state": self.state.value,
            "restarting": self.restarting,
            "server": self.supervisor.status(),
            "cache": self.volume.info() if self.volume is not None else None,
            "quota": quota.to_dict() if quota is not None else None,
        }
