"""
Process supervisor for the Minecraft server.

Starts the server with the world restored from backup, relays its output
to the log, forwards operator input, saves the world back to the backup on
demand and on a schedule, and watches the cache quota while it runs.
"""

import asyncio
import inspect
import logging
import os
import re
import signal
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .config import Config
from .errors import ServerJarNotFoundError, ServerNotRunningError
from .files import mirror_tree
from .monitor import QuotaMonitor
from .sync import SyncScheduler

logger = logging.getLogger(__name__)
server_logger = logging.getLogger("rms.server")

SERVER_JAR_GLOB = "minecraft_server*.jar"
DOWNLOAD_URL = "https://minecraft.net/download"

# "[12:34:56] " as printed in front of every server line
TIMESTAMP_PATTERN = re.compile(r"^\[\d+:\d+:\d+\]\s")


class ServerState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class EventKind(Enum):
    CRITICAL = "critical"
    EXITED = "exited"
    FAILED = "failed"


@dataclass
class ServerEvent:
    """A message from the supervisor (or a recovery task) to the orchestrator."""

    kind: EventKind
    error: Exception | None = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class ProcessInfo:
    """Information about the running server process."""

    process: asyncio.subprocess.Process
    started_at: datetime = field(default_factory=datetime.now)
    closed: asyncio.Event = field(default_factory=asyncio.Event)


def strip_timestamp(line: str) -> str:
    """Remove the leading [H:MM:SS] token from a server output line."""
    return TIMESTAMP_PATTERN.sub("", line, count=1)


def find_server_jar(server_dir, version: str) -> Path:
    """
    Locate the server jar in the server directory.

    A single minecraft_server*.jar is used whatever its version; with
    several, the one named after the configured version wins.
    """
    server_dir = Path(server_dir)
    files = sorted(server_dir.glob(SERVER_JAR_GLOB))

    if not files:
        message = f"Minecraft server jar file not found in {server_dir}. Download it from {DOWNLOAD_URL}"
        logger.error(message)
        raise ServerJarNotFoundError(message)

    if len(files) == 1:
        return files[0]

    preferred = server_dir / f"minecraft_server.{version}.jar"
    if preferred.exists():
        return preferred

    names = ", ".join(f.name for f in files)
    message = f"Several server jars found ({names}) and none matches version {version}"
    logger.error(message)
    raise ServerJarNotFoundError(message)


def build_command(config: Config, jar: Path) -> list[str]:
    """The java command line, relative to the server directory."""
    mc = config.minecraft
    return [
        mc.java,
        f"-Xms{mc.min_memory}",
        f"-Xmx{mc.max_memory}",
        "-jar",
        jar.name,
        "nogui",
    ]


class ServerSupervisor:
    """Manages the lifecycle of the supervised server process."""

    def __init__(
        self,
        config: Config,
        events: asyncio.Queue | None = None,
        command: list[str] | None = None,
        console=None,
        handle_signals: bool = True,
    ):
        self.config = config
        self.events = events if events is not None else asyncio.Queue()
        if command is None:
            jar = find_server_jar(config.server_dir, config.minecraft.version)
            command = build_command(config, jar)
        self.command = command

        self.state = ServerState.STOPPED
        self.restarting = False
        self.restart_count = 0
        self.scheduler: SyncScheduler | None = None
        self.monitor: QuotaMonitor | None = None
        # Set by the owner of the run to refuse operator restarts while it
        # is restarting the server itself.
        self.restart_blocked: Callable[[], bool] | None = None

        self._info: ProcessInfo | None = None
        self._on_exit: Callable[[], Any] | None = None
        self._console = console
        self._handle_signals = handle_signals
        self._reading_console = False
        self._console_buffer = b""
        self._signals: list[int] = []
        self._save_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._info is not None

    @property
    def pid(self) -> int | None:
        return self._info.process.pid if self._info else None

    async def start(self, on_exit: Callable[[], Any] | None = None):
        """
        Restore the world from backup and start the server.

        When the server closes outside of a restart, on_exit is called once;
        without one an EXITED event is published instead.
        """
        if self.is_running:
            logger.info("Minecraft server is already running")
            return

        if on_exit is not None:
            self._on_exit = on_exit
        self.state = ServerState.STARTING
        self.restarting = False

        logger.info("Restoring world data.")
        try:
            await asyncio.to_thread(
                mirror_tree, self.config.backup_world_dir, self.config.world_dir
            )

            logger.info("Starting server.")
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.config.server_dir),
            )
        except Exception as e:
            self.state = ServerState.STOPPED
            logger.error(f"Failed to start server: {e}")
            raise

        info = ProcessInfo(process=process)
        self._info = info

        self._spawn(self._relay(process.stdout, logging.INFO))
        self._spawn(self._relay(process.stderr, logging.ERROR))
        self._spawn(self._wait_for_exit(info))

        self.state = ServerState.RUNNING
        logger.info(f"Started server with PID {process.pid}")

        self._setup_listeners()
        self._attach_watchers()

    async def stop(self, restart: bool = False):
        """Save the world, then terminate the server and wait for it to close."""
        info = self._info
        if info is None:
            logger.error("Error: Minecraft server is not running.")
            raise ServerNotRunningError()

        if self.state is ServerState.STOPPING:
            logger.info("Minecraft server is already stopping")
            await info.closed.wait()
            return

        logger.info("Stopping server.")
        self.state = ServerState.STOPPING
        try:
            await self.save()
        except Exception:
            self.state = ServerState.RUNNING if self._info else ServerState.STOPPED
            raise

        await self._detach_watchers()
        self.restarting = restart
        self._clear_listeners()

        if info.process.returncode is None:
            try:
                info.process.terminate()
            except ProcessLookupError:
                pass

        await info.closed.wait()

    async def restart(self):
        """Stop the server without ending the run, then start it again."""
        logger.info("Server restart requested.")
        await self.stop(restart=True)
        self.restart_count += 1
        await self.start()

    async def save(self):
        """
        Ask the server to save, then copy the world to the backup directory.

        The server never confirms a save; the copy simply starts after
        save_flush_delay seconds.
        """
        if self._info is None:
            logger.error("Error: Minecraft server is not running.")
            raise ServerNotRunningError()

        async with self._save_lock:
            logger.info("Saving world.")
            self.send_command("save-all")
            await asyncio.sleep(self.config.save_flush_delay)

            logger.info("Syncing data.")
            await asyncio.to_thread(
                mirror_tree, self.config.world_dir, self.config.backup_world_dir
            )

    def send_command(self, command: str) -> bool:
        """Write a command line to the server. Returns False if it was not sent."""
        info = self._info
        if info is None or info.process.stdin is None or info.process.returncode is not None:
            logger.warning(f"Not sending '{command}', Minecraft server is not running")
            return False

        try:
            info.process.stdin.write(f"{command}\n".encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.error(f"Failed to send '{command}' to server: {e}")
            return False
        return True

    def handle_input(self, line: str) -> asyncio.Task | None:
        """
        Route one line of operator input.

        stop, save, restart (or rs) are handled here; anything else goes to
        the server unchanged. Returns the task running a handled command.
        """
        command = line.strip()
        if command == "stop":
            return self._spawn(self._run_operator_command(self.stop()))
        if command == "save":
            return self._spawn(self._run_operator_command(self.save()))
        if command in ("restart", "rs"):
            if self.restart_blocked is not None and self.restart_blocked():
                logger.warning("A restart is already in progress, ignoring restart request")
                return None
            return self._spawn(self._run_operator_command(self.restart()))

        self.send_command(line.rstrip("\r\n"))
        return None

    def status(self) -> dict:
        info = self._info
        return {
            "state": self.state.value,
            "pid": self.pid,
            "restarting": self.restarting,
            "restart_count": self.restart_count,
            "started_at": info.started_at.isoformat() if info else None,
            "uptime_seconds": (datetime.now() - info.started_at).total_seconds() if info else 0,
            "command": " ".join(self.command),
        }

    def publish(self, event: ServerEvent):
        self.events.put_nowait(event)

    # Internals

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Supervisor task failed: {error}")

    async def _run_operator_command(self, coro):
        try:
            await coro
        except ServerNotRunningError:
            pass
        except Exception as e:
            logger.error(f"Command failed: {e}")

    async def _relay(self, stream, level: int):
        """Relay server output lines to the log."""
        while True:
            try:
                line = await stream.readline()
            except ValueError as e:
                logger.warning(f"Dropped oversized server output line: {e}")
                continue
            if not line:
                break

            text = strip_timestamp(line.decode("utf-8", errors="replace")).strip()
            if text:
                server_logger.log(level, text)

    async def _wait_for_exit(self, info: ProcessInfo):
        returncode = await info.process.wait()
        logger.info(f"Server exited with code {returncode}")

        if self._info is info:
            self._info = None
        self.state = ServerState.STOPPED
        self._clear_listeners()
        await self._detach_watchers()
        info.closed.set()

        if self.restarting:
            return

        if self._on_exit is not None:
            result = self._on_exit()
            if inspect.isawaitable(result):
                await result
        else:
            self.publish(ServerEvent(EventKind.EXITED))

    def _on_critical(self):
        self.publish(ServerEvent(EventKind.CRITICAL))

    def _attach_watchers(self):
        self.scheduler = SyncScheduler(self.config.sync_interval_ms, self.save)
        self.scheduler.start()

        if self.config.cache.active:
            quota = self.config.cache.quota
            self.monitor = QuotaMonitor(
                self.config.world_dir,
                quota.percentage,
                on_critical=self._on_critical,
                send_command=self.send_command,
                auto_restart=quota.auto,
                alert=quota.alert,
                alert_interval=quota.alert_interval,
            )
            self.monitor.start()

    async def _detach_watchers(self):
        monitor, self.monitor = self.monitor, None
        if monitor is not None:
            monitor.close()

        scheduler, self.scheduler = self.scheduler, None
        if scheduler is not None:
            await scheduler.stop()

    def _setup_listeners(self):
        loop = asyncio.get_running_loop()

        if self._console is not None and not self._reading_console:
            try:
                loop.add_reader(self._console.fileno(), self._read_console)
                self._reading_console = True
            except (NotImplementedError, OSError, ValueError) as e:
                logger.warning(f"Operator input unavailable: {e}")

        if self._handle_signals and not self._signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self._on_signal, sig)
                    self._signals.append(sig)
                except (NotImplementedError, RuntimeError, ValueError):
                    pass

    def _clear_listeners(self):
        loop = asyncio.get_running_loop()

        if self._reading_console:
            loop.remove_reader(self._console.fileno())
            self._reading_console = False

        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals = []

    def _read_console(self):
        try:
            data = os.read(self._console.fileno(), 4096)
        except (BlockingIOError, InterruptedError):
            return

        if not data:
            logger.info("Operator input closed")
            asyncio.get_running_loop().remove_reader(self._console.fileno())
            self._reading_console = False
            return

        self._console_buffer += data
        while b"\n" in self._console_buffer:
            line, self._console_buffer = self._console_buffer.split(b"\n", 1)
            self.handle_input(line.decode("utf-8", errors="replace") + "\n")

    def _on_signal(self, sig: int):
        logger.info(f"Received {signal.Signals(sig).name}, stopping the server gracefully.")
        self._spawn(self._run_operator_command(self.stop()))
