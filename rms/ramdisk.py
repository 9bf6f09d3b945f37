"""
RAM disk used as a cache for the live world directory.

The disk is sized from the current backup (x1.5, never below the configured
minimum), created, formatted and mounted on the world directory. Each step
is a separate external command; a failing step raises VolumeCommandError
and earlier steps are NOT rolled back, so a half-built disk may be left
behind after a failure.
"""

import asyncio
import logging
import math
import platform
from pathlib import Path

from .errors import VolumeCommandError, VolumeEjectError
from .files import get_directory_size
from .units import SizeValue

logger = logging.getLogger(__name__)

DEFAULT_MIN_SIZE = SizeValue("256M")


class DarwinCommands:
    """hdiutil/newfs_hfs based RAM disks (macOS)."""

    def create(self, size: SizeValue) -> list[str]:
        return ["hdiutil", "attach", "-nomount", f"ram://{math.ceil(size.sectors)}"]

    def format(self, device: str, label: str) -> list[str]:
        return ["newfs_hfs", "-v", label, device]

    def mount(self, device: str, mount_point: str) -> list[str]:
        return ["mount", "-t", "hfs", "-o", "noatime", device, mount_point]

    def unmount(self, mount_point: str) -> list[str]:
        return ["umount", mount_point]

    def eject(self, device: str) -> list[str]:
        return ["diskutil", "eject", device]


class LinuxCommands:
    """zram based RAM disks (Linux, needs root)."""

    def create(self, size: SizeValue) -> list[str]:
        return ["zramctl", "--find", "--size", str(size.bytes)]

    def format(self, device: str, label: str) -> list[str]:
        return ["mkfs.ext4", "-q", "-L", label[:16], device]

    def mount(self, device: str, mount_point: str) -> list[str]:
        return ["mount", "-o", "noatime", device, mount_point]

    def unmount(self, mount_point: str) -> list[str]:
        return ["umount", mount_point]

    def eject(self, device: str) -> list[str]:
        return ["zramctl", "--reset", device]


def default_commands():
    """Pick the command set for the current platform."""
    if platform.system() == "Darwin":
        return DarwinCommands()
    return LinuxCommands()


async def run_command(cmd: list[str]) -> str:
    """Run a command and return its stdout. Raises VolumeCommandError on failure."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise VolumeCommandError(cmd, -1, str(e)) from e

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise VolumeCommandError(
            cmd,
            process.returncode,
            stderr.decode("utf-8", errors="replace"),
        )
    return stdout.decode("utf-8", errors="replace")


class CacheVolume:
    """A RAM disk that can be mounted on, and unmounted from, a directory."""

    def __init__(
        self,
        label: str,
        mount_point,
        backup_dir,
        min_size: SizeValue = DEFAULT_MIN_SIZE,
        commands=None,
        runner=run_command,
    ):
        self.label = label
        self.mount_point = Path(mount_point)
        self.backup_dir = Path(backup_dir)
        self.min_size = min_size
        self.commands = commands or default_commands()
        self._run = runner
        self.device: str | None = None
        self.size: SizeValue | None = None

    @property
    def mounted(self) -> bool:
        return self.device is not None

    async def compute_size(self) -> SizeValue:
        """Backup size plus half, clamped to the minimum size."""
        backup_bytes = await asyncio.to_thread(get_directory_size, self.backup_dir)
        target = SizeValue(backup_bytes + backup_bytes // 2)
        if target.lt(self.min_size):
            return self.min_size
        return target

    async def mount(self):
        """Create, format and mount the disk on the mount point."""
        size = await self.compute_size()
        self.size = size

        logger.info(f"Creating ramdisk of size {size.megabytes:.0f}MB")
        output = await self._step(self.commands.create(size))
        device = output.strip().split()[0] if output.strip() else ""
        if not device:
            raise VolumeCommandError(self.commands.create(size), 0, "no device reported")

        logger.info(f"Formatting {device}")
        await self._step(self.commands.format(device, self.label))

        logger.info(f"Mounting {device} at path {self.mount_point}")
        self.mount_point.mkdir(parents=True, exist_ok=True)
        await self._step(self.commands.mount(device, str(self.mount_point)))

        self.device = device

    async def unmount(self):
        """
        Unmount the disk and release its device.

        Without a known device only the unmount runs. If releasing the
        device fails the disk is already detached from the mount point;
        VolumeEjectError is raised all the same.
        """
        logger.info(f"Unmounting {self.mount_point}")
        await self._step(self.commands.unmount(str(self.mount_point)))

        device, self.device = self.device, None
        if not device:
            return

        logger.info(f"Ejecting {device}")
        cmd = self.commands.eject(device)
        try:
            await self._run(cmd)
        except VolumeCommandError as e:
            logger.error(f"Failed to eject {device}: {e.stderr.strip()}")
            raise VolumeEjectError(e.command, e.returncode, e.stderr) from e

    async def _step(self, cmd: list[str]) -> str:
        try:
            return await self._run(cmd)
        except VolumeCommandError as e:
            logger.error(f"{' '.join(cmd)} failed: {e.stderr.strip()}")
            raise

    def info(self) -> dict:
        return {
            "label": self.label,
            "mount_point": str(self.mount_point),
            "device": self.device,
            "mounted": self.mounted,
            "size_bytes": self.size.bytes if self.size else None,
        }
