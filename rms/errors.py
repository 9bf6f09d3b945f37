"""Exceptions raised by the supervisor, the cache volume and the orchestrator."""


class RmsError(Exception):
    """Base class for all rms errors."""


class ServerJarNotFoundError(RmsError):
    """No server jar could be found in the server directory."""


class ServerNotRunningError(RmsError):
    """An operation needed a running server process and there was none."""

    def __init__(self, message: str = "Minecraft server is not running"):
        super().__init__(message)


class VolumeCommandError(RmsError):
    """An external command used to manage the cache volume failed."""

    def __init__(self, command: list[str], returncode: int, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"{command[0]} failed: {detail}")


class VolumeEjectError(VolumeCommandError):
    """The volume was unmounted but its device could not be released."""


class RecoveryError(RmsError):
    """A quota recovery cycle failed part way through."""
