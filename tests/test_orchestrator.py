"""Tests for the orchestrator and its quota recovery cycle."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from rms.errors import (
    RecoveryError,
    ServerNotRunningError,
    VolumeCommandError,
    VolumeEjectError,
)
from rms.orchestrator import CRITICAL_WARNING, Orchestrator, RunState
from rms.process import EventKind, ServerEvent, ServerSupervisor
from rms.ramdisk import CacheVolume


@pytest.fixture
def manager():
    """Parent mock recording the order of supervisor and volume calls."""
    return MagicMock()


@pytest.fixture
def supervisor(manager):
    supervisor = MagicMock()
    supervisor.start = AsyncMock()
    supervisor.stop = AsyncMock()
    supervisor.send_command = MagicMock(return_value=True)
    supervisor.monitor = None
    supervisor.is_running = False
    supervisor.status.return_value = {"state": "running"}
    manager.attach_mock(supervisor.start, "start")
    manager.attach_mock(supervisor.stop, "stop")
    return supervisor


@pytest.fixture
def volume(manager):
    volume = MagicMock()
    volume.mount = AsyncMock()
    volume.unmount = AsyncMock()
    volume.mounted = True
    volume.info.return_value = {"device": "/dev/zram0"}
    manager.attach_mock(volume.mount, "mount")
    manager.attach_mock(volume.unmount, "unmount")
    return volume


@pytest.fixture
def orchestrator(config, supervisor, volume) -> Orchestrator:
    return Orchestrator(config, supervisor=supervisor, volume=volume)


def call_names(manager) -> list[str]:
    return [c[0] for c in manager.mock_calls]


class TestConstruction:
    def test_builds_cache_volume_when_active(self, config):
        config.cache.active = True
        (config.server_dir / "minecraft_server.1.12.2.jar").touch()

        orchestrator = Orchestrator(config, handle_signals=False)

        assert isinstance(orchestrator.volume, CacheVolume)
        assert orchestrator.volume.label == "world"
        assert orchestrator.volume.mount_point == config.world_dir
        assert orchestrator.supervisor.events is orchestrator.events

    def test_no_volume_without_cache(self, config, supervisor):
        orchestrator = Orchestrator(config, supervisor=supervisor)
        assert orchestrator.volume is None
        assert supervisor.events is orchestrator.events

    def test_operator_restart_blocked_while_restarting(self, orchestrator, supervisor):
        assert supervisor.restart_blocked() is False
        orchestrator.restarting = True
        assert supervisor.restart_blocked() is True


class TestPrepare:
    @pytest.mark.asyncio
    async def test_creates_directories(self, orchestrator, config):
        await orchestrator.prepare()
        assert config.backup_root.is_dir()
        assert config.world_dir.is_dir()

    @pytest.mark.asyncio
    async def test_seeds_empty_backup_from_existing_world(self, orchestrator, config):
        config.world_dir.mkdir(parents=True)
        (config.world_dir / "level.dat").write_text("existing")

        await orchestrator.prepare()

        assert (config.backup_world_dir / "level.dat").read_text() == "existing"
        assert (config.world_dir / "level.dat").exists()

    @pytest.mark.asyncio
    async def test_keeps_existing_backup(self, orchestrator, config):
        config.world_dir.mkdir(parents=True)
        (config.world_dir / "level.dat").write_text("world")
        config.backup_world_dir.mkdir(parents=True)
        (config.backup_world_dir / "level.dat").write_text("backup")

        await orchestrator.prepare()

        assert (config.backup_world_dir / "level.dat").read_text() == "backup"


class TestLaunch:
    @pytest.mark.asyncio
    async def test_mounts_before_start(self, orchestrator, manager):
        await orchestrator.launch()
        assert call_names(manager) == ["mount", "start"]
        assert orchestrator.state is RunState.RUNNING

    @pytest.mark.asyncio
    async def test_mount_failure_does_not_start(self, orchestrator, volume, supervisor):
        volume.mount.side_effect = VolumeCommandError(["mount"], 32, "busy")
        with pytest.raises(VolumeCommandError):
            await orchestrator.launch()
        supervisor.start.assert_not_awaited()


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recovery_cycle_order(self, orchestrator, manager, supervisor):
        await orchestrator.launch()
        manager.reset_mock()

        orchestrator.on_critical()
        assert orchestrator.restarting
        assert orchestrator.state is RunState.RESTARTING
        supervisor.send_command.assert_called_once_with(CRITICAL_WARNING)

        await orchestrator._recovery

        assert call_names(manager) == ["stop", "unmount", "mount", "start"]
        supervisor.stop.assert_awaited_once_with(restart=True)
        assert not orchestrator.restarting
        assert orchestrator.state is RunState.RUNNING

    @pytest.mark.asyncio
    async def test_critical_while_restarting_is_ignored(self, orchestrator, supervisor):
        await orchestrator.launch()

        orchestrator.on_critical()
        first = orchestrator._recovery
        orchestrator.on_critical()
        orchestrator.on_critical()

        assert orchestrator._recovery is first
        supervisor.send_command.assert_called_once()
        await first
        supervisor.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_critical_before_running_is_ignored(self, orchestrator, supervisor):
        orchestrator.on_critical()
        assert not orchestrator.restarting
        assert orchestrator._recovery is None
        supervisor.send_command.assert_not_called()

    @pytest.mark.asyncio
    async def test_grace_period(self, orchestrator, config, supervisor):
        config.cache.quota.grace_period = 0.2
        await orchestrator.launch()

        orchestrator.on_critical()
        await asyncio.sleep(0.05)
        supervisor.stop.assert_not_awaited()

        await orchestrator._recovery
        supervisor.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_eject_failure_continues(self, orchestrator, manager, volume):
        volume.unmount.side_effect = VolumeEjectError(["diskutil", "eject"], 1, "busy")
        await orchestrator.launch()
        manager.reset_mock()

        orchestrator.on_critical()
        await orchestrator._recovery

        assert call_names(manager) == ["stop", "unmount", "mount", "start"]
        assert orchestrator.events.empty()

    @pytest.mark.asyncio
    async def test_unmount_failure_halts_recovery(self, orchestrator, manager, volume):
        volume.unmount.side_effect = VolumeCommandError(["umount"], 1, "busy")
        await orchestrator.launch()
        manager.reset_mock()

        orchestrator.on_critical()
        await orchestrator._recovery

        assert call_names(manager) == ["stop", "unmount"]
        event = orchestrator.events.get_nowait()
        assert event.kind is EventKind.FAILED
        assert isinstance(event.error, VolumeCommandError)
        assert not orchestrator.restarting

    @pytest.mark.asyncio
    async def test_without_cache(self, config, supervisor, manager):
        orchestrator = Orchestrator(config, supervisor=supervisor)
        await orchestrator.launch()
        manager.reset_mock()

        orchestrator.on_critical()
        await orchestrator._recovery

        assert call_names(manager) == ["stop", "start"]


class TestRun:
    @pytest.mark.asyncio
    async def test_exit_unmounts_and_returns(self, orchestrator, manager):
        orchestrator.events.put_nowait(ServerEvent(EventKind.EXITED))

        assert await orchestrator.run() == 0

        assert call_names(manager) == ["mount", "start", "unmount"]
        assert orchestrator.state is RunState.IDLE

    @pytest.mark.asyncio
    async def test_exit_without_mounted_volume(self, orchestrator, manager, volume):
        volume.mounted = False
        orchestrator.events.put_nowait(ServerEvent(EventKind.EXITED))

        assert await orchestrator.run() == 0
        volume.unmount.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_recovery_ends_run(self, orchestrator, manager, volume):
        volume.mount.side_effect = [None, VolumeCommandError(["mkfs.ext4"], 1, "bad")]
        orchestrator.events.put_nowait(ServerEvent(EventKind.CRITICAL))

        with pytest.raises(RecoveryError):
            await asyncio.wait_for(orchestrator.run(), timeout=5)

        assert call_names(manager) == ["mount", "start", "stop", "unmount", "mount", "unmount"]
        assert orchestrator.state is RunState.IDLE

    @pytest.mark.asyncio
    async def test_launch_failure_releases_volume(self, orchestrator, manager, supervisor):
        supervisor.start.side_effect = OSError("java: not found")

        with pytest.raises(OSError):
            await orchestrator.run()

        assert call_names(manager) == ["mount", "start", "unmount"]

    @pytest.mark.asyncio
    async def test_cleanup_error_does_not_mask_failure(self, orchestrator, supervisor, volume):
        supervisor.start.side_effect = OSError("java: not found")
        volume.unmount.side_effect = VolumeCommandError(["umount"], 1, "busy")

        with pytest.raises(OSError, match="java"):
            await orchestrator.run()

    @pytest.mark.asyncio
    async def test_critical_then_exit(self, orchestrator, manager):
        async def exit_after_recovery():
            while orchestrator._recovery is None:
                await asyncio.sleep(0.01)
            await orchestrator._recovery
            orchestrator.events.put_nowait(ServerEvent(EventKind.EXITED))

        orchestrator.events.put_nowait(ServerEvent(EventKind.CRITICAL))
        orchestrator.events.put_nowait(ServerEvent(EventKind.CRITICAL))
        helper = asyncio.create_task(exit_after_recovery())

        assert await asyncio.wait_for(orchestrator.run(), timeout=5) == 0
        await helper

        assert call_names(manager) == [
            "mount",
            "start",
            "stop",
            "unmount",
            "mount",
            "start",
            "unmount",
        ]

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_server(self, orchestrator, manager, supervisor):
        supervisor.is_running = True

        await orchestrator.shutdown()

        assert call_names(manager) == ["stop", "unmount"]
        supervisor.stop.assert_awaited_once_with()

    @pytest.mark.asyncio
    async def test_shutdown_releases_volume_when_stop_fails(
        self, orchestrator, manager, supervisor, caplog
    ):
        supervisor.is_running = True
        supervisor.stop.side_effect = RuntimeError("save failed")

        await orchestrator.shutdown()

        assert call_names(manager) == ["stop", "unmount"]
        assert "Failed to stop server: save failed" in caplog.messages

    @pytest.mark.asyncio
    async def test_stop_ignores_not_running(self, orchestrator, supervisor):
        supervisor.stop.side_effect = ServerNotRunningError()
        await orchestrator.stop()


def test_status(orchestrator):
    status = orchestrator.status()
    assert status == {
        "state": "idle",
        "restarting": False,
        "server": {"state": "running"},
        "cache": {"device": "/dev/zram0"},
        "quota": None,
    }


class RecordingVolume:
    """Cache volume stand-in recording whether the server runs at each step."""

    def __init__(self, unmount_delay: float = 0.3):
        self.supervisor = None
        self.mounted = False
        self.seen = []
        self._unmount_delay = unmount_delay

    async def mount(self):
        self.seen.append(("mount", self.supervisor.is_running))
        self.mounted = True

    async def unmount(self):
        self.seen.append(("unmount-begin", self.supervisor.is_running))
        await asyncio.sleep(self._unmount_delay)
        self.seen.append(("unmount-end", self.supervisor.is_running))
        self.mounted = False

    def info(self):
        return {"mounted": self.mounted}


class TestOperatorDuringRecovery:
    @pytest.mark.asyncio
    async def test_console_restart_waits_for_recovery(self, config, fake_server):
        supervisor = ServerSupervisor(config, command=fake_server, handle_signals=False)
        volume = RecordingVolume()
        volume.supervisor = supervisor
        orchestrator = Orchestrator(config, supervisor=supervisor, volume=volume)

        await orchestrator.launch()
        try:
            orchestrator.on_critical()
            assert supervisor.handle_input("rs\n") is None

            await asyncio.wait_for(orchestrator._recovery, timeout=10)

            assert volume.seen == [
                ("mount", False),
                ("unmount-begin", False),
                ("unmount-end", False),
                ("mount", False),
            ]
            assert supervisor.is_running
            assert supervisor.restart_count == 0
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_console_restart_allowed_when_idle(self, config, fake_server):
        supervisor = ServerSupervisor(config, command=fake_server, handle_signals=False)
        Orchestrator(config, supervisor=supervisor)

        await supervisor.start()
        try:
            task = supervisor.handle_input("restart\n")
            assert task is not None
            await asyncio.wait_for(task, timeout=10)
            assert supervisor.restart_count == 1
        finally:
            await supervisor.stop()
