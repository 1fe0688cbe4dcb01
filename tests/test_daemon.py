"""Tests for daemon lifecycle."""

import asyncio
import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil
import pytest

from conftest import make_volume
from disk_keepalive.config import Config
from disk_keepalive.daemon import Daemon, run_daemon, running_daemon_pid
from disk_keepalive.socket_client import request_once
from disk_keepalive.state import StateStore
from disk_keepalive.updates import UpdateInfo


async def wait_until(condition, timeout=2.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def config() -> Config:
    config = Config()
    config.updates.enabled = False
    config.discovery.poll_interval = 0.05
    return config


@pytest.fixture
def daemon(patched_config_paths: Path, config: Config) -> Daemon:
    """Daemon whose discovery and mount table are empty."""
    with (
        patch("disk_keepalive.volumes.discover", return_value=[]),
        patch("disk_keepalive.daemon.mounted_paths", return_value=set()),
    ):
        return Daemon(config)


# === PID file handling ===


class TestRunningDaemonPid:
    def test_no_pid_file(self, tmp_path: Path):
        assert running_daemon_pid(tmp_path / "daemon.pid") is None

    def test_invalid_pid_file_is_removed(self, tmp_path: Path):
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text("not-a-pid")

        assert running_daemon_pid(pid_path) is None
        assert not pid_path.exists()

    def test_own_pid_is_not_another_daemon(self, tmp_path: Path):
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text(str(os.getpid()))
        assert running_daemon_pid(pid_path) is None

    def test_dead_process_is_stale(self, tmp_path: Path):
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text("999999")

        with patch(
            "disk_keepalive.daemon.psutil.Process", side_effect=psutil.NoSuchProcess(999999)
        ):
            assert running_daemon_pid(pid_path) is None

        assert not pid_path.exists()

    def test_pid_reused_by_other_process(self, tmp_path: Path):
        """A PID file pointing at an unrelated process is treated as stale."""
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text("4242")
        proc = MagicMock()
        proc.cmdline.return_value = ["/usr/bin/vim", "notes.txt"]
        proc.name.return_value = "vim"

        with patch("disk_keepalive.daemon.psutil.Process", return_value=proc):
            assert running_daemon_pid(pid_path) is None

        assert not pid_path.exists()

    def test_running_daemon_detected(self, tmp_path: Path):
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text("4242\n")
        proc = MagicMock()
        proc.cmdline.return_value = ["/usr/bin/python3", "-m", "disk_keepalive.cli", "daemon"]

        with patch("disk_keepalive.daemon.psutil.Process", return_value=proc):
            assert running_daemon_pid(pid_path) == 4242

        assert pid_path.exists()

    def test_access_denied_assumes_running(self, tmp_path: Path):
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text("4242")
        with patch(
            "disk_keepalive.daemon.psutil.Process", side_effect=psutil.AccessDenied(4242)
        ):
            assert running_daemon_pid(pid_path) == 4242


# === Update check ===


@pytest.mark.asyncio
async def test_update_available_logged_once(daemon: Daemon):
    info = UpdateInfo(current="1.2.0", latest="9.9.9")
    with patch("disk_keepalive.daemon.check_for_update", return_value=info):
        await daemon.check_update()
        await daemon.check_update()

    messages = [e.message for e in daemon.engine.log_entries]
    assert messages.count("Update available: v9.9.9") == 1


@pytest.mark.asyncio
async def test_no_entry_when_up_to_date_or_offline(daemon: Daemon):
    with patch(
        "disk_keepalive.daemon.check_for_update",
        return_value=UpdateInfo(current="1.2.0", latest="1.2.0"),
    ):
        await daemon.check_update()
    with patch("disk_keepalive.daemon.check_for_update", return_value=None):
        await daemon.check_update()

    assert daemon.engine.log_entries == []


# === Lifecycle ===


@pytest.mark.asyncio
async def test_start_serves_socket_and_stop_cleans_up(daemon: Daemon):
    task = asyncio.create_task(daemon.start())
    try:
        await wait_until(lambda: daemon.config.socket_path.exists())
        assert daemon.config.pid_path.read_text() == str(os.getpid())
        assert daemon.watcher.running

        reply = await request_once(daemon.config.socket_path, {"type": "snapshot"})
        assert reply["type"] == "state"
        assert reply["volumes"] == []

        daemon._shutdown_event.set()
        await asyncio.wait_for(task, timeout=2.0)
    finally:
        await daemon.stop()

    assert not daemon.config.socket_path.exists()
    assert not daemon.config.pid_path.exists()
    assert not daemon.watcher.running


@pytest.mark.asyncio
async def test_start_restores_saved_volumes(patched_config_paths: Path, config: Config):
    backup = make_volume("Backup")
    StateStore(config.store_path).update(active_volume_ids={backup.id})
    with (
        patch("disk_keepalive.volumes.discover", return_value=[backup]),
        patch("disk_keepalive.daemon.mounted_paths", return_value={backup.path}),
    ):
        daemon = Daemon(config)

    task = asyncio.create_task(daemon.start())
    try:
        await wait_until(lambda: daemon.config.socket_path.exists())
        assert daemon.engine.is_active(backup.path)
        assert daemon.engine.pending_ids == set()
        daemon._shutdown_event.set()
        await asyncio.wait_for(task, timeout=2.0)
    finally:
        await daemon.stop()

    # Shutdown does not forget what was active
    assert daemon.store.load().active_volume_ids == {backup.id}


@pytest.mark.asyncio
async def test_mount_baseline_taken_before_discovery(daemon: Daemon):
    """The mount table is read once before startup; polling begins afterwards."""
    seen = []
    original = daemon.engine.startup

    async def startup():
        seen.append((daemon.watcher._known, daemon.watcher.running))
        await original()

    daemon.engine.startup = startup
    task = asyncio.create_task(daemon.start())
    try:
        await wait_until(lambda: daemon.config.socket_path.exists())
        assert daemon.watcher.running
        daemon._shutdown_event.set()
        await asyncio.wait_for(task, timeout=2.0)
    finally:
        await daemon.stop()

    assert seen == [(set(), False)]


@pytest.mark.asyncio
async def test_second_daemon_refuses_to_start(daemon: Daemon):
    with patch("disk_keepalive.daemon.running_daemon_pid", return_value=4242):
        with pytest.raises(RuntimeError, match="already running"):
            await daemon.start()
    await daemon.stop()

    assert not daemon.config.pid_path.exists()


@pytest.mark.asyncio
async def test_run_daemon_stops_after_crash(patched_config_paths: Path, config: Config):
    with (
        patch("disk_keepalive.volumes.discover", return_value=[]),
        patch("disk_keepalive.daemon.mounted_paths", return_value=set()),
        patch("disk_keepalive.daemon.console.configure") as configure,
        patch("disk_keepalive.daemon.running_daemon_pid", return_value=4242),
        patch.object(Daemon, "stop") as stop,
    ):
        with pytest.raises(RuntimeError):
            await run_daemon(config)

    configure.assert_called_once_with(config)
    stop.assert_awaited_once()
