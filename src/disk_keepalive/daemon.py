"""Background daemon for disk-keepalive."""

import asyncio
import ctypes
import os
import signal
from functools import partial
from pathlib import Path

import psutil
import structlog

from disk_keepalive import __version__
from disk_keepalive import logging as console
from disk_keepalive.config import Config
from disk_keepalive.engine import KeepAliveEngine
from disk_keepalive.logging import Icon
from disk_keepalive.mounts import MountWatcher
from disk_keepalive.socket_server import SocketServer
from disk_keepalive.state import StateStore
from disk_keepalive.updates import check_for_update
from disk_keepalive.volumes import mounted_paths

log = structlog.get_logger()

# pthread/qos.h
QOS_CLASS_UTILITY = 0x11

_PROCESS_MARKERS = ("disk-keepalive", "disk_keepalive")


def _set_qos_class(qos_class: int) -> bool:
    """Ask the scheduler to treat this thread as `qos_class`.

    UTILITY stops macOS from coalescing our timers so far that pings drift
    past a drive's idle timeout. No-op off macOS.
    """
    try:
        libsystem = ctypes.CDLL("/usr/lib/libSystem.B.dylib")
        set_self = libsystem.pthread_set_qos_class_self_np
    except (OSError, AttributeError):
        return False
    set_self.argtypes = [ctypes.c_uint, ctypes.c_int]
    set_self.restype = ctypes.c_int
    return set_self(qos_class, 0) == 0


def running_daemon_pid(pid_path: Path) -> int | None:
    """PID of another live disk-keepalive daemon recorded in pid_path.

    A PID file that is unreadable, or names a dead or unrelated process (PIDs
    are reused across reboots), is stale and gets deleted. A process we may
    not inspect is assumed to be the daemon.
    """
    try:
        pid = int(pid_path.read_text().strip())
    except FileNotFoundError:
        return None
    except ValueError:
        log.warning("pid_file_stale", reason="not a number")
        pid_path.unlink(missing_ok=True)
        return None

    if pid == os.getpid():
        return None

    try:
        proc = psutil.Process(pid)
        cmdline = " ".join(proc.cmdline()).lower()
        if any(marker in cmdline for marker in _PROCESS_MARKERS):
            return pid
        log.warning("pid_file_stale", reason="pid reused", pid=pid, process=proc.name())
    except psutil.NoSuchProcess:
        log.warning("pid_file_stale", reason="process gone", pid=pid)
    except psutil.AccessDenied:
        log.warning("pid_check_access_denied", pid=pid)
        return pid

    pid_path.unlink(missing_ok=True)
    return None


class Daemon:
    """Owns one engine plus the mount watcher and socket server feeding it."""

    def __init__(self, config: Config):
        self.config = config
        self.store = StateStore(config.store_path, config.keepalive.default_interval)
        self.engine = KeepAliveEngine(config, self.store)
        self.watcher = MountWatcher(
            list_mounts=partial(mounted_paths, tuple(config.discovery.excluded_prefixes)),
            on_mount=self.engine.on_mount,
            on_unmount=self.engine.on_unmount,
            poll_interval=config.discovery.poll_interval,
        )

        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._socket_server: SocketServer | None = None
        self._announced_version: str | None = None
        self._owns_pid_file = False

    async def start(self) -> None:
        """Bring everything up, then block until SIGTERM or SIGINT.

        Raises:
            RuntimeError: If another daemon holds the PID file.
        """
        qos = "UTILITY" if _set_qos_class(QOS_CLASS_UTILITY) else None
        console.daemon_banner(__version__, qos)
        log.info("daemon_starting", version=__version__, qos=qos)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        other = running_daemon_pid(self.config.pid_path)
        if other is not None:
            console.already_running(other)
            log.error("daemon_already_running", pid=other)
            raise RuntimeError("Daemon is already running")
        self._claim_pid_file()

        # Baseline the mount table before discovery so no transition is missed
        await self.watcher.poll_once()
        await self.engine.startup()
        self.watcher.start()
        self._tasks.append(asyncio.create_task(self.engine.run(), name="engine"))

        self._socket_server = SocketServer(self.config.socket_path, self.engine)
        await self._socket_server.start()

        if self.config.updates.enabled:
            self._tasks.append(asyncio.create_task(self._update_loop(), name="updates"))

        console.daemon_ready(
            self.engine.interval, len(self.engine.pending_ids), self.config.socket_path
        )
        log.info("daemon_started", volumes=len(self.engine.volumes))

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Tear down in reverse order of start.

        Workers are stopped without rewriting the persisted active set, so the
        next start restores the same volumes.
        """
        console.daemon_stopping()
        log.info("daemon_stopping")

        if self._socket_server:
            await self._socket_server.stop()
            self._socket_server = None
        await self.watcher.stop()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.engine.close()
        self._release_pid_file()

        console.daemon_stopped()
        log.info("daemon_stopped")

    def _handle_signal(self, sig: signal.Signals) -> None:
        console.signal_received(sig.name)
        log.info("signal_received", signal=sig.name)
        self._shutdown_event.set()

    async def _update_loop(self) -> None:
        period = self.config.updates.check_interval_hours * 3600
        while True:
            await self.check_update()
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=period)
                return
            except asyncio.TimeoutError:
                continue

    async def check_update(self) -> None:
        """Log "Update available" in the engine log, once per new release."""
        updates = self.config.updates
        info = await asyncio.to_thread(
            check_for_update, __version__, updates.changelog_url, updates.timeout
        )
        if info is None or not info.available or info.latest == self._announced_version:
            return
        self._announced_version = info.latest
        self.engine.record("info", f"Update available: v{info.latest}", Icon.UPDATE)

    def _claim_pid_file(self) -> None:
        pid_path = self.config.pid_path
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True

    def _release_pid_file(self) -> None:
        if self._owns_pid_file:
            self.config.pid_path.unlink(missing_ok=True)
            self._owns_pid_file = False


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown, loading config from disk if not given."""
    if config is None:
        config = Config.load()

    console.configure(config)
    daemon = Daemon(config)
    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
