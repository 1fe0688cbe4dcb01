"""Keep-alive engine: per-volume workers, health, restore-on-startup.

All state lives on one asyncio event loop. Ticker tasks and ping/eject
completions never mutate engine state directly; completions are put on the
engine's inbound queue and applied one at a time by run() (or drain()).

Volume states:
    Inactive ──start──▶ Active-Healthy ◀──ping ok── Active-Failing
       ▲                     │  └──────ping failed──────▶ │
       └──stop/unmount/eject─┴────────────────────────────┘
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

import structlog

from disk_keepalive import __version__
from disk_keepalive import logging as console
from disk_keepalive import volumes as volume_discovery
from disk_keepalive.config import Config
from disk_keepalive.eject import EjectController, EjectResult
from disk_keepalive.logging import Icon
from disk_keepalive.mounts import MountEvent, MountEventKind
from disk_keepalive.ping import PingExecutor, PingResult
from disk_keepalive.power import AssertionHandle, PowerAssertionManager
from disk_keepalive.ringbuffer import LogBuffer, LogEntry
from disk_keepalive.state import StateStore
from disk_keepalive.volumes import Volume, find_volume

log = structlog.get_logger()


class Pinger(Protocol):
    async def ping(self, volume_path: str) -> PingResult: ...


class Ejector(Protocol):
    async def eject(self, volume: Volume) -> EjectResult: ...


@dataclass(frozen=True)
class PingCompleted:
    """A ping finished in its worker thread."""

    result: PingResult
    generation: int = 0


@dataclass(frozen=True)
class EjectCompleted:
    """An eject task finished, successfully or not."""

    result: EjectResult


EngineEvent = MountEvent | PingCompleted | EjectCompleted


@dataclass
class WorkerState:
    """Bookkeeping for one active volume."""

    volume: Volume
    ticker: asyncio.Task | None = None
    assertion: AssertionHandle | None = None
    last_ok: bool | None = None
    generation: int = 0


@dataclass(frozen=True)
class EngineSnapshot:
    """Immutable view of engine state for presentation layers."""

    volumes: tuple[Volume, ...]
    active_paths: frozenset[str]
    failing_paths: frozenset[str]
    interval: float
    log_entries: tuple[LogEntry, ...]
    pending_ids: frozenset[str]
    version: str = __version__

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation for socket clients."""
        return {
            "volumes": [v.to_dict() for v in self.volumes],
            "active_paths": sorted(self.active_paths),
            "failing_paths": sorted(self.failing_paths),
            "interval": self.interval,
            "log_entries": [e.to_dict() for e in self.log_entries],
            "pending_ids": sorted(self.pending_ids),
            "version": self.version,
        }


class KeepAliveEngine:
    """Orchestrates keep-alive workers for the volumes the user selected.

    Collaborators are injected so tests can replace hardware-facing pieces.

    Args:
        config: Application config
        store: Persisted state store (active IDs, interval)
        power: Sleep-prevention assertions
        pinger: Object with an async ping(path) -> PingResult
        ejector: Object with an async eject(volume) -> EjectResult
        discover: Blocking callable returning the mounted volumes
    """

    def __init__(
        self,
        config: Config,
        store: StateStore,
        *,
        power: PowerAssertionManager | None = None,
        pinger: Pinger | None = None,
        ejector: Ejector | None = None,
        discover: Callable[[], list[Volume]] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self._power = power or PowerAssertionManager()
        self._pinger = pinger or PingExecutor(config.ping)
        self._ejector = ejector or EjectController(config.eject)
        self._discover = discover or partial(
            volume_discovery.discover,
            tuple(config.discovery.excluded_prefixes),
            config.discovery.diskutil_timeout,
        )

        self._events: asyncio.Queue[EngineEvent] = asyncio.Queue()
        self._volumes: list[Volume] = []
        self._workers: dict[str, WorkerState] = {}
        self._failing: set[str] = set()
        self._inflight: dict[tuple[str, int], asyncio.Task] = {}
        self._generation = 0
        self._background: set[asyncio.Task] = set()
        self._log = LogBuffer(max_entries=config.system.log_buffer_size)
        self._listeners: list[Callable[[], None]] = []

        persisted = store.load()
        bounds = config.keepalive
        self.interval = min(
            max(persisted.interval_seconds, bounds.min_interval), bounds.max_interval
        )
        self._pending: set[str] = set(persisted.active_volume_ids)

    # ─────────────────────────────────────────────────────────────────────
    # Read-only views
    # ─────────────────────────────────────────────────────────────────────

    @property
    def volumes(self) -> list[Volume]:
        return list(self._volumes)

    @property
    def active_paths(self) -> set[str]:
        return set(self._workers)

    @property
    def failing_paths(self) -> set[str]:
        return set(self._failing)

    @property
    def pending_ids(self) -> set[str]:
        return set(self._pending)

    @property
    def log_entries(self) -> list[LogEntry]:
        return self._log.entries

    def worker(self, path: str) -> WorkerState | None:
        return self._workers.get(path)

    def is_active(self, path: str) -> bool:
        return path in self._workers

    def find(self, ref: str) -> Volume | None:
        """Look up a volume in the current snapshot by path, ID or name."""
        return find_volume(self._volumes, ref)

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            volumes=tuple(self._volumes),
            active_paths=frozenset(self._workers),
            failing_paths=frozenset(self._failing),
            interval=self.interval,
            log_entries=self._log.freeze(),
            pending_ids=frozenset(self._pending),
        )

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked after every state change."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def startup(self) -> None:
        """First discovery pass and restore of persisted volumes.

        Must be awaited once, on the running loop, before commands are used.
        """
        await self.refresh()
        if not self._pending:
            return
        self.record("info", f"Restoring {len(self._pending)} saved volume(s)...", Icon.RESTORE)
        self._restore_pending()
        if self._pending:
            self.record("info", f"Waiting for: {', '.join(sorted(self._pending))}", Icon.WAIT)

    async def run(self) -> None:
        """Apply inbound events until cancelled."""
        while True:
            event = await self._events.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                log.exception("engine_event_failed", event=repr(event), error=str(e))

    async def drain(self) -> int:
        """Apply every event already queued, without waiting for new ones.

        Returns:
            Number of events applied.
        """
        applied = 0
        while True:
            try:
                event = self._events.get_nowait()
            except asyncio.QueueEmpty:
                return applied
            await self.handle_event(event)
            applied += 1

    async def close(self) -> None:
        """Stop every worker without touching the persisted active set.

        The next start restores the same volumes.
        """
        for path in list(self._workers):
            self._teardown(path)
        self._failing.clear()
        self._power.release_all()

        pending = [*self._inflight.values(), *self._background]
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._inflight.clear()
        self._background.clear()
        log.info("engine_closed")

    # ─────────────────────────────────────────────────────────────────────
    # Event inputs
    # ─────────────────────────────────────────────────────────────────────

    def on_mount(self, path: str) -> None:
        self._events.put_nowait(MountEvent(MountEventKind.MOUNTED, path))

    def on_unmount(self, path: str) -> None:
        self._events.put_nowait(MountEvent(MountEventKind.UNMOUNTED, path))

    async def handle_event(self, event: EngineEvent) -> None:
        """Apply one inbound event to engine state."""
        if isinstance(event, PingCompleted):
            self._apply_ping(event.result, event.generation)
        elif isinstance(event, EjectCompleted):
            self._apply_eject(event.result)
        elif event.kind is MountEventKind.MOUNTED:
            self.record("info", f"Mounted: {_basename(event.path)}", Icon.MOUNT)
            await self.refresh()
            self._restore_pending()
        else:
            self.record("info", f"Unmounted: {_basename(event.path)}", Icon.UNMOUNT)
            self.stop(event.path)
            await self.refresh()

    # ─────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────

    async def refresh(self) -> bool:
        """Re-run discovery. The snapshot is replaced only if the path set changed.

        Returns:
            True if the snapshot was replaced.
        """
        try:
            found = await asyncio.to_thread(self._discover)
        except OSError as e:
            log.warning("discovery_failed", error=str(e))
            return False

        if {v.path for v in found} == {v.path for v in self._volumes}:
            return False
        self._volumes = list(found)
        log.info("volumes_changed", count=len(self._volumes))
        self._notify()
        return True

    def start(self, volume: Volume) -> None:
        """Begin keeping a volume awake. Restarts the worker if already active."""
        self._teardown(volume.path)
        self._failing.discard(volume.path)

        self._generation += 1
        worker = WorkerState(volume=volume, generation=self._generation)
        worker.assertion = self._power.acquire(f"Keep {volume.name} awake")
        if worker.assertion is None:
            self.record("warn", f"Sleep prevention unavailable for {volume.name}")
        self._workers[volume.path] = worker

        self._dispatch_ping(volume.path)
        worker.ticker = self._start_ticker(volume.path)
        self.record(
            "info", f"Started: {volume.name} (interval: {int(self.interval)}s)", Icon.START
        )
        self._persist()
        self._notify()

    def stop(self, path: str) -> None:
        """Stop keeping a volume awake. Safe to call for inactive paths."""
        worker = self._teardown(path)
        self._failing.discard(path)
        if worker is not None:
            self.record("info", f"Stopped: {worker.volume.name}", Icon.STOP)
        self._persist()
        self._notify()

    def toggle(self, volume: Volume) -> bool:
        """Flip a volume between active and inactive.

        Returns:
            True if the volume is active afterwards.
        """
        if volume.path in self._workers:
            self.stop(volume.path)
            return False
        self.start(volume)
        return True

    def start_all(self) -> None:
        for volume in list(self._volumes):
            self.start(volume)

    def stop_all(self) -> None:
        """Stop every worker. Volumes still waiting to be restored stay pending."""
        for path in list(self._workers):
            self.stop(path)
        self._persist()
        self._notify()

    def set_interval(self, seconds: float) -> None:
        """Change the ping interval for every worker without changing membership.

        Raises:
            ValueError: If seconds is outside the configured bounds.
        """
        bounds = self.config.keepalive
        if not bounds.min_interval <= seconds <= bounds.max_interval:
            raise ValueError(
                f"interval must be within [{bounds.min_interval:g}, {bounds.max_interval:g}], "
                f"got {seconds:g}"
            )
        if seconds == self.interval:
            return

        self.interval = float(seconds)
        if not self._workers:
            self.record("info", f"Interval changed to {int(seconds)}s", Icon.INTERVAL)
        for path, worker in self._workers.items():
            if worker.ticker:
                worker.ticker.cancel()
            self._dispatch_ping(path)
            worker.ticker = self._start_ticker(path)
            self.record(
                "info",
                f"Interval changed to {int(seconds)}s for: {worker.volume.name}",
                Icon.INTERVAL,
            )
        self.store.update(interval_seconds=self.interval)
        self._notify()

    def eject(self, volume: Volume) -> asyncio.Task:
        """Stop the volume now, then unmount and eject it in a separate task.

        Returns:
            The eject task; its result is an EjectResult.
        """
        self.stop(volume.path)
        self.record("info", f"Ejecting: {volume.name}...", Icon.EJECT)
        task = asyncio.create_task(self._run_eject(volume), name=f"eject:{volume.path}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def record(self, level: str, message: str, icon: str = "") -> LogEntry:
        """Append a human-readable entry to the event log.

        The entry is also echoed to the console and the structured log file.
        """
        entry = self._log.push(message, level)
        console.volume_entry(entry, icon)
        log.info("engine_log", entry_level=level, message=message)
        self._notify()
        return entry

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    def _restore_pending(self) -> None:
        """Start mounted volumes whose IDs are waiting to be restored."""
        restored = 0
        for volume in list(self._volumes):
            if volume.id in self._pending and volume.path not in self._workers:
                self._pending.discard(volume.id)
                self.start(volume)
                self.record("info", f"Restored: {volume.name}", Icon.OK)
                restored += 1
        if restored and not self._pending:
            self.record("info", "All saved volumes restored", Icon.OK)

    def _teardown(self, path: str) -> WorkerState | None:
        """Cancel the ticker and release the assertion for path."""
        worker = self._workers.pop(path, None)
        if worker is None:
            return None
        if worker.ticker:
            worker.ticker.cancel()
        if worker.assertion:
            self._power.release(worker.assertion)
        return worker

    def _start_ticker(self, path: str) -> asyncio.Task:
        return asyncio.create_task(self._tick(path, self.interval), name=f"ticker:{path}")

    async def _tick(self, path: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._dispatch_ping(path)

    def _dispatch_ping(self, path: str) -> None:
        """Launch a ping for path unless this worker already has one running.

        Pings are keyed by worker generation, so a restarted worker gets its
        own immediate ping while a ping from the previous one is still out.
        """
        worker = self._workers.get(path)
        if worker is None:
            return
        key = (path, worker.generation)
        if key in self._inflight:
            log.debug("ping_overrun_dropped", path=path)
            return
        task = asyncio.create_task(self._run_ping(*key), name=f"ping:{path}")
        self._inflight[key] = task

    async def _run_ping(self, path: str, generation: int) -> None:
        try:
            try:
                result = await self._pinger.ping(path)
            except OSError as e:
                result = PingResult(path=path, ok=False, error=str(e))
            self._events.put_nowait(PingCompleted(result, generation))
        finally:
            self._inflight.pop((path, generation), None)

    def _apply_ping(self, result: PingResult, generation: int) -> None:
        worker = self._workers.get(result.path)
        if worker is None or worker.generation != generation:
            log.debug("ping_result_discarded", path=result.path, generation=generation)
            return

        worker.last_ok = result.ok
        name = worker.volume.name
        if result.ok:
            self._failing.discard(result.path)
            self.record("info", f"Ping: {name}", Icon.HEARTBEAT)
        else:
            self._failing.add(result.path)
            self.record("error", f"Ping failed: {name} ({result.path}) - {result.error}", Icon.FAIL)

    async def _run_eject(self, volume: Volume) -> EjectResult:
        result = await self._ejector.eject(volume)
        self._events.put_nowait(EjectCompleted(result))
        return result

    def _apply_eject(self, result: EjectResult) -> None:
        if result.ok:
            self.record("info", f"Ejected: {result.name}", Icon.OK)
        else:
            self.record("error", f"Eject failed: {result.name} - {result.error}", Icon.FAIL)

    def _persist(self) -> None:
        active_ids = {w.volume.id for w in self._workers.values()}
        self.store.update(active_volume_ids=active_ids)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            callback()


def _basename(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1] or path
