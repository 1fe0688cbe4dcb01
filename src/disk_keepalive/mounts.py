"""Mount/unmount event source.

Polls the mount table and turns differences into MountEvent objects. The
watcher never touches engine state; it only calls the on_mount/on_unmount
callbacks, which enqueue events for the engine's control loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import structlog

log = structlog.get_logger()


class MountEventKind(Enum):
    """Direction of a mount table change."""

    MOUNTED = "mounted"
    UNMOUNTED = "unmounted"


@dataclass(frozen=True)
class MountEvent:
    """A single mount or unmount of a volume path."""

    kind: MountEventKind
    path: str


def diff_mounts(previous: set[str], current: set[str]) -> list[MountEvent]:
    """Compute events between two mount table snapshots.

    Unmounts come first so a volume moved to a new path is stopped before the
    new path is matched against pending restores.
    """
    events = [MountEvent(MountEventKind.UNMOUNTED, p) for p in sorted(previous - current)]
    events.extend(MountEvent(MountEventKind.MOUNTED, p) for p in sorted(current - previous))
    return events


class MountWatcher:
    """Watch the mount table and report transitions.

    Args:
        list_mounts: Returns the current set of mount paths (blocking, runs in a thread)
        on_mount: Called with the path of each newly mounted volume
        on_unmount: Called with the path of each removed volume
        poll_interval: Seconds between mount table checks
    """

    def __init__(
        self,
        list_mounts: Callable[[], set[str]],
        on_mount: Callable[[str], None],
        on_unmount: Callable[[str], None],
        poll_interval: float = 2.0,
    ) -> None:
        self._list_mounts = list_mounts
        self._on_mount = on_mount
        self._on_unmount = on_unmount
        self.poll_interval = poll_interval
        self._known: set[str] | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        """Whether the polling task is alive."""
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> list[MountEvent]:
        """Check the mount table once and dispatch any transitions.

        The first call only records the baseline; it never reports events.
        """
        try:
            current = await asyncio.to_thread(self._list_mounts)
        except OSError as e:
            log.warning("mount_table_read_failed", error=str(e))
            return []

        if self._known is None:
            self._known = current
            return []

        events = diff_mounts(self._known, current)
        self._known = current
        for event in events:
            log.info("mount_event", kind=event.kind.value, path=event.path)
            if event.kind is MountEventKind.MOUNTED:
                self._on_mount(event.path)
            else:
                self._on_unmount(event.path)
        return events

    async def run(self) -> None:
        """Poll until cancelled."""
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        """Start polling in a background task."""
        if not self.running:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Cancel the polling task and wait for it to finish."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
