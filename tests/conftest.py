"""Shared test fixtures for disk-keepalive."""

import asyncio
import tempfile
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest

from disk_keepalive.config import Config
from disk_keepalive.eject import EjectResult
from disk_keepalive.engine import KeepAliveEngine
from disk_keepalive.ping import PingResult
from disk_keepalive.power import PowerAssertionManager
from disk_keepalive.state import StateStore
from disk_keepalive.volumes import Volume


def make_volume(
    name: str = "Backup",
    path: str | None = None,
    vol_id: str | None = None,
    is_external: bool = True,
    total_bytes: int = 2_000_000_000_000,
    free_bytes: int = 1_200_000_000_000,
) -> Volume:
    """Create a Volume for testing."""
    return Volume(
        id=vol_id or f"UUID-{name.upper()}",
        name=name,
        path=path or f"/Volumes/{name}",
        is_external=is_external,
        total_bytes=total_bytes,
        free_bytes=free_bytes,
    )


class FakeIOKit:
    """Stand-in for the IOKit assertion calls."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.created: list[tuple[int, str]] = []
        self.released: list[int] = []
        self._next_id = 100

    def create(self, name: str) -> int | None:
        if self.fail:
            return None
        self._next_id += 1
        self.created.append((self._next_id, name))
        return self._next_id

    def release(self, assertion_id: int) -> bool:
        self.released.append(assertion_id)
        return True

    @property
    def held(self) -> set[int]:
        return {aid for aid, _ in self.created} - set(self.released)


class FakePinger:
    """Records pings and returns scripted outcomes.

    Set `gate` to an asyncio.Event to hold pings in flight until it is set.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failing: set[str] = set()
        self.gate: asyncio.Event | None = None

    async def ping(self, volume_path: str) -> PingResult:
        self.calls.append(volume_path)
        if self.gate is not None:
            await self.gate.wait()
        if volume_path in self.failing:
            return PingResult(path=volume_path, ok=False, error="Input/output error")
        return PingResult(path=volume_path, ok=True, files_read=2)


class FakeEjector:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.calls: list[str] = []

    async def eject(self, volume: Volume) -> EjectResult:
        self.calls.append(volume.path)
        if self.ok:
            return EjectResult(volume.path, volume.name, ok=True, attempts=1)
        return EjectResult(volume.path, volume.name, ok=False, attempts=3, error="Resource busy")


@dataclass
class EngineHarness:
    """An engine wired to fakes, plus handles on the fakes."""

    engine: KeepAliveEngine
    store: StateStore
    pinger: FakePinger
    iokit: FakeIOKit
    ejector: FakeEjector
    mounted: list[Volume] = field(default_factory=list)

    def messages(self) -> list[str]:
        return [e.message for e in self.engine.log_entries]


async def settle(engine: KeepAliveEngine, rounds: int = 5) -> None:
    """Let spawned ping/eject tasks run, then apply whatever they queued."""
    for _ in range(rounds):
        await asyncio.sleep(0)
    await engine.drain()


@pytest.fixture
def make_engine(tmp_path: Path):
    """Factory for engines backed by fakes and a temporary state file."""

    def factory(
        volumes: list[Volume] | None = None,
        saved_ids: set[str] | None = None,
        interval: float | None = None,
        config: Config | None = None,
    ) -> EngineHarness:
        store = StateStore(tmp_path / "state.toml")
        if saved_ids is not None or interval is not None:
            store.update(
                active_volume_ids=saved_ids if saved_ids is not None else set(),
                interval_seconds=interval if interval is not None else 30.0,
            )
        mounted = list(volumes or [])
        pinger = FakePinger()
        iokit = FakeIOKit()
        ejector = FakeEjector()
        engine = KeepAliveEngine(
            config or Config(),
            store,
            power=PowerAssertionManager(create=iokit.create, release=iokit.release),
            pinger=pinger,
            ejector=ejector,
            discover=lambda: list(mounted),
        )
        return EngineHarness(engine, store, pinger, iokit, ejector, mounted)

    return factory


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    macOS has a 104-character limit for Unix socket paths.
    pytest's tmp_path is too long, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="dka_") as tmpdir:
        yield Path(tmpdir)


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config directory at base_path."""
    # fmt: off
    for name in ("config_dir", "data_dir", "state_dir", "runtime_dir"):
        stack.enter_context(patch.object(
            Config, name,
            new_callable=lambda: property(lambda self: base_path)
        ))
    # fmt: on


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Patch all Config paths to a short temporary directory.

    Yields the base path for tests that need to reference it directly.
    """
    with ExitStack() as stack:
        _patch_config_paths(stack, short_tmp_path)
        yield short_tmp_path
