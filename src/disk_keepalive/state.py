"""Durable engine state: active volume IDs, ping interval, launch-at-login.

Stored as TOML next to the daemon's other data. Writes are best-effort: a
failed write is logged and the engine keeps running from memory.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import tomlkit

log = structlog.get_logger()


@dataclass
class PersistedState:
    """Snapshot of everything that survives a restart."""

    active_volume_ids: set[str] = field(default_factory=set)
    interval_seconds: float = 30.0
    launch_at_login: bool = False


class StateStore:
    """Read/modify/write access to the persisted state file.

    Each update rewrites only the keys it is given, so the daemon (volumes,
    interval) and the CLI (launch-at-login) never clobber each other's fields.
    """

    def __init__(self, path: Path, default_interval: float = 30.0) -> None:
        self.path = path
        self.default_interval = default_interval

    def load(self) -> PersistedState:
        """Load persisted state, falling back to defaults for anything missing or invalid."""
        data = self._read()
        ids = data.get("active_volume_ids", [])
        interval = data.get("interval_seconds", self.default_interval)
        if not isinstance(interval, (int, float)) or isinstance(interval, bool) or interval <= 0:
            interval = self.default_interval

        return PersistedState(
            active_volume_ids={str(i) for i in ids} if isinstance(ids, list) else set(),
            interval_seconds=float(interval),
            launch_at_login=bool(data.get("launch_at_login", False)),
        )

    def update(
        self,
        *,
        active_volume_ids: set[str] | None = None,
        interval_seconds: float | None = None,
        launch_at_login: bool | None = None,
    ) -> bool:
        """Write the given fields, keeping the rest of the file as is.

        Returns:
            True if the file was written, False if the write failed.
        """
        doc = self._read()
        if active_volume_ids is not None:
            doc["active_volume_ids"] = sorted(active_volume_ids)
        if interval_seconds is not None:
            doc["interval_seconds"] = float(interval_seconds)
        if launch_at_login is not None:
            doc["launch_at_login"] = launch_at_login

        try:
            self._write(doc)
        except OSError as e:
            log.warning("state_save_failed", path=str(self.path), error=str(e))
            return False
        return True

    def _read(self) -> Any:
        if not self.path.exists():
            return tomlkit.document()
        try:
            with open(self.path) as f:
                return tomlkit.load(f)
        except (OSError, tomlkit.exceptions.TOMLKitError) as e:
            log.warning("state_load_failed", path=str(self.path), error=str(e))
            return tomlkit.document()

    def _write(self, doc: Any) -> None:
        """Atomically replace the state file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".toml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(tomlkit.dumps(doc))
            os.replace(tmp, self.path)
        except OSError:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
