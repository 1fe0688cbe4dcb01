"""Unmount and eject a volume with a bounded retry budget."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from disk_keepalive.config import EjectConfig
from disk_keepalive.volumes import Volume

log = structlog.get_logger()


class EjectError(Exception):
    """The OS refused to unmount or eject a volume."""


@dataclass(frozen=True)
class EjectResult:
    """Outcome of an eject request."""

    path: str
    name: str
    ok: bool
    attempts: int
    error: str | None = None


def eject_command(path: str) -> list[str]:
    """Command line that unmounts and ejects the volume at path."""
    if sys.platform == "darwin":
        return ["diskutil", "eject", path]
    return ["umount", path]


async def run_eject_command(path: str) -> None:
    """Run the platform eject command once.

    Raises:
        EjectError: If the command is missing or exits non-zero.
    """
    cmd = eject_command(path)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise EjectError(f"{cmd[0]} not found") from e
    except OSError as e:
        raise EjectError(str(e)) from e

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        detail = (stderr or stdout).decode(errors="replace").strip()
        raise EjectError(detail or f"{cmd[0]} exited with status {proc.returncode}")


class EjectController:
    """Retrying eject, run as its own task off the engine's control path.

    Waits settle_delay once so in-flight ping I/O can drain, then tries up to
    `attempts` times with retry_delay between consecutive attempts.
    """

    def __init__(
        self,
        config: EjectConfig | None = None,
        eject_fn: Callable[[str], Awaitable[None]] = run_eject_command,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or EjectConfig()
        self._eject_fn = eject_fn
        self._sleep = sleep

    async def eject(self, volume: Volume) -> EjectResult:
        await self._sleep(self.config.settle_delay)

        last_error = None
        for attempt in range(1, self.config.attempts + 1):
            if attempt > 1:
                await self._sleep(self.config.retry_delay)
            try:
                await self._eject_fn(volume.path)
            except EjectError as e:
                last_error = str(e)
                log.info(
                    "eject_attempt_failed",
                    path=volume.path,
                    attempt=attempt,
                    error=last_error,
                )
                continue
            return EjectResult(volume.path, volume.name, ok=True, attempts=attempt)

        return EjectResult(
            volume.path,
            volume.name,
            ok=False,
            attempts=self.config.attempts,
            error=last_error,
        )
