"""Verifiable keep-alive I/O against a single volume.

One ping is:
1. Create a probe file at the volume root (name includes our PID)
2. Write random bytes
3. Flush to the physical medium (F_FULLFSYNC on macOS, fsync elsewhere)
4. Seek to start and read the block back
5. Delete the probe file
6. If 1-5 worked, read random offsets of a few existing files
7. Always stat the volume root

Only steps 1-4 decide the outcome. Step 3 is what resets the drive's idle
timer; a write that stays in the page cache never reaches the disk.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
import random
import secrets
import time
from dataclasses import dataclass

import structlog

from disk_keepalive.config import PingConfig

log = structlog.get_logger()


@dataclass(frozen=True)
class PingResult:
    """Outcome of one ping."""

    path: str
    ok: bool
    error: str | None = None
    files_read: int = 0
    elapsed: float = 0.0  # seconds


def probe_path(volume_path: str, prefix: str = ".dka_") -> str:
    """Probe file location for this process on the given volume."""
    return os.path.join(volume_path, f"{prefix}{os.getpid()}")


def full_fsync(fd: int) -> None:
    """Flush a file descriptor all the way to the storage medium.

    On macOS fsync() only reaches the drive's cache; F_FULLFSYNC asks the
    drive to commit. Falls back to fsync() when F_FULLFSYNC is unavailable
    or rejected by the filesystem.
    """
    full = getattr(fcntl, "F_FULLFSYNC", None)
    if full is not None:
        try:
            fcntl.fcntl(fd, full)
            return
        except OSError:
            pass
    os.fsync(fd)


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        if written <= 0:
            raise OSError("short write to probe file")
        view = view[written:]


def _remove_probe(path: str) -> bool:
    try:
        os.unlink(path)
    except OSError as e:
        log.debug("probe_unlink_failed", path=path, error=str(e))
        return False
    return True


def write_probe(volume_path: str, config: PingConfig) -> bool:
    """Run probe steps 1-5.

    The probe file is removed even when writing, flushing or reading fails.

    Returns:
        True if the probe file was deleted afterwards, False if it was left behind.

    Raises:
        OSError: If creating, writing, flushing or reading the probe fails.
    """
    path = probe_path(volume_path, config.probe_prefix)
    fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        try:
            _write_all(fd, secrets.token_bytes(config.probe_size))
            full_fsync(fd)
            os.lseek(fd, 0, os.SEEK_SET)
            remaining = config.probe_size
            while remaining > 0:
                chunk = os.read(fd, remaining)
                if not chunk:
                    break
                remaining -= len(chunk)
        finally:
            os.close(fd)
    finally:
        deleted = _remove_probe(path)
    return deleted


def find_candidate_files(volume_path: str, config: PingConfig) -> list[str]:
    """Collect readable files from the first scan_limit enumerated entries.

    Enumeration is depth-first, pre-order, and counts directories as well as
    files toward the limit. Symlinks are not followed.
    """
    files: list[str] = []
    scanned = 0
    stack = [volume_path]
    while stack and scanned < config.scan_limit:
        directory = stack.pop()
        try:
            with os.scandir(directory) as it:
                entries = list(it)
        except OSError:
            continue

        subdirs = []
        for entry in entries:
            if scanned >= config.scan_limit:
                break
            scanned += 1
            try:
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(entry.path)
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                size = entry.stat(follow_symlinks=False).st_size
            except OSError:
                continue
            if config.min_file_size < size < config.max_file_size:
                files.append(entry.path)
        stack.extend(reversed(subdirs))
    return files


def read_random_files(files: list[str], config: PingConfig, rng: random.Random) -> int:
    """Read random offsets from up to random_file_count randomly chosen files.

    Files are drawn with replacement. Unreadable files are skipped.

    Returns:
        Number of files successfully opened and read.
    """
    read = 0
    for _ in range(min(config.random_file_count, len(files))):
        target = rng.choice(files)
        try:
            fd = os.open(target, os.O_RDONLY)
        except OSError:
            continue
        try:
            size = os.lseek(fd, 0, os.SEEK_END)
            if size > config.min_file_size:
                span = max(size - config.min_file_size, 1)
                for _ in range(config.reads_per_file):
                    os.pread(fd, config.read_size, rng.randrange(span))
                read += 1
        except OSError:
            pass
        finally:
            os.close(fd)
    return read


def ping_volume(
    volume_path: str,
    config: PingConfig | None = None,
    rng: random.Random | None = None,
) -> PingResult:
    """Perform one full ping against a volume. Never raises OSError."""
    config = config or PingConfig()
    rng = rng or random.SystemRandom()
    started = time.monotonic()

    ok = False
    error = None
    deleted = False
    try:
        deleted = write_probe(volume_path, config)
        ok = True
    except OSError as e:
        error = e.strerror or str(e)

    files_read = 0
    if ok and deleted:
        try:
            files_read = read_random_files(find_candidate_files(volume_path, config), config, rng)
        except OSError as e:
            log.debug("random_reads_failed", path=volume_path, error=str(e))

    # Metadata touch, attempted regardless of the probe outcome
    try:
        os.stat(volume_path)
    except OSError:
        pass

    return PingResult(
        path=volume_path,
        ok=ok,
        error=error,
        files_read=files_read,
        elapsed=time.monotonic() - started,
    )


class PingExecutor:
    """Runs pings in a worker thread so the event loop never blocks on disk I/O."""

    def __init__(self, config: PingConfig | None = None, rng: random.Random | None = None):
        self.config = config or PingConfig()
        self._rng = rng or random.SystemRandom()

    async def ping(self, volume_path: str) -> PingResult:
        """Ping a volume off the event loop."""
        return await asyncio.to_thread(ping_volume, volume_path, self.config, self._rng)
