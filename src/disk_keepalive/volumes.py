"""Mounted volume discovery.

Mount table and capacity come from psutil. On macOS the stable volume UUID,
display name and removable/ejectable flags come from `diskutil info -plist`;
elsewhere they degrade to values derived from the mount itself.

All functions handle errors gracefully by returning partial metadata.
"""

from __future__ import annotations

import os
import plistlib
import subprocess
import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

import psutil
import structlog

from disk_keepalive.formatting import format_volume_size

log = structlog.get_logger()

# Filesystems that are never local, regardless of mount flags
_NETWORK_FSTYPES = frozenset(
    {"nfs", "nfs4", "smbfs", "cifs", "afpfs", "webdav", "sshfs", "fuse.sshfs"}
)

# Linux automounters put removable media under these roots
_REMOVABLE_ROOTS = ("/media/", "/run/media/", "/mnt/")


@dataclass(frozen=True, eq=False)
class Volume:
    """A mounted filesystem volume.

    Identity is (id, path): id is the volume UUID when known, otherwise the
    mount path, so a disk remounted at the same place keeps its identity.
    The icon is an opaque reference owned by the presentation layer.
    """

    id: str
    name: str
    path: str
    is_external: bool
    total_bytes: int = 0
    free_bytes: int = 0
    icon: Any = field(default=None, repr=False)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Volume):
            return NotImplemented
        return self.id == other.id and self.path == other.path

    def __hash__(self) -> int:
        return hash((self.id, self.path))

    @property
    def formatted_size(self) -> str:
        """Capacity summary, e.g. "1.2 TB free of 2 TB"."""
        return format_volume_size(self.free_bytes, self.total_bytes)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation (icon omitted)."""
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "is_external": self.is_external,
            "total_bytes": self.total_bytes,
            "free_bytes": self.free_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Volume:
        """Rebuild a Volume from to_dict() output."""
        return cls(
            id=data["id"],
            name=data["name"],
            path=data["path"],
            is_external=data.get("is_external", False),
            total_bytes=data.get("total_bytes", 0),
            free_bytes=data.get("free_bytes", 0),
        )


def is_excluded(path: str, excluded_prefixes: Iterable[str]) -> bool:
    """Return True for the root filesystem and system-reserved mounts."""
    if path == "/":
        return True
    for prefix in excluded_prefixes:
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return True
    return False


def _is_hidden(opts: set[str]) -> bool:
    """Mounts flagged as not browsable are skipped, like Finder does."""
    return "dontbrowse" in opts or "nobrowse" in opts


def _is_local(fstype: str, opts: set[str]) -> bool:
    if fstype in _NETWORK_FSTYPES:
        return False
    if sys.platform == "darwin":
        return "local" in opts
    return True


def _mount_opts(partition: Any) -> set[str]:
    return {opt.strip() for opt in partition.opts.split(",") if opt.strip()}


def visible_partitions(excluded_prefixes: Sequence[str]) -> list[Any]:
    """Mounted partitions eligible to be volumes, in mount table order."""
    result = []
    for part in psutil.disk_partitions(all=False):
        if is_excluded(part.mountpoint, excluded_prefixes):
            continue
        if _is_hidden(_mount_opts(part)):
            continue
        result.append(part)
    return result


def volume_info(path: str, timeout: float = 5.0) -> dict[str, Any]:
    """Read volume metadata via `diskutil info -plist`.

    Returns:
        The parsed plist dictionary, or an empty dict when diskutil is
        unavailable (non-macOS), times out, or returns garbage.
    """
    if sys.platform != "darwin":
        return {}
    try:
        result = subprocess.run(
            ["diskutil", "info", "-plist", path],
            capture_output=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        log.warning("diskutil_info_failed", path=path, error=str(e))
        return {}
    if result.returncode != 0:
        log.debug("diskutil_info_nonzero", path=path, returncode=result.returncode)
        return {}
    try:
        data = plistlib.loads(result.stdout)
    except (plistlib.InvalidFileException, ValueError) as e:
        log.warning("diskutil_info_unparseable", path=path, error=str(e))
        return {}
    return data if isinstance(data, dict) else {}


def build_volume(partition: Any, info: dict[str, Any]) -> Volume:
    """Combine a psutil partition and diskutil metadata into a Volume."""
    path = partition.mountpoint
    opts = _mount_opts(partition)

    try:
        usage = psutil.disk_usage(path)
        total, free = usage.total, usage.free
    except OSError:
        total, free = 0, 0

    removable = bool(info.get("RemovableMedia") or info.get("Removable"))
    ejectable = bool(info.get("Ejectable"))
    if not info:
        removable = path.startswith(_REMOVABLE_ROOTS)
    is_external = removable or ejectable or not _is_local(partition.fstype, opts)

    return Volume(
        id=info.get("VolumeUUID") or path,
        name=info.get("VolumeName") or PurePosixPath(path).name or path,
        path=path,
        is_external=is_external,
        total_bytes=total,
        free_bytes=free,
    )


def discover(
    excluded_prefixes: Sequence[str] = ("/System",),
    diskutil_timeout: float = 5.0,
) -> list[Volume]:
    """Enumerate currently mounted volumes.

    Pure read with no side effects. Excludes the root filesystem, anything
    under an excluded prefix and hidden mounts. Returns a new list each call.
    """
    volumes = []
    for part in visible_partitions(excluded_prefixes):
        if not os.path.isdir(part.mountpoint):
            continue
        volumes.append(build_volume(part, volume_info(part.mountpoint, diskutil_timeout)))
    return volumes


def mounted_paths(excluded_prefixes: Sequence[str] = ("/System",)) -> set[str]:
    """Mount points of visible volumes (cheap, no diskutil calls)."""
    return {part.mountpoint for part in visible_partitions(excluded_prefixes)}


def find_volume(volumes: Iterable[Volume], ref: str) -> Volume | None:
    """Find a volume by mount path, ID, or name (in that order)."""
    volumes = list(volumes)
    normalized = ref.rstrip("/") or "/"
    for attr, value in (("path", normalized), ("id", ref), ("name", ref)):
        for vol in volumes:
            if getattr(vol, attr) == value:
                return vol
    return None
