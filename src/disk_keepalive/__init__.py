"""Keep external disks spinning with periodic, verifiable I/O."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("disk-keepalive")
except PackageNotFoundError:
    __version__ = "0.0.0"
