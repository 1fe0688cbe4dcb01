"""Formatting utilities for consistent output across CLI and daemon logs."""

_UNITS = ("bytes", "KB", "MB", "GB", "TB", "PB")


def format_bytes(count: int) -> str:
    """Format a byte count using decimal (1000-based) units, like Finder.

    Returns:
        "0 bytes", "512 bytes", "1.5 MB", "2 TB"
    """
    if count < 1000:
        return f"{max(count, 0)} bytes"
    value = float(count)
    unit = _UNITS[0]
    for unit in _UNITS[1:]:
        value /= 1000
        if value < 1000:
            break
    text = f"{value:.1f}".rstrip("0").rstrip(".")
    return f"{text} {unit}"


def format_volume_size(free_bytes: int, total_bytes: int) -> str:
    """Format free/total capacity as "X free of Y"."""
    return f"{format_bytes(free_bytes)} free of {format_bytes(total_bytes)}"


def used_fraction(free_bytes: int, total_bytes: int) -> float:
    """Fraction of capacity in use, 0.0 when the total is unknown."""
    if total_bytes <= 0:
        return 0.0
    return (total_bytes - free_bytes) / total_bytes


def format_interval(seconds: float) -> str:
    """Format a ping interval as whole seconds ("30s")."""
    return f"{int(seconds)}s"
