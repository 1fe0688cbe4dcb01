# src/disk_keepalive/ringbuffer.py
"""Bounded log of human-readable engine events.

Keeps the most recent entries only; pushing past capacity evicts the oldest.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class LogEntry:
    """Single line in the event log."""

    message: str
    level: str = "info"  # info | warn | error
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def time_string(self) -> str:
        """Wall clock time as HH:MM:SS."""
        return self.timestamp.strftime("%H:%M:%S")

    def format(self) -> str:
        """Render as "[HH:MM:SS] message"."""
        return f"[{self.time_string}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation for socket clients."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        """Rebuild an entry from to_dict() output."""
        return cls(
            message=data["message"],
            level=data.get("level", "info"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


class LogBuffer:
    """Ring buffer of LogEntry items.

    Stores up to max_entries (default 100).
    """

    def __init__(self, max_entries: int = 100) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        """Return number of entries in buffer."""
        return len(self._entries)

    @property
    def is_empty(self) -> bool:
        """Return True if buffer has no entries."""
        return len(self._entries) == 0

    @property
    def capacity(self) -> int:
        """Return maximum number of entries the buffer can hold."""
        return self._entries.maxlen or 0

    @property
    def entries(self) -> list[LogEntry]:
        """Read-only access to entries (returns a copy)."""
        return list(self._entries)

    def push(self, message: str, level: str = "info") -> LogEntry:
        """Append an entry, evicting the oldest when full."""
        entry = LogEntry(message=message, level=level)
        self._entries.append(entry)
        return entry

    def clear(self) -> None:
        """Empty the buffer."""
        self._entries.clear()

    def freeze(self) -> tuple[LogEntry, ...]:
        """Return immutable copy of buffer contents."""
        return tuple(self._entries)
