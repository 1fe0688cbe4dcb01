"""Tests for the bounded event log."""

from datetime import datetime

from disk_keepalive.ringbuffer import LogBuffer, LogEntry


def test_log_entry_format():
    entry = LogEntry("Ping: Backup", timestamp=datetime(2024, 5, 1, 9, 3, 7))
    assert entry.time_string == "09:03:07"
    assert entry.format() == "[09:03:07] Ping: Backup"


def test_log_entry_dict_round_trip():
    entry = LogEntry("Eject failed: Backup - busy", level="error")
    assert LogEntry.from_dict(entry.to_dict()) == entry


def test_buffer_starts_empty():
    buf = LogBuffer()
    assert buf.is_empty
    assert len(buf) == 0
    assert buf.capacity == 100


def test_buffer_evicts_oldest():
    """Pushing past capacity drops the oldest entries."""
    buf = LogBuffer(max_entries=3)
    for i in range(5):
        buf.push(f"msg {i}")

    assert len(buf) == 3
    assert [e.message for e in buf.entries] == ["msg 2", "msg 3", "msg 4"]


def test_push_returns_entry_with_level():
    buf = LogBuffer()
    entry = buf.push("Ping failed: X", level="error")
    assert entry.level == "error"
    assert buf.entries[-1] is entry


def test_entries_returns_copy():
    buf = LogBuffer()
    buf.push("one")
    entries = buf.entries
    entries.clear()
    assert len(buf) == 1


def test_freeze_and_clear():
    buf = LogBuffer()
    buf.push("one")
    frozen = buf.freeze()
    buf.clear()

    assert isinstance(frozen, tuple)
    assert len(frozen) == 1
    assert buf.is_empty
