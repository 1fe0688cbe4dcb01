"""Tests for sleep-prevention assertions."""

import sys

import pytest

from conftest import FakeIOKit
from disk_keepalive import power
from disk_keepalive.power import PowerAssertionManager


def test_acquire_and_release():
    iokit = FakeIOKit()
    manager = PowerAssertionManager(create=iokit.create, release=iokit.release)

    handle = manager.acquire("Keep Backup awake")

    assert handle is not None
    assert handle.name == "Keep Backup awake"
    assert manager.held_count == 1

    manager.release(handle)

    assert handle.released
    assert manager.held_count == 0
    assert iokit.released == [handle.assertion_id]


def test_release_is_idempotent():
    iokit = FakeIOKit()
    manager = PowerAssertionManager(create=iokit.create, release=iokit.release)
    handle = manager.acquire("x")

    manager.release(handle)
    manager.release(handle)

    assert iokit.released == [handle.assertion_id]


def test_declined_assertion_returns_none():
    iokit = FakeIOKit(fail=True)
    manager = PowerAssertionManager(create=iokit.create, release=iokit.release)

    assert manager.acquire("x") is None
    assert manager.held_count == 0


def test_os_error_returns_none():
    def broken(name):
        raise OSError("IOKit unavailable")

    manager = PowerAssertionManager(create=broken, release=lambda _id: True)
    assert manager.acquire("x") is None


def test_release_failure_is_not_raised():
    iokit = FakeIOKit()
    manager = PowerAssertionManager(create=iokit.create, release=lambda _id: False)
    handle = manager.acquire("x")

    manager.release(handle)

    assert manager.held_count == 0


def test_release_all():
    iokit = FakeIOKit()
    manager = PowerAssertionManager(create=iokit.create, release=iokit.release)
    for name in ("a", "b", "c"):
        manager.acquire(name)

    manager.release_all()

    assert manager.held_count == 0
    assert iokit.held == set()


@pytest.mark.skipif(sys.platform == "darwin", reason="IOKit is present on macOS")
def test_raw_calls_degrade_without_iokit():
    assert power.create_assertion("x") is None
    assert power.release_assertion(1) is False


@pytest.mark.skipif(sys.platform != "darwin", reason="Requires macOS IOKit")
def test_real_assertion_round_trip():
    manager = PowerAssertionManager()
    handle = manager.acquire("disk-keepalive test")
    assert handle is not None
    manager.release(handle)
    assert manager.held_count == 0
