"""IOKit power assertions that keep the system from idle-sleeping.

Uses ctypes to call IOPMAssertionCreateWithName/IOPMAssertionRelease
directly - no caffeinate subprocess per volume.

All functions handle errors gracefully: a failed acquire returns None and
the caller carries on without sleep prevention.
"""

from __future__ import annotations

import ctypes
from collections.abc import Callable
from ctypes import POINTER, byref, c_int, c_uint32, c_void_p
from dataclasses import dataclass

import structlog

log = structlog.get_logger()

# ─────────────────────────────────────────────────────────────────────────────
# Library loading
# ─────────────────────────────────────────────────────────────────────────────

try:
    _iokit = ctypes.CDLL("/System/Library/Frameworks/IOKit.framework/IOKit", use_errno=True)
    _cf = ctypes.CDLL(
        "/System/Library/Frameworks/CoreFoundation.framework/CoreFoundation",
        use_errno=True,
    )
    _IOKIT_AVAILABLE = True
except OSError:
    _IOKIT_AVAILABLE = False
    _iokit = None
    _cf = None


# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────

kCFStringEncodingUTF8 = 0x08000100
kIOPMAssertPreventUserIdleSystemSleep = "PreventUserIdleSystemSleep"
kIOPMAssertionLevelOn = 255
kIOReturnSuccess = 0

IOPMAssertionID = c_uint32
IOPMAssertionLevel = c_uint32
IOReturn = c_int
CFStringRef = c_void_p


# ─────────────────────────────────────────────────────────────────────────────
# Function signatures
# ─────────────────────────────────────────────────────────────────────────────

if _IOKIT_AVAILABLE and _iokit and _cf:
    _iokit.IOPMAssertionCreateWithName.argtypes = [
        CFStringRef,  # assertion type
        IOPMAssertionLevel,
        CFStringRef,  # human-readable name
        POINTER(IOPMAssertionID),
    ]
    _iokit.IOPMAssertionCreateWithName.restype = IOReturn

    _iokit.IOPMAssertionRelease.argtypes = [IOPMAssertionID]
    _iokit.IOPMAssertionRelease.restype = IOReturn

    _cf.CFStringCreateWithCString.argtypes = [c_void_p, ctypes.c_char_p, c_uint32]
    _cf.CFStringCreateWithCString.restype = CFStringRef

    _cf.CFRelease.argtypes = [c_void_p]
    _cf.CFRelease.restype = None


def _cfstr(s: str) -> CFStringRef:
    """Create a CFString from a Python string."""
    return _cf.CFStringCreateWithCString(None, s.encode("utf-8"), kCFStringEncodingUTF8)


# ─────────────────────────────────────────────────────────────────────────────
# Raw IOKit calls
# ─────────────────────────────────────────────────────────────────────────────


def create_assertion(name: str) -> int | None:
    """Create a PreventUserIdleSystemSleep assertion.

    Returns:
        The assertion ID, or None if IOKit is unavailable or declined.
    """
    if not _IOKIT_AVAILABLE or not _iokit or not _cf:
        return None

    type_ref = _cfstr(kIOPMAssertPreventUserIdleSystemSleep)
    name_ref = _cfstr(name)
    try:
        assertion_id = IOPMAssertionID(0)
        kr = _iokit.IOPMAssertionCreateWithName(
            type_ref, kIOPMAssertionLevelOn, name_ref, byref(assertion_id)
        )
        if kr != kIOReturnSuccess:
            log.warning("power_assertion_declined", name=name, io_return=kr)
            return None
        return assertion_id.value
    finally:
        if type_ref:
            _cf.CFRelease(type_ref)
        if name_ref:
            _cf.CFRelease(name_ref)


def release_assertion(assertion_id: int) -> bool:
    """Release an assertion created by create_assertion()."""
    if not _IOKIT_AVAILABLE or not _iokit:
        return False
    return _iokit.IOPMAssertionRelease(assertion_id) == kIOReturnSuccess


# ─────────────────────────────────────────────────────────────────────────────
# Manager
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class AssertionHandle:
    """A held sleep-prevention assertion."""

    assertion_id: int
    name: str
    released: bool = False


class PowerAssertionManager:
    """Acquires and releases sleep-prevention assertions.

    The create/release callables default to the IOKit calls above and can be
    replaced for testing or for platforms without IOKit.
    """

    def __init__(
        self,
        create: Callable[[str], int | None] = create_assertion,
        release: Callable[[int], bool] = release_assertion,
    ) -> None:
        self._create = create
        self._release = release
        self._held: dict[int, AssertionHandle] = {}

    @property
    def held_count(self) -> int:
        """Number of assertions currently held."""
        return len(self._held)

    def acquire(self, name: str) -> AssertionHandle | None:
        """Acquire an assertion. Returns None (and logs) if the OS declines."""
        try:
            assertion_id = self._create(name)
        except OSError as e:
            log.warning("power_assertion_failed", name=name, error=str(e))
            return None
        if assertion_id is None:
            log.info("power_assertion_unavailable", name=name)
            return None

        handle = AssertionHandle(assertion_id=assertion_id, name=name)
        self._held[assertion_id] = handle
        log.debug("power_assertion_acquired", name=name, assertion_id=assertion_id)
        return handle

    def release(self, handle: AssertionHandle) -> None:
        """Release an assertion. Releasing twice is a no-op."""
        if handle.released:
            return
        handle.released = True
        self._held.pop(handle.assertion_id, None)
        if not self._release(handle.assertion_id):
            log.warning(
                "power_assertion_release_failed",
                name=handle.name,
                assertion_id=handle.assertion_id,
            )
        else:
            log.debug("power_assertion_released", name=handle.name)

    def release_all(self) -> None:
        """Release every held assertion (used on shutdown)."""
        for handle in list(self._held.values()):
            self.release(handle)
