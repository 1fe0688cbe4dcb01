"""Tests for volume discovery."""

import plistlib
import subprocess
from collections import namedtuple
from unittest.mock import MagicMock, patch

from conftest import make_volume
from disk_keepalive import volumes
from disk_keepalive.volumes import (
    Volume,
    build_volume,
    discover,
    find_volume,
    is_excluded,
    mounted_paths,
    volume_info,
)

Partition = namedtuple("Partition", "device mountpoint fstype opts")
Usage = namedtuple("Usage", "total used free percent")


def _part(mountpoint: str, fstype: str = "apfs", opts: str = "rw,local") -> Partition:
    return Partition("/dev/disk4s1", mountpoint, fstype, opts)


class TestVolume:
    def test_identity_is_id_and_path(self):
        a = make_volume("A", free_bytes=1)
        same = make_volume("A", free_bytes=2)
        moved = make_volume("A", path="/Volumes/A 1")
        assert a == same
        assert hash(a) == hash(same)
        assert a != moved

    def test_formatted_size(self):
        vol = make_volume(total_bytes=2_000_000_000_000, free_bytes=1_200_000_000_000)
        assert vol.formatted_size == "1.2 TB free of 2 TB"

    def test_dict_round_trip_drops_icon(self):
        vol = Volume("U", "Backup", "/Volumes/Backup", True, 10, 5, icon=object())
        data = vol.to_dict()
        assert "icon" not in data
        assert Volume.from_dict(data) == vol


class TestExclusion:
    def test_root_is_excluded(self):
        assert is_excluded("/", [])

    def test_prefix_match(self):
        assert is_excluded("/System/Volumes/Data", ["/System"])
        assert is_excluded("/System", ["/System"])

    def test_prefix_is_path_aware(self):
        assert not is_excluded("/SystemBackup", ["/System"])
        assert not is_excluded("/Volumes/Backup", ["/System"])


class TestVolumeInfo:
    def test_non_darwin_returns_empty(self):
        with patch.object(volumes.sys, "platform", "linux"):
            assert volume_info("/Volumes/Backup") == {}

    def test_parses_plist(self):
        payload = plistlib.dumps({"VolumeUUID": "ABC", "VolumeName": "Backup"})
        completed = subprocess.CompletedProcess([], 0, stdout=payload, stderr=b"")
        with (
            patch.object(volumes.sys, "platform", "darwin"),
            patch.object(volumes.subprocess, "run", return_value=completed) as run,
        ):
            info = volume_info("/Volumes/Backup", timeout=2.0)

        assert info == {"VolumeUUID": "ABC", "VolumeName": "Backup"}
        assert run.call_args.args[0] == ["diskutil", "info", "-plist", "/Volumes/Backup"]
        assert run.call_args.kwargs["timeout"] == 2.0

    def test_timeout_returns_empty(self):
        with (
            patch.object(volumes.sys, "platform", "darwin"),
            patch.object(
                volumes.subprocess, "run", side_effect=subprocess.TimeoutExpired("diskutil", 5)
            ),
        ):
            assert volume_info("/Volumes/Backup") == {}

    def test_garbage_returns_empty(self):
        completed = subprocess.CompletedProcess([], 0, stdout=b"not a plist", stderr=b"")
        with (
            patch.object(volumes.sys, "platform", "darwin"),
            patch.object(volumes.subprocess, "run", return_value=completed),
        ):
            assert volume_info("/Volumes/Backup") == {}


class TestBuildVolume:
    def test_uses_diskutil_metadata(self):
        info = {"VolumeUUID": "UUID-1", "VolumeName": "Photos", "Ejectable": True}
        with patch.object(volumes.psutil, "disk_usage", return_value=Usage(100, 40, 60, 40.0)):
            vol = build_volume(_part("/Volumes/Photos"), info)

        assert vol.id == "UUID-1"
        assert vol.name == "Photos"
        assert vol.is_external is True
        assert (vol.total_bytes, vol.free_bytes) == (100, 60)

    def test_degrades_to_path_values(self):
        """Without metadata the mount path stands in for ID and name."""
        with patch.object(volumes.psutil, "disk_usage", side_effect=OSError("gone")):
            vol = build_volume(_part("/media/user/STICK", fstype="vfat", opts="rw"), {})

        assert vol.id == "/media/user/STICK"
        assert vol.name == "STICK"
        assert vol.is_external is True
        assert vol.total_bytes == 0

    def test_network_volume_is_external(self):
        with patch.object(volumes.psutil, "disk_usage", return_value=Usage(1, 0, 1, 0.0)):
            vol = build_volume(_part("/Volumes/share", fstype="smbfs", opts="rw"), {})
        assert vol.is_external is True

    def test_internal_local_volume(self):
        with (
            patch.object(volumes.sys, "platform", "darwin"),
            patch.object(volumes.psutil, "disk_usage", return_value=Usage(1, 0, 1, 0.0)),
        ):
            vol = build_volume(_part("/Volumes/Data"), {"VolumeUUID": "X"})
        assert vol.is_external is False


class TestDiscover:
    def test_filters_root_system_and_hidden(self):
        parts = [
            _part("/"),
            _part("/System/Volumes/Data"),
            _part("/Volumes/Hidden", opts="rw,local,dontbrowse"),
            _part("/Volumes/Backup"),
        ]
        with (
            patch.object(volumes.psutil, "disk_partitions", return_value=parts),
            patch.object(volumes.psutil, "disk_usage", return_value=Usage(1, 0, 1, 0.0)),
            patch.object(volumes.os.path, "isdir", return_value=True),
            patch.object(volumes, "volume_info", return_value={}),
        ):
            found = discover()

        assert [v.path for v in found] == ["/Volumes/Backup"]

    def test_returns_new_list_each_call(self):
        with (
            patch.object(volumes.psutil, "disk_partitions", return_value=[]),
        ):
            assert discover() is not discover()

    def test_mounted_paths(self):
        parts = [_part("/"), _part("/Volumes/A"), _part("/Volumes/B")]
        with patch.object(volumes.psutil, "disk_partitions", return_value=parts):
            assert mounted_paths() == {"/Volumes/A", "/Volumes/B"}


class TestFindVolume:
    def test_by_path_id_and_name(self):
        a = make_volume("A")
        b = make_volume("B")
        vols = [a, b]
        assert find_volume(vols, "/Volumes/B/") is b
        assert find_volume(vols, "UUID-A") is a
        assert find_volume(vols, "B") is b
        assert find_volume(vols, "C") is None

    def test_path_wins_over_name(self):
        odd = make_volume("/Volumes/A", path="/Volumes/Z", vol_id="Z")
        a = make_volume("A")
        assert find_volume([odd, a], "/Volumes/A") is a


def test_discover_skips_diskutil_off_darwin():
    """discover() never shells out when diskutil is not available."""
    run = MagicMock()
    with (
        patch.object(volumes.sys, "platform", "linux"),
        patch.object(volumes.subprocess, "run", run),
        patch.object(volumes.psutil, "disk_partitions", return_value=[_part("/mnt/usb")]),
        patch.object(volumes.psutil, "disk_usage", return_value=Usage(1, 0, 1, 0.0)),
        patch.object(volumes.os.path, "isdir", return_value=True),
    ):
        found = discover()

    run.assert_not_called()
    assert found[0].is_external is True
