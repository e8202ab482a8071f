"""
Pytest configuration and shared fixtures for rpi-boot-cloner tests.

This module provides common fixtures and utilities used across all test modules:
lsblk dicts for a Raspberry Pi SD card and destinations of various sizes, a
fake external command runner, and fake mount/loop primitives backed by
temporary directories.
"""

import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from rpi_boot_cloner.config import settings as settings_module
from rpi_boot_cloner.config.settings import CloneSettings
from rpi_boot_cloner.domain import Device, FilesystemKind, Partition


MIB = 1024 * 1024
GIB = 1024 * MIB


# ==============================================================================
# Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep every test away from the real settings file."""
    monkeypatch.setattr(settings_module, "SETTINGS_PATH", tmp_path / "settings.json")
    monkeypatch.setattr(
        settings_module.settings_store, "values", dict(settings_module.DEFAULT_SETTINGS)
    )


@pytest.fixture(autouse=True)
def no_settle(mocker):
    """Skip sync/partprobe/udevadm between kernel re-read polls."""
    return mocker.patch("rpi_boot_cloner.storage.devices.settle_partitions")


@pytest.fixture
def clone_settings(tmp_path) -> CloneSettings:
    """Default settings with scratch and work dirs under tmp_path and no poll delay."""
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    return CloneSettings(
        scratch_dir=scratch,
        work_dir=tmp_path / "work",
        reread_retries=3,
        reread_delay_seconds=0,
    )


# ==============================================================================
# Device Fixtures
# ==============================================================================


@pytest.fixture
def pi_sd_card() -> Dict[str, Any]:
    """
    Fixture providing lsblk output for a Raspberry Pi OS SD card.

    Returns:
        Dict for /dev/mmcblk0: 256 MiB vfat boot + 4 GiB ext4 root, unmounted.
    """
    return {
        "name": "mmcblk0",
        "path": "/dev/mmcblk0",
        "type": "disk",
        "size": 4 * GIB + 260 * MIB,
        "model": "SD Card",
        "fstype": None,
        "label": None,
        "uuid": None,
        "partuuid": None,
        "mountpoint": None,
        "children": [
            {
                "name": "mmcblk0p1",
                "path": "/dev/mmcblk0p1",
                "type": "part",
                "size": 256 * MIB,
                "fstype": "vfat",
                "label": "bootfs",
                "uuid": "ABCD-1234",
                "partuuid": "1a2b3c4d-01",
                "mountpoint": None,
            },
            {
                "name": "mmcblk0p2",
                "path": "/dev/mmcblk0p2",
                "type": "part",
                "size": 4 * GIB,
                "fstype": "ext4",
                "label": "rootfs",
                "uuid": "deadbeef-1234-5678-90ab-cdef12345678",
                "partuuid": "1a2b3c4d-02",
                "mountpoint": None,
            },
        ],
    }


@pytest.fixture
def make_destination():
    """Factory for an lsblk dict of a destination disk /dev/sda of a given size."""

    def _make(size_bytes: int, children: Optional[List[Dict[str, Any]]] = None):
        return {
            "name": "sda",
            "path": "/dev/sda",
            "type": "disk",
            "size": size_bytes,
            "model": "USB SSD",
            "fstype": None,
            "mountpoint": None,
            "children": children or [],
        }

    return _make


@pytest.fixture
def source_device() -> Device:
    """Inventoried Pi SD card with 1 GiB used on the root filesystem."""
    return Device(
        path="/dev/mmcblk0",
        size_bytes=4 * GIB + 260 * MIB,
        partitions=(
            Partition(1, "/dev/mmcblk0p1", 256 * MIB, FilesystemKind.FAT, label="bootfs"),
            Partition(
                2, "/dev/mmcblk0p2", 4 * GIB, FilesystemKind.EXT4, used_bytes=1 * GIB,
                label="rootfs",
            ),
        ),
        model="SD Card",
    )


# ==============================================================================
# Subprocess Fixtures
# ==============================================================================


class FakeCommandRunner:
    """Stand-in for subprocess.run that records commands and returns canned results.

    ``on("blkid", "PARTUUID", "/dev/sda2", stdout="...")`` answers any command
    containing all of those tokens. Later rules win. Unmatched commands succeed
    with empty output. ``effect(command)`` runs when its rule answers, e.g. to
    change what the kernel reports after a resize.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.rules = []

    def on(self, *tokens, stdout="", stderr="", returncode=0, effect=None):
        self.rules.append((tokens, returncode, stdout, stderr, effect))
        return self

    def __call__(self, command, **kwargs):
        command = [str(part) for part in command]
        self.calls.append(command)
        for tokens, returncode, stdout, stderr, effect in reversed(self.rules):
            if all(token in command for token in tokens):
                if effect is not None:
                    effect(command)
                return subprocess.CompletedProcess(command, returncode, stdout, stderr)
        return subprocess.CompletedProcess(command, 0, "", "")

    def programs(self) -> List[str]:
        return [call[0] for call in self.calls]

    def find(self, *tokens) -> List[List[str]]:
        return [call for call in self.calls if all(token in call for token in tokens)]


@pytest.fixture
def fake_commands(mocker) -> FakeCommandRunner:
    """Fixture replacing subprocess.run with a FakeCommandRunner."""
    runner = FakeCommandRunner()
    mocker.patch("subprocess.run", side_effect=runner)
    return runner


# ==============================================================================
# Mount Fixtures
# ==============================================================================


class FakeMounts:
    """Mount/loop primitives backed by plain directories.

    Mounting ``device`` copies ``contents[device]`` into the mount point;
    unmounting copies the tree back and empties the mount point again, so
    edits made through a mount are visible in ``contents`` afterwards.
    Binding a directory treats that directory as the device.
    """

    def __init__(self, root: Path):
        self.root = root
        self.contents: Dict[str, Path] = {}
        self.active: Dict[str, str] = {}
        self.mounts: List[tuple] = []
        self.unmounts: List[tuple] = []
        self.binds: List[str] = []
        self.loops: Dict[str, str] = {}
        self.events: List[str] = []

    def device_dir(self, device: str) -> Path:
        if device not in self.contents:
            path = self.root / (device.strip("/").replace("/", "_") or "rootfs")
            path.mkdir(parents=True)
            self.contents[device] = path
        return self.contents[device]

    def mount(self, device, mountpoint, read_only=False, options=None):
        shutil.copytree(self.device_dir(device), mountpoint, dirs_exist_ok=True)
        self.active[str(mountpoint)] = device
        self.mounts.append((device, read_only))
        self.events.append(f"mount {device}")

    def bind(self, directory, mountpoint):
        shutil.copytree(self.device_dir(directory), mountpoint, dirs_exist_ok=True)
        self.active[str(mountpoint)] = directory
        self.binds.append(directory)
        self.events.append(f"bind {directory}")

    def unmount(self, mountpoint, lazy=False):
        mountpoint = Path(mountpoint)
        device = self.active.pop(str(mountpoint))
        target = self.device_dir(device)
        shutil.rmtree(target)
        shutil.copytree(mountpoint, target)
        for child in mountpoint.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        self.unmounts.append((device, lazy))
        self.events.append(f"umount {device}")

    def attach(self, backing_file):
        loop = f"/dev/loop{len(self.loops)}"
        self.loops[loop] = str(backing_file)
        self.events.append(f"attach {loop}")
        return loop

    def detach(self, loop_device):
        self.loops.pop(loop_device)
        self.events.append(f"detach {loop_device}")

    def read_only_devices(self) -> set:
        return {device for device, read_only in self.mounts if read_only}

    def writable_devices(self) -> set:
        return {device for device, read_only in self.mounts if not read_only}


@pytest.fixture
def fake_mounts(tmp_path, mocker) -> FakeMounts:
    """Fixture patching the session's mount and loop primitives with FakeMounts."""
    mounts = FakeMounts(tmp_path / "devices")
    mocker.patch("rpi_boot_cloner.storage.session.mount_partition", side_effect=mounts.mount)
    mocker.patch("rpi_boot_cloner.storage.session.bind_mount", side_effect=mounts.bind)
    mocker.patch("rpi_boot_cloner.storage.session.unmount_path", side_effect=mounts.unmount)
    mocker.patch("rpi_boot_cloner.storage.session.attach_loop", side_effect=mounts.attach)
    mocker.patch("rpi_boot_cloner.storage.session.detach_loop", side_effect=mounts.detach)
    return mounts


# ==============================================================================
# Clone Operation Fixtures
# ==============================================================================


@pytest.fixture
def mock_clone_progress() -> List[str]:
    """
    Fixture providing progress output from dd.

    Returns:
        List of stderr lines as emitted by dd status=progress.
    """
    return [
        "52428800 bytes (52 MB, 50 MiB) copied, 1.5 s, 35.0 MB/s",
        "104857600 bytes (105 MB, 100 MiB) copied, 3 s, 35.0 MB/s",
        "2+0 records in",
        "2+0 records out",
    ]


@pytest.fixture
def mock_partclone_output() -> List[str]:
    """
    Fixture providing partclone progress output.

    Returns:
        List of partclone stderr lines.
    """
    return [
        "Partclone v0.3.23",
        "Starting to clone device (/dev/mmcblk0p2) to device (/dev/sda2)",
        "File system:  EXTFS",
        "Elapsed: 00:00:30, Remaining: 00:01:30, Completed:  25.00%,   1.20GB/min,",
        "Elapsed: 00:01:00, Remaining: 00:01:00, Completed:  50.00%,   1.20GB/min,",
        "Cloned successfully.",
    ]
