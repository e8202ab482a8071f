"""Size and filesystem facts about the source and destination devices.

Capacities come from ``lsblk -b`` whole-device sizes. The root partition's
used bytes are measured by walking its mounted tree, since the nominal
partition size says nothing about how much of it a shrunk copy needs.
"""

from __future__ import annotations

import os
import stat
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator

from rpi_boot_cloner.domain import Device, FilesystemKind, Partition
from rpi_boot_cloner.logging import LoggerFactory
from rpi_boot_cloner.storage.devices import get_children, get_device_info, human_size
from rpi_boot_cloner.storage.exceptions import DeviceNotFoundError, UnexpectedLayoutError
from rpi_boot_cloner.storage.session import Session
from rpi_boot_cloner.storage.validation import validate_device_exists

from .models import get_partition_number


log = LoggerFactory.for_inventory()

OWNER = "inventory"


def build_device(device_path: str, info: dict) -> Device:
    """Turn an lsblk dict into a ``Device`` with partitions in table order."""
    partitions = []
    for child in get_children(info):
        if child.get("type") != "part":
            continue
        number = get_partition_number(child.get("name", "")) or len(partitions) + 1
        partitions.append(Partition.from_lsblk_dict(number, child))
    partitions.sort(key=lambda part: part.index)
    return Device(
        path=info.get("path") or device_path,
        size_bytes=int(info.get("size") or 0),
        partitions=tuple(partitions),
        model=(info.get("model") or None),
    )


def check_boot_root_layout(device: Device) -> None:
    """Require exactly partition 1 = FAT boot, partition 2 = root filesystem.

    Raises:
        UnexpectedLayoutError: For any other layout
    """
    if len(device.partitions) != 2:
        raise UnexpectedLayoutError(
            device.path, f"expected 2 partitions, found {len(device.partitions)}"
        )
    boot, root = device.partitions
    if (boot.index, root.index) != (1, 2):
        raise UnexpectedLayoutError(
            device.path, f"expected partitions 1 and 2, found {boot.index} and {root.index}"
        )
    if boot.kind is not FilesystemKind.FAT:
        raise UnexpectedLayoutError(
            device.path, f"partition 1 is {boot.kind.value}, expected a FAT boot partition"
        )
    if not root.kind.is_root_capable:
        raise UnexpectedLayoutError(
            device.path, f"partition 2 is {root.kind.value}, expected ext4, btrfs or f2fs"
        )


def measure_used_bytes(root: Path) -> int:
    """Bytes allocated to the tree under ``root``, staying on its filesystem.

    Symlinks are not followed and hard-linked inodes are counted once.
    """
    root_dev = os.lstat(root).st_dev
    seen_inodes: set[int] = set()
    total = 0
    for dirpath, dirnames, filenames in os.walk(root):
        kept_dirs = []
        for name in dirnames + filenames:
            try:
                info = os.lstat(os.path.join(dirpath, name))
            except FileNotFoundError:
                continue
            if info.st_dev != root_dev:
                continue
            if name in dirnames:
                kept_dirs.append(name)
            if info.st_nlink > 1 and not stat.S_ISDIR(info.st_mode):
                if info.st_ino in seen_inodes:
                    continue
                seen_inodes.add(info.st_ino)
            total += info.st_blocks * 512
        dirnames[:] = kept_dirs
    return total


@contextmanager
def read_only_view(
    session: Session, partition: Partition, name: str, owner: str
) -> Iterator[Path]:
    """Read-only view of a source partition's filesystem for the block.

    A partition the host already has mounted is bind-mounted read-only from
    its mount point; mounting the device node a second time with ``ro`` is
    refused by the kernel while a read-write mount exists.
    """
    if partition.mountpoint:
        log.debug(f"{partition.path} is mounted at {partition.mountpoint}, binding it")
        with session.bound(partition.mountpoint, name, owner=owner) as mountpoint:
            yield mountpoint
    else:
        with session.mounted(partition.path, name, owner=owner, read_only=True) as mountpoint:
            yield mountpoint


def inspect_source(device_path: str, session: Session) -> Device:
    """Inventory the source, measuring root used bytes through a read-only mount.

    Raises:
        DeviceNotFoundError: If the path is not a block device
        UnexpectedLayoutError: If the device is not a boot + root pair
    """
    validate_device_exists(device_path)
    device = build_device(device_path, get_device_info(device_path))
    check_boot_root_layout(device)

    root = device.root
    with read_only_view(session, root, "source-root", OWNER) as mountpoint:
        used = measure_used_bytes(mountpoint)
    log.info(
        f"Source {device.format_label()}: boot {human_size(device.boot.size_bytes)}"
        f" {device.boot.kind.value}, root {human_size(root.size_bytes)}"
        f" {root.kind.value} ({human_size(used)} used)"
    )
    return replace(device, partitions=(device.boot, replace(root, used_bytes=used)))


def inspect_destination(device_path: str) -> tuple[Device, dict]:
    """Destination capacity plus the raw lsblk dict used for mount checks.

    Raises:
        DeviceNotFoundError: If the path is not a block device or has no size
    """
    validate_device_exists(device_path)
    info = get_device_info(device_path)
    device = build_device(device_path, info)
    if device.size_bytes <= 0:
        raise DeviceNotFoundError(device_path)
    log.info(f"Destination {device.format_label()}")
    return device, info
