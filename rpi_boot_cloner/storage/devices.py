"""Block device queries using lsblk and sysfs.

This module answers the questions the clone pipeline asks about block devices:
what partitions a device has, how large they are, which filesystem they hold,
whether anything on the device is mounted, and whether the kernel has caught
up with a freshly written partition table.

Device Queries:
    Uses ``lsblk -J -b`` on a single device path to read the device and its
    partitions (name, path, type, size, fstype, label, uuid, partuuid,
    mountpoint).

Kernel Re-read:
    ``wait_for_partitions()`` is the one bounded polling primitive used after
    partition table writes. Each attempt asks the kernel and udev to settle and
    then checks a caller-supplied predicate. It never sleeps unbounded and
    reports exhaustion to the caller instead of continuing silently.

Operations:
    - run_command(): Run a command with debug logging of its output
    - get_device_info(): lsblk dict for one device path
    - is_block_device(): Check that a path is a block device node
    - partition_path(): Compose /dev/sda1 or /dev/mmcblk0p1
    - collect_device_mountpoints(): Mountpoints of a device and its partitions
    - wait_for_partitions(): Bounded wait for the kernel to expose partitions
    - get_table_partition_size(): Partition size as the on-disk table has it
    - human_size(): Convert bytes to human-readable format (KB/MB/GB)
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import stat
import subprocess
import time
from typing import Callable, Optional

from rpi_boot_cloner.logging import LoggerFactory
from rpi_boot_cloner.storage.exceptions import CommandError, DeviceNotFoundError


log = LoggerFactory.for_inventory()

LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,FSTYPE,LABEL,UUID,PARTUUID,MOUNTPOINT"


def run_command(command, check=True, log_output=True, log_command=True, input_text=None):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command, text=True, capture_output=True, input=input_text
    )
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if check and result.returncode != 0:
        raise CommandError(command, result.returncode, result.stderr, result.stdout)
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def get_device_info(device_path: str) -> dict:
    """Return the lsblk dict for one whole device, children included.

    Raises:
        DeviceNotFoundError: If lsblk does not know the device or its output
            cannot be parsed
    """
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS, device_path],
            log_output=False,
        )
        data = json.loads(result.stdout)
    except (CommandError, json.JSONDecodeError) as error:
        log.debug(f"lsblk failed for {device_path}: {error}")
        raise DeviceNotFoundError(device_path) from error
    devices = data.get("blockdevices", [])
    if not devices:
        raise DeviceNotFoundError(device_path)
    return devices[0]


def get_children(device):
    return device.get("children", []) or []


def partition_path(device_path: str, number: int) -> str:
    """Partition node for a disk: sda -> sda1, mmcblk0/nvme0n1 -> ...p1."""
    suffix = "p" if device_path[-1].isdigit() else ""
    return f"{device_path}{suffix}{number}"


def is_mountpoint_active(mountpoint: str) -> bool:
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def collect_device_mountpoints(device: dict) -> list[str]:
    mountpoints: list[str] = []
    for child in get_children(device):
        mountpoint = child.get("mountpoint")
        if mountpoint:
            mountpoints.append(mountpoint)
    mountpoint = device.get("mountpoint")
    if mountpoint:
        mountpoints.append(mountpoint)
    return mountpoints


def settle_partitions(device_path: str) -> None:
    """Ask the kernel to re-read the table and wait for udev to catch up."""
    for cmd in (
        ["sync"],
        ["partprobe", device_path],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if shutil.which(cmd[0]):
            with contextlib.suppress(CommandError, OSError):
                run_command(cmd, log_command=False)


def wait_for_partitions(
    device_path: str,
    ready: Callable[[], bool],
    retries: int = 10,
    delay: float = 0.5,
    sleep: Optional[Callable[[float], None]] = None,
) -> bool:
    """Poll until ``ready()`` is true, settling the device before each check.

    Returns:
        True once ready, False after ``retries`` unsuccessful attempts
    """
    sleep = sleep or time.sleep
    for attempt in range(1, retries + 1):
        settle_partitions(device_path)
        if ready():
            log.debug(f"Kernel view of {device_path} ready after {attempt} attempt(s)")
            return True
        log.debug(f"Waiting for kernel re-read of {device_path} ({attempt}/{retries})")
        if attempt < retries:
            sleep(delay)
    return False


def get_size_bytes(device_path: str) -> int:
    """Current kernel-reported size of a device or partition node."""
    result = run_command(["blockdev", "--getsize64", device_path], log_output=False)
    return int(result.stdout.strip())


def get_table_partition_size(device_path: str, number: int) -> Optional[int]:
    """Size of partition ``number`` as written in the on-disk table.

    Reads ``parted -m unit B print``, which parses the table itself rather
    than the kernel's view, so it reflects a resize the kernel has not yet
    picked up. Returns None when the table has no such partition.
    """
    result = run_command(
        ["parted", "-m", "-s", device_path, "unit", "B", "print"], log_output=False
    )
    for line in result.stdout.splitlines():
        # number:start:end:size:fs:name:flags;
        fields = line.rstrip(";").split(":")
        if len(fields) >= 4 and fields[0] == str(number):
            return int(fields[3].rstrip("B"))
    return None
