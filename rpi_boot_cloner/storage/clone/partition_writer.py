"""Destination partition table and filesystem creation.

Applies a ``ClonePlan`` to the destination: wipe every signature, write a
fresh MBR table with exactly two partitions at the plan's byte offsets, mark
the boot partition bootable, wait for the kernel to expose both partition
nodes at their planned sizes, then format each with the source's filesystem
kind and label.

The writer always starts from a full wipe, so running it again on the same
destination never builds on a previous attempt. Destructive commands are not
retried; only the kernel re-read wait polls.

Operations:
    - write_partitions(): Wipe, partition and format the destination
    - format_filesystem(): Create one filesystem (shared with the shrink stage)
"""

from __future__ import annotations

from typing import Optional

from rpi_boot_cloner.config.settings import CloneSettings
from rpi_boot_cloner.domain import ClonePlan, Device, FilesystemKind
from rpi_boot_cloner.logging import LoggerFactory
from rpi_boot_cloner.storage.devices import (
    get_size_bytes,
    human_size,
    is_block_device,
    partition_path,
    run_command,
    wait_for_partitions,
)
from rpi_boot_cloner.storage.exceptions import CommandError, FormatError, PartitionTableError

from .models import clamp_ext_label, sanitize_fat_label


log = LoggerFactory.for_partition()

# parted only derives the MBR type id from this: 0x0c for the boot
# partition, 0x83 for any Linux root filesystem.
_PARTED_FS_TYPES = {
    FilesystemKind.FAT: "fat32",
    FilesystemKind.EXT4: "ext4",
    FilesystemKind.BTRFS: "ext4",
    FilesystemKind.F2FS: "ext4",
}


def mkfs_command(kind: FilesystemKind, target: str, label: Optional[str]) -> list[str]:
    """Build the mkfs command for ``kind``.

    Raises:
        FormatError: If the kind cannot be created
    """
    if kind is FilesystemKind.FAT:
        return ["mkfs.vfat", "-F", "32", "-n", sanitize_fat_label(label), target]
    if kind is FilesystemKind.EXT4:
        return ["mkfs.ext4", "-F", "-L", clamp_ext_label(label), target]
    if kind is FilesystemKind.BTRFS:
        return ["mkfs.btrfs", "-f", "-L", clamp_ext_label(label), target]
    if kind is FilesystemKind.F2FS:
        return ["mkfs.f2fs", "-f", "-l", clamp_ext_label(label), target]
    raise FormatError(f"Cannot create a {kind.value} filesystem on {target}", device=target)


def format_filesystem(kind: FilesystemKind, target: str, label: Optional[str]) -> None:
    """Create a filesystem on a partition node or image file.

    Raises:
        FormatError: If mkfs fails
    """
    command = mkfs_command(kind, target, label)
    log.debug(f"Formatting {target} as {kind.value}")
    try:
        run_command(command)
    except CommandError as error:
        raise FormatError(
            f"Formatting {target} as {kind.value} failed: {error.stderr.strip() or error}",
            device=target,
        ) from error


def _partitions_match_plan(destination: str, plan: ClonePlan) -> bool:
    expected = {1: plan.boot_size, 2: plan.root_size}
    for number, size in expected.items():
        node = partition_path(destination, number)
        if not is_block_device(node):
            return False
        try:
            if get_size_bytes(node) != size:
                return False
        except (CommandError, ValueError):
            return False
    return True


def _run_parted(destination: str, *args: str) -> None:
    try:
        run_command(["parted", "-s", destination, *args])
    except CommandError as error:
        raise PartitionTableError(
            f"parted {' '.join(args)} failed on {destination}: {error.stderr.strip() or error}",
            device=destination,
        ) from error


def write_partitions(
    destination: str,
    plan: ClonePlan,
    source: Device,
    settings: CloneSettings,
    sleep=None,
) -> tuple[str, str]:
    """Wipe ``destination`` and lay it out per ``plan``.

    Returns:
        (boot partition node, root partition node)

    Raises:
        PartitionTableError: If wiping or partitioning fails, or the kernel
            does not expose the new partitions within the retry budget
        FormatError: If creating either filesystem fails
    """
    log.info(
        f"Partitioning {destination}: boot {human_size(plan.boot_size)},"
        f" root {human_size(plan.root_size)}"
    )
    try:
        run_command(["wipefs", "-a", destination])
    except CommandError as error:
        raise PartitionTableError(
            f"wipefs failed on {destination}: {error.stderr.strip() or error}",
            device=destination,
        ) from error

    _run_parted(destination, "mklabel", "msdos")
    _run_parted(
        destination,
        "unit", "B",
        "mkpart", "primary", _PARTED_FS_TYPES[plan.boot_kind],
        f"{plan.boot_start}B", f"{plan.boot_end}B",
    )
    _run_parted(
        destination,
        "unit", "B",
        "mkpart", "primary", _PARTED_FS_TYPES.get(plan.root_kind, "ext4"),
        f"{plan.root_start}B", f"{plan.root_end}B",
    )
    _run_parted(destination, "set", "1", "boot", "on")

    ready = wait_for_partitions(
        destination,
        lambda: _partitions_match_plan(destination, plan),
        retries=settings.reread_retries,
        delay=settings.reread_delay_seconds,
        sleep=sleep,
    )
    if not ready:
        raise PartitionTableError(
            f"Kernel did not expose the new partitions on {destination} after"
            f" {settings.reread_retries} attempts",
            device=destination,
        )

    boot_node = partition_path(destination, 1)
    root_node = partition_path(destination, 2)
    format_filesystem(plan.boot_kind, boot_node, source.boot.label)
    format_filesystem(plan.root_kind, root_node, source.root.label)
    log.info(
        f"Created {boot_node} ({plan.boot_kind.value}) and {root_node} ({plan.root_kind.value})"
    )
    return boot_node, root_node
