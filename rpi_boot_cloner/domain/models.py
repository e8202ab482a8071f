"""Domain model for boot-device cloning.

Type-safe objects passed between the pipeline stages instead of raw lsblk
dicts: the inventoried source and destination, the computed plan, the staged
shrink image and the identifiers read back from the destination.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from rpi_boot_cloner.storage.devices import human_size
from rpi_boot_cloner.storage.exceptions import ResizeWarning


# ==============================================================================
# Filesystems
# ==============================================================================


class FilesystemKind(Enum):
    """Filesystem kinds the pipeline knows how to handle."""

    FAT = "vfat"
    EXT4 = "ext4"
    BTRFS = "btrfs"
    F2FS = "f2fs"
    UNKNOWN = "unknown"

    @classmethod
    def from_fstype(cls, fstype: str | None) -> FilesystemKind:
        """Map an lsblk/blkid FSTYPE string to a kind.

        ext2 and ext3 are treated as ext4: the same tools create, copy and
        grow all three.
        """
        if not fstype:
            return cls.UNKNOWN
        value = fstype.strip().lower()
        if value in ("vfat", "fat", "fat12", "fat16", "fat32", "msdos"):
            return cls.FAT
        if value in ("ext2", "ext3", "ext4"):
            return cls.EXT4
        if value == "btrfs":
            return cls.BTRFS
        if value == "f2fs":
            return cls.F2FS
        return cls.UNKNOWN

    @property
    def fstab_type(self) -> str:
        return "auto" if self is FilesystemKind.UNKNOWN else self.value

    @property
    def is_root_capable(self) -> bool:
        return self in (FilesystemKind.EXT4, FilesystemKind.BTRFS, FilesystemKind.F2FS)


# ==============================================================================
# Devices
# ==============================================================================


@dataclass(frozen=True)
class Partition:
    """One partition of a two-partition boot device."""

    index: int  # 1 = boot, 2 = root
    path: str  # e.g., "/dev/mmcblk0p2"
    size_bytes: int
    kind: FilesystemKind
    used_bytes: int | None = None  # root only, measured by walking the tree
    label: str | None = None
    uuid: str | None = None
    partuuid: str | None = None
    mountpoint: str | None = None  # where the host has it mounted, if anywhere

    @property
    def is_boot(self) -> bool:
        return self.index == 1

    @property
    def boot_flag(self) -> bool:
        return self.is_boot

    @classmethod
    def from_lsblk_dict(cls, index: int, part: dict[str, Any]) -> Partition:
        """Convert an lsblk child dict to a Partition.

        Raises:
            KeyError: If the name is missing
            ValueError: If size cannot be converted to int
        """
        path = part.get("path") or f"/dev/{part['name']}"
        return cls(
            index=index,
            path=path,
            size_bytes=int(part.get("size") or 0),
            kind=FilesystemKind.from_fstype(part.get("fstype")),
            label=(part.get("label") or None),
            uuid=(part.get("uuid") or None),
            partuuid=(part.get("partuuid") or None),
            mountpoint=(part.get("mountpoint") or None),
        )


@dataclass(frozen=True)
class Device:
    """A whole block device and its partitions in table order."""

    path: str  # e.g., "/dev/sda"
    size_bytes: int
    partitions: tuple[Partition, ...] = ()
    model: str | None = None

    @property
    def name(self) -> str:
        return Path(self.path).name

    @property
    def boot(self) -> Partition:
        return self.partitions[0]

    @property
    def root(self) -> Partition:
        return self.partitions[1]

    def format_label(self) -> str:
        """Human-readable label, e.g. "sda SanDisk (29.7GB)"."""
        size_str = f"{self.size_bytes / (1024**3):.1f}GB"
        if self.model:
            return f"{self.name} {self.model.strip()} ({size_str})"
        return f"{self.name} {size_str}"


# ==============================================================================
# Plan
# ==============================================================================


class CloneMode(Enum):
    """How the root target size relates to the source root partition."""

    DIRECT = "direct"  # same size within one alignment unit
    SHRINK = "shrink"  # stage a smaller image first
    GROW = "grow"  # expand root after copying


@dataclass(frozen=True)
class ClonePlan:
    """Target layout for the destination. Computed once, never mutated."""

    mode: CloneMode
    boot_size: int
    root_size: int
    boot_margin: int
    shrink_margin: int
    alignment: int
    destination_capacity: int
    source_boot_size: int
    source_root_size: int
    source_root_used: int
    boot_kind: FilesystemKind = FilesystemKind.FAT
    root_kind: FilesystemKind = FilesystemKind.EXT4

    @property
    def boot_start(self) -> int:
        return self.alignment

    @property
    def boot_end(self) -> int:
        """Last byte of the boot partition (inclusive)."""
        return self.boot_start + self.boot_size - 1

    @property
    def root_start(self) -> int:
        return self.boot_start + self.boot_size

    @property
    def root_end(self) -> int:
        """Last byte of the root partition (inclusive)."""
        return self.root_start + self.root_size - 1

    @property
    def needs_shrink(self) -> bool:
        return self.mode is CloneMode.SHRINK

    @property
    def needs_grow(self) -> bool:
        return self.mode is CloneMode.GROW

    def describe(self) -> list[str]:
        return [
            f"Mode: {self.mode.value.upper()}",
            f"Boot: {human_size(self.boot_size)} {self.boot_kind.value}"
            f" (source {human_size(self.source_boot_size)})",
            f"Root: {human_size(self.root_size)} {self.root_kind.value}"
            f" (source {human_size(self.source_root_size)},"
            f" used {human_size(self.source_root_used)})",
            f"Destination: {human_size(self.destination_capacity)}",
        ]


# ==============================================================================
# Transient artifacts
# ==============================================================================


@dataclass
class StagingImage:
    """Shrunk root filesystem image built in scratch storage."""

    backing_file: Path
    size_bytes: int
    kind: FilesystemKind
    mountpoint: Path | None = None
    loop_device: str | None = None

    @property
    def attached(self) -> bool:
        return self.loop_device is not None


@dataclass(frozen=True)
class IdentitySet:
    """Identifiers of the destination partitions after cloning."""

    boot_uuid: str | None
    root_uuid: str | None
    boot_partuuid: str
    root_partuuid: str

    @property
    def root_reference(self) -> str:
        return f"PARTUUID={self.root_partuuid}"

    @property
    def boot_reference(self) -> str:
        return f"PARTUUID={self.boot_partuuid}"


@dataclass
class CloneResult:
    """Outcome of a completed clone."""

    source: Device
    destination_path: str
    plan: ClonePlan
    identity: IdentitySet | None = None
    warnings: list[ResizeWarning] = field(default_factory=list)
    duration_seconds: float = 0.0
    dry_run: bool = False

    def summary_lines(self) -> list[str]:
        lines = [f"{self.source.path} -> {self.destination_path}"]
        lines.extend(self.plan.describe())
        if self.identity is not None:
            lines.append(f"Root: {self.identity.root_reference}")
            lines.append(f"Boot: {self.identity.boot_reference}")
        for warning in self.warnings:
            lines.append(f"Warning: {warning}")
        if not self.dry_run:
            lines.append(f"Finished in {self.duration_seconds:.1f}s")
        return lines
