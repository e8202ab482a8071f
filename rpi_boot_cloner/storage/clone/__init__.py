"""Boot device cloning: planning, staging, copying, growing and patching.

This package implements the clone pipeline for two-partition boot devices
(FAT boot + Linux root), rebuilding the destination at its own capacity.

Main Functions:
    - clone_device(): Run the whole pipeline
    - plan_layout(): Pure layout and mode computation
    - inspect_source() / inspect_destination(): Device inventory

Stages:
    - write_partitions(): Wipe, partition and format the destination
    - stage_root_image(): Build the shrunk root image in scratch storage
    - clone_partitions(): rsync of boot files, partclone or dd copy of root
    - expand_root(): Extend partition 2 and grow its filesystem
    - patch_boot_identity(): New UUIDs, cmdline.txt root=, fstab

Command Execution:
    - run_checked_with_streaming_progress(): Run with progress tracking
"""

from .boot_identity import (
    FstabEntry,
    KernelCommandLine,
    patch_boot_identity,
    read_identity_set,
    render_fstab,
)
from .command_runners import run_checked_with_streaming_progress
from .expand import expand_root
from .inventory import inspect_destination, inspect_source, measure_used_bytes
from .models import (
    clamp_ext_label,
    get_partition_number,
    resolve_device_node,
    sanitize_fat_label,
)
from .operations import clone_dd, clone_partclone, clone_partitions
from .partition_writer import format_filesystem, write_partitions
from .pipeline import clone_device
from .planner import plan_layout
from .progress import format_eta, format_progress_lines, parse_progress_line
from .shrink import check_scratch_space, stage_root_image


__all__ = [
    # Main operations
    "clone_device",
    "plan_layout",
    "inspect_source",
    "inspect_destination",
    "measure_used_bytes",
    # Stages
    "write_partitions",
    "format_filesystem",
    "check_scratch_space",
    "stage_root_image",
    "clone_partitions",
    "clone_dd",
    "clone_partclone",
    "expand_root",
    "patch_boot_identity",
    "read_identity_set",
    # Boot configuration models
    "KernelCommandLine",
    "FstabEntry",
    "render_fstab",
    # Helper functions
    "sanitize_fat_label",
    "clamp_ext_label",
    "get_partition_number",
    "resolve_device_node",
    # Progress formatting
    "format_eta",
    "format_progress_lines",
    "parse_progress_line",
    # Command runners
    "run_checked_with_streaming_progress",
]
