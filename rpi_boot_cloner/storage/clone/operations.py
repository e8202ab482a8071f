"""Core cloning operations.

The boot partition is copied file by file onto the freshly formatted FAT
filesystem, which keeps its new size and label. The root partition (or the
staged image) is copied block by block, with partclone where installed.
"""

from __future__ import annotations

import shutil
from typing import Optional

from rpi_boot_cloner.domain import ClonePlan, Device, FilesystemKind, Partition, StagingImage
from rpi_boot_cloner.logging import LoggerFactory
from rpi_boot_cloner.storage.devices import human_size
from rpi_boot_cloner.storage.exceptions import CloneFailedError, CommandError
from rpi_boot_cloner.storage.session import Session

from .command_runners import run_checked_with_streaming_progress
from .inventory import read_only_view


log = LoggerFactory.for_clone(job_id="-")

OWNER = "copy"

PARTCLONE_TOOLS = {
    FilesystemKind.EXT4: "partclone.ext4",
    FilesystemKind.BTRFS: "partclone.btrfs",
    FilesystemKind.F2FS: "partclone.f2fs",
}


def partclone_tool_for(kind: FilesystemKind) -> Optional[str]:
    """Path of the allocated-blocks-only copier for ``kind``, if installed."""
    tool = PARTCLONE_TOOLS.get(kind)
    return shutil.which(tool) if tool else None


def clone_dd(src, dst, total_bytes=None, title="CLONING", progress_callback=None) -> None:
    """Copy every byte of ``src`` onto ``dst``."""
    dd_path = shutil.which("dd")
    if not dd_path:
        raise CloneFailedError("dd not found", source=src, destination=dst)
    run_checked_with_streaming_progress(
        [
            dd_path,
            f"if={src}",
            f"of={dst}",
            "bs=4M",
            "status=progress",
            "conv=fsync",
        ],
        total_bytes=total_bytes,
        title=title,
        progress_callback=progress_callback,
    )


def clone_partclone(
    tool_path, src, dst, total_bytes=None, title="CLONING", progress_callback=None
) -> None:
    """Copy only the blocks the filesystem on ``src`` has allocated."""
    run_checked_with_streaming_progress(
        [tool_path, "-b", "-s", src, "-o", dst],
        total_bytes=total_bytes,
        title=title,
        progress_callback=progress_callback,
    )


def copy_partition(
    src: str,
    dst: str,
    kind: FilesystemKind,
    size_bytes: int,
    title: str,
    progress_callback=None,
) -> None:
    """Copy one partition (or staged image), preferring partclone over dd.

    Raises:
        CloneFailedError: If the copy tool reports failure
    """
    tool_path = partclone_tool_for(kind)
    strategy = "partclone" if tool_path else "dd"
    log.info(f"Copying {src} -> {dst} ({human_size(size_bytes)} {kind.value}, {strategy})")
    try:
        if tool_path:
            clone_partclone(tool_path, src, dst, size_bytes, title, progress_callback)
        else:
            clone_dd(src, dst, size_bytes, title, progress_callback)
    except CommandError as error:
        raise CloneFailedError(
            f"Copying {src} to {dst} failed: {error}", source=src, destination=dst
        ) from error


def boot_rsync_command(src, dst) -> list[str]:
    """rsync invocation for FAT, which has no owners, permissions or links."""
    return [
        "rsync",
        "-rtD",
        "--no-owner",
        "--no-group",
        "--no-perms",
        "--modify-window=1",
        "--info=progress2",
        f"{src}/",
        f"{dst}/",
    ]


def copy_boot_files(
    boot: Partition, boot_node: str, session: Session, progress_callback=None
) -> None:
    """Copy the files of the source boot partition onto ``boot_node``.

    ``boot_node`` must already carry its new FAT filesystem; only its
    contents change.

    Raises:
        CloneFailedError: If rsync reports failure
        MountError: If either side cannot be mounted
    """
    log.info(f"Copying files {boot.path} -> {boot_node} ({boot.kind.value}, rsync)")
    with read_only_view(session, boot, "boot-source", OWNER) as source_boot:
        with session.mounted(boot_node, "boot-destination", owner=OWNER) as destination_boot:
            try:
                run_checked_with_streaming_progress(
                    boot_rsync_command(source_boot, destination_boot),
                    title="Boot (1/2)",
                    progress_callback=progress_callback,
                    merge_stdout=True,
                )
            except CommandError as error:
                raise CloneFailedError(
                    f"Copying {boot.path} files to {boot_node} failed: {error}",
                    source=boot.path,
                    destination=boot_node,
                ) from error


def clone_partitions(
    source: Device,
    plan: ClonePlan,
    boot_node: str,
    root_node: str,
    session: Session,
    staged_root: Optional[StagingImage] = None,
    progress_callback=None,
) -> None:
    """Copy boot then root onto the new destination partitions.

    Boot is copied at file level into the filesystem ``write_partitions``
    created. Under SHRINK the root input is the staged image instead of the
    source partition. Either copy failing aborts the clone.

    Raises:
        CloneFailedError: If either partition copy fails
    """
    copy_boot_files(source.boot, boot_node, session, progress_callback)
    if staged_root is not None:
        root_src, root_size = str(staged_root.backing_file), staged_root.size_bytes
    else:
        root_src, root_size = source.root.path, source.root.size_bytes
    copy_partition(root_src, root_node, plan.root_kind, root_size, "Root (2/2)", progress_callback)
