"""Shrink staging: rebuild the source root at a smaller size in scratch storage.

When the destination cannot hold the source root partition at its nominal
size, the root file tree is copied into a fresh filesystem image sized to the
plan's root target (used bytes plus safety margin). The image, not the source
partition, then becomes the root input of the block copy.

Sequence, every step registered with the session::

    create backing file -> mkfs -> losetup -> mount image
        -> mount source read-only -> rsync -> unmount both -> detach

Only the backing file outlives ``stage_root_image()``; the session deletes
it at teardown. The source is only ever mounted with ``ro``.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from rpi_boot_cloner.config.settings import CloneSettings
from rpi_boot_cloner.domain import ClonePlan, Device, StagingImage
from rpi_boot_cloner.logging import LoggerFactory
from rpi_boot_cloner.storage.devices import human_size
from rpi_boot_cloner.storage.exceptions import (
    CloneFailedError,
    CommandError,
    InsufficientScratchSpaceError,
)
from rpi_boot_cloner.storage.session import Session

from .command_runners import run_checked_with_streaming_progress
from .inventory import read_only_view
from .partition_writer import format_filesystem


log = LoggerFactory.for_clone(job_id="-")

OWNER = "shrink"

# Pseudo-filesystem and transient mount points: keep the directory, skip contents.
RSYNC_EXCLUDES = (
    "/dev/*",
    "/proc/*",
    "/sys/*",
    "/run/*",
    "/tmp/*",
    "/mnt/*",
    "/media/*",
    "/lost+found",
)


def check_scratch_space(scratch_dir: Path, required_bytes: int) -> None:
    """Raise unless ``scratch_dir`` has room for a ``required_bytes`` image.

    Raises:
        InsufficientScratchSpaceError: If free space is below the image size
    """
    try:
        free = shutil.disk_usage(scratch_dir).free
    except FileNotFoundError:
        log.warning(f"Scratch directory {scratch_dir} does not exist")
        free = 0
    if free < required_bytes:
        raise InsufficientScratchSpaceError(str(scratch_dir), required_bytes, free)
    log.debug(
        f"Scratch {scratch_dir}: {human_size(free)} free, {human_size(required_bytes)} needed"
    )


def rsync_command(source_root: Path, image_root: Path) -> list[str]:
    command = ["rsync", "-aHAX", "--numeric-ids", "--info=progress2"]
    command.extend(f"--exclude={pattern}" for pattern in RSYNC_EXCLUDES)
    command.extend([f"{source_root}/", f"{image_root}/"])
    return command


def stage_root_image(
    source: Device,
    plan: ClonePlan,
    session: Session,
    settings: CloneSettings,
    progress_callback=None,
) -> StagingImage:
    """Build the shrunk root image and return it detached and unmounted.

    Raises:
        InsufficientScratchSpaceError: If scratch storage is too small
        FormatError: If the image filesystem cannot be created
        MountError: If attaching or mounting fails
        CloneFailedError: If copying the file tree fails
    """
    check_scratch_space(settings.scratch_dir, plan.root_size)

    root = source.root
    image = StagingImage(
        backing_file=settings.scratch_dir / f"{session.job_id}-root.img",
        size_bytes=plan.root_size,
        kind=plan.root_kind,
    )
    log.info(
        f"Staging {human_size(root.used_bytes)} of {root.path} into a"
        f" {human_size(image.size_bytes)} {image.kind.value} image at {image.backing_file}"
    )
    session.create_file(image.backing_file, image.size_bytes, owner=OWNER)
    format_filesystem(image.kind, str(image.backing_file), root.label)

    with session.attached(image.backing_file, owner=OWNER) as loop_device:
        image.loop_device = loop_device
        with session.mounted(loop_device, "staging", owner=OWNER) as image_root:
            image.mountpoint = image_root
            with read_only_view(session, root, "shrink-source", OWNER) as source_root:
                try:
                    run_checked_with_streaming_progress(
                        rsync_command(source_root, image_root),
                        total_bytes=root.used_bytes,
                        title="Staging root",
                        progress_callback=progress_callback,
                        merge_stdout=True,
                    )
                except CommandError as error:
                    raise CloneFailedError(
                        f"Copying {root.path} into the staging image failed: {error}",
                        source=root.path,
                        destination=str(image.backing_file),
                    ) from error
        image.mountpoint = None
    image.loop_device = None
    log.info(f"Staged root image ready: {image.backing_file}")
    return image
