"""Mount and loop-device primitives with safe subprocess handling.

All commands are run with argument lists (never through a shell) and device
paths are validated before use. These functions do not track what they
create; callers go through ``storage.session.Session`` so everything is
released again.

Functions:
    - mount_partition(): Mount a device node at a directory
    - bind_mount(): Re-expose a mounted directory elsewhere, read-only
    - unmount_path(): Unmount a directory, optionally lazily
    - attach_loop(): Attach a regular file as a loop device
    - detach_loop(): Detach a loop device
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

from rpi_boot_cloner.logging import LoggerFactory
from rpi_boot_cloner.storage.devices import run_command
from rpi_boot_cloner.storage.exceptions import (
    CommandError,
    LoopDeviceError,
    MountFailedError,
    UnmountFailedError,
)


log = LoggerFactory.for_session()

FORBIDDEN_PATH_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")


def _validate_device_path(device: str) -> None:
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if any(char in device for char in FORBIDDEN_PATH_CHARS):
        raise ValueError(f"Device path contains invalid characters: {device}")


def mount_partition(
    device: str,
    mountpoint: Path,
    read_only: bool = False,
    options: Optional[Sequence[str]] = None,
) -> None:
    """Mount ``device`` at an existing directory.

    Raises:
        ValueError: If the device path is invalid
        MountFailedError: If mount fails
    """
    _validate_device_path(device)
    mount_options = ["ro"] if read_only else []
    mount_options.extend(options or [])
    command = ["mount"]
    if mount_options:
        command.extend(["-o", ",".join(mount_options)])
    command.extend([device, str(mountpoint)])
    try:
        run_command(command)
    except CommandError as error:
        raise MountFailedError(device, str(mountpoint), error.stderr.strip()) from error
    log.debug(f"Mounted {device} at {mountpoint}{' (ro)' if read_only else ''}")


def bind_mount(directory: str, mountpoint: Path) -> None:
    """Bind ``directory`` (an existing mount point) read-only at ``mountpoint``.

    The bind is made first and then remounted ``ro``; a bind that cannot be
    made read-only is undone again.

    Raises:
        ValueError: If the directory is not an absolute path
        MountFailedError: If either mount step fails
    """
    if not str(directory).startswith("/"):
        raise ValueError(f"Invalid bind source: {directory}")
    try:
        run_command(["mount", "--bind", str(directory), str(mountpoint)])
    except CommandError as error:
        raise MountFailedError(str(directory), str(mountpoint), error.stderr.strip()) from error
    try:
        run_command(["mount", "-o", "remount,bind,ro", str(mountpoint)])
    except CommandError as error:
        unmount_path(mountpoint)
        raise MountFailedError(str(directory), str(mountpoint), error.stderr.strip()) from error
    log.debug(f"Bound {directory} at {mountpoint} (ro)")


def unmount_path(mountpoint: Path, lazy: bool = False) -> None:
    """Unmount a directory.

    Raises:
        UnmountFailedError: If umount fails
    """
    command = ["umount", "-l", str(mountpoint)] if lazy else ["umount", str(mountpoint)]
    try:
        run_command(command)
    except CommandError as error:
        raise UnmountFailedError(str(mountpoint), [str(mountpoint)]) from error
    log.debug(f"{'Lazy unmounted' if lazy else 'Unmounted'} {mountpoint}")


def attach_loop(backing_file: Path) -> str:
    """Attach ``backing_file`` to the first free loop device and return its node.

    Raises:
        LoopDeviceError: If losetup fails or prints no device
    """
    try:
        result = run_command(["losetup", "--find", "--show", str(backing_file)])
    except CommandError as error:
        raise LoopDeviceError(str(backing_file), error.stderr.strip()) from error
    loop_device = result.stdout.strip()
    if not loop_device.startswith("/dev/loop"):
        raise LoopDeviceError(str(backing_file), f"unexpected losetup output: {loop_device!r}")
    log.debug(f"Attached {backing_file} as {loop_device}")
    return loop_device


def detach_loop(loop_device: str) -> None:
    """Detach a loop device.

    Raises:
        LoopDeviceError: If losetup -d fails
    """
    _validate_device_path(loop_device)
    try:
        run_command(["losetup", "-d", loop_device])
    except CommandError as error:
        raise LoopDeviceError(loop_device, error.stderr.strip()) from error
    log.debug(f"Detached {loop_device}")
