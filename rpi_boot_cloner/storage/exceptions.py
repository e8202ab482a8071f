"""Custom exceptions for storage operations.

This module defines a hierarchy of exceptions for the clone pipeline to provide
more specific error handling and better error messages.

Exception Hierarchy:
    StorageError (base)
        ├── CommandError
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   ├── DeviceBusyError
        │   └── UnexpectedLayoutError
        ├── MountError
        │   ├── MountFailedError
        │   ├── UnmountFailedError
        │   └── LoopDeviceError
        ├── PlanError
        │   └── InsufficientDestinationError
        ├── CloneError
        │   ├── SourceDestinationSameError
        │   ├── CloneAbortedError
        │   ├── InsufficientScratchSpaceError
        │   ├── PartitionTableError
        │   ├── FormatError
        │   ├── CloneFailedError
        │   ├── ExpandFailedError
        │   └── BootIdentityError
        └── SessionTeardownError

    ResizeWarning (UserWarning, never raised by the pipeline)

Every StorageError raised out of the clone pipeline carries a
``destination_modified`` flag telling callers whether destructive writes to
the destination had already started.

Usage:
    from rpi_boot_cloner.storage.exceptions import SourceDestinationSameError

    if source_device == destination_device:
        raise SourceDestinationSameError(source_device, destination_device)
"""

from __future__ import annotations

from typing import Sequence


class StorageError(Exception):
    """Base exception for all storage operations."""

    destination_modified: bool = False


class CommandError(StorageError):
    """An external command exited with a nonzero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int | None,
        stderr: str = "",
        stdout: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        message = (stderr or "").strip() or (stdout or "").strip() or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class DeviceError(StorageError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Path does not exist or is not a block device."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceBusyError(DeviceError):
    """Device is currently in use or mounted."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnexpectedLayoutError(DeviceError):
    """Device does not expose exactly a boot partition followed by a root partition."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Unexpected partition layout on {device_name}: {reason}")


class MountError(StorageError):
    """Base exception for mount-related errors."""


class MountFailedError(MountError):
    """Failed to mount a device at a mount point."""

    def __init__(self, device_name: str, mountpoint: str, reason: str = ""):
        self.device_name = device_name
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to mount {device_name} at {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """Failed to unmount a mount point."""

    def __init__(self, device_name: str, mountpoints: list[str]):
        self.device_name = device_name
        self.mountpoints = mountpoints
        mounts_str = ", ".join(mountpoints)
        super().__init__(
            f"Failed to unmount {device_name}. " f"Active mountpoints: {mounts_str}"
        )


class LoopDeviceError(MountError):
    """Failed to attach or detach a loop device."""

    def __init__(self, target: str, reason: str = ""):
        self.target = target
        self.reason = reason
        msg = f"Loop device operation failed for {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PlanError(StorageError):
    """Base exception for layout planning errors."""


class InsufficientDestinationError(PlanError):
    """Destination cannot hold the root filesystem even after shrinking."""

    def __init__(self, required_bytes: int, available_bytes: int):
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Destination too small: root needs {required_bytes} bytes "
            f"but only {available_bytes} bytes remain after the boot partition"
        )


class CloneError(StorageError):
    """Base exception for clone operations."""


class SourceDestinationSameError(CloneError):
    """Source and destination devices are the same."""

    def __init__(self, source_name: str, destination_name: str):
        self.source_name = source_name
        self.destination_name = destination_name
        super().__init__(
            f"Source and destination cannot be the same device: "
            f"{source_name} == {destination_name}"
        )


class CloneAbortedError(CloneError):
    """Operator declined the destructive-action confirmation."""

    def __init__(self, destination_name: str):
        self.destination_name = destination_name
        super().__init__(f"Clone to {destination_name} aborted by user")


class InsufficientScratchSpaceError(CloneError):
    """Scratch storage cannot hold the staged root image."""

    def __init__(self, scratch_dir: str, required_bytes: int, free_bytes: int):
        self.scratch_dir = scratch_dir
        self.required_bytes = required_bytes
        self.free_bytes = free_bytes
        super().__init__(
            f"Scratch directory {scratch_dir} has {free_bytes} bytes free, "
            f"{required_bytes} bytes required for the staged image"
        )


class PartitionTableError(CloneError):
    """Creating the partition table failed or the kernel never saw it."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class FormatError(CloneError):
    """Creating a filesystem on a new partition failed."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class CloneFailedError(CloneError):
    """Copying partition content failed."""

    def __init__(self, message: str, source: str | None = None, destination: str | None = None):
        self.source = source
        self.destination = destination
        super().__init__(message)


class ExpandFailedError(CloneError):
    """Extending the root partition table entry failed."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class BootIdentityError(CloneError):
    """Boot configuration could not be read or rewritten."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class SessionTeardownError(StorageError):
    """Some session resources could not be released."""

    def __init__(self, failures: list[str]):
        self.failures = failures
        super().__init__("Session teardown failed: " + "; ".join(failures))


class ResizeWarning(UserWarning):
    """Root filesystem left at its cloned size; the clone is still valid."""

    def __init__(self, device: str, reason: str):
        self.device = device
        self.reason = reason
        super().__init__(f"Filesystem on {device} not grown: {reason}")
