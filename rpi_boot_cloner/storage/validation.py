"""Safety validation run before any destructive step.

- Validates both paths are existing block devices
- Validates source != destination, partition forms included
- Verifies the destination and its partitions are unmounted

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from rpi_boot_cloner.storage.validation import validate_clone_operation

    try:
        validate_clone_operation("/dev/mmcblk0", "/dev/sda", destination_info)
    except DeviceBusyError:
        ...
"""

import re

from .devices import get_children, is_block_device, is_mountpoint_active
from .exceptions import DeviceBusyError, DeviceNotFoundError, SourceDestinationSameError
from .mount import FORBIDDEN_PATH_CHARS


# mmcblk0p1 / nvme0n1p1 / loop0p1 style: digit, "p", partition number
_P_SUFFIX_PATTERN = re.compile(r"^(.*\d)p\d+$")


def get_base_device(path: str) -> str:
    """Strip /dev/ and any partition suffix: sda1 -> sda, mmcblk0p2 -> mmcblk0."""
    name = path.replace("/dev/", "")
    match = _P_SUFFIX_PATTERN.match(name)
    if match:
        return match.group(1)
    if name.startswith(("mmcblk", "nvme", "loop")):
        return name
    base = name.rstrip("0123456789")
    return base if base else name


def validate_device_exists(device_path: str) -> None:
    """Validate that a path names a block device node.

    Raises:
        DeviceNotFoundError: If the path is empty, unsafe to pass to mount,
            missing, or not a block device
    """
    if not device_path:
        raise DeviceNotFoundError("(empty name)")
    if any(char in device_path for char in FORBIDDEN_PATH_CHARS):
        raise DeviceNotFoundError(device_path)
    if not is_block_device(device_path):
        raise DeviceNotFoundError(device_path)


def validate_devices_different(source: str, destination: str) -> None:
    """Validate that source and destination are different disks.

    Cloning a device onto itself (or onto one of its own partitions) would
    destroy the source.

    Raises:
        SourceDestinationSameError: If both resolve to the same base device
    """
    if get_base_device(source) == get_base_device(destination):
        raise SourceDestinationSameError(source, destination)


def validate_device_unmounted(device_path: str, device_info: dict) -> None:
    """Validate that a device and all its partitions are unmounted.

    Args:
        device_path: Path used in the error message
        device_info: lsblk dict for the device, children included

    Raises:
        DeviceBusyError: If the device or any partition is mounted
    """
    main_mountpoint = device_info.get("mountpoint")
    if main_mountpoint and is_mountpoint_active(main_mountpoint):
        raise DeviceBusyError(device_path, f"mounted at {main_mountpoint}")

    for child in get_children(device_info):
        child_mountpoint = child.get("mountpoint")
        if child_mountpoint and is_mountpoint_active(child_mountpoint):
            child_name = child.get("path") or child.get("name", "")
            raise DeviceBusyError(device_path, f"{child_name} mounted at {child_mountpoint}")


def validate_clone_operation(source: str, destination: str, destination_info: dict) -> None:
    """Perform all validations required before a clone operation.

    Raises:
        Various exceptions from the exceptions module if validation fails
    """
    # 1. Check devices exist
    validate_device_exists(source)
    validate_device_exists(destination)

    # 2. Check devices are different (CRITICAL)
    validate_devices_different(source, destination)

    # 3. Check destination is unmounted
    validate_device_unmounted(destination, destination_info)
