"""Naming helpers for clone operations."""
import re


FAT_LABEL_MAX = 11
EXT_LABEL_MAX = 16


def sanitize_fat_label(label):
    """Upper-case and trim a label to what mkfs.vfat -n accepts."""
    cleaned = re.sub(r"[^A-Za-z0-9 _-]", "_", label or "")
    cleaned = cleaned.upper().strip()
    return cleaned[:FAT_LABEL_MAX] or "BOOTFS"


def clamp_ext_label(label):
    """Trim a label to the 16 bytes ext4, btrfs and f2fs labels are kept to."""
    if not label:
        return "rootfs"
    return label[:EXT_LABEL_MAX]


def get_partition_number(name):
    """Extract partition number from device name."""
    if not name:
        return None
    match = re.search(r"(?:p)?(\d+)$", name)
    if not match:
        return None
    return int(match.group(1))


def resolve_device_node(device):
    """Convert device name or dict to device node path."""
    if isinstance(device, str):
        return device if device.startswith("/dev/") else f"/dev/{device}"
    return device.get("path") or f"/dev/{device.get('name')}"
