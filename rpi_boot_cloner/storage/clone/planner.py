"""Target layout computation for the destination device.

``plan_layout()`` is a pure function: no I/O, no clock, no environment. The
same source facts, destination capacity and settings always yield an equal
``ClonePlan``.

Layout (all offsets multiples of the alignment)::

    | alignment | boot_size | root_size | <alignment tail> |
    0           boot_start  root_start                     capacity

Mode selection:
    remaining = capacity - boot target - alignment, rounded down to the
    alignment. If the source root fits in ``remaining`` the clone is DIRECT
    (within one alignment unit) or GROW; otherwise the root is SHRUNK to its
    used bytes plus the safety margin, which must itself fit.
"""

from __future__ import annotations

from rpi_boot_cloner.config.settings import CloneSettings
from rpi_boot_cloner.domain import CloneMode, ClonePlan, Device
from rpi_boot_cloner.storage.exceptions import InsufficientDestinationError


def align_up(value: int, alignment: int) -> int:
    return -(-value // alignment) * alignment


def align_down(value: int, alignment: int) -> int:
    return (value // alignment) * alignment


def shrink_margin_for(used_bytes: int, settings: CloneSettings) -> int:
    """Effective shrink margin: the larger of the fixed and proportional margins."""
    return max(settings.shrink_margin_bytes, int(used_bytes * settings.shrink_margin_ratio))


def plan_layout(source: Device, destination_capacity: int, settings: CloneSettings) -> ClonePlan:
    """Compute the destination layout and clone mode.

    Args:
        source: Inventoried source; its root partition must carry used_bytes
        destination_capacity: Whole-device size of the destination in bytes
        settings: Margins and alignment

    Raises:
        InsufficientDestinationError: If the root does not fit even shrunk
        ValueError: If the source root has no used-bytes measurement
    """
    alignment = settings.alignment_bytes
    boot = source.boot
    root = source.root
    if root.used_bytes is None:
        raise ValueError(f"Root partition {root.path} has no used-bytes measurement")

    boot_size = align_up(boot.size_bytes + settings.boot_margin_bytes, alignment)
    remaining = align_down(destination_capacity - boot_size - alignment, alignment)
    shrink_margin = shrink_margin_for(root.used_bytes, settings)

    if remaining >= root.size_bytes:
        mode = CloneMode.DIRECT if remaining - root.size_bytes < alignment else CloneMode.GROW
        root_size = remaining
    else:
        required = align_up(root.used_bytes + shrink_margin, alignment)
        if required > remaining:
            raise InsufficientDestinationError(required, max(remaining, 0))
        mode = CloneMode.SHRINK
        root_size = required

    return ClonePlan(
        mode=mode,
        boot_size=boot_size,
        root_size=root_size,
        boot_margin=settings.boot_margin_bytes,
        shrink_margin=shrink_margin,
        alignment=alignment,
        destination_capacity=destination_capacity,
        source_boot_size=boot.size_bytes,
        source_root_size=root.size_bytes,
        source_root_used=root.used_bytes,
        boot_kind=boot.kind,
        root_kind=root.kind,
    )
