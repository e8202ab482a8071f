"""Domain models for boot-device cloning.

This package contains type-safe domain objects passed between the clone
pipeline stages instead of raw lsblk dicts.
"""

from __future__ import annotations

from .models import (
    CloneMode,
    ClonePlan,
    CloneResult,
    Device,
    FilesystemKind,
    IdentitySet,
    Partition,
    StagingImage,
)


__all__ = [
    "CloneMode",
    "ClonePlan",
    "CloneResult",
    "Device",
    "FilesystemKind",
    "IdentitySet",
    "Partition",
    "StagingImage",
]
