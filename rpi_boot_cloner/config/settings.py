"""Settings storage for clone configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "RPI_BOOT_CLONER_SETTINGS_PATH",
        Path.home() / ".config" / "rpi-boot-cloner" / "settings.json",
    )
)

MIB = 1024 * 1024

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BOOT_MARGIN_BYTES = 32 * MIB
DEFAULT_SHRINK_MARGIN_BYTES = 256 * MIB
DEFAULT_SHRINK_MARGIN_RATIO = 0.10
DEFAULT_ALIGNMENT_BYTES = 1 * MIB
DEFAULT_REREAD_RETRIES = 10
DEFAULT_REREAD_DELAY_SECONDS = 0.5

DEFAULT_SETTINGS: dict[str, Any] = {
    "boot_margin_bytes": DEFAULT_BOOT_MARGIN_BYTES,
    "shrink_margin_bytes": DEFAULT_SHRINK_MARGIN_BYTES,
    "shrink_margin_ratio": DEFAULT_SHRINK_MARGIN_RATIO,
    "alignment_bytes": DEFAULT_ALIGNMENT_BYTES,
    "scratch_dir": "/var/tmp",
    "work_dir": "/run/rpi-boot-cloner",
    "reread_retries": DEFAULT_REREAD_RETRIES,
    "reread_delay_seconds": DEFAULT_REREAD_DELAY_SECONDS,
    "grow_after_shrink": True,
    "boot_mountpoint": "/boot",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class CloneSettings:
    """Tunables for one clone run.

    Margins are configurable because there is no single correct value: the
    effective shrink margin is ``max(shrink_margin_bytes, used * shrink_margin_ratio)``.
    """

    boot_margin_bytes: int = DEFAULT_BOOT_MARGIN_BYTES
    shrink_margin_bytes: int = DEFAULT_SHRINK_MARGIN_BYTES
    shrink_margin_ratio: float = DEFAULT_SHRINK_MARGIN_RATIO
    alignment_bytes: int = DEFAULT_ALIGNMENT_BYTES
    scratch_dir: Path = Path("/var/tmp")
    work_dir: Path = Path("/run/rpi-boot-cloner")
    reread_retries: int = DEFAULT_REREAD_RETRIES
    reread_delay_seconds: float = DEFAULT_REREAD_DELAY_SECONDS
    grow_after_shrink: bool = True
    boot_mountpoint: str = "/boot"

    def __post_init__(self) -> None:
        if self.alignment_bytes <= 0:
            raise ValueError("alignment_bytes must be positive")
        if self.boot_margin_bytes < 0 or self.shrink_margin_bytes < 0:
            raise ValueError("margins cannot be negative")
        if self.shrink_margin_ratio < 0:
            raise ValueError("shrink_margin_ratio cannot be negative")
        if self.reread_retries < 1:
            raise ValueError("reread_retries must be at least 1")

    @classmethod
    def from_store(cls) -> CloneSettings:
        return cls(
            boot_margin_bytes=get_int("boot_margin_bytes", DEFAULT_BOOT_MARGIN_BYTES),
            shrink_margin_bytes=get_int(
                "shrink_margin_bytes", DEFAULT_SHRINK_MARGIN_BYTES
            ),
            shrink_margin_ratio=get_float(
                "shrink_margin_ratio", DEFAULT_SHRINK_MARGIN_RATIO
            ),
            alignment_bytes=get_int("alignment_bytes", DEFAULT_ALIGNMENT_BYTES),
            scratch_dir=Path(get_setting("scratch_dir", "/var/tmp")),
            work_dir=Path(get_setting("work_dir", "/run/rpi-boot-cloner")),
            reread_retries=get_int("reread_retries", DEFAULT_REREAD_RETRIES),
            reread_delay_seconds=get_float(
                "reread_delay_seconds", DEFAULT_REREAD_DELAY_SECONDS
            ),
            grow_after_shrink=get_bool("grow_after_shrink", True),
            boot_mountpoint=str(get_setting("boot_mountpoint", "/boot")),
        )

    def with_overrides(self, **overrides: Any) -> CloneSettings:
        """Return a copy with every non-None override applied."""
        known = {item.name for item in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)


load_settings()
