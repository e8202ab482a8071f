"""Make the cloned destination boot from its own partitions.

A block copy carries the source's filesystem UUIDs onto the destination,
and the source's ``cmdline.txt`` and ``/etc/fstab`` still name the source
PARTUUIDs. This stage:

1. Regenerates the filesystem UUIDs of both destination filesystems.
2. Reads the destination identifiers back with blkid (``IdentitySet``).
3. Rewrites the ``root=`` token of the kernel command line.
4. Regenerates ``/etc/fstab`` with exactly proc, boot and root entries.

Both files are edited through small parsed models (``KernelCommandLine``,
``FstabEntry``) rather than text substitution. Running the stage again on a
patched destination just replaces the same token and file again.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from rpi_boot_cloner.config.settings import CloneSettings
from rpi_boot_cloner.domain import ClonePlan, FilesystemKind, IdentitySet
from rpi_boot_cloner.logging import LoggerFactory
from rpi_boot_cloner.storage.devices import run_command
from rpi_boot_cloner.storage.exceptions import BootIdentityError, CommandError
from rpi_boot_cloner.storage.session import Session


log = LoggerFactory.for_partition()

OWNER = "boot_identity"

CMDLINE_NAME = "cmdline.txt"
FSTAB_RELATIVE = Path("etc") / "fstab"
BOOT_MOUNTPOINTS = ("/boot/firmware", "/boot")


# ==============================================================================
# Kernel command line
# ==============================================================================


class KernelCommandLine:
    """Whitespace-separated kernel parameters, order preserved."""

    def __init__(self, tokens: Sequence[str]):
        self.tokens = list(tokens)

    @classmethod
    def parse(cls, text: str) -> KernelCommandLine:
        return cls(text.split())

    @staticmethod
    def _key(token: str) -> str:
        return token.split("=", 1)[0]

    def get(self, key: str) -> Optional[str]:
        for token in self.tokens:
            if self._key(token) == key:
                return token.split("=", 1)[1] if "=" in token else ""
        return None

    def set(self, key: str, value: str) -> None:
        """Replace the first ``key=`` token in place, drop duplicates, or append."""
        replacement = f"{key}={value}"
        updated: list[str] = []
        replaced = False
        for token in self.tokens:
            if self._key(token) != key:
                updated.append(token)
            elif not replaced:
                updated.append(replacement)
                replaced = True
        if not replaced:
            updated.append(replacement)
        self.tokens = updated

    def render(self) -> str:
        return " ".join(self.tokens) + "\n"


def patch_cmdline(path: Path, root_reference: str) -> KernelCommandLine:
    """Point ``root=`` in the cmdline file at ``root_reference``."""
    cmdline = KernelCommandLine.parse(path.read_text(encoding="utf-8"))
    previous = cmdline.get("root")
    cmdline.set("root", root_reference)
    path.write_text(cmdline.render(), encoding="utf-8")
    log.info(f"cmdline.txt root={previous} -> root={root_reference}")
    return cmdline


# ==============================================================================
# fstab
# ==============================================================================


@dataclass(frozen=True)
class FstabEntry:
    spec: str
    mountpoint: str
    vfstype: str
    options: str = "defaults"
    dump: int = 0
    passno: int = 0

    @classmethod
    def parse(cls, line: str) -> Optional[FstabEntry]:
        """Parse one fstab line; comments, blanks and short lines yield None."""
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return None
        fields = stripped.split()
        if len(fields) < 3:
            return None
        options = fields[3] if len(fields) > 3 else "defaults"
        dump = int(fields[4]) if len(fields) > 4 and fields[4].isdigit() else 0
        passno = int(fields[5]) if len(fields) > 5 and fields[5].isdigit() else 0
        return cls(fields[0], fields[1], fields[2], options, dump, passno)

    def render(self) -> str:
        return (
            f"{self.spec:<24} {self.mountpoint:<16} {self.vfstype:<6}"
            f" {self.options:<18} {self.dump} {self.passno}"
        )


def parse_fstab(text: str) -> list[FstabEntry]:
    entries = []
    for line in text.splitlines():
        entry = FstabEntry.parse(line)
        if entry is not None:
            entries.append(entry)
    return entries


def detect_boot_mountpoint(entries: Sequence[FstabEntry], default: str) -> str:
    """Boot mount point used by the cloned system, e.g. /boot/firmware."""
    for entry in entries:
        if entry.mountpoint in BOOT_MOUNTPOINTS:
            return entry.mountpoint
    return default


def build_fstab(
    identity: IdentitySet,
    boot_mountpoint: str,
    boot_kind: FilesystemKind,
    root_kind: FilesystemKind,
) -> list[FstabEntry]:
    return [
        FstabEntry("proc", "/proc", "proc", "defaults", 0, 0),
        FstabEntry(
            identity.boot_reference, boot_mountpoint, boot_kind.fstab_type, "defaults", 0, 2
        ),
        FstabEntry(identity.root_reference, "/", root_kind.fstab_type, "defaults,noatime", 0, 1),
    ]


def render_fstab(entries: Sequence[FstabEntry]) -> str:
    return "".join(f"{entry.render()}\n" for entry in entries)


def write_fstab(
    path: Path, identity: IdentitySet, plan: ClonePlan, default_boot: str
) -> list[FstabEntry]:
    """Replace the fstab at ``path`` with the three-entry table."""
    existing = parse_fstab(path.read_text(encoding="utf-8")) if path.exists() else []
    boot_mountpoint = detect_boot_mountpoint(existing, default_boot)
    entries = build_fstab(identity, boot_mountpoint, plan.boot_kind, plan.root_kind)
    path.write_text(render_fstab(entries), encoding="utf-8")
    log.info(f"fstab regenerated: boot at {boot_mountpoint}, root {identity.root_reference}")
    return entries


# ==============================================================================
# Identifiers
# ==============================================================================


def _uuid_commands(kind: FilesystemKind, node: str) -> list[list[str]]:
    if kind is FilesystemKind.EXT4:
        return [["e2fsck", "-f", "-y", node], ["tune2fs", "-U", "random", node]]
    if kind is FilesystemKind.BTRFS:
        return [["btrfstune", "-f", "-u", node]]
    if kind is FilesystemKind.FAT:
        return [["fatlabel", "-i", node, secrets.token_hex(4).upper()]]
    return []


def regenerate_identifiers(boot_node: str, root_node: str, plan: ClonePlan) -> None:
    """Give both cloned filesystems new UUIDs so they differ from the source.

    Failures are logged and skipped: the boot configuration refers to the
    destination by PARTUUID, which the fresh partition table already made
    unique.
    """
    for kind, node in ((plan.boot_kind, boot_node), (plan.root_kind, root_node)):
        commands = _uuid_commands(kind, node)
        if not commands:
            log.debug(f"No UUID regeneration for {kind.value} on {node}")
            continue
        for command in commands:
            result = run_command(command, check=False)
            # e2fsck exits 1 after correcting errors
            allowed = (0, 1) if command[0] == "e2fsck" else (0,)
            if result.returncode not in allowed:
                log.warning(
                    f"Could not regenerate filesystem UUID on {node}:"
                    f" {' '.join(command)} exited {result.returncode}"
                )
                break


def _blkid_value(tag: str, node: str) -> Optional[str]:
    try:
        result = run_command(
            ["blkid", "-c", "/dev/null", "-s", tag, "-o", "value", node], log_output=False
        )
    except CommandError:
        return None
    return result.stdout.strip() or None


def read_identity_set(boot_node: str, root_node: str) -> IdentitySet:
    """Read filesystem UUIDs and PARTUUIDs of the destination partitions.

    Raises:
        BootIdentityError: If either PARTUUID cannot be read
    """
    boot_partuuid = _blkid_value("PARTUUID", boot_node)
    root_partuuid = _blkid_value("PARTUUID", root_node)
    if not boot_partuuid or not root_partuuid:
        missing = boot_node if not boot_partuuid else root_node
        raise BootIdentityError(f"Unable to resolve PARTUUID for {missing}", device=missing)
    return IdentitySet(
        boot_uuid=_blkid_value("UUID", boot_node),
        root_uuid=_blkid_value("UUID", root_node),
        boot_partuuid=boot_partuuid,
        root_partuuid=root_partuuid,
    )


def patch_boot_identity(
    boot_node: str,
    root_node: str,
    plan: ClonePlan,
    session: Session,
    settings: CloneSettings,
) -> IdentitySet:
    """Regenerate identifiers and point cmdline.txt and fstab at them.

    Raises:
        BootIdentityError: If identifiers cannot be read, cmdline.txt is
            missing, or either file cannot be rewritten
        MountError: If the destination partitions cannot be mounted
    """
    regenerate_identifiers(boot_node, root_node, plan)
    identity = read_identity_set(boot_node, root_node)

    with session.mounted(boot_node, "dest-boot", owner=OWNER) as boot_root:
        with session.mounted(root_node, "dest-root", owner=OWNER) as root_root:
            cmdline_path = boot_root / CMDLINE_NAME
            if not cmdline_path.is_file():
                raise BootIdentityError(
                    f"{CMDLINE_NAME} not found on {boot_node}", device=boot_node
                )
            fstab_path = root_root / FSTAB_RELATIVE
            if not fstab_path.parent.is_dir():
                raise BootIdentityError(f"/etc not found on {root_node}", device=root_node)
            try:
                patch_cmdline(cmdline_path, identity.root_reference)
                write_fstab(fstab_path, identity, plan, settings.boot_mountpoint)
            except OSError as error:
                raise BootIdentityError(
                    f"Rewriting boot configuration failed: {error}", device=boot_node
                ) from error
    return identity
