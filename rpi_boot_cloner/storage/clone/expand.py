"""Grow the destination root partition and filesystem into trailing space.

The partition table step is fatal on failure: ``ExpandFailedError``. The
filesystem step is not, because the destination already boots at its cloned
size; a failure or an unsupported filesystem becomes a ``ResizeWarning``.
"""

from __future__ import annotations

from rpi_boot_cloner.config.settings import CloneSettings
from rpi_boot_cloner.domain import ClonePlan, FilesystemKind
from rpi_boot_cloner.logging import EventLogger, LoggerFactory
from rpi_boot_cloner.storage.devices import (
    get_size_bytes,
    get_table_partition_size,
    human_size,
    partition_path,
    run_command,
    wait_for_partitions,
)
from rpi_boot_cloner.storage.exceptions import (
    CommandError,
    ExpandFailedError,
    MountError,
    ResizeWarning,
)
from rpi_boot_cloner.storage.session import Session


log = LoggerFactory.for_partition()

OWNER = "expand"


def extend_root_partition(
    destination: str, plan: ClonePlan, settings: CloneSettings, sleep=None
) -> int:
    """Extend partition 2 to the end of the device and wait for the kernel.

    The kernel must report exactly the partition 2 size parted reads back
    from the rewritten table.

    Returns:
        The new root partition size in bytes

    Raises:
        ExpandFailedError: If parted fails or the kernel never reports the
            extended partition
    """
    root_node = partition_path(destination, 2)
    try:
        run_command(["parted", "-s", destination, "resizepart", "2", "100%"])
        table_size = get_table_partition_size(destination, 2)
    except (CommandError, ValueError) as error:
        stderr = getattr(error, "stderr", "").strip()
        raise ExpandFailedError(
            f"Extending {root_node} failed: {stderr or error}", device=destination
        ) from error
    if table_size is None or table_size < plan.root_size:
        raise ExpandFailedError(
            f"Partition table of {destination} does not show an extended {root_node}",
            device=destination,
        )

    sizes: list[int] = []

    def extended() -> bool:
        try:
            size = get_size_bytes(root_node)
        except (CommandError, ValueError):
            return False
        sizes.append(size)
        return size == table_size

    if not wait_for_partitions(
        destination,
        extended,
        retries=settings.reread_retries,
        delay=settings.reread_delay_seconds,
        sleep=sleep,
    ):
        last = human_size(sizes[-1]) if sizes else "nothing"
        raise ExpandFailedError(
            f"Kernel did not report the extended {root_node} after"
            f" {settings.reread_retries} attempts (table {human_size(table_size)},"
            f" kernel {last})",
            device=destination,
        )
    log.info(f"Root partition {root_node} now {human_size(table_size)}")
    return table_size


def _grow_ext4(root_node: str) -> None:
    # e2fsck exits 1 when it corrected something; resize2fs insists on a fresh check.
    result = run_command(["e2fsck", "-f", "-y", root_node], check=False)
    if result.returncode not in (0, 1):
        raise CommandError(
            ["e2fsck", "-f", "-y", root_node], result.returncode, result.stderr, result.stdout
        )
    run_command(["resize2fs", root_node])


def grow_filesystem(
    root_node: str, kind: FilesystemKind, session: Session
) -> ResizeWarning | None:
    """Grow the filesystem on ``root_node`` to fill its partition.

    Returns:
        None on success, otherwise the warning describing why it was skipped
    """
    try:
        if kind is FilesystemKind.EXT4:
            _grow_ext4(root_node)
        elif kind is FilesystemKind.BTRFS:
            with session.mounted(root_node, "expand-root", owner=OWNER) as mountpoint:
                run_command(["btrfs", "filesystem", "resize", "max", str(mountpoint)])
        elif kind is FilesystemKind.F2FS:
            run_command(["resize.f2fs", root_node])
        else:
            return ResizeWarning(root_node, f"no online grow support for {kind.value}")
    except (CommandError, MountError) as error:
        return ResizeWarning(root_node, str(error))
    log.info(f"Grew {kind.value} filesystem on {root_node}")
    return None


def expand_root(
    destination: str,
    plan: ClonePlan,
    session: Session,
    settings: CloneSettings,
    sleep=None,
) -> list[ResizeWarning]:
    """Extend the root partition, then grow its filesystem.

    Raises:
        ExpandFailedError: If the partition table extension fails
    """
    extend_root_partition(destination, plan, settings, sleep=sleep)
    root_node = partition_path(destination, 2)
    warning = grow_filesystem(root_node, plan.root_kind, session)
    if warning is None:
        return []
    EventLogger.log_resize_warning(log, warning, device=root_node)
    return [warning]
