"""The clone pipeline: one function, named stages, one session.

Stages, in order::

    validate -> inventory -> plan -> [scratch check] -> confirm
        -> partition -> [shrink] -> copy -> [expand] -> boot identity

Everything up to and including the confirmation gate is read-only with
respect to the destination. Every ``StorageError`` leaving ``clone_device()``
has ``destination_modified`` set accordingly, so callers can tell a refused
clone from one that failed halfway. The session is torn down on every exit
path, including operator interrupts.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from rpi_boot_cloner.config.settings import CloneSettings
from rpi_boot_cloner.domain import ClonePlan, CloneResult
from rpi_boot_cloner.logging import EventLogger, new_job_id, operation_context
from rpi_boot_cloner.storage.devices import collect_device_mountpoints, get_device_info
from rpi_boot_cloner.storage.exceptions import CloneAbortedError, StorageError
from rpi_boot_cloner.storage.session import Session
from rpi_boot_cloner.storage.validation import (
    validate_clone_operation,
    validate_device_unmounted,
)

from .boot_identity import patch_boot_identity
from .expand import expand_root
from .inventory import inspect_destination, inspect_source
from .operations import clone_partitions
from .partition_writer import write_partitions
from .planner import plan_layout
from .shrink import OWNER as SHRINK_OWNER
from .shrink import check_scratch_space, stage_root_image


def clone_device(
    source: str,
    destination: str,
    *,
    force: bool = False,
    confirm: Optional[Callable[[ClonePlan], bool]] = None,
    settings: Optional[CloneSettings] = None,
    dry_run: bool = False,
    progress_callback=None,
) -> CloneResult:
    """Clone a two-partition boot device from ``source`` onto ``destination``.

    Args:
        source: Source disk, e.g. "/dev/mmcblk0"; never written
        destination: Destination disk, e.g. "/dev/sda"; fully rebuilt
        force: Skip the confirmation gate (plan validation still runs)
        confirm: Called with the plan; returning False aborts the clone
        settings: Margins and paths; loaded from the settings file by default
        dry_run: Stop after planning
        progress_callback: Receives (lines, ratio) during long copies

    Raises:
        DeviceNotFoundError, DeviceBusyError, SourceDestinationSameError,
        UnexpectedLayoutError, InsufficientDestinationError,
        InsufficientScratchSpaceError, CloneAbortedError: Before any write
        PartitionTableError, FormatError, CloneFailedError,
        ExpandFailedError, BootIdentityError, MountError: After writes began
    """
    settings = settings or CloneSettings.from_store()
    job_id = new_job_id("clone")
    started = time.monotonic()
    destination_modified = False

    with operation_context(
        "clone", job_id=job_id, source_device=source, destination_device=destination
    ) as log:
        try:
            with Session(settings.work_dir, job_id=job_id) as session:
                # Validate
                destination_device, destination_info = inspect_destination(destination)
                validate_clone_operation(source, destination, destination_info)
                source_mounts = collect_device_mountpoints(get_device_info(source))
                if source_mounts:
                    log.warning(
                        f"Source {source} is mounted at {', '.join(source_mounts)};"
                        " reading it through read-only binds, writes during the clone"
                        " will not be captured"
                    )

                # Inventory + plan
                source_device = inspect_source(source, session)
                plan = plan_layout(source_device, destination_device.size_bytes, settings)
                EventLogger.log_plan(log, plan)
                for line in plan.describe():
                    log.info(line)

                result = CloneResult(
                    source=source_device,
                    destination_path=destination_device.path,
                    plan=plan,
                    dry_run=dry_run,
                )
                if dry_run:
                    log.info("Dry run: destination left untouched")
                    return result

                if plan.needs_shrink:
                    check_scratch_space(settings.scratch_dir, plan.root_size)

                if not force and (confirm is None or not confirm(plan)):
                    raise CloneAbortedError(destination)

                # The operator may have taken a while; check again before wiping.
                validate_device_unmounted(destination, get_device_info(destination))

                destination_modified = True
                boot_node, root_node = write_partitions(destination, plan, source_device, settings)

                staged_root = None
                if plan.needs_shrink:
                    staged_root = stage_root_image(
                        source_device, plan, session, settings, progress_callback
                    )

                clone_partitions(
                    source_device,
                    plan,
                    boot_node,
                    root_node,
                    session,
                    staged_root,
                    progress_callback,
                )
                for resource in session.owned_by(SHRINK_OWNER):
                    session.release(resource)

                if plan.needs_grow or (plan.needs_shrink and settings.grow_after_shrink):
                    result.warnings.extend(expand_root(destination, plan, session, settings))

                result.identity = patch_boot_identity(
                    boot_node, root_node, plan, session, settings
                )
        except StorageError as error:
            error.destination_modified = destination_modified
            raise

        result.duration_seconds = time.monotonic() - started
        return result
