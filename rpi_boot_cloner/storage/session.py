"""Scoped ownership of every mount, loop device and scratch file of one clone.

A ``Session`` is created fresh for each clone invocation. Every resource the
pipeline creates is registered here together with the component that created
it, and the session releases whatever is still registered in strict reverse
order of creation when it closes, whether the clone succeeded, failed or was
interrupted.

Because resources are created in dependency order (directory, then file,
then loop device, then mount), reverse order always unmounts before
detaching and detaches before deleting.

Usage:
    with Session(settings.work_dir) as session:
        with session.mounted("/dev/sda2", "root", owner="inventory", read_only=True) as path:
            ...
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Sequence

from rpi_boot_cloner.logging import LoggerFactory, new_job_id
from rpi_boot_cloner.storage.exceptions import (
    SessionTeardownError,
    StorageError,
    UnmountFailedError,
)
from rpi_boot_cloner.storage.mount import (
    attach_loop,
    bind_mount,
    detach_loop,
    mount_partition,
    unmount_path,
)


log = LoggerFactory.for_session()


class ResourceKind(Enum):
    DIRECTORY = "directory"
    FILE = "file"
    LOOP = "loop"
    MOUNT = "mount"


@dataclass(frozen=True)
class SessionResource:
    kind: ResourceKind
    target: str
    owner: str


class Session:
    """Registry of resources created during one clone, released in reverse order."""

    def __init__(self, work_root: Path, job_id: Optional[str] = None):
        self.work_root = Path(work_root)
        self.job_id = job_id or new_job_id("session")
        self._resources: list[SessionResource] = []
        self._work_dir: Optional[Path] = None

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        failures = self.teardown()
        if failures and exc_type is None:
            raise SessionTeardownError(failures)
        return False

    @property
    def resources(self) -> tuple[SessionResource, ...]:
        return tuple(self._resources)

    @property
    def outstanding(self) -> int:
        return len(self._resources)

    def owned_by(self, owner: str) -> list[SessionResource]:
        return [resource for resource in self._resources if resource.owner == owner]

    def register(self, kind: ResourceKind, target, owner: str) -> SessionResource:
        resource = SessionResource(kind=kind, target=str(target), owner=owner)
        self._resources.append(resource)
        log.debug(f"Registered {kind.value} {target} (owner: {owner})")
        return resource

    def _forget(self, resource: SessionResource) -> None:
        if resource in self._resources:
            self._resources.remove(resource)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @property
    def work_dir(self) -> Path:
        """Per-session directory for mount points, created on first use."""
        if self._work_dir is None:
            self.work_root.mkdir(parents=True, exist_ok=True)
            work_dir = self.work_root / self.job_id
            work_dir.mkdir()
            self.register(ResourceKind.DIRECTORY, work_dir, "session")
            self._work_dir = work_dir
        return self._work_dir

    def make_directory(self, name: str, owner: str) -> SessionResource:
        path = self.work_dir / name
        path.mkdir()
        return self.register(ResourceKind.DIRECTORY, path, owner)

    def create_file(self, path: Path, size_bytes: int, owner: str) -> SessionResource:
        """Create a new sparse file of ``size_bytes``; never overwrites."""
        path = Path(path)
        with open(path, "xb") as handle:
            resource = self.register(ResourceKind.FILE, path, owner)
            handle.truncate(size_bytes)
        return resource

    def mount(
        self,
        device: str,
        mountpoint: Path,
        owner: str,
        read_only: bool = False,
        options: Optional[Sequence[str]] = None,
    ) -> SessionResource:
        mount_partition(device, mountpoint, read_only=read_only, options=options)
        return self.register(ResourceKind.MOUNT, mountpoint, owner)

    def bind(self, directory: str, mountpoint: Path, owner: str) -> SessionResource:
        bind_mount(directory, mountpoint)
        return self.register(ResourceKind.MOUNT, mountpoint, owner)

    def attach_loop(self, backing_file: Path, owner: str) -> SessionResource:
        loop_device = attach_loop(backing_file)
        return self.register(ResourceKind.LOOP, loop_device, owner)

    @contextmanager
    def mounted(
        self,
        device: str,
        name: str,
        owner: str,
        read_only: bool = False,
        options: Optional[Sequence[str]] = None,
    ) -> Iterator[Path]:
        """Mount ``device`` under the work dir for the duration of the block."""
        with self._scoped_mount(
            name, owner, lambda path: self.mount(device, path, owner, read_only, options)
        ) as mountpoint:
            yield mountpoint

    @contextmanager
    def bound(self, directory: str, name: str, owner: str) -> Iterator[Path]:
        """Bind the mounted ``directory`` read-only under the work dir for the block."""
        with self._scoped_mount(
            name, owner, lambda path: self.bind(directory, path, owner)
        ) as mountpoint:
            yield mountpoint

    @contextmanager
    def _scoped_mount(self, name: str, owner: str, make_mount) -> Iterator[Path]:
        directory = self.make_directory(name, owner)
        try:
            mount = make_mount(Path(directory.target))
        except (StorageError, ValueError):
            self.release(directory)
            raise
        try:
            yield Path(mount.target)
        except BaseException:
            self.release_quietly(mount, directory)
            raise
        self.release(mount)
        self.release(directory)

    @contextmanager
    def attached(self, backing_file: Path, owner: str) -> Iterator[str]:
        """Attach ``backing_file`` as a loop device for the duration of the block."""
        loop = self.attach_loop(backing_file, owner)
        try:
            yield loop.target
        except BaseException:
            self.release_quietly(loop)
            raise
        self.release(loop)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self, resource: SessionResource) -> None:
        """Release one resource now; it stays registered if release fails."""
        self._release_one(resource, lazy=False)
        self._forget(resource)

    def release_quietly(self, *resources: SessionResource) -> None:
        """Release while another exception is propagating.

        Mounts fall back to a lazy unmount. A resource that still cannot be
        released is logged and left registered for teardown, so the caller's
        exception is the one that surfaces.
        """
        for resource in resources:
            try:
                self._release_one(resource, lazy=True)
            except (StorageError, OSError) as error:
                log.warning(
                    f"Could not release {resource.kind.value} {resource.target}: {error}; "
                    "leaving it for teardown"
                )
                continue
            self._forget(resource)

    def _release_one(self, resource: SessionResource, lazy: bool) -> None:
        if resource.kind is ResourceKind.MOUNT:
            try:
                unmount_path(Path(resource.target))
            except UnmountFailedError:
                if not lazy:
                    raise
                log.warning(f"Unmount of {resource.target} failed, retrying lazily")
                unmount_path(Path(resource.target), lazy=True)
        elif resource.kind is ResourceKind.LOOP:
            detach_loop(resource.target)
        elif resource.kind is ResourceKind.FILE:
            Path(resource.target).unlink(missing_ok=True)
        elif resource.kind is ResourceKind.DIRECTORY:
            # rmdir only: a recursive delete could reach into a live mount.
            try:
                os.rmdir(resource.target)
            except FileNotFoundError:
                pass
        log.debug(f"Released {resource.kind.value} {resource.target} (owner: {resource.owner})")

    def teardown(self) -> list[str]:
        """Release everything still registered, newest first.

        Every resource is attempted and then forgotten, so the session is
        always empty afterwards.

        Returns:
            Descriptions of resources that could not be released
        """
        failures: list[str] = []
        for resource in reversed(list(self._resources)):
            try:
                self._release_one(resource, lazy=True)
            except (StorageError, OSError) as error:
                description = f"{resource.kind.value} {resource.target}: {error}"
                log.error(f"Teardown failed for {description}")
                failures.append(description)
            self._forget(resource)
        self._work_dir = None
        return failures
