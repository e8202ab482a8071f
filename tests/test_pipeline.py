"""End-to-end tests for the clone pipeline with faked devices and tools."""

import json
from collections import namedtuple
from unittest.mock import Mock

import pytest

from rpi_boot_cloner.domain import CloneMode
from rpi_boot_cloner.storage.clone.pipeline import clone_device
from rpi_boot_cloner.storage.clone.planner import plan_layout
from rpi_boot_cloner.storage.exceptions import (
    CloneAbortedError,
    CloneFailedError,
    CommandError,
    DeviceBusyError,
    ExpandFailedError,
    InsufficientDestinationError,
    InsufficientScratchSpaceError,
    PartitionTableError,
    SourceDestinationSameError,
)


MIB = 1024 * 1024
GIB = 1024 * MIB

DiskUsage = namedtuple("DiskUsage", "total used free")

SOURCE_CMDLINE = "console=tty1 root=PARTUUID=1a2b3c4d-02 rootfstype=ext4 rootwait\n"
SOURCE_FSTAB = (
    "proc /proc proc defaults 0 0\n"
    "PARTUUID=1a2b3c4d-01 /boot/firmware vfat defaults 0 2\n"
    "PARTUUID=1a2b3c4d-02 / ext4 defaults,noatime 0 1\n"
)

DESTRUCTIVE = ("wipefs", "parted", "mkfs.vfat", "mkfs.ext4", "tune2fs", "fatlabel", "resize2fs")


class Rig:
    """Faked Raspberry Pi SD card, destination disk and copy tools."""

    def __init__(self, commands, mounts, copies, rsync, settings):
        self.commands = commands
        self.mounts = mounts
        self.copies = copies
        self.rsync = rsync
        self.settings = settings

    def destructive_calls(self):
        return [call for call in self.commands.calls if call[0] in DESTRUCTIVE]

    def source_untouched(self):
        writable = {device for device in self.mounts.writable_devices() if "mmcblk0" in device}
        written = [call for call in self.destructive_calls() if any("mmcblk0" in a for a in call)]
        copied_onto = [
            call.args[0] for call in self.copies.call_args_list
            if any(arg.startswith("of=/dev/mmcblk0") for arg in call.args[0])
        ]
        return not writable and not written and not copied_onto

    def session_released(self):
        return (
            self.mounts.active == {}
            and self.mounts.loops == {}
            and list(self.settings.work_dir.iterdir()) == []
        )


@pytest.fixture
def rig(
    fake_commands, fake_mounts, mocker, pi_sd_card, make_destination, source_device,
    clone_settings,
):
    """Factory wiring a destination of the given capacity into the fakes."""
    mocker.patch("rpi_boot_cloner.storage.validation.is_block_device", return_value=True)
    mocker.patch(
        "rpi_boot_cloner.storage.clone.partition_writer.is_block_device", return_value=True
    )
    mocker.patch(
        "rpi_boot_cloner.storage.clone.inventory.measure_used_bytes", return_value=GIB
    )
    mocker.patch("shutil.which", side_effect=lambda name: "/bin/dd" if name == "dd" else None)
    mocker.patch(
        "rpi_boot_cloner.storage.clone.shrink.shutil.disk_usage",
        return_value=DiskUsage(100 * GIB, 0, 100 * GIB),
    )
    copies = mocker.patch(
        "rpi_boot_cloner.storage.clone.operations.run_checked_with_streaming_progress"
    )
    rsync = mocker.patch(
        "rpi_boot_cloner.storage.clone.shrink.run_checked_with_streaming_progress"
    )

    boot = fake_mounts.device_dir("/dev/sda1")
    (boot / "cmdline.txt").write_text(SOURCE_CMDLINE)
    root = fake_mounts.device_dir("/dev/sda2")
    (root / "etc").mkdir()
    (root / "etc" / "fstab").write_text(SOURCE_FSTAB)

    def build(capacity):
        fake_commands.on(
            "lsblk", "/dev/mmcblk0", stdout=json.dumps({"blockdevices": [pi_sd_card]})
        )
        fake_commands.on(
            "lsblk", "/dev/sda",
            stdout=json.dumps({"blockdevices": [make_destination(capacity)]}),
        )
        try:
            plan = plan_layout(source_device, capacity, clone_settings)
        except InsufficientDestinationError:
            plan = None
        if plan is not None:
            fake_commands.on("blockdev", "/dev/sda1", stdout=str(plan.boot_size))
            fake_commands.on("blockdev", "/dev/sda2", stdout=str(plan.root_size))
            filled = capacity - plan.root_start
            fake_commands.on("parted", "print", stdout=parted_table(plan, filled))
            fake_commands.on(
                "parted", "resizepart",
                effect=lambda command: fake_commands.on(
                    "blockdev", "/dev/sda2", stdout=str(filled)
                ),
            )
        fake_commands.on("blkid", "PARTUUID", "/dev/sda1", stdout="9f8e7d6c-01\n")
        fake_commands.on("blkid", "PARTUUID", "/dev/sda2", stdout="9f8e7d6c-02\n")
        return Rig(fake_commands, fake_mounts, copies, rsync, clone_settings)

    return build


def parted_table(plan, root_size):
    boot_end = plan.boot_start + plan.boot_size - 1
    return (
        "BYT;\n"
        f"/dev/sda:{plan.destination_capacity}B:scsi:512:512:msdos:USB SSD:;\n"
        f"1:{plan.boot_start}B:{boot_end}B:{plan.boot_size}B:fat32::boot, lba;\n"
        f"2:{plan.root_start}B:{plan.root_start + root_size - 1}B:{root_size}B:ext4::;\n"
    )


def read_destination(rig):
    cmdline = (rig.mounts.contents["/dev/sda1"] / "cmdline.txt").read_text()
    fstab = (rig.mounts.contents["/dev/sda2"] / "etc" / "fstab").read_text()
    return cmdline, fstab


class TestGrowClone:
    """Test cloning onto a larger destination."""

    def test_grow(self, rig, clone_settings):
        """Test a 32 GiB destination is partitioned, copied, grown and patched."""
        env = rig(32 * GIB)
        confirm = Mock(return_value=True)

        result = clone_device("/dev/mmcblk0", "/dev/sda", confirm=confirm, settings=clone_settings)

        assert result.plan.mode is CloneMode.GROW
        assert result.plan.root_size == 32 * GIB - 288 * MIB - MIB
        assert result.identity.root_partuuid == "9f8e7d6c-02"
        assert result.warnings == []
        confirm.assert_called_once_with(result.plan)

        cmdline, fstab = read_destination(env)
        assert "root=PARTUUID=9f8e7d6c-02" in cmdline
        assert "PARTUUID=9f8e7d6c-01" in fstab
        assert "1a2b3c4d" not in cmdline + fstab

        assert env.commands.find("parted", "resizepart", "2", "100%")
        assert env.commands.find("resize2fs", "/dev/sda2")
        env.rsync.assert_not_called()
        assert env.source_untouched()
        assert env.session_released()

    def test_stage_order(self, rig, clone_settings):
        """Test partition, copy, expand and identity steps run in order."""
        env = rig(32 * GIB)
        order = []
        env.copies.side_effect = lambda command, **kwargs: order.append(command)

        clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        programs = env.commands.programs()
        assert programs.index("wipefs") < programs.index("mkfs.vfat")
        assert programs.index("mkfs.ext4") < programs.index("resize2fs")
        assert programs.index("resize2fs") < programs.index("tune2fs")
        assert programs.index("tune2fs") < programs.index("blkid")
        assert order[0][0] == "rsync"
        assert order[0][-2].endswith("/boot-source/")
        assert order[0][-1].endswith("/boot-destination/")
        assert order[1][1] == "if=/dev/mmcblk0p2"

    def test_progress_callback_forwarded(self, rig, clone_settings):
        """Test copy progress reaches the caller's callback."""
        env = rig(32 * GIB)
        callback = Mock()

        clone_device(
            "/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings,
            progress_callback=callback,
        )

        assert all(
            call.kwargs["progress_callback"] is callback for call in env.copies.call_args_list
        )

    def test_mounted_source_still_cloned(self, rig, clone_settings, pi_sd_card):
        """Test a running source is read through read-only binds of its mount points."""
        pi_sd_card["children"][0]["mountpoint"] = "/boot/firmware"
        pi_sd_card["children"][1]["mountpoint"] = "/"
        env = rig(32 * GIB)

        result = clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert result.identity is not None
        assert env.mounts.binds == ["/", "/boot/firmware"]
        assert not any("mmcblk0" in device for device, _ in env.mounts.mounts)
        assert env.source_untouched()
        assert env.session_released()

    def test_mounted_source_shrink(self, rig, clone_settings, pi_sd_card):
        """Test staging a mounted root reads it through a bind as well."""
        pi_sd_card["children"][1]["mountpoint"] = "/"
        env = rig(2 * GIB)

        clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert env.mounts.binds == ["/", "/"]
        assert env.mounts.read_only_devices() == {"/dev/mmcblk0p1"}
        env.rsync.assert_called_once()


class TestDirectClone:
    """Test cloning onto an equal-sized destination."""

    def test_direct_skips_expand(self, rig, clone_settings):
        """Test a same-size destination is copied without growing."""
        env = rig(288 * MIB + MIB + 4 * GIB)

        result = clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert result.plan.mode is CloneMode.DIRECT
        assert not env.commands.find("resizepart")
        assert result.identity.root_reference == "PARTUUID=9f8e7d6c-02"


class TestShrinkClone:
    """Test cloning onto a smaller destination."""

    def test_shrink(self, rig, clone_settings):
        """Test the root is staged, copied from the image and grown afterwards."""
        env = rig(2 * GIB)

        result = clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert result.plan.mode is CloneMode.SHRINK
        assert result.plan.root_size == GIB + 256 * MIB
        env.rsync.assert_called_once()
        root_copy = env.copies.call_args_list[1].args[0]
        assert root_copy[1].startswith(f"if={clone_settings.scratch_dir}/")
        assert root_copy[1].endswith("-root.img")
        assert env.commands.find("parted", "resizepart")
        assert list(clone_settings.scratch_dir.iterdir()) == []
        assert env.mounts.read_only_devices() == {"/dev/mmcblk0p1", "/dev/mmcblk0p2"}
        assert env.source_untouched()
        assert env.session_released()

    def test_shrink_without_grow(self, rig, clone_settings):
        """Test a shrunk root stays at its staged size when growing is disabled."""
        env = rig(2 * GIB)
        settings = clone_settings.with_overrides(grow_after_shrink=False)

        clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=settings)

        assert not env.commands.find("resizepart")
        assert not env.commands.find("resize2fs")

    def test_no_scratch_space(self, rig, clone_settings, mocker):
        """Test missing scratch space is refused before the destination is touched."""
        env = rig(2 * GIB)
        mocker.patch(
            "rpi_boot_cloner.storage.clone.shrink.shutil.disk_usage",
            return_value=DiskUsage(GIB, GIB, 0),
        )
        confirm = Mock(return_value=True)

        with pytest.raises(InsufficientScratchSpaceError) as exc_info:
            clone_device("/dev/mmcblk0", "/dev/sda", confirm=confirm, settings=clone_settings)

        assert exc_info.value.destination_modified is False
        confirm.assert_not_called()
        assert env.destructive_calls() == []

    def test_staging_failure_releases_everything(self, rig, clone_settings):
        """Test a failed tree copy leaves no mounts, loops or image behind."""
        env = rig(2 * GIB)
        env.rsync.side_effect = CommandError(["rsync"], 23, "partial transfer")

        with pytest.raises(CloneFailedError) as exc_info:
            clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert exc_info.value.destination_modified is True
        assert list(clone_settings.scratch_dir.iterdir()) == []
        assert env.session_released()


class TestRefusals:
    """Test clones refused before any destructive step."""

    def test_insufficient_destination(self, rig, clone_settings):
        """Test a destination that cannot hold the used data is never written."""
        env = rig(GIB)
        confirm = Mock(return_value=True)

        with pytest.raises(InsufficientDestinationError) as exc_info:
            clone_device("/dev/mmcblk0", "/dev/sda", confirm=confirm, settings=clone_settings)

        assert exc_info.value.destination_modified is False
        confirm.assert_not_called()
        assert env.destructive_calls() == []
        assert env.session_released()

    def test_mounted_destination(self, rig, clone_settings, make_destination, mocker):
        """Test a mounted destination is refused before inspecting the source."""
        env = rig(32 * GIB)
        mounted = make_destination(
            32 * GIB, children=[{"name": "sda1", "path": "/dev/sda1", "mountpoint": "/media/usb"}]
        )
        env.commands.on("lsblk", "/dev/sda", stdout=json.dumps({"blockdevices": [mounted]}))
        mocker.patch(
            "rpi_boot_cloner.storage.validation.is_mountpoint_active", return_value=True
        )

        with pytest.raises(DeviceBusyError) as exc_info:
            clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert exc_info.value.destination_modified is False
        assert env.mounts.mounts == []
        assert env.destructive_calls() == []

    def test_destination_mounted_during_confirmation(
        self, rig, clone_settings, make_destination, mocker
    ):
        """Test the unmounted check is repeated after confirmation."""
        env = rig(32 * GIB)
        mocker.patch(
            "rpi_boot_cloner.storage.validation.is_mountpoint_active", return_value=True
        )
        mounted = make_destination(
            32 * GIB, children=[{"name": "sda1", "path": "/dev/sda1", "mountpoint": "/media/usb"}]
        )

        def automounted(plan):
            env.commands.on("lsblk", "/dev/sda", stdout=json.dumps({"blockdevices": [mounted]}))
            return True

        with pytest.raises(DeviceBusyError) as exc_info:
            clone_device("/dev/mmcblk0", "/dev/sda", confirm=automounted, settings=clone_settings)

        assert exc_info.value.destination_modified is False
        assert env.destructive_calls() == []

    def test_same_device(self, rig, clone_settings):
        """Test cloning a device onto one of its own partitions is refused."""
        env = rig(32 * GIB)

        with pytest.raises(SourceDestinationSameError):
            clone_device("/dev/sda", "/dev/sda", force=True, settings=clone_settings)

        assert env.destructive_calls() == []
        assert env.mounts.mounts == []

    def test_declined(self, rig, clone_settings):
        """Test answering no aborts without writing."""
        env = rig(32 * GIB)
        confirm = Mock(return_value=False)

        with pytest.raises(CloneAbortedError) as exc_info:
            clone_device("/dev/mmcblk0", "/dev/sda", confirm=confirm, settings=clone_settings)

        assert exc_info.value.destination_modified is False
        confirm.assert_called_once()
        assert env.destructive_calls() == []
        assert env.session_released()

    def test_no_confirmation_without_force(self, rig, clone_settings):
        """Test a missing confirmation callback counts as no."""
        env = rig(32 * GIB)

        with pytest.raises(CloneAbortedError):
            clone_device("/dev/mmcblk0", "/dev/sda", settings=clone_settings)

        assert env.destructive_calls() == []

    def test_force_skips_confirmation(self, rig, clone_settings):
        """Test force never asks."""
        rig(32 * GIB)
        confirm = Mock(return_value=False)

        result = clone_device(
            "/dev/mmcblk0", "/dev/sda", force=True, confirm=confirm, settings=clone_settings
        )

        confirm.assert_not_called()
        assert result.identity is not None

    def test_dry_run(self, rig, clone_settings):
        """Test a dry run plans without writing or asking."""
        env = rig(2 * GIB)
        confirm = Mock(return_value=True)

        result = clone_device(
            "/dev/mmcblk0", "/dev/sda", confirm=confirm, settings=clone_settings, dry_run=True
        )

        assert result.dry_run
        assert result.plan.mode is CloneMode.SHRINK
        assert result.identity is None
        confirm.assert_not_called()
        assert env.destructive_calls() == []
        assert env.session_released()


class TestFailures:
    """Test failures after the destination was modified."""

    def test_copy_failure(self, rig, clone_settings):
        """Test a failed copy is reported as having modified the destination."""
        env = rig(32 * GIB)
        env.copies.side_effect = CommandError(["dd"], 1, "Input/output error")

        with pytest.raises(CloneFailedError) as exc_info:
            clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert exc_info.value.destination_modified is True
        assert not env.commands.find("resizepart")
        assert env.session_released()

    def test_partition_failure(self, rig, clone_settings):
        """Test a failed partition table write is flagged as destructive."""
        env = rig(32 * GIB)
        env.commands.on("parted", "mklabel", stderr="Error: busy", returncode=1)

        with pytest.raises(PartitionTableError) as exc_info:
            clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert exc_info.value.destination_modified is True
        env.copies.assert_not_called()

    def test_kernel_keeps_shrunk_root_size(self, rig, clone_settings):
        """Test growing stops when the kernel never reports the extended root."""
        env = rig(2 * GIB)
        env.commands.on("parted", "resizepart")

        with pytest.raises(ExpandFailedError) as exc_info:
            clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert exc_info.value.destination_modified is True
        assert not env.commands.find("resize2fs")
        assert env.session_released()

    def test_shrunk_root_grown_to_table_size(self, rig, clone_settings):
        """Test the filesystem is grown only after the kernel reports the new size."""
        env = rig(2 * GIB)

        clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        calls = env.commands.calls
        extended = next(index for index, call in enumerate(calls) if "resizepart" in call)
        table_read = next(index for index, call in enumerate(calls) if "print" in call)
        grown = next(index for index, call in enumerate(calls) if call[0] == "resize2fs")
        assert extended < table_read < grown

    def test_filesystem_grow_failure_is_warning(self, rig, clone_settings):
        """Test a failed resize2fs still completes the clone with a warning."""
        env = rig(32 * GIB)
        env.commands.on("resize2fs", stderr="resize2fs: No space left", returncode=1)

        result = clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert len(result.warnings) == 1
        assert result.identity is not None
        assert any(line.startswith("Warning:") for line in result.summary_lines())

    def test_interrupt_releases_session(self, rig, clone_settings):
        """Test Ctrl+C during a copy still tears the session down."""
        env = rig(2 * GIB)
        env.copies.side_effect = KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            clone_device("/dev/mmcblk0", "/dev/sda", force=True, settings=clone_settings)

        assert env.session_released()
        assert list(clone_settings.scratch_dir.iterdir()) == []
