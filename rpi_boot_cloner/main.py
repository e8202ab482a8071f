import argparse
import signal
import sys
from pathlib import Path

from rpi_boot_cloner.__version__ import __version__
from rpi_boot_cloner.config.settings import MIB, CloneSettings
from rpi_boot_cloner.logging import LoggerFactory, setup_logging
from rpi_boot_cloner.storage.clone import clone_device, resolve_device_node
from rpi_boot_cloner.storage.exceptions import StorageError


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PRECONDITION = 2
EXIT_INTERRUPTED = 130


def build_parser():
    parser = argparse.ArgumentParser(
        prog="rpi-boot-cloner",
        description="Clone a Raspberry Pi boot device (boot + root) onto a disk of any size",
    )
    parser.add_argument("source", metavar="SOURCE", help="Source disk, e.g. /dev/mmcblk0")
    parser.add_argument(
        "destination", metavar="DESTINATION", help="Destination disk, e.g. /dev/sda"
    )
    parser.add_argument("-f", "--force", action="store_true", help="Do not ask for confirmation")
    parser.add_argument(
        "-n", "--dry-run", action="store_true", help="Only inventory and plan, write nothing"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every progress line")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--scratch-dir", type=Path, help="Where to stage a shrunk root image")
    parser.add_argument("--boot-margin-mib", type=int, help="Headroom added to the boot partition")
    parser.add_argument("--shrink-margin-mib", type=int, help="Minimum free space in a shrunk root")
    parser.add_argument(
        "--shrink-margin-ratio", type=float, help="Free space in a shrunk root, as a share of used"
    )
    parser.add_argument(
        "--no-grow-after-shrink",
        action="store_true",
        help="Leave a shrunk root at its staged size instead of filling the disk",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _mib(value):
    return None if value is None else value * MIB


def settings_from_args(args):
    return CloneSettings.from_store().with_overrides(
        scratch_dir=args.scratch_dir,
        boot_margin_bytes=_mib(args.boot_margin_mib),
        shrink_margin_bytes=_mib(args.shrink_margin_mib),
        shrink_margin_ratio=args.shrink_margin_ratio,
        grow_after_shrink=False if args.no_grow_after_shrink else None,
    )


def prompt_confirmation(destination):
    def confirm(plan):
        print(f"About to ERASE {destination} and clone onto it:")
        for line in plan.describe():
            print(f"  {line}")
        try:
            answer = input("Continue? [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    return confirm


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        settings = settings_from_args(args)
    except ValueError as error:
        parser.error(str(error))

    # SIGTERM must unwind through the session teardown like Ctrl+C does.
    signal.signal(signal.SIGTERM, _raise_interrupt)

    source = resolve_device_node(args.source)
    destination = resolve_device_node(args.destination)
    try:
        result = clone_device(
            source,
            destination,
            force=args.force,
            confirm=prompt_confirmation(destination),
            settings=settings,
            dry_run=args.dry_run,
        )
    except KeyboardInterrupt:
        log.warning("Clone interrupted")
        return EXIT_INTERRUPTED
    except StorageError as error:
        log.error(str(error))
        if error.destination_modified:
            log.error(f"{destination} was partially written; run a fresh clone")
            return EXIT_FAILED
        return EXIT_PRECONDITION

    for line in result.summary_lines():
        print(line)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
