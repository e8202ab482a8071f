"""Progress parsing and formatting for long-running copy commands.

dd, partclone and rsync all report progress on stderr in their own format.
``parse_progress_line()`` reduces one line from any of them to a
``ProgressSample``; the command runner turns samples into display lines and
rate-limited log records.
"""

import re
from dataclasses import dataclass
from typing import Optional

from rpi_boot_cloner.storage.devices import human_size


# dd status=progress: "123456789 bytes (123 MB, 118 MiB) copied, 2 s, 61.7 MB/s"
_BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")
# rsync --info=progress2: "  1,234,567  12%   10.50MB/s    0:01:02"
_RSYNC_BYTES_PATTERN = re.compile(r"^\s*([\d,]+)\s+\d+%")
_PERCENT_PATTERN = re.compile(r"(\d+(?:\.\d+)?)%")
_RATE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([kKMG]i?B)/(s|min)")

_RATE_UNITS = {
    "kB": 1000,
    "KB": 1000,
    "KiB": 1024,
    "MB": 1000**2,
    "MiB": 1024**2,
    "GB": 1000**3,
    "GiB": 1024**3,
}


@dataclass(frozen=True)
class ProgressSample:
    bytes_copied: Optional[int] = None
    percent: Optional[float] = None
    rate: Optional[float] = None  # bytes per second

    @property
    def empty(self) -> bool:
        return self.bytes_copied is None and self.percent is None and self.rate is None


def parse_progress_line(line: str) -> ProgressSample:
    """Extract whatever progress facts one stderr line carries."""
    bytes_copied = None
    bytes_match = _BYTES_PATTERN.search(line) or _RSYNC_BYTES_PATTERN.search(line)
    if bytes_match:
        bytes_copied = int(bytes_match.group(1).replace(",", ""))

    percent = None
    percent_match = _PERCENT_PATTERN.search(line)
    if percent_match:
        percent = float(percent_match.group(1))

    rate = None
    rate_match = _RATE_PATTERN.search(line)
    if rate_match:
        value, unit, period = rate_match.groups()
        rate = float(value) * _RATE_UNITS.get(unit, 1)
        if period == "min":
            rate /= 60.0

    return ProgressSample(bytes_copied=bytes_copied, percent=percent, rate=rate)


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_progress_lines(title, bytes_copied, total_bytes, percent, rate, eta):
    """Format progress information into display lines."""
    lines = []
    if title:
        lines.append(title)
    if bytes_copied is not None:
        percent_display = ""
        if total_bytes:
            percent_display = f"{(bytes_copied / total_bytes) * 100:.1f}%"
        elif percent is not None:
            percent_display = f"{percent:.1f}%"
        written_line = f"Wrote {human_size(bytes_copied)}"
        if percent_display:
            written_line = f"{written_line} {percent_display}"
        lines.append(written_line)
    elif percent is not None:
        lines.append(f"{percent:.1f}%")
    else:
        lines.append("Working...")
    if rate:
        rate_line = f"{human_size(rate)}/s"
        if eta:
            rate_line = f"{rate_line} ETA {eta}"
        lines.append(rate_line)
    return lines
