"""Command execution utilities with progress tracking."""

import select
import subprocess
import time

from rpi_boot_cloner.logging import EventLogger, LoggerFactory, ThrottledLogger
from rpi_boot_cloner.storage.exceptions import CommandError

from .progress import format_eta, format_progress_lines, parse_progress_line


log = LoggerFactory.for_clone(job_id="-")

STOP_TIMEOUT_SECONDS = 5


def stop_process(process) -> None:
    """Terminate a still-running child, killing it if it ignores SIGTERM."""
    if process.poll() is not None:
        return
    log.warning(f"Stopping {process.args[0]} (pid {process.pid})")
    process.terminate()
    try:
        process.wait(timeout=STOP_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_checked_with_streaming_progress(
    command,
    total_bytes=None,
    title="WORKING",
    progress_callback=None,
    refresh_interval=1.0,
    merge_stdout=False,
):
    """Run a command, parsing its stderr progress as it streams.

    ``progress_callback(lines, ratio)`` receives display lines and a 0..1
    ratio (or None when unknown) on every progress line and once more on
    completion. Tools that report progress on stdout (rsync) are read with
    ``merge_stdout=True``.

    Raises:
        CommandError: If the command exits nonzero
    """
    progress_log = log.bind(tags=["clone", "progress"])
    throttled = ThrottledLogger(log, interval_seconds=5.0)

    def emit_progress(lines, ratio=None):
        if progress_callback:
            progress_callback(lines, ratio)

    def clamp_ratio(value):
        if value is None:
            return None
        return max(0.0, min(1.0, float(value)))

    def compute_ratio(bytes_copied, percent_value):
        if bytes_copied is not None and total_bytes:
            return clamp_ratio(bytes_copied / total_bytes)
        if percent_value is not None:
            return clamp_ratio(percent_value / 100.0)
        return None

    emit_progress(
        format_progress_lines(title, 0 if total_bytes else None, total_bytes, None, None, None),
        ratio=compute_ratio(0 if total_bytes else None, None),
    )
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT if merge_stdout else subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    stream = process.stdout if merge_stdout else process.stderr
    stderr_lines = []
    last_bytes = None
    last_time = None
    last_rate = None
    last_percent = None
    try:
        while True:
            ready, _, _ = select.select([stream], [], [], refresh_interval)
            line = stream.readline() if ready else None
            if line:
                stderr_lines.append(line)
                progress_log.trace(f"stderr: {line.strip()}")
                sample = parse_progress_line(line)
                if not sample.empty:
                    now = time.time()
                    rate = sample.rate
                    if sample.bytes_copied is not None:
                        if rate is None and last_bytes is not None and last_time is not None:
                            delta_bytes = sample.bytes_copied - last_bytes
                            delta_time = now - last_time
                            if delta_bytes >= 0 and delta_time > 0:
                                rate = delta_bytes / delta_time
                        last_bytes = sample.bytes_copied
                        last_time = now
                    if sample.percent is not None:
                        last_percent = sample.percent
                    last_rate = rate or last_rate
                    eta = None
                    if last_rate and total_bytes and last_bytes is not None:
                        eta = format_eta((total_bytes - last_bytes) / last_rate)
                    ratio = compute_ratio(last_bytes, last_percent)
                    emit_progress(
                        format_progress_lines(
                            title, last_bytes, total_bytes, last_percent, last_rate, eta
                        ),
                        ratio=ratio,
                    )
                    if ratio is not None:
                        throttled.info(
                            title, f"{title}: {ratio * 100:.1f}%" + (f" ETA {eta}" if eta else "")
                        )
                        EventLogger.log_clone_progress(
                            progress_log,
                            ratio * 100,
                            last_bytes or 0,
                            (last_rate or 0) / (1024 * 1024),
                            title=title,
                        )
            if process.poll() is not None and not line:
                break
        remaining_output = stream.read()
        if remaining_output:
            stderr_lines.append(remaining_output)
        stdout_data = "" if merge_stdout else process.stdout.read()
        process.wait()
    finally:
        stop_process(process)
    stderr_output = "".join(stderr_lines)
    if process.returncode != 0:
        raise CommandError(command, process.returncode, stderr_output, stdout_data)
    emit_progress([title, "Complete"], ratio=1.0)
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )
