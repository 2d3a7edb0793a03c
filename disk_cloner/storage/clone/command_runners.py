"""Command execution with streaming progress for long copy operations."""

from __future__ import annotations

import select
import subprocess
import time
from typing import Callable, Optional

from disk_cloner.logging import EventLogger, LoggerFactory, ThrottledLogger
from disk_cloner.storage.commands import is_dry_run
from disk_cloner.storage.exceptions import CommandError, ToolNotFoundError

from .progress import format_eta, format_progress_lines, parse_progress_line


log = LoggerFactory.for_clone(job_id="-")

ProgressCallback = Callable[[list, Optional[float]], None]


def run_checked_with_streaming_progress(
    command,
    total_bytes=None,
    title="WORKING",
    stdout_target=None,
    progress_callback: Optional[ProgressCallback] = None,
    refresh_interval: float = 1.0,
):
    """Run a copy tool, streaming its stderr into progress updates.

    Data copies have no timeout: their duration is proportional to the
    amount of data.

    Args:
        command: argv list
        total_bytes: Expected byte count, used for ratio and ETA
        title: First line of each progress update
        stdout_target: File object receiving stdout instead of a pipe
        progress_callback: Called with (lines, ratio) on each update
        refresh_interval: Seconds between select() wakeups

    Returns:
        CompletedProcess with captured stdout (unless redirected) and stderr

    Raises:
        ToolNotFoundError: If the executable does not exist
        CommandError: If the command exits non-zero
    """
    command = [str(part) for part in command]
    if is_dry_run():
        log.bind(tags=["command"]).info(f"[DRY RUN] {' '.join(command)}")
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    throttled = ThrottledLogger(log, interval_seconds=10.0)

    def emit_progress(lines, ratio=None):
        if progress_callback:
            progress_callback(lines, ratio)

    def compute_ratio(bytes_copied, percent_value):
        if bytes_copied is not None and total_bytes:
            return max(0.0, min(1.0, bytes_copied / total_bytes))
        if percent_value is not None:
            return max(0.0, min(1.0, percent_value / 100.0))
        return None

    EventLogger.log_command_attempt(log, command)
    try:
        process = subprocess.Popen(
            command,
            stdout=stdout_target or subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as error:
        raise ToolNotFoundError(command[0]) from error

    emit_progress([title, "Starting..."], ratio=0.0 if total_bytes else None)
    stderr_lines = []
    last_bytes = None
    last_time = None
    last_rate = None
    last_percent = None
    while True:
        ready, _, _ = select.select([process.stderr], [], [], refresh_interval)
        now = time.time()
        line = process.stderr.readline() if ready else None
        if line:
            stderr_lines.append(line)
            bytes_copied, percent, rate = parse_progress_line(line)
            if bytes_copied is not None:
                if rate is None and last_bytes is not None and last_time is not None:
                    delta_time = now - last_time
                    if bytes_copied >= last_bytes and delta_time > 0:
                        rate = (bytes_copied - last_bytes) / delta_time
                last_bytes = bytes_copied
                last_time = now
            if percent is not None:
                last_percent = percent
            last_rate = rate or last_rate
            eta = None
            if last_rate and total_bytes and last_bytes is not None and last_bytes <= total_bytes:
                eta = format_eta((total_bytes - last_bytes) / last_rate)
            ratio = compute_ratio(last_bytes, last_percent)
            emit_progress(
                format_progress_lines(title, last_bytes, total_bytes, last_percent, last_rate, eta),
                ratio=ratio,
            )
            if ratio is not None:
                EventLogger.log_clone_progress(
                    log, ratio * 100, last_bytes or 0, (last_rate or 0) / 1e6, title=title
                )
                throttled.info(title, f"{title}: {ratio * 100:.1f}%")
        if process.poll() is not None and not line:
            break
    remaining_stderr = process.stderr.read() if process.stderr else ""
    if remaining_stderr:
        stderr_lines.append(remaining_stderr)
    stdout_data = ""
    if stdout_target is None and process.stdout:
        stdout_data = process.stdout.read()
    process.wait()
    stderr_output = "".join(stderr_lines)
    if process.returncode != 0:
        message = stderr_output.strip() or stdout_data.strip() or "Command failed"
        EventLogger.log_command_failure(log, command, process.returncode, message)
        raise CommandError(command, process.returncode, message)
    emit_progress([title, "Complete"], ratio=1.0)
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )
