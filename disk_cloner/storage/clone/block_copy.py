"""Raw block copy with dd."""

from __future__ import annotations

from typing import Optional

from disk_cloner.config import settings
from disk_cloner.domain.models import parse_size
from disk_cloner.logging import EventLogger, LoggerFactory
from disk_cloner.storage.commands import retry
from disk_cloner.storage.exceptions import CommandError

from .command_runners import ProgressCallback, run_checked_with_streaming_progress


log = LoggerFactory.for_clone(job_id="-")


def dd_command(source: str, destination: str, size_bytes: Optional[int], block_size: str) -> list[str]:
    command = ["dd", f"if={source}", f"of={destination}", f"bs={block_size}"]
    if size_bytes is not None:
        # count is in bytes so the copy never overruns a smaller destination
        command += [f"count={size_bytes}", "iflag=count_bytes"]
    command += ["conv=fsync", "status=progress"]
    return command


def block_copy(
    source: str,
    destination: str,
    size_bytes: Optional[int] = None,
    title: str = "COPYING",
    progress_callback: Optional[ProgressCallback] = None,
) -> str:
    """Copy ``size_bytes`` from source to destination in fixed-size blocks.

    The first attempt uses the configured block size (1M); a failure is
    retried once with the fallback block size (512K).

    Returns:
        The block size that succeeded

    Raises:
        CommandError: If both attempts fail
    """
    block_sizes = [
        settings.get_setting("block_copy_size"),
        settings.get_setting("block_copy_fallback_size"),
    ]
    for block_size in block_sizes:
        parse_size(block_size)
    pending = iter(block_sizes)
    current: list[str] = []

    def attempt() -> str:
        block_size = next(pending)
        current[:] = [block_size]
        run_checked_with_streaming_progress(
            dd_command(source, destination, size_bytes, block_size),
            total_bytes=size_bytes,
            title=title,
            progress_callback=progress_callback,
        )
        return block_size

    def on_failure(attempt_number: int, error: BaseException) -> None:
        if attempt_number < len(block_sizes):
            EventLogger.log_fallback(
                log,
                f"Block copy {source} -> {destination}",
                f"dd bs={current[0]}",
                f"dd bs={block_sizes[attempt_number]}",
            )

    return retry(
        attempt,
        attempts=len(block_sizes),
        delay=1,
        exceptions=(CommandError,),
        description=f"dd {source} -> {destination}",
        on_failure=on_failure,
    )
