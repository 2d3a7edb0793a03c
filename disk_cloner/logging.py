from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "DISK_CLONER_LOG_DIR",
        Path.home() / ".local" / "state" / "disk-cloner" / "logs",
    )
)

# Tags that route a record into the append-only command audit log
AUDIT_TAGS = frozenset({"command", "fallback", "uuid"})


def _is_audit_record(record) -> bool:
    """Match command attempts, fallbacks and UUID comparisons."""
    tags = record["extra"].get("tags", [])
    return bool(AUDIT_TAGS.intersection(tags))


def _should_log_progress(record) -> bool:
    """Filter copy progress logs - only show in DEBUG mode or below."""
    tags = record["extra"].get("tags", [])

    if "progress" in tags:
        return record["level"].no <= logger.level("DEBUG").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for console suppression rules."""
    if record["level"].no >= logger.level("WARNING").no:
        return True
    return _should_log_progress(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Fatal clone/resize failures, failed teardown
    - SUCCESS/INFO: Operations, state changes, important events
    - DEBUG: Detailed diagnostics, command output
    - TRACE: Ultra-verbose (every progress line from copy tools)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - commands.log: Every external command attempted, every fallback taken
      and every UUID comparison (append-only, 30 day retention)
    - debug.log: DEBUG+ events when debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/disk-cloner/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <15}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Command audit log - never filtered by console level
    logger.add(
        log_dir / "commands.log",
        level="DEBUG",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_is_audit_record,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 4: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["clone", "storage"])
        source: Source component (e.g., "clone", "session", "resize")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "clone", "resize")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("clone", source="/dev/sda", target="/dev/sdb") as log:
            log.debug("Unmounting devices")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.bind(**details).info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                f"{operation.capitalize()} completed"
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.bind(
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error(
                f"{operation.capitalize()} failed: {e} (see logs in {DEFAULT_LOG_DIR})"
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_clone(job_id: str | None = None, **details) -> Logger:
        """Logger for clone operations."""
        if job_id is None:
            job_id = f"clone-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="clone", tags=["clone", "storage"], **details
        )

    @staticmethod
    def for_resize(job_id: str | None = None) -> Logger:
        """Logger for image resize operations."""
        if job_id is None:
            job_id = f"resize-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="resize", tags=["resize", "storage"])

    @staticmethod
    def for_session() -> Logger:
        """Logger for loop/NBD session lifecycle."""
        return logger.bind(source="session", tags=["session", "storage"])

    @staticmethod
    def for_volumes() -> Logger:
        """Logger for LUKS/LVM resolution."""
        return logger.bind(source="volumes", tags=["volumes", "storage"])

    @staticmethod
    def for_table() -> Logger:
        """Logger for partition table operations."""
        return logger.bind(source="table", tags=["table", "storage"])

    @staticmethod
    def for_commands() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Useful for progress updates or other high-volume logs that should
    only be emitted at intervals.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Event fields are bound as extras rather than passed as format
    arguments, so tool output containing braces is logged verbatim.
    """

    @staticmethod
    def log_command_attempt(log: Logger, command: list[str], **extra) -> None:
        """Log an external command about to run."""
        log.bind(
            tags=["command"], event_type="command_attempt", command=list(command), **extra
        ).debug(f"Running command: {' '.join(command)}")

    @staticmethod
    def log_command_failure(
        log: Logger, command: list[str], returncode: int | None, message: str
    ) -> None:
        """Log an external command that exited non-zero."""
        log.bind(
            tags=["command"],
            event_type="command_failed",
            command=list(command),
            returncode=returncode,
        ).warning(f"Command failed ({' '.join(command)}): {message}")

    @staticmethod
    def log_fallback(log: Logger, step: str, primary: str, fallback: str, **extra) -> None:
        """Log a fallback from one method to another."""
        log.bind(
            tags=["fallback"],
            event_type="fallback",
            step=step,
            primary=primary,
            fallback=fallback,
            **extra,
        ).warning(f"{step}: {primary} failed, falling back to {fallback}")

    @staticmethod
    def log_uuid_comparison(
        log: Logger, device: str, expected: str | None, actual: str | None
    ) -> bool:
        """Log the result of a source/destination UUID comparison.

        Returns:
            True when the destination carries the expected UUID
        """
        matched = bool(expected) and expected == actual
        bound = log.bind(
            tags=["uuid"],
            event_type="uuid_comparison",
            device=device,
            expected=expected,
            actual=actual,
            matched=matched,
        )
        if matched:
            bound.info(f"UUID correctly preserved on {device}: {actual}")
        else:
            bound.warning(f"UUID changed on {device}: expected {expected}, got {actual}")
        return matched

    @staticmethod
    def log_clone_started(
        log: Logger, source: str, target: str, mode: str, **extra
    ) -> None:
        """Log clone operation start."""
        log.bind(
            event_type="clone_started",
            source_device=source,
            target_device=target,
            clone_mode=mode,
            **extra,
        ).info(f"Clone operation started: {source} -> {target} ({mode})")

    @staticmethod
    def log_clone_progress(
        log: Logger, percent: float, bytes_copied: int, speed_mbps: float, **extra
    ) -> None:
        """Log clone progress update."""
        log.bind(
            tags=["progress"],
            event_type="clone_progress",
            percent=round(percent, 2),
            bytes_copied=bytes_copied,
            speed_mbps=round(speed_mbps, 2),
            **extra,
        ).debug(f"Clone progress {percent:.1f}%")
