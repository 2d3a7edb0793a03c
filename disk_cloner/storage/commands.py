"""External command execution with capability checks and bounded retries.

Every device-touching component shells out through ``run_command`` so that
each attempted command lands in the command audit log with its exact argv.

Dry Run:
    When the ``dry_run`` setting is enabled (or inside ``dry_run_mode()``),
    commands that modify state are logged and skipped. Read-only queries
    (``readonly=True``) always run so that planning still sees real devices.

Retries:
    ``retry()`` is the only retry loop in the package. Local device operations
    have no network jitter, so backoff is a fixed short delay and the attempt
    budget is small (2-3).
"""

from __future__ import annotations

import shutil
import subprocess
import time
from contextlib import contextmanager, suppress
from typing import Callable, Iterator, Optional, Sequence, Tuple, Type, TypeVar

from disk_cloner.config import settings
from disk_cloner.logging import EventLogger, LoggerFactory

from .exceptions import CommandError, ToolNotFoundError


log = LoggerFactory.for_commands()

T = TypeVar("T")

_dry_run_override: Optional[bool] = None


def is_dry_run() -> bool:
    if _dry_run_override is not None:
        return _dry_run_override
    return settings.get_bool("dry_run")


@contextmanager
def dry_run_mode(enabled: bool = True) -> Iterator[None]:
    """Force dry-run on or off for the duration of the block."""
    global _dry_run_override
    previous = _dry_run_override
    _dry_run_override = enabled
    try:
        yield
    finally:
        _dry_run_override = previous


def tool_available(name: str) -> bool:
    return shutil.which(name) is not None


def require_tool(name: str) -> str:
    """Return the absolute path of a tool or raise ToolNotFoundError."""
    path = shutil.which(name)
    if not path:
        raise ToolNotFoundError(name)
    return path


def run_command(
    command: Sequence[str],
    check: bool = True,
    input_text: Optional[str] = None,
    log_output: bool = True,
    readonly: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run an external command and capture its output.

    Args:
        command: argv list
        check: Raise CommandError on non-zero exit
        input_text: Text passed on stdin (never logged)
        log_output: Log stdout/stderr at DEBUG
        readonly: Command only inspects state and runs even in dry-run mode
        timeout: Seconds before the command is abandoned

    Returns:
        CompletedProcess with text stdout/stderr

    Raises:
        ToolNotFoundError: If the executable does not exist
        CommandError: If check is True and the command fails or times out
    """
    command = [str(part) for part in command]
    if not readonly and is_dry_run():
        log.bind(tags=["command"]).info(f"[DRY RUN] {' '.join(command)}")
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    EventLogger.log_command_attempt(log, command)
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError as error:
        raise ToolNotFoundError(command[0]) from error
    except subprocess.TimeoutExpired as error:
        EventLogger.log_command_failure(log, command, None, f"timed out after {timeout}s")
        if check:
            raise CommandError(command, None, f"timed out after {timeout}s") from error
        return subprocess.CompletedProcess(command, -1, stdout="", stderr="timeout")

    stdout = (result.stdout or "").strip()
    stderr = (result.stderr or "").strip()
    if log_output:
        if stdout:
            log.trace(f"stdout: {stdout}")
        if stderr:
            log.debug(f"stderr: {stderr}")
    if result.returncode != 0:
        message = stderr or stdout or "Command failed"
        EventLogger.log_command_failure(log, command, result.returncode, message)
        if check:
            raise CommandError(command, result.returncode, message)
    return result


def retry(
    operation: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    exceptions: Tuple[Type[BaseException], ...] = (CommandError,),
    description: str = "operation",
    on_failure: Optional[Callable[[int, BaseException], None]] = None,
    log_level: str = "WARNING",
) -> T:
    """Call ``operation`` until it succeeds or the attempt budget runs out.

    Args:
        operation: Zero-argument callable
        attempts: Maximum number of calls (>= 1)
        delay: Fixed sleep between attempts in seconds
        exceptions: Exception types that count as a failed attempt
        description: Human readable step name for logs
        on_failure: Called with (attempt, error) after each failure, before sleeping
        log_level: Level used for per-attempt failure logs

    Returns:
        The first successful return value

    Raises:
        The last exception raised by ``operation`` once attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except exceptions as error:
            last_error = error
            log.log(log_level, f"{description} failed (attempt {attempt}/{attempts}): {error}")
            if on_failure is not None:
                on_failure(attempt, error)
            if attempt < attempts:
                time.sleep(delay)
    assert last_error is not None
    raise last_error


class _NotReady(Exception):
    pass


def wait_until(
    predicate: Callable[[], bool],
    *,
    attempts: int,
    delay: float,
    description: str,
    on_miss: Optional[Callable[[], None]] = None,
) -> bool:
    """Poll ``predicate`` with the bounded retry budget.

    ``on_miss`` runs after each negative check (e.g. re-reading the
    partition table) before the next sleep.
    """

    def check() -> bool:
        if predicate():
            return True
        if on_miss is not None:
            on_miss()
        raise _NotReady(description)

    try:
        return retry(
            check,
            attempts=attempts,
            delay=delay,
            exceptions=(_NotReady,),
            description=description,
            log_level="DEBUG",
        )
    except _NotReady:
        return False


def settle_devices(device: Optional[str] = None) -> None:
    """Flush buffers and let udev catch up after a table or mapping change."""
    with suppress(CommandError):
        run_command(["sync"], check=False)
    if device:
        with suppress(CommandError):
            run_command(["partprobe", device], check=False)
    with suppress(CommandError):
        run_command(["udevadm", "settle", "--timeout=5"], check=False)
