"""Post-clone identity and integrity checks.

Both are best-effort: a UUID mismatch, a truncated destination or a
filesystem that fails its read-only check is logged and recorded on the
CloneResult as a warning, never raised.
"""

from __future__ import annotations

from typing import Optional

from disk_cloner.domain.models import MIB, CloneOperation, CloneResult
from disk_cloner.logging import EventLogger, LoggerFactory
from disk_cloner.storage.devices import get_device_size, get_filesystem_uuid, human_size
from disk_cloner.storage.exceptions import CommandError, UuidMismatchWarning

from .strategies import FilesystemTool


log = LoggerFactory.for_clone(job_id="-")


def verify_uuid(
    operation: CloneOperation, result: CloneResult, tool: FilesystemTool
) -> Optional[bool]:
    """Compare destination and source filesystem UUIDs.

    When they differ and preservation was requested, the strategy's
    ``set_uuid`` is tried once before the final comparison.

    Returns:
        True/False for a match/mismatch, None when the source had no UUID
    """
    expected = operation.filesystem_uuid
    if not expected:
        log.debug(f"{operation.source} has no filesystem UUID to compare")
        result.uuid_preserved = None
        return None

    actual = get_filesystem_uuid(operation.destination)
    if actual != expected and operation.preserve_uuid:
        try:
            if tool.set_uuid(operation.destination, expected):
                actual = get_filesystem_uuid(operation.destination)
        except CommandError as error:
            log.warning(f"Reapplying UUID on {operation.destination} failed: {error}")

    matched = EventLogger.log_uuid_comparison(
        log, operation.destination, expected, actual
    )
    result.uuid_preserved = matched
    if not matched:
        result.warnings.append(str(UuidMismatchWarning(operation.destination, expected, actual)))
    return matched


def verify_filesystem(
    operation: CloneOperation, result: CloneResult, tool: FilesystemTool
) -> bool:
    """Check the destination partition size and run the tool's read-only check.

    A destination more than 1MiB smaller than its source may hold a
    truncated filesystem.

    Returns:
        True when no problem was found
    """
    problems = []
    actual_size = None
    try:
        actual_size = get_device_size(operation.destination)
    except (CommandError, ValueError) as error:
        log.debug(f"Could not read size of {operation.destination}: {error}")
    shortfall = operation.source_size - actual_size if actual_size is not None else 0
    if tool.copies_data and shortfall > MIB:
        problems.append(
            f"{operation.destination} is {human_size(shortfall)} "
            f"smaller than {operation.source}; the filesystem may be truncated"
        )

    problem = tool.verify(operation.destination)
    if problem:
        problems.append(problem)

    for problem in problems:
        log.warning(problem)
        result.warnings.append(problem)
    if not problems:
        log.info(f"Verified {tool.name} filesystem on {operation.destination}")
    return not problems
