"""Core cloning operations.

``clone_disk()`` is the partition-aware path: inspect the source, plan sizes
for the destination, write a fresh table and clone each partition with its
filesystem strategy. ``clone_disk_raw()`` copies the whole device byte for
byte. ``clone()`` accepts image files on either side by exposing them
through a BlockSession first.
"""

from __future__ import annotations

import os
from contextlib import ExitStack
from typing import Optional

from disk_cloner.config import settings
from disk_cloner.domain.models import (
    CloneOperation,
    CloneResult,
    CloneSummary,
    PartitionRecord,
    TableType,
)
from disk_cloner.logging import EventLogger, LoggerFactory, operation_context
from disk_cloner.storage.commands import dry_run_mode, is_dry_run, retry, settle_devices
from disk_cloner.storage.devices import get_device_size, human_size, is_block_device, list_partitions
from disk_cloner.storage.exceptions import (
    CapacityError,
    CloneError,
    CommandError,
    DeviceNotFoundError,
    PartitionCloneError,
    SourceDestinationSameError,
    StorageError,
    UnsupportedOperationError,
)
from disk_cloner.storage.image import convert_image, create_image, get_image_info, is_image_file
from disk_cloner.storage.mount import ensure_unmounted
from disk_cloner.storage.partition_table import (
    build_partition_table,
    compute_layout,
    detect_table_type,
    repair_gpt_after_raw_copy,
)
from disk_cloner.storage.planner import plan_sizes
from disk_cloner.storage.session import cancellation_guard, open_session
from disk_cloner.storage.validation import validate_clone_request, validate_confirmation

from .block_copy import block_copy
from .command_runners import ProgressCallback
from .strategies import describe_shrink, get_filesystem_tool
from .verification import verify_filesystem, verify_uuid


log = LoggerFactory.for_clone(job_id="-")

CLONE_RETRY_DELAY = 2


def clone_partition(
    operation: CloneOperation,
    progress_callback: Optional[ProgressCallback] = None,
) -> CloneResult:
    """Clone one partition with the strategy for its filesystem.

    Command failures are retried up to ``operation.retries`` times in total;
    each attempt starts with a clean set of warnings. The destination is then
    checked for UUID preservation and filesystem integrity.

    Raises:
        PartitionCloneError: If the strategy refuses or every attempt fails
    """
    tool = get_filesystem_tool(operation.filesystem_type)
    result = CloneResult(operation=operation, success=False, strategy=tool.name)

    shrink = describe_shrink(operation)
    if shrink == "significant":
        log.warning(
            f"{operation.destination} is {human_size(operation.shrink_bytes)} smaller "
            f"than {operation.source}; the filesystem must fit in the smaller partition"
        )
    elif shrink:
        log.info(
            f"{operation.destination} is {operation.shrink_bytes} bytes smaller than "
            f"{operation.source} (alignment-induced)"
        )

    log.info(
        f"Cloning {operation.source} -> {operation.destination} "
        f"({operation.filesystem_type}, strategy {tool.name})"
    )

    def attempt() -> None:
        result.warnings.clear()
        result.fallback_used = False
        tool.clone(operation, result, progress_callback)

    try:
        retry(
            attempt,
            attempts=max(1, operation.retries),
            delay=CLONE_RETRY_DELAY,
            description=f"Cloning {operation.source}",
        )
    except CloneError:
        raise
    except StorageError as error:
        raise PartitionCloneError(
            f"Cloning {operation.source} to {operation.destination} failed: {error}",
            source=operation.source,
            destination=operation.destination,
        ) from error

    if not is_dry_run():
        verify_uuid(operation, result, tool)
        verify_filesystem(operation, result, tool)
    result.success = True
    return result


def _failed_result(operation: CloneOperation, error: str) -> CloneResult:
    tool = get_filesystem_tool(operation.filesystem_type)
    log.error(error)
    return CloneResult(operation=operation, success=False, strategy=tool.name, error=error)


def _partition_operation(
    record: PartitionRecord, destination: str, destination_size: int, preserve_uuid: bool
) -> CloneOperation:
    return CloneOperation(
        source=record.device_path,
        destination=destination,
        filesystem_type=record.filesystem_type,
        source_size=record.size_bytes,
        destination_size=destination_size,
        filesystem_uuid=record.filesystem_uuid,
        preserve_uuid=preserve_uuid,
    )


def _log_summary(summary: CloneSummary) -> None:
    for result in summary.results:
        status = "ok" if result.success else f"FAILED ({result.error})"
        log.info(
            f"  {result.operation.source} -> {result.operation.destination}: {status}"
            + (f", method {result.method}" if result.method else "")
            + (f", {len(result.warnings)} warning(s)" if result.warnings else "")
        )
    log.info(f"{summary.succeeded} of {len(summary.results)} partition(s) cloned")


def clone_disk(
    source: str,
    destination: str,
    confirmation: Optional[str],
    preserve_uuid: bool = True,
    progress_callback: Optional[ProgressCallback] = None,
) -> CloneSummary:
    """Partition-aware clone of ``source`` onto ``destination``.

    Args:
        source: Source disk
        destination: Destination disk, wiped and repartitioned
        confirmation: ``CLONE`` to proceed, ``SIMULATE`` for a dry run
        preserve_uuid: Reapply source filesystem UUIDs on the destination
        progress_callback: Called with (lines, ratio) during long copies

    Returns:
        CloneSummary with one result per source partition

    Raises:
        SourceDestinationSameError: If both paths are the same disk
        ConfirmationError: If the token does not authorize the clone
        CapacityError: Before any write, if the destination cannot hold the layout
        PartitionTableError: If the destination table cannot be written
        CloneError: If no partition was cloned
    """
    simulate = validate_clone_request(source, destination, confirmation)
    with dry_run_mode(simulate or is_dry_run()):
        with operation_context("clone", source=source, destination=destination):
            return _clone_partitions(source, destination, preserve_uuid, progress_callback)


def _clone_partitions(
    source: str,
    destination: str,
    preserve_uuid: bool,
    progress_callback: Optional[ProgressCallback],
) -> CloneSummary:
    EventLogger.log_clone_started(log, source, destination, "partition-aware")
    records = list_partitions(source)
    if not records:
        raise CloneError(f"No partitions found on {source}")
    table_type = detect_table_type(source) or TableType.GPT
    capacity = get_device_size(destination)

    plan = plan_sizes(records, capacity)
    if plan.shrunk:
        log.warning(
            f"{destination} ({human_size(capacity)}) is smaller than the source layout; "
            "non-EFI partitions are scaled down proportionally"
        )
    compute_layout(records, plan, table_type)

    ensure_unmounted(source)
    ensure_unmounted(destination)

    built = build_partition_table(
        destination, records, plan, table_type, disk_uuid=records[0].disk_uuid
    )
    summary = CloneSummary(source=source, destination=destination, dry_run=is_dry_run())
    geometry_by_source = {geometry.source_index: geometry for geometry in built.geometry}

    for record in records:
        geometry = geometry_by_source[record.index]
        node = built.node_for_source(record.index)
        operation = _partition_operation(
            record,
            node or f"{destination} partition {geometry.index}",
            geometry.size_bytes,
            preserve_uuid,
        )
        if node is None:
            summary.results.append(
                _failed_result(operation, f"Partition node {geometry.index} did not appear")
            )
            continue
        try:
            summary.results.append(clone_partition(operation, progress_callback))
        except CloneError as error:
            summary.results.append(_failed_result(operation, str(error)))

    settle_devices(destination)
    _log_summary(summary)
    if summary.results and summary.succeeded == 0:
        raise CloneError(f"No partition of {source} could be cloned to {destination}")
    return summary


def clone_disk_raw(
    source: str,
    destination: str,
    confirmation: Optional[str],
    progress_callback: Optional[ProgressCallback] = None,
) -> CloneSummary:
    """Copy ``source`` to ``destination`` byte for byte.

    The destination must be at least as large as the source. A GPT backup
    header is moved to the end of a larger destination afterwards.

    Raises:
        ConfirmationError: Unless the token is ``DESTROY`` or ``SIMULATE``
        CapacityError: If the destination is smaller than the source
    """
    simulate = validate_clone_request(source, destination, confirmation, raw=True)
    with dry_run_mode(simulate or is_dry_run()):
        with operation_context("clone", source=source, destination=destination, mode="raw"):
            EventLogger.log_clone_started(log, source, destination, "raw")
            source_size = get_device_size(source)
            capacity = get_device_size(destination)
            if capacity < source_size:
                raise CapacityError(f"Raw copy of {source}", source_size, capacity)
            ensure_unmounted(source)
            ensure_unmounted(destination)

            operation = CloneOperation(
                source=source,
                destination=destination,
                filesystem_type="raw",
                source_size=source_size,
                destination_size=capacity,
            )
            result = CloneResult(operation=operation, success=False, strategy="raw")
            try:
                block_size = block_copy(
                    source,
                    destination,
                    source_size,
                    title=f"dd {source}",
                    progress_callback=progress_callback,
                )
            except CommandError as error:
                raise CloneError(f"Raw copy of {source} to {destination} failed: {error}") from error
            result.method = f"dd bs={block_size}"
            settle_devices(destination)
            if not is_dry_run():
                repair_gpt_after_raw_copy(destination)
            result.success = True
            return CloneSummary(
                source=source, destination=destination, results=[result], dry_run=is_dry_run()
            )


def _convert(
    source: str,
    destination: str,
    fmt: str,
    progress_callback: Optional[ProgressCallback],
) -> CloneSummary:
    info = get_image_info(source)
    with operation_context("clone", source=source, destination=destination, mode="convert"):
        EventLogger.log_clone_started(log, source, destination, "convert")
        operation = CloneOperation(
            source=source,
            destination=destination,
            filesystem_type="image",
            source_size=info.virtual_size,
            destination_size=info.virtual_size,
        )
        converted = convert_image(
            source,
            destination,
            fmt,
            source_format=info.format,
            progress_callback=progress_callback,
        )
        result = CloneResult(
            operation=operation,
            success=True,
            strategy="image",
            method=f"qemu-img convert -O {converted.format}",
        )
        return CloneSummary(source=source, destination=destination, results=[result])


def clone(
    source: str,
    destination: str,
    confirmation: Optional[str],
    raw: bool = False,
    destination_format: Optional[str] = None,
    destination_size: Optional[int] = None,
    preserve_uuid: bool = True,
    progress_callback: Optional[ProgressCallback] = None,
) -> CloneSummary:
    """Clone between any mix of block devices and image files.

    Image files are connected through a BlockSession for the duration of the
    clone. A missing destination image is created first, sized to the
    source unless ``destination_size`` is given. Converting a source image
    to a new image with no size change is a plain ``qemu-img convert``.

    Raises:
        DeviceNotFoundError: If the destination is a path under /dev that is
            not a block device
        UnsupportedOperationError: If a dry run would need to expose an image
        Any exception from clone_disk / clone_disk_raw
    """
    simulate = validate_confirmation(confirmation, raw=raw)
    if os.path.realpath(source) == os.path.realpath(destination):
        raise SourceDestinationSameError(source, destination)
    source_is_image = is_image_file(source)
    destination_is_image = not is_block_device(destination)
    if destination_is_image and os.path.realpath(destination).startswith("/dev/"):
        raise DeviceNotFoundError(destination)
    if (source_is_image or destination_is_image) and (simulate or is_dry_run()):
        raise UnsupportedOperationError(
            "Dry runs only support block devices; image files cannot be exposed"
        )
    fmt = destination_format or settings.get_setting("default_image_format")

    if source_is_image and destination_is_image and not os.path.exists(destination):
        if destination_size is None:
            return _convert(source, destination, fmt, progress_callback)

    with ExitStack() as stack:
        stack.enter_context(cancellation_guard())
        source_device = source
        if source_is_image:
            source_device = stack.enter_context(open_session(source)).device_node
        destination_device = destination
        if destination_is_image:
            if not os.path.exists(destination):
                size = destination_size or get_device_size(source_device)
                create_image(destination, size, fmt)
            destination_device = stack.enter_context(open_session(destination)).device_node
        if raw:
            return clone_disk_raw(
                source_device, destination_device, confirmation, progress_callback
            )
        return clone_disk(
            source_device,
            destination_device,
            confirmation,
            preserve_uuid=preserve_uuid,
            progress_callback=progress_callback,
        )
