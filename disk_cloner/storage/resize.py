"""Grow a disk image and the filesystem in its last partition.

Steps, each aborting the rest on failure:
    1. parse the new size, refuse shrinking
    2. precheck: image not in use, enough free space
    3. optional backup copy
    4. qemu-img resize
    5. connect the image (always disconnected afterwards)
    6. grow the last partition's table entry
    7. grow LUKS/LVM layers, if any
    8. check/repair, then grow the filesystem
"""

from __future__ import annotations

import os
from typing import Optional, Union

from disk_cloner.domain.models import PartitionRecord, ResizeResult, parse_size
from disk_cloner.logging import LoggerFactory, operation_context

from .clone.strategies import get_filesystem_tool
from .devices import get_filesystem_type, human_size, list_partitions
from .exceptions import DeviceNotFoundError, ResizeError, UnsupportedOperationError
from .image import backup_image, check_free_space, ensure_not_in_use, get_image_info, resize_image
from .partition_table import detect_table_type, grow_last_partition
from .session import open_session
from .volumes import CredentialProvider, VolumeResolver, grow_layers


log = LoggerFactory.for_resize(job_id="-")

RELOCATION_TOOL = "GParted"


def resolve_new_size(new_size: Union[str, int], current_size: int) -> int:
    """Absolute size in bytes; a ``+`` prefix is relative to ``current_size``."""
    if isinstance(new_size, str) and new_size.strip().startswith("+"):
        return current_size + parse_size(new_size.strip()[1:])
    return parse_size(new_size)


def select_partition(
    records: list[PartitionRecord], partition: Optional[int]
) -> PartitionRecord:
    """Pick the partition to grow; only the last one can be grown in place.

    Raises:
        ResizeError: If the image has no partitions or ``partition`` does not exist
        UnsupportedOperationError: If ``partition`` is not the last one
    """
    if not records:
        raise ResizeError("Image has no partitions to grow")
    last = records[-1]
    if partition is None:
        return last
    for record in records:
        if record.index == partition:
            break
    else:
        raise ResizeError(f"Partition {partition} not found")
    if record.index != last.index:
        raise UnsupportedOperationError(
            f"Partition {partition} is followed by partition {last.index}; growing it "
            f"requires relocating the partitions after it. Use {RELOCATION_TOOL} instead."
        )
    return record


def resize(
    file: str,
    new_size: Union[str, int],
    partition: Optional[int] = None,
    backup: bool = False,
    credential_provider: Optional[CredentialProvider] = None,
    logical_volume: Optional[str] = None,
) -> ResizeResult:
    """Grow ``file`` to ``new_size`` and expand its last partition into the space.

    Args:
        file: Image file
        new_size: Bytes, ``"20G"`` style size, or ``"+5G"`` for relative growth
        partition: Partition number to grow (defaults to the last)
        backup: Copy the image to ``<file>.backup.<timestamp>`` first
        credential_provider: Returns the passphrase for a LUKS partition
        logical_volume: LV to extend when the volume group holds several

    Returns:
        ResizeResult; ``old_size == new_size`` when there was nothing to do

    Raises:
        ResizeError: On a shrink request or a failed step
        UnsupportedOperationError: If a non-last partition is selected
        CapacityError: If the filesystem holding the image lacks free space
        DeviceBusyError: If another process has the image open
    """
    if not os.path.isfile(file):
        raise DeviceNotFoundError(file)
    info = get_image_info(file)
    old_size = info.virtual_size
    target_size = resolve_new_size(new_size, old_size)
    if target_size < old_size:
        raise ResizeError(
            f"Shrinking {file} from {human_size(old_size)} to {human_size(target_size)} "
            "is not supported"
        )
    if target_size == old_size:
        log.info(f"{file} is already {human_size(old_size)}, nothing to do")
        return ResizeResult(file=file, old_size=old_size, new_size=old_size)

    with operation_context("resize", file=file, old_size=old_size, new_size=target_size):
        ensure_not_in_use(file)
        required = target_size - old_size
        if backup:
            required += info.actual_size or os.path.getsize(file)
        check_free_space(file, required)

        backup_path = backup_image(file) if backup else None
        resize_image(file, target_size, info.format)
        log.info(f"Grew {file} from {human_size(old_size)} to {human_size(target_size)}")

        with open_session(file, info.format) as session:
            device = session.device_node
            record = select_partition(list_partitions(device), partition)
            node = grow_last_partition(device, record.index, detect_table_type(device))

            fs_device = node
            fs_type = record.filesystem_type
            if record.is_luks or fs_type == "lvm2_member":
                VolumeResolver(session, credential_provider).resolve(node)
                fs_device = grow_layers(session, node, logical_volume)
                fs_type = get_filesystem_type(fs_device)

            tool = get_filesystem_tool(fs_type)
            log.info(f"Growing {fs_type} filesystem on {fs_device} with {tool.name} tools")
            tool.check(fs_device)
            tool.grow(fs_device)

    return ResizeResult(
        file=file,
        old_size=old_size,
        new_size=target_size,
        partition=node,
        filesystem_type=fs_type,
        backup_path=backup_path,
    )
