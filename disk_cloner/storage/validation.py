"""Safety validation performed before any destructive write.

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values.

Example:
    from disk_cloner.storage.validation import validate_clone_request

    dry_run = validate_clone_request(source, destination, "CLONE", raw=False)
"""

from __future__ import annotations

import os
import re
from typing import Optional

from .devices import is_block_device
from .exceptions import ConfirmationError, DeviceNotFoundError, SourceDestinationSameError


CONFIRM_CLONE = "CLONE"
CONFIRM_RAW = "DESTROY"
CONFIRM_SIMULATE = "SIMULATE"


def base_device(path: str) -> str:
    """Whole-disk path for a device or partition path.

    /dev/sda1 -> /dev/sda, /dev/nvme0n1p2 -> /dev/nvme0n1,
    /dev/nbd0p1 -> /dev/nbd0. Whole-disk paths are returned unchanged.
    """
    path = os.path.realpath(path)
    match = re.match(r"^(/dev/(?:nvme\d+n\d+|mmcblk\d+|nbd\d+|loop\d+))(?:p\d+)?$", path)
    if match:
        return match.group(1)
    match = re.match(r"^(/dev/[a-z]+)\d+$", path)
    if match:
        return match.group(1)
    return path


def validate_device_exists(path: str) -> None:
    """Raise DeviceNotFoundError unless ``path`` is a block device or file."""
    if not path or not (is_block_device(path) or os.path.isfile(path)):
        raise DeviceNotFoundError(path or "(empty path)")


def validate_devices_different(source: str, destination: str) -> None:
    """Validate that source and destination are not the same disk.

    Partitions are reduced to their parent disk first, so cloning
    /dev/sda onto /dev/sda2 is refused as well.

    Raises:
        SourceDestinationSameError: If both resolve to the same disk
    """
    if base_device(source) == base_device(destination):
        raise SourceDestinationSameError(source, destination)


def validate_confirmation(confirmation: Optional[str], raw: bool = False) -> bool:
    """Check the user's confirmation token.

    ``CLONE`` authorizes a partition-aware clone and ``DESTROY`` a raw
    whole-disk copy. ``SIMULATE`` authorizes either as a dry run.

    Returns:
        True when the operation must run as a dry run

    Raises:
        ConfirmationError: If the token does not match
    """
    token = (confirmation or "").strip()
    if token == CONFIRM_SIMULATE:
        return True
    expected = CONFIRM_RAW if raw else CONFIRM_CLONE
    if token != expected:
        raise ConfirmationError(expected, confirmation)
    return False


def validate_clone_request(
    source: str, destination: str, confirmation: Optional[str], raw: bool = False
) -> bool:
    """Run the pre-write checks in order and return the dry-run decision."""
    validate_device_exists(source)
    validate_device_exists(destination)
    validate_devices_different(source, destination)
    return validate_confirmation(confirmation, raw=raw)
