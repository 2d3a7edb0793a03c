"""Block device inspection using lsblk, blkid and blockdev.

Device Detection:
    Uses lsblk with JSON output and byte sizes to enumerate disks and their
    partitions. Freshly attached loop/NBD devices are often not yet known to
    udev, so any field lsblk leaves empty (filesystem type, UUIDs, partition
    type) is re-read directly from the device with blkid or sfdisk.

Operations:
    - list_physical_devices(): Whole disks as PhysicalDevice records
    - list_partitions(): Ordered PartitionRecords for a disk or session device
    - get_device_size(): Size in bytes via blockdev
    - get_filesystem_uuid() / get_partition_uuid() / get_disk_uuid()
    - partition_node() / wait_for_partition_node(): Partition device naming
      and bounded probing for nodes after a table change
    - human_size(): Convert bytes to human-readable format (KB/MB/GB)
"""

from __future__ import annotations

import glob
import json
import os
import re
import stat
from typing import Any, Optional

from disk_cloner.config import settings
from disk_cloner.domain.models import (
    PartitionRecord,
    PhysicalDevice,
    normalize_fs_type,
)
from disk_cloner.logging import LoggerFactory

from . import device_lock
from .commands import run_command, settle_devices, wait_until
from .exceptions import CommandError, DeviceNotFoundError
from .mount import partition_suffix


log = LoggerFactory.for_system()

LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,FSTYPE,UUID,PARTUUID,PTUUID,PTTYPE,PARTTYPE,MOUNTPOINT"
VIRTUAL_DEVICE_PREFIXES = ("loop", "nbd", "ram", "zram", "sr", "dm-")


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def get_block_devices(device: Optional[str] = None) -> list[dict[str, Any]]:
    """Return lsblk JSON device dicts, optionally for a single device."""
    command = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS]
    if device:
        command.append(device)
    result = run_command(command, log_output=False, readonly=True)
    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as error:
        log.error(f"lsblk returned invalid JSON: {error}")
        return []
    return data.get("blockdevices", []) or []


def get_children(device):
    return device.get("children", []) or []


def list_physical_devices() -> list[PhysicalDevice]:
    devices = []
    for device in get_block_devices():
        if device.get("type") != "disk":
            continue
        name = device.get("name") or ""
        if name.startswith(VIRTUAL_DEVICE_PREFIXES):
            continue
        model = device.get("model")
        devices.append(
            PhysicalDevice(
                path=device.get("path") or f"/dev/{name}",
                size=int(device.get("size") or 0),
                model=model.strip() if model else None,
            )
        )
    return devices


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def get_device_size(device: str) -> int:
    result = run_command(["blockdev", "--getsize64", device], readonly=True)
    return int(result.stdout.strip())


def _blkid_value(device: str, tag: str) -> Optional[str]:
    result = run_command(
        ["blkid", "-s", tag, "-o", "value", device], check=False, readonly=True
    )
    if result.returncode != 0:
        return None
    value = (result.stdout or "").strip()
    return value or None


def get_filesystem_uuid(device: str) -> Optional[str]:
    return _blkid_value(device, "UUID")


def get_partition_uuid(device: str) -> Optional[str]:
    return _blkid_value(device, "PARTUUID")


def get_disk_uuid(device: str) -> Optional[str]:
    return _blkid_value(device, "PTUUID")


def get_filesystem_type(device: str) -> str:
    return normalize_fs_type(_blkid_value(device, "TYPE"))


def get_partition_type(device: str, index: int) -> Optional[str]:
    result = run_command(
        ["sfdisk", "--part-type", device, str(index)], check=False, readonly=True
    )
    if result.returncode != 0:
        return None
    value = (result.stdout or "").strip().lower()
    return value or None


def get_partition_number(name):
    """Extract partition number from device name."""
    if not name:
        return None
    match = re.search(r"(?:p)?(\d+)$", name)
    if not match:
        return None
    return int(match.group(1))


def partition_node(device: str, index: int) -> str:
    """``/dev/sda`` + 1 -> ``/dev/sda1``; ``/dev/nbd0`` + 1 -> ``/dev/nbd0p1``.

    Devices exposed by a live session use the session's naming, so a
    kpartx-mapped loop device yields ``/dev/mapper/loopNpM``.
    """
    session = device_lock.session_for_device(device)
    if session is not None:
        return session.partition_node(index)
    return f"{device}{partition_suffix(device)}{index}"


def refresh_partition_mappings(device: str) -> None:
    """Update kpartx mappings after the table on ``device`` changed.

    Kernel partition nodes follow partprobe on their own; only sessions
    mapped with kpartx need this.
    """
    session = device_lock.session_for_device(device)
    if session is None or not session.kpartx:
        return
    result = run_command(["kpartx", "-u", device], check=False)
    if result.returncode != 0:
        log.warning(f"kpartx -u {device} failed: {result.stderr.strip()}")
    settle_devices()
    session.mapped_partition_nodes = sorted(
        glob.glob(f"/dev/mapper/{session.device_name}p[0-9]*")
    )


def wait_for_partition_node(
    device: str,
    index: int,
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
) -> bool:
    """Wait for a partition node to appear, re-probing the table on each miss."""
    node = partition_node(device, index)
    attempts = attempts or settings.get_int("partition_wait_attempts")
    delay = delay if delay is not None else settings.get_int("partition_wait_delay")

    def rescan() -> None:
        run_command(["partprobe", device], check=False)
        refresh_partition_mappings(device)

    found = wait_until(
        lambda: is_block_device(node),
        attempts=attempts,
        delay=delay,
        description=f"waiting for {node}",
        on_miss=rescan,
    )
    if not found:
        log.error(f"Partition node {node} did not appear after {attempts} attempts")
    return found


def _find_disk(device: str) -> dict[str, Any]:
    for entry in get_block_devices(device):
        if entry.get("path") == device or f"/dev/{entry.get('name')}" == device:
            return entry
    raise DeviceNotFoundError(device)


def list_partitions(device: str) -> list[PartitionRecord]:
    """Inspect a disk and return its partitions ordered by index.

    Raises:
        DeviceNotFoundError: If lsblk does not report the device
    """
    disk = _find_disk(device)
    disk_uuid = disk.get("ptuuid") or get_disk_uuid(device)
    records: list[PartitionRecord] = []
    for child in get_children(disk):
        if child.get("type") != "part":
            continue
        index = get_partition_number(child.get("name"))
        if index is None:
            continue
        part = dict(child)
        path = part.get("path") or f"/dev/{part.get('name')}"
        if not part.get("fstype"):
            part["fstype"] = _blkid_value(path, "TYPE")
        if not part.get("uuid"):
            part["uuid"] = get_filesystem_uuid(path)
        if not part.get("partuuid"):
            part["partuuid"] = get_partition_uuid(path)
        if not part.get("parttype"):
            part["parttype"] = get_partition_type(device, index)
        try:
            record = PartitionRecord.from_lsblk_dict(part, index=index, disk_uuid=disk_uuid)
        except ValueError as error:
            log.warning(f"Skipping partition {path}: {error}")
            continue
        records.append(record)
    records.sort(key=lambda record: record.index)
    log.debug(
        f"{device}: {len(records)} partition(s) "
        + ", ".join(
            f"{record.index}:{record.filesystem_type}:{human_size(record.size_bytes)}"
            + (":efi" if record.is_efi else "")
            for record in records
        )
    )
    return records


def device_in_use(path: str) -> bool:
    """True if any process holds ``path`` open."""
    try:
        result = run_command(["fuser", "-s", path], check=False, readonly=True)
    except CommandError:
        return False
    return result.returncode == 0
