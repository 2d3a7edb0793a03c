"""Mount table queries and the unmount fallback chain.

Teardown never leaves a mount behind that references a device it is about
to release: each mountpoint goes through plain ``umount``, then ``umount -f``,
then ``umount -l``. A lazy unmount detaches the entry from the mount table
immediately even while files are still open.
"""

from __future__ import annotations

import os
import re
import tempfile
import time
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from disk_cloner.logging import LoggerFactory

from .commands import run_command
from .exceptions import CommandError, MountError, UnmountFailedError


log = LoggerFactory.for_session()

PROC_MOUNTS = "/proc/mounts"
UNMOUNT_CHAIN = (("umount",), ("umount", "-f"), ("umount", "-l"))


@dataclass(frozen=True)
class MountEntry:
    device: str
    mountpoint: str
    fstype: str


def _unescape(value: str) -> str:
    """Decode the octal escapes /proc/mounts uses for spaces and tabs."""
    return re.sub(r"\\([0-7]{3})", lambda match: chr(int(match.group(1), 8)), value)


def read_mount_table() -> list[MountEntry]:
    entries: list[MountEntry] = []
    try:
        with open(PROC_MOUNTS, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) < 3:
                    continue
                entries.append(
                    MountEntry(_unescape(parts[0]), _unescape(parts[1]), parts[2])
                )
    except FileNotFoundError:
        return []
    return entries


def partition_suffix(device: str) -> str:
    """``p`` for devices whose name ends in a digit (nbd0, loop3, mmcblk0)."""
    return "p" if device[-1].isdigit() else ""


def belongs_to(candidate: str, device: str) -> bool:
    """True if ``candidate`` is ``device`` itself or one of its partitions."""
    if candidate == device:
        return True
    pattern = rf"^{re.escape(device)}{partition_suffix(device)}\d+$"
    return re.match(pattern, candidate) is not None


def mounts_for(devices: Iterable[str]) -> list[MountEntry]:
    """Mount entries whose source is any of ``devices`` or their partitions.

    Symlinked names (``/dev/vg/lv`` vs ``/dev/mapper/vg-lv``) are compared
    by their resolved path as well.
    """
    wanted = {device for device in devices if device}
    wanted |= {os.path.realpath(device) for device in wanted}
    matches = []
    for entry in read_mount_table():
        sources = {entry.device, os.path.realpath(entry.device)}
        if any(belongs_to(source, device) for source in sources for device in wanted):
            matches.append(entry)
    return matches


def is_mountpoint_active(mountpoint: str) -> bool:
    return any(entry.mountpoint == mountpoint for entry in read_mount_table())


def unmount_mountpoint(mountpoint: str) -> bool:
    """Unmount one mountpoint through the plain -> forced -> lazy chain.

    Returns:
        True once the mountpoint is gone from the mount table
    """
    for step in UNMOUNT_CHAIN:
        if not is_mountpoint_active(mountpoint):
            return True
        result = run_command([*step, mountpoint], check=False)
        if result.returncode == 0 and not is_mountpoint_active(mountpoint):
            log.debug(f"Unmounted {mountpoint} with {' '.join(step)}")
            return True
        log.warning(f"{' '.join(step)} {mountpoint} did not release the mount")
        time.sleep(0.5)
    return not is_mountpoint_active(mountpoint)


def unmount_all(devices: Iterable[str]) -> list[str]:
    """Unmount everything mounted from ``devices`` or their partitions.

    Nested mounts are released deepest-first.

    Returns:
        Mountpoints that could not be released
    """
    devices = list(devices)
    entries = mounts_for(devices)
    if not entries:
        return []
    with suppress(CommandError):
        run_command(["sync"], check=False)
    failed: list[str] = []
    for entry in sorted(entries, key=lambda item: item.mountpoint.count("/"), reverse=True):
        if not unmount_mountpoint(entry.mountpoint):
            failed.append(entry.mountpoint)
    remaining = mounts_for(devices)
    if remaining:
        failed = sorted({*failed, *(entry.mountpoint for entry in remaining)})
    return failed


def ensure_unmounted(device: str) -> None:
    """Unmount a whole device before a destructive write.

    Raises:
        UnmountFailedError: If any mountpoint survives the fallback chain
    """
    failed = unmount_all([device])
    if failed:
        raise UnmountFailedError(device, failed)


@contextmanager
def temporary_mount(device: str, options: Optional[str] = None) -> Iterator[str]:
    """Mount ``device`` on a private temporary directory for the block."""
    mountpoint = tempfile.mkdtemp(prefix="disk-cloner-")
    command = ["mount"]
    if options:
        command += ["-o", options]
    try:
        run_command([*command, device, mountpoint])
    except CommandError as error:
        os.rmdir(mountpoint)
        raise MountError(f"Failed to mount {device}: {error}") from error
    try:
        yield mountpoint
    finally:
        if not unmount_mountpoint(mountpoint):
            log.error(f"Temporary mount {mountpoint} of {device} could not be released")
        else:
            with suppress(OSError):
                os.rmdir(mountpoint)
