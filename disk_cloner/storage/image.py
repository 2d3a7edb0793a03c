"""Virtual disk image files: inspection, creation, growth and conversion."""

from __future__ import annotations

import json
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from disk_cloner.domain.models import ImageInfo
from disk_cloner.logging import LoggerFactory

from .clone.command_runners import run_checked_with_streaming_progress
from .commands import run_command
from .devices import device_in_use, is_block_device
from .exceptions import CapacityError, CommandError, DeviceBusyError


log = LoggerFactory.for_system()

# Extra qemu-img convert options per destination format
CONVERT_OPTIONS: dict[str, list[str]] = {
    "qcow2": ["-c", "-o", "cluster_size=65536"],
    "vmdk": ["-o", "adapter_type=lsilogic,subformat=streamOptimized"],
    "vdi": ["-o", "static=off"],
    "raw": ["-S", "512k"],
}
SUPPORTED_FORMATS = ("raw", "qcow2", "vmdk", "vdi", "vpc", "vhdx")


def is_image_file(path: str) -> bool:
    return os.path.isfile(path) and not is_block_device(path)


def get_image_info(path: str) -> ImageInfo:
    """Read format and sizes from ``qemu-img info``."""
    result = run_command(
        ["qemu-img", "info", "--output=json", path], log_output=False, readonly=True
    )
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as error:
        raise CommandError(["qemu-img", "info", path], 0, f"invalid JSON: {error}") from error
    return ImageInfo(
        path=path,
        format=data.get("format") or "raw",
        virtual_size=int(data.get("virtual-size") or 0),
        actual_size=data.get("actual-size"),
    )


def create_image(path: str, size: int, fmt: str = "qcow2") -> ImageInfo:
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported image format: {fmt}")
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    run_command(["qemu-img", "create", "-f", fmt, path, str(size)])
    log.info(f"Created {fmt} image {path} ({size} bytes)")
    return ImageInfo(path=path, format=fmt, virtual_size=size)


def resize_image(path: str, size: int, fmt: str) -> None:
    run_command(["qemu-img", "resize", "-f", fmt, path, str(size)])


def convert_image(
    source: str,
    destination: str,
    fmt: str,
    source_format: Optional[str] = None,
    compress: bool = True,
    progress_callback: Optional[Callable[[list[str], Optional[float]], None]] = None,
) -> ImageInfo:
    """Copy an image or device into a new image file with ``qemu-img convert``.

    qcow2 destinations are checked and repaired afterwards.
    """
    command = ["qemu-img", "convert", "-p"]
    if source_format:
        command += ["-f", source_format]
    options = list(CONVERT_OPTIONS.get(fmt, []))
    if fmt == "qcow2" and not compress:
        options.remove("-c")
    command += [*options, "-O", fmt, source, destination]
    run_checked_with_streaming_progress(
        command, title="CONVERTING", progress_callback=progress_callback
    )
    if fmt == "qcow2":
        result = run_command(["qemu-img", "check", "-r", "all", destination], check=False)
        if result.returncode != 0:
            log.warning(f"qemu-img check reported problems on {destination}")
    return get_image_info(destination)


def backup_image(path: str) -> str:
    """Copy ``path`` to ``<path>.backup.<timestamp>`` and return the copy's path."""
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_path = f"{path}.backup.{stamp}"
    log.info(f"Creating backup {backup_path}")
    shutil.copy2(path, backup_path)
    return backup_path


def check_free_space(path: str, required: int) -> None:
    """Raise CapacityError unless the filesystem holding ``path`` has ``required`` bytes free."""
    directory = os.path.dirname(os.path.abspath(path)) or "."
    available = shutil.disk_usage(directory).free
    if available < required:
        raise CapacityError(f"Image growth in {directory}", required, available)


def ensure_not_in_use(path: str) -> None:
    if device_in_use(path):
        raise DeviceBusyError(path, "file is open by another process")
