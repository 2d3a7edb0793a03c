"""Per-filesystem clone, check, grow and UUID tools.

Each filesystem family is a ``FilesystemTool`` subclass registered for the
filesystem type names blkid reports. ``get_filesystem_tool()`` picks the
tool once; callers never switch on the filesystem type themselves.

Strategies:
    ext2/3/4     e2image -ra (UUID preserved), falling back to dd
    ntfs         ntfsclone when installed, else dd ("UUID not guaranteed")
    vfat         dd, then the volume ID is rewritten with mlabel
    xfs          xfs_copy when installed (UUID reapplied), else dd
    crypto_LUKS  byte-exact dd only; refuses smaller destinations
    swap         never copied, recreated with mkswap
    btrfs        dd; grown on a temporary mount
    anything     dd with a warning
"""

from __future__ import annotations

from typing import Optional

from disk_cloner.domain.models import (
    MIB,
    SECTOR_SIZE,
    CloneOperation,
    CloneResult,
    normalize_fs_type,
)
from disk_cloner.logging import EventLogger, LoggerFactory
from disk_cloner.storage.commands import is_dry_run, run_command, tool_available
from disk_cloner.storage.devices import get_filesystem_uuid
from disk_cloner.storage.exceptions import (
    CommandError,
    PartitionCloneError,
    ToolNotFoundError,
    ResizeError,
    UnsupportedOperationError,
)
from disk_cloner.storage.mount import temporary_mount

from .block_copy import block_copy
from .command_runners import ProgressCallback, run_checked_with_streaming_progress


log = LoggerFactory.for_clone(job_id="-")

_REGISTRY: dict[str, "FilesystemTool"] = {}


def register(tool_cls):
    tool = tool_cls()
    for fs_type in tool_cls.fs_types:
        _REGISTRY[fs_type] = tool
    return tool_cls


class FilesystemTool:
    """Base strategy: raw block copy, no UUID control, no grow."""

    name = "generic"
    fs_types: tuple[str, ...] = ()
    tools: tuple[str, ...] = ("dd",)
    # False for filesystems recreated instead of copied
    copies_data = True

    def available_tools(self) -> dict[str, bool]:
        """Report which of this strategy's external tools are installed."""
        return {tool: tool_available(tool) for tool in self.tools}

    def clone(
        self,
        operation: CloneOperation,
        result: CloneResult,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        message = (
            f"Unknown filesystem {operation.filesystem_type!r} on {operation.source}, "
            "using block copy"
        )
        log.warning(message)
        result.warnings.append(message)
        self._block_copy(operation, result, progress_callback)

    def check(self, device: str) -> None:
        log.info(f"No filesystem check available for {self.name} on {device}")

    def grow(self, device: str) -> None:
        raise UnsupportedOperationError(
            f"Growing {self.name} filesystems is not supported ({device})"
        )

    def verify(self, device: str) -> Optional[str]:
        """Read-only integrity check of a freshly cloned filesystem.

        Returns:
            A description of the problem, or None when nothing was found
        """
        log.debug(f"No read-only check for {self.name} on {device}")
        return None

    def set_uuid(self, device: str, uuid: str) -> bool:
        """Write ``uuid`` to the filesystem on ``device``.

        Returns:
            False when this filesystem type has no UUID tool
        """
        return False

    def _block_copy(
        self,
        operation: CloneOperation,
        result: CloneResult,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        block_size = block_copy(
            operation.source,
            operation.destination,
            operation.copy_size,
            title=f"dd {operation.source}",
            progress_callback=progress_callback,
        )
        result.method = f"dd bs={block_size}"

    def _readonly_check(self, command: list[str]) -> Optional[str]:
        device = command[-1]
        try:
            result = run_command(command, check=False, readonly=True)
        except ToolNotFoundError:
            log.info(f"{command[0]} not installed, {device} not verified")
            return None
        if result.returncode != 0:
            return (
                f"{' '.join(command[:-1])} reported problems on {device} "
                f"(exit code {result.returncode})"
            )
        return None


GENERIC = FilesystemTool()


@register
class ExtTool(FilesystemTool):
    name = "ext"
    fs_types = ("ext2", "ext3", "ext4")
    tools = ("e2image", "e2fsck", "resize2fs", "tune2fs", "dd")

    def clone(self, operation, result, progress_callback=None):
        check = run_command(
            ["e2fsck", "-fn", operation.source], check=False, readonly=True
        )
        if check.returncode > 1:
            message = f"e2fsck reported errors on source {operation.source}"
            log.warning(message)
            result.warnings.append(message)
        try:
            run_checked_with_streaming_progress(
                ["e2image", "-ra", "-p", operation.source, operation.destination],
                total_bytes=operation.copy_size,
                title=f"e2image {operation.source}",
                progress_callback=progress_callback,
            )
            result.method = "e2image"
        except CommandError as error:
            EventLogger.log_fallback(
                log, f"Clone {operation.source}", "e2image", "block copy", error=str(error)
            )
            result.fallback_used = True
            self._block_copy(operation, result, progress_callback)
        if operation.destination_size > operation.source_size:
            self.check(operation.destination)
            run_command(["resize2fs", operation.destination])

    def check(self, device):
        result = run_command(["e2fsck", "-f", "-p", device], check=False)
        if result.returncode <= 1:
            return
        log.warning(f"e2fsck -p on {device} returned {result.returncode}, retrying with -y")
        result = run_command(["e2fsck", "-f", "-y", device], check=False)
        if result.returncode > 2:
            raise ResizeError(
                f"e2fsck could not repair {device} (exit code {result.returncode})"
            )

    def verify(self, device):
        return self._readonly_check(["e2fsck", "-f", "-n", device])

    def grow(self, device):
        run_command(["resize2fs", "-p", device])
        verify = run_command(["e2fsck", "-n", device], check=False, readonly=True)
        if verify.returncode != 0:
            log.warning(f"Read-only e2fsck after resize reported issues on {device}")

    def set_uuid(self, device, uuid):
        run_command(["tune2fs", "-U", uuid, device], input_text="y\n")
        return True


@register
class NtfsTool(FilesystemTool):
    name = "ntfs"
    fs_types = ("ntfs",)
    tools = ("ntfsclone", "ntfsresize", "ntfsfix", "dd")

    def clone(self, operation, result, progress_callback=None):
        if not tool_available("ntfsclone"):
            message = f"ntfsclone not installed: {operation.destination} UUID not guaranteed"
            log.warning(message)
            result.warnings.append(message)
            result.fallback_used = True
            self._block_copy(operation, result, progress_callback)
            return
        run_checked_with_streaming_progress(
            ["ntfsclone", "-f", "--overwrite", operation.destination, operation.source],
            total_bytes=operation.copy_size,
            title=f"ntfsclone {operation.source}",
            progress_callback=progress_callback,
        )
        result.method = "ntfsclone"
        if operation.destination_size > operation.source_size:
            run_command(["ntfsresize", "-f", operation.destination], input_text="y\n")

    def check(self, device):
        run_command(["ntfsfix", device])

    def verify(self, device):
        return self._readonly_check(["ntfsfix", "--no-action", device])

    def grow(self, device):
        run_command(["ntfsfix", "--clear-dirty", device])
        run_command(["ntfsresize", "--force", "--no-action", device], input_text="y\n")
        run_command(["ntfsresize", "--force", device], input_text="y\n")


@register
class FatTool(FilesystemTool):
    name = "fat"
    fs_types = ("vfat",)
    tools = ("dd", "mlabel", "fsck.fat")

    def clone(self, operation, result, progress_callback=None):
        self._block_copy(operation, result, progress_callback)
        if operation.preserve_uuid and operation.filesystem_uuid:
            try:
                self.set_uuid(operation.destination, operation.filesystem_uuid)
            except CommandError as error:
                message = f"Could not set FAT volume ID on {operation.destination}: {error}"
                log.warning(message)
                result.warnings.append(message)

    def check(self, device):
        result = run_command(["fsck.fat", "-a", device], check=False)
        if result.returncode > 1:
            raise ResizeError(f"fsck.fat could not repair {device} (exit code {result.returncode})")

    def grow(self, device):
        log.warning(f"Growing FAT filesystems is not supported, skipped for {device}")

    def set_uuid(self, device, uuid):
        volume_id = uuid.replace("-", "").upper()[:8]
        run_command(["mlabel", "-i", device, "-N", volume_id, "::"])
        return True


@register
class XfsTool(FilesystemTool):
    name = "xfs"
    fs_types = ("xfs",)
    tools = ("xfs_copy", "xfs_admin", "xfs_repair", "xfs_growfs", "dd")

    def clone(self, operation, result, progress_callback=None):
        if tool_available("xfs_copy"):
            run_checked_with_streaming_progress(
                ["xfs_copy", operation.source, operation.destination],
                total_bytes=operation.copy_size,
                title=f"xfs_copy {operation.source}",
                progress_callback=progress_callback,
            )
            result.method = "xfs_copy"
            # xfs_copy writes a fresh UUID
            if operation.preserve_uuid and operation.filesystem_uuid:
                self.set_uuid(operation.destination, operation.filesystem_uuid)
            return
        EventLogger.log_fallback(
            log, f"Clone {operation.source}", "xfs_copy (not installed)", "block copy"
        )
        result.fallback_used = True
        self._block_copy(operation, result, progress_callback)
        if not operation.preserve_uuid:
            run_command(["xfs_admin", "-U", "generate", operation.destination])

    def check(self, device):
        run_command(["xfs_repair", device])

    def verify(self, device):
        return self._readonly_check(["xfs_repair", "-n", device])

    def grow(self, device):
        with temporary_mount(device) as mountpoint:
            run_command(["xfs_growfs", mountpoint])

    def set_uuid(self, device, uuid):
        run_command(["xfs_admin", "-U", uuid, device])
        return True


@register
class LuksTool(FilesystemTool):
    name = "luks"
    fs_types = ("crypto_luks",)
    tools = ("dd", "cryptsetup")

    def clone(self, operation, result, progress_callback=None):
        source_sectors = operation.source_size // SECTOR_SIZE
        destination_sectors = operation.destination_size // SECTOR_SIZE
        if destination_sectors < source_sectors:
            raise PartitionCloneError(
                f"LUKS container {operation.source} needs {source_sectors} sectors, "
                f"destination {operation.destination} has {destination_sectors}",
                source=operation.source,
                destination=operation.destination,
            )
        block_copy(
            operation.source,
            operation.destination,
            operation.source_size,
            title=f"dd {operation.source}",
            progress_callback=progress_callback,
        )
        result.method = "dd (byte-exact)"
        if is_dry_run():
            log.info(f"[DRY RUN] Would check the LUKS header on {operation.destination}")
            return
        dump = run_command(
            ["cryptsetup", "luksDump", operation.destination], check=False, readonly=True
        )
        if dump.returncode != 0:
            raise PartitionCloneError(
                f"LUKS header on {operation.destination} is not valid after copy",
                source=operation.source,
                destination=operation.destination,
            )

    def grow(self, device):
        raise UnsupportedOperationError(
            f"{device} is a LUKS container; grow the opened mapping instead"
        )

    def set_uuid(self, device, uuid):
        run_command(["cryptsetup", "-q", "luksUUID", "--uuid", uuid, device])
        return True


@register
class SwapTool(FilesystemTool):
    name = "swap"
    fs_types = ("swap",)
    tools = ("mkswap",)
    copies_data = False

    def clone(self, operation, result, progress_callback=None):
        command = ["mkswap"]
        if operation.preserve_uuid and operation.filesystem_uuid:
            command += ["-U", operation.filesystem_uuid]
        run_command([*command, operation.destination])
        result.method = "mkswap"

    def grow(self, device):
        uuid = get_filesystem_uuid(device)
        command = ["mkswap"]
        if uuid:
            command += ["-U", uuid]
        run_command([*command, device])

    def set_uuid(self, device, uuid):
        run_command(["swaplabel", "-U", uuid, device])
        return True


@register
class BtrfsTool(FilesystemTool):
    name = "btrfs"
    fs_types = ("btrfs",)
    tools = ("dd", "btrfs")

    def clone(self, operation, result, progress_callback=None):
        self._block_copy(operation, result, progress_callback)

    def check(self, device):
        run_command(["btrfs", "check", "--readonly", device])

    def verify(self, device):
        return self._readonly_check(["btrfs", "check", "--readonly", device])

    def grow(self, device):
        with temporary_mount(device) as mountpoint:
            run_command(["btrfs", "filesystem", "resize", "max", mountpoint])


def get_filesystem_tool(fs_type: Optional[str]) -> FilesystemTool:
    """Return the strategy registered for ``fs_type`` or the generic one."""
    return _REGISTRY.get(normalize_fs_type(fs_type), GENERIC)


def describe_shrink(operation: CloneOperation) -> Optional[str]:
    """Classify how much a destination is smaller than its source."""
    shrink = operation.shrink_bytes
    if shrink == 0:
        return None
    if shrink > MIB:
        return "significant"
    return "alignment-induced"
