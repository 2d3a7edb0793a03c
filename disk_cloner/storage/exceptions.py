"""Custom exceptions for clone, resize and session operations.

This module defines a hierarchy of exceptions for storage operations to provide
more specific error handling and better error messages.

Exception Hierarchy:
    StorageError (base)
        ├── CommandError
        │   └── ToolNotFoundError
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   └── DeviceBusyError
        ├── MountError
        │   └── UnmountFailedError
        ├── CapacityError
        ├── PartitionTableError
        ├── CloneError
        │   ├── SourceDestinationSameError
        │   ├── ConfirmationError
        │   └── PartitionCloneError
        ├── SessionError
        │   ├── BlockConnectionError
        │   └── SessionBusyError
        ├── CredentialError
        ├── ResizeError
        │   └── UnsupportedOperationError
        └── OperationCancelled

    UuidMismatchWarning (UserWarning)

Usage:
    from disk_cloner.storage.exceptions import CapacityError

    if efi_total > usable:
        raise CapacityError("EFI partitions", efi_total, usable)
"""

from __future__ import annotations

from typing import Sequence


class StorageError(Exception):
    """Base exception for all storage operations."""


class CommandError(StorageError):
    """An external tool exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int | None = None,
        output: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = output or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class ToolNotFoundError(CommandError):
    """Required external tool is not installed."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__([tool], None, f"{tool} not found in PATH")


class DeviceError(StorageError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceBusyError(DeviceError):
    """Device or image file is currently in use."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountError(StorageError):
    """Base exception for mount-related errors."""


class UnmountFailedError(MountError):
    """Failed to unmount device or partition."""

    def __init__(self, device_name: str, mountpoints: list[str]):
        self.device_name = device_name
        self.mountpoints = mountpoints
        mounts_str = ", ".join(mountpoints)
        super().__init__(
            f"Failed to unmount {device_name}. " f"Active mountpoints: {mounts_str}"
        )


class CapacityError(StorageError):
    """Required space exceeds destination capacity. Raised before any write."""

    def __init__(self, what: str, required: int, available: int):
        self.what = what
        self.required = required
        self.available = available
        super().__init__(
            f"{what} require {required} bytes but only {available} bytes "
            f"are usable on the destination"
        )


class PartitionTableError(StorageError):
    """Partition table creation or verification failed."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        if device:
            message = (
                f"{message} ({device}; destination may be partially wiped)"
            )
        super().__init__(message)


class CloneError(StorageError):
    """Base exception for clone operations."""


class SourceDestinationSameError(CloneError):
    """Source and destination devices are the same."""

    def __init__(self, source_name: str, destination_name: str):
        self.source_name = source_name
        self.destination_name = destination_name
        super().__init__(
            f"Source and destination cannot be the same device: "
            f"{source_name} == {destination_name}"
        )


class ConfirmationError(CloneError):
    """Destructive operation attempted without the expected confirmation token."""

    def __init__(self, expected: str, received: str | None):
        self.expected = expected
        self.received = received
        super().__init__(
            f"Confirmation token {expected!r} required, got {received!r}"
        )


class PartitionCloneError(CloneError):
    """A single partition failed to clone."""

    def __init__(self, message: str, source: str | None = None, destination: str | None = None):
        self.source = source
        self.destination = destination
        super().__init__(message)


class SessionError(StorageError):
    """Base exception for loop/NBD session errors."""


class BlockConnectionError(SessionError):
    """Exposing an image file as a block device failed after all retries."""

    def __init__(self, backing_file: str, attempts: int, reason: str = ""):
        self.backing_file = backing_file
        self.attempts = attempts
        self.reason = reason
        msg = f"Failed to connect {backing_file} after {attempts} attempt(s)"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SessionBusyError(SessionError):
    """A live session already exists for the backing file."""

    def __init__(self, backing_file: str, device_node: str):
        self.backing_file = backing_file
        self.device_node = device_node
        super().__init__(f"{backing_file} is already connected at {device_node}")


class CredentialError(StorageError):
    """LUKS container could not be opened."""

    def __init__(self, device: str, reason: str = ""):
        self.device = device
        self.reason = reason
        msg = f"Unable to open LUKS container on {device}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ResizeError(StorageError):
    """Base exception for resize operations."""


class UnsupportedOperationError(ResizeError):
    """Requested operation is outside what the engine performs."""


class OperationCancelled(StorageError):
    """Operation interrupted by a termination signal."""

    def __init__(self, signum: int | None = None):
        self.signum = signum
        msg = "Operation cancelled"
        if signum is not None:
            msg += f" by signal {signum}"
        super().__init__(msg)


class UuidMismatchWarning(UserWarning):
    """Destination UUID differs from source after a clone."""

    def __init__(self, device: str, expected: str | None, actual: str | None):
        self.device = device
        self.expected = expected
        self.actual = actual
        super().__init__(f"UUID mismatch on {device}: expected {expected}, got {actual}")
