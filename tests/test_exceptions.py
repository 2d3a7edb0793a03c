"""Tests for the storage exception hierarchy."""

import warnings

import pytest

from disk_cloner.storage.exceptions import (
    BlockConnectionError,
    CapacityError,
    CloneError,
    CommandError,
    ConfirmationError,
    CredentialError,
    DeviceBusyError,
    DeviceError,
    DeviceNotFoundError,
    OperationCancelled,
    PartitionCloneError,
    PartitionTableError,
    ResizeError,
    SessionBusyError,
    SessionError,
    SourceDestinationSameError,
    StorageError,
    ToolNotFoundError,
    UnmountFailedError,
    UnsupportedOperationError,
    UuidMismatchWarning,
)


@pytest.mark.parametrize(
    "error,parent",
    [
        (ToolNotFoundError("sgdisk"), CommandError),
        (DeviceNotFoundError("/dev/sdz"), DeviceError),
        (DeviceBusyError("/dev/sdb"), DeviceError),
        (SourceDestinationSameError("/dev/sda", "/dev/sda"), CloneError),
        (ConfirmationError("CLONE", "yes"), CloneError),
        (PartitionCloneError("boom"), CloneError),
        (BlockConnectionError("/images/a.qcow2", 3), SessionError),
        (SessionBusyError("/images/a.qcow2", "/dev/nbd0"), SessionError),
        (UnsupportedOperationError("no"), ResizeError),
        (CredentialError("/dev/nbd0p2"), StorageError),
        (OperationCancelled(15), StorageError),
    ],
)
def test_hierarchy(error, parent):
    assert isinstance(error, parent)
    assert isinstance(error, StorageError)


def test_command_error_message():
    error = CommandError(["parted", "--script", "/dev/sdb"], 1, "busy")

    assert str(error) == "Command failed (parted --script /dev/sdb): busy"
    assert error.command == ["parted", "--script", "/dev/sdb"]


def test_capacity_error_fields():
    error = CapacityError("EFI partitions", 200, 100)

    assert (error.what, error.required, error.available) == ("EFI partitions", 200, 100)
    assert "200 bytes" in str(error)


def test_partition_table_error_mentions_partial_wipe():
    assert "partially wiped" in str(PartitionTableError("mklabel failed", "/dev/sdb"))
    assert "partially wiped" not in str(PartitionTableError("layout invalid"))


def test_unmount_failed_lists_mountpoints():
    error = UnmountFailedError("/dev/sdb", ["/media/a", "/media/b"])

    assert "/media/a, /media/b" in str(error)


def test_connection_error_reason():
    error = BlockConnectionError("/images/a.qcow2", 3, "no free slot")

    assert str(error) == "Failed to connect /images/a.qcow2 after 3 attempt(s): no free slot"


def test_operation_cancelled_signal():
    assert str(OperationCancelled(15)) == "Operation cancelled by signal 15"
    assert str(OperationCancelled()) == "Operation cancelled"


def test_uuid_mismatch_is_a_warning():
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        warnings.warn(UuidMismatchWarning("/dev/sdb2", "a", "b"))

    assert caught[0].category is UuidMismatchWarning
    assert "expected a, got b" in str(caught[0].message)
