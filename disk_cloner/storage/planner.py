"""Proportional size planning for a smaller destination.

EFI System Partitions keep their source size. The remaining partitions
absorb the shortfall in proportion to their size, each aligned down to
1MiB with a 1MiB floor.
"""

from __future__ import annotations

from typing import Sequence

from disk_cloner.domain.models import MIB, PartitionRecord, SizePlan

from .exceptions import CapacityError


# Reserved for the primary and backup GPT headers plus alignment padding
TABLE_OVERHEAD_BYTES = 4 * MIB
MIN_PARTITION_BYTES = MIB


def usable_capacity(destination_capacity: int) -> int:
    return destination_capacity - TABLE_OVERHEAD_BYTES


def plan_sizes(records: Sequence[PartitionRecord], destination_capacity: int) -> SizePlan:
    """Compute destination partition sizes.

    Args:
        records: Source partitions in index order
        destination_capacity: Raw size of the destination device in bytes

    Returns:
        SizePlan mapping partition index to destination bytes

    Raises:
        ValueError: If the destination capacity is not positive
        CapacityError: If the EFI partitions alone do not fit, or the
            1MiB floor for the remaining partitions overflows the device
    """
    if destination_capacity <= 0:
        raise ValueError(f"Destination capacity must be positive, got {destination_capacity}")

    usable = usable_capacity(destination_capacity)
    total = sum(record.size_bytes for record in records)

    if total <= usable:
        return SizePlan(
            allocations={record.index: record.size_bytes for record in records},
            destination_capacity=destination_capacity,
            usable_bytes=usable,
            shrunk=False,
        )

    efi_total = sum(record.size_bytes for record in records if record.is_efi)
    other_total = total - efi_total
    if efi_total > usable:
        raise CapacityError("EFI partitions", efi_total, max(usable, 0))

    remaining = usable - efi_total
    allocations: dict[int, int] = {}
    for record in records:
        if record.is_efi or other_total == 0:
            allocations[record.index] = record.size_bytes
            continue
        scaled = record.size_bytes * remaining // other_total
        aligned = (scaled // MIB) * MIB
        allocations[record.index] = max(aligned, MIN_PARTITION_BYTES)

    planned_total = sum(allocations.values())
    if planned_total > usable:
        raise CapacityError("Partitions at minimum size", planned_total, max(usable, 0))

    return SizePlan(
        allocations=allocations,
        destination_capacity=destination_capacity,
        usable_bytes=usable,
        shrunk=True,
    )
