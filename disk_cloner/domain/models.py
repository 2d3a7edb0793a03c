"""Domain model for partition-aware clone and resize operations.

Typed, validated records replace the raw lsblk dicts and positional
strings passed between inspection, planning, table building and cloning.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


MIB = 1024 * 1024
SECTOR_SIZE = 512

# GPT partition type GUID and MBR type ID of an EFI System Partition
EFI_PARTITION_TYPES = frozenset(
    {"c12a7328-f81f-11d2-ba4b-00a0c93ec93b", "0xef", "ef", "ef00"}
)


# ==============================================================================
# Partition Table Domain
# ==============================================================================


class TableType(Enum):
    """Partition table label."""

    GPT = "gpt"
    MBR = "msdos"

    @classmethod
    def from_label(cls, label: str | None) -> TableType | None:
        """Map blkid/parted/sfdisk label names to a TableType."""
        if not label:
            return None
        normalized = label.strip().lower()
        if normalized == "gpt":
            return cls.GPT
        if normalized in ("dos", "msdos", "mbr"):
            return cls.MBR
        return None


def normalize_fs_type(fs_type: str | None) -> str:
    """Lowercase a filesystem type, mapping FAT variants to ``vfat``."""
    if not fs_type:
        return "unknown"
    value = fs_type.strip().lower()
    if value in ("fat", "fat12", "fat16", "fat32", "msdos"):
        return "vfat"
    return value


@dataclass(frozen=True)
class PartitionRecord:
    """Immutable snapshot of one source partition, taken at inspection."""

    index: int  # 1-based partition number
    device_path: str  # e.g., /dev/sda1, /dev/nbd0p2
    size_bytes: int
    filesystem_type: str = "unknown"
    is_efi: bool = False
    filesystem_uuid: str | None = None
    partition_uuid: str | None = None
    disk_uuid: str | None = None
    partition_type: str | None = None  # GPT type GUID or MBR type ID

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.size_bytes <= 0:
            raise ValueError(
                f"Partition {self.device_path} must have a positive size, "
                f"got {self.size_bytes}"
            )
        if self.index < 1:
            raise ValueError(f"Partition index must be >= 1, got {self.index}")

    @property
    def size_sectors(self) -> int:
        return self.size_bytes // SECTOR_SIZE

    @property
    def is_luks(self) -> bool:
        return self.filesystem_type == "crypto_luks"

    @classmethod
    def from_lsblk_dict(
        cls,
        part: dict[str, Any],
        index: int,
        disk_uuid: str | None = None,
    ) -> PartitionRecord:
        """Convert an lsblk partition dict to a PartitionRecord.

        Args:
            part: Partition dict from ``lsblk -J -b`` with keys name/path,
                size, fstype, uuid, partuuid, parttype
            index: Partition number on the parent disk
            disk_uuid: PTUUID of the parent disk

        Raises:
            KeyError: If neither path nor name is present
            ValueError: If size cannot be converted to a positive int
        """
        path = part.get("path") or f"/dev/{part['name']}"
        fs_type = normalize_fs_type(part.get("fstype"))
        part_type = (part.get("parttype") or "").lower() or None
        is_efi = part_type in EFI_PARTITION_TYPES if part_type else False
        return cls(
            index=index,
            device_path=path,
            size_bytes=int(part.get("size") or 0),
            filesystem_type=fs_type,
            is_efi=is_efi,
            filesystem_uuid=part.get("uuid") or None,
            partition_uuid=part.get("partuuid") or None,
            disk_uuid=disk_uuid,
            partition_type=part_type,
        )


@dataclass(frozen=True)
class SizePlan:
    """Destination size, in bytes, for each source partition index."""

    allocations: dict[int, int]
    destination_capacity: int
    usable_bytes: int
    shrunk: bool = False

    @property
    def total_bytes(self) -> int:
        return sum(self.allocations.values())

    def size_for(self, index: int) -> int:
        return self.allocations[index]


@dataclass(frozen=True)
class PartitionGeometry:
    """Sector layout of one destination partition.

    ``index`` is the destination partition number (1..n in creation order);
    ``source_index`` is the PartitionRecord it was planned from.
    """

    index: int
    start_sector: int
    end_sector: int
    source_index: int
    is_efi: bool = False
    filesystem_type: str = "unknown"

    @property
    def size_sectors(self) -> int:
        return self.end_sector - self.start_sector + 1

    @property
    def size_bytes(self) -> int:
        return self.size_sectors * SECTOR_SIZE


# ==============================================================================
# Session Domain
# ==============================================================================


class SessionBackend(Enum):
    """Kernel mechanism exposing an image file as a block device."""

    LOOP = "loop"
    NBD = "nbd"


class VolumeKind(Enum):
    LUKS = "luks"
    LVM = "lvm"


class VolumeState(Enum):
    UNOPENED = "unopened"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class LayeredVolume:
    """A LUKS mapping or LVM logical volume stacked on a partition.

    Mutable: its state moves UNOPENED -> OPEN -> CLOSED while the owning
    BlockSession stays connected.
    """

    kind: VolumeKind
    name: str  # mapper name or "vg/lv"
    parent_device: str  # partition (LUKS) or physical volume (LVM)
    device_path: str | None = None  # /dev/mapper/<name> or LV path
    volume_group: str | None = None
    size_bytes: int | None = None
    state: VolumeState = VolumeState.UNOPENED

    @property
    def is_open(self) -> bool:
        return self.state == VolumeState.OPEN


@dataclass
class BlockSession:
    """An image file exposed as a block device via loop or NBD."""

    backing_file: str
    device_node: str  # e.g., /dev/nbd0, /dev/loop3
    format: str
    session_id: str
    backend: SessionBackend
    mapped_partition_nodes: list[str] = field(default_factory=list)
    volumes: list[LayeredVolume] = field(default_factory=list)
    connected: bool = True
    kpartx: bool = False  # partitions mapped under /dev/mapper by kpartx

    @property
    def device_name(self) -> str:
        return self.device_node.rsplit("/", 1)[-1]

    def partition_node(self, index: int) -> str:
        """Node of partition ``index``; kpartx mappings live under /dev/mapper."""
        if self.kpartx:
            return f"/dev/mapper/{self.device_name}p{index}"
        return f"{self.device_node}p{index}"


# ==============================================================================
# Clone Domain
# ==============================================================================


@dataclass(frozen=True)
class CloneOperation:
    """Copy one source partition onto one destination partition."""

    source: str
    destination: str
    filesystem_type: str
    source_size: int
    destination_size: int
    filesystem_uuid: str | None = None
    preserve_uuid: bool = True
    retries: int = 2

    @property
    def copy_size(self) -> int:
        return min(self.source_size, self.destination_size)

    @property
    def shrink_bytes(self) -> int:
        return max(0, self.source_size - self.destination_size)


@dataclass
class CloneResult:
    """Outcome of one CloneOperation."""

    operation: CloneOperation
    success: bool
    strategy: str
    method: str | None = None  # tool actually used, e.g. "e2image", "dd"
    fallback_used: bool = False
    uuid_preserved: bool | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class CloneSummary:
    """Per-partition results of a whole-disk clone."""

    source: str
    destination: str
    results: list[CloneResult] = field(default_factory=list)
    dry_run: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def success(self) -> bool:
        return not self.results or self.succeeded > 0


# ==============================================================================
# Inspection Domain
# ==============================================================================


@dataclass(frozen=True)
class ImageInfo:
    """Virtual disk image as reported by ``qemu-img info``."""

    path: str
    format: str
    virtual_size: int
    actual_size: int | None = None


@dataclass(frozen=True)
class PhysicalDevice:
    """A whole-disk block device."""

    path: str
    size: int
    model: str | None = None

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class ResizeResult:
    """Outcome of growing an image and its last partition."""

    file: str
    old_size: int
    new_size: int
    partition: str | None = None
    filesystem_type: str | None = None
    backup_path: str | None = None


_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def parse_size(value: str | int) -> int:
    """Parse ``"20G"``, ``"512M"``, ``"1.5T"`` or a byte count into bytes."""
    if isinstance(value, int):
        return value
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.upper()])
