"""Domain models for clone and resize operations."""

from __future__ import annotations

from .models import (
    MIB,
    SECTOR_SIZE,
    BlockSession,
    CloneOperation,
    CloneResult,
    CloneSummary,
    ImageInfo,
    LayeredVolume,
    PartitionGeometry,
    PartitionRecord,
    PhysicalDevice,
    ResizeResult,
    SessionBackend,
    SizePlan,
    TableType,
    VolumeKind,
    VolumeState,
    normalize_fs_type,
    parse_size,
)


__all__ = [
    "MIB",
    "SECTOR_SIZE",
    "BlockSession",
    "CloneOperation",
    "CloneResult",
    "CloneSummary",
    "ImageInfo",
    "LayeredVolume",
    "PartitionGeometry",
    "PartitionRecord",
    "PhysicalDevice",
    "ResizeResult",
    "SessionBackend",
    "SizePlan",
    "TableType",
    "VolumeKind",
    "VolumeState",
    "normalize_fs_type",
    "parse_size",
]
