"""Partition table construction and last-partition growth.

Geometry (512-byte sectors):
    - the first partition starts at sector 2048
    - every partition size is a multiple of 2048 sectors; sizes round down,
      except LUKS containers, which round up and never drop below the source
      sector count
    - end = start + size - 1
    - the next partition starts on the following 1MiB boundary

Identity (disk GUID, then per-partition GUIDs) is written only once the
geometry is final, since sgdisk addresses partitions by number.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

from disk_cloner.domain.models import (
    SECTOR_SIZE,
    PartitionGeometry,
    PartitionRecord,
    SizePlan,
    TableType,
)
from disk_cloner.logging import EventLogger, LoggerFactory

from .commands import is_dry_run, retry, run_command, settle_devices
from .devices import partition_node, refresh_partition_mappings, wait_for_partition_node
from .exceptions import CapacityError, CommandError, PartitionTableError


log = LoggerFactory.for_table()

ALIGNMENT_SECTORS = 2048
FIRST_USABLE_SECTOR = 2048
GPT_BACKUP_SECTORS = 34
MBR_MAX_PRIMARY = 4
TABLE_COMMAND_ATTEMPTS = 3
TABLE_COMMAND_DELAY = 2

# parted fs-type hints for mkpart
PARTED_FS_TYPES = {
    "vfat": "fat32",
    "ext2": "ext2",
    "ext3": "ext3",
    "ext4": "ext4",
    "ntfs": "ntfs",
    "xfs": "xfs",
    "btrfs": "btrfs",
    "swap": "linux-swap",
}


@dataclass
class BuiltTable:
    """Result of writing a partition table."""

    device: str
    table_type: TableType
    geometry: list[PartitionGeometry]
    nodes: dict[int, str] = field(default_factory=dict)
    missing: list[int] = field(default_factory=list)

    def node_for_source(self, source_index: int) -> Optional[str]:
        for geometry in self.geometry:
            if geometry.source_index == source_index:
                return self.nodes.get(geometry.index)
        return None


@dataclass(frozen=True)
class PartitionEntry:
    """One GPT entry as reported by ``sgdisk -i``."""

    number: int
    first_sector: int
    last_sector: int
    type_code: Optional[str] = None
    unique_guid: Optional[str] = None
    name: Optional[str] = None


def align_down(sectors: int) -> int:
    return (sectors // ALIGNMENT_SECTORS) * ALIGNMENT_SECTORS


def align_up(sectors: int) -> int:
    return -(-sectors // ALIGNMENT_SECTORS) * ALIGNMENT_SECTORS


def last_usable_sector(capacity: int, table_type: TableType) -> int:
    total_sectors = capacity // SECTOR_SIZE
    reserved = GPT_BACKUP_SECTORS if table_type == TableType.GPT else 0
    return total_sectors - 1 - reserved


def compute_layout(
    records: Sequence[PartitionRecord],
    plan: SizePlan,
    table_type: TableType = TableType.GPT,
) -> list[PartitionGeometry]:
    """Lay out destination partitions from a SizePlan.

    Raises:
        PartitionTableError: If an MBR table would need more than four partitions
            or a partition rounds down to nothing
        CapacityError: If the layout ends past the last usable sector
    """
    if table_type == TableType.MBR and len(records) > MBR_MAX_PRIMARY:
        raise PartitionTableError(
            f"MBR supports {MBR_MAX_PRIMARY} primary partitions, source has {len(records)}"
        )
    layout: list[PartitionGeometry] = []
    start = FIRST_USABLE_SECTOR
    for number, record in enumerate(records, start=1):
        size_sectors = plan.size_for(record.index) // SECTOR_SIZE
        if record.is_luks:
            size_sectors = align_up(max(size_sectors, record.size_sectors))
        else:
            size_sectors = align_down(size_sectors)
        if size_sectors <= 0:
            raise PartitionTableError(
                f"Partition {record.device_path} is smaller than one alignment unit"
            )
        end = start + size_sectors - 1
        layout.append(
            PartitionGeometry(
                index=number,
                start_sector=start,
                end_sector=end,
                source_index=record.index,
                is_efi=record.is_efi,
                filesystem_type=record.filesystem_type,
            )
        )
        start = align_up(end + 1)

    limit = last_usable_sector(plan.destination_capacity, table_type)
    if layout and layout[-1].end_sector > limit:
        raise CapacityError(
            "Partition layout",
            (layout[-1].end_sector + 1) * SECTOR_SIZE,
            (limit + 1) * SECTOR_SIZE,
        )
    return layout


def format_command_failure(summary: str, command: list[str], error: CommandError) -> str:
    """Format a command failure message."""
    details = " ".join(error.output.split())
    if details:
        return f"{summary} ({' '.join(command)}): {details}"
    return f"{summary} ({' '.join(command)})"


def _run_table_command(device: str, command: list[str], summary: str) -> None:
    """Run a table-writing command with the bounded retry budget."""
    try:
        retry(
            lambda: run_command(command),
            attempts=TABLE_COMMAND_ATTEMPTS,
            delay=TABLE_COMMAND_DELAY,
            description=summary,
            on_failure=lambda attempt, error: settle_devices(device),
        )
    except CommandError as error:
        raise PartitionTableError(format_command_failure(summary, command, error), device) from error


def _mkpart_command(device: str, geometry: PartitionGeometry, table_type: TableType) -> list[str]:
    command = ["parted", "--script", device, "unit", "s", "mkpart"]
    if table_type == TableType.GPT:
        command.append("EFI" if geometry.is_efi else f"partition{geometry.index}")
    else:
        command.append("primary")
    fs_hint = "fat32" if geometry.is_efi else PARTED_FS_TYPES.get(geometry.filesystem_type)
    if fs_hint:
        command.append(fs_hint)
    command += [f"{geometry.start_sector}s", f"{geometry.end_sector}s"]
    return command


def build_partition_table(
    device: str,
    records: Sequence[PartitionRecord],
    plan: SizePlan,
    table_type: TableType = TableType.GPT,
    disk_uuid: Optional[str] = None,
) -> BuiltTable:
    """Wipe ``device`` and write a fresh table laid out from ``plan``.

    Partition GUIDs are taken from each record's ``partition_uuid``.

    Raises:
        CapacityError: Before any write, if the layout does not fit
        PartitionTableError: If wiping, labelling or creating a partition fails
    """
    layout = compute_layout(records, plan, table_type)
    records_by_index = {record.index: record for record in records}

    log.info(f"Writing {table_type.value} table with {len(layout)} partition(s) to {device}")
    _run_table_command(device, ["wipefs", "-af", device], "Wiping signatures failed")
    _run_table_command(
        device,
        ["parted", "--script", device, "mklabel", table_type.value],
        "Creating partition label failed",
    )
    for geometry in layout:
        log.debug(
            f"Partition {geometry.index}: sectors {geometry.start_sector}-"
            f"{geometry.end_sector} ({geometry.size_sectors} sectors)"
        )
        _run_table_command(
            device,
            _mkpart_command(device, geometry, table_type),
            f"Creating partition {geometry.index} failed",
        )
        if geometry.is_efi:
            _run_table_command(
                device,
                ["parted", "--script", device, "set", str(geometry.index), "esp", "on"],
                f"Setting ESP flag on partition {geometry.index} failed",
            )

    settle_devices(device)
    refresh_partition_mappings(device)
    built = BuiltTable(device=device, table_type=table_type, geometry=layout)
    for geometry in layout:
        if is_dry_run() or wait_for_partition_node(device, geometry.index):
            built.nodes[geometry.index] = partition_node(device, geometry.index)
        else:
            built.missing.append(geometry.index)

    _apply_identity(built, records_by_index, disk_uuid)
    settle_devices(device)
    return built


def _apply_identity(
    built: BuiltTable,
    records_by_index: dict[int, PartitionRecord],
    disk_uuid: Optional[str],
) -> None:
    device = built.device
    if built.table_type == TableType.MBR:
        if disk_uuid:
            disk_id = disk_uuid if disk_uuid.startswith("0x") else f"0x{disk_uuid}"
            _set_identity(["sfdisk", "--disk-id", device, disk_id], f"disk id {disk_id}")
        return

    if disk_uuid:
        _set_identity(["sgdisk", f"--disk-guid={disk_uuid}", device], f"disk GUID {disk_uuid}")
    for geometry in built.geometry:
        if geometry.index in built.missing:
            continue
        record = records_by_index.get(geometry.source_index)
        if record is None or not record.partition_uuid:
            continue
        _set_identity(
            ["sgdisk", f"--partition-guid={geometry.index}:{record.partition_uuid}", device],
            f"partition {geometry.index} GUID {record.partition_uuid}",
        )


def _set_identity(command: list[str], what: str) -> None:
    try:
        run_command(command)
    except CommandError as error:
        EventLogger.log_fallback(log, f"Setting {what}", "sgdisk/sfdisk", "new random identity")
        log.warning(f"Could not set {what}: {error}")
        return
    log.bind(tags=["uuid"]).info(f"Applied {what}")


def detect_table_type(device: str) -> Optional[TableType]:
    """Detect the partition table label with blkid, then parted, then raw signatures."""
    result = run_command(
        ["blkid", "-o", "value", "-s", "PTTYPE", device], check=False, readonly=True
    )
    table_type = TableType.from_label((result.stdout or "").strip())
    if table_type:
        return table_type

    result = run_command(["parted", "-s", device, "print"], check=False, readonly=True)
    match = re.search(r"Partition Table:\s*(\S+)", result.stdout or "")
    if match:
        table_type = TableType.from_label(match.group(1))
        if table_type:
            return table_type

    try:
        with open(device, "rb") as handle:
            header = handle.read(SECTOR_SIZE + 8)
    except OSError as error:
        log.warning(f"Unable to read table signature from {device}: {error}")
        return None
    if header[SECTOR_SIZE : SECTOR_SIZE + 8] == b"EFI PART":
        return TableType.GPT
    if header[510:512] == b"\x55\xaa":
        return TableType.MBR
    return None


def read_partition_entry(device: str, number: int) -> PartitionEntry:
    """Parse ``sgdisk -i N`` output for one GPT entry."""
    result = run_command(["sgdisk", "-i", str(number), device], readonly=True)
    output = result.stdout or ""

    def field_value(label: str) -> Optional[str]:
        match = re.search(rf"^{label}:\s*(.+)$", output, flags=re.MULTILINE)
        return match.group(1).strip() if match else None

    first = field_value("First sector")
    last = field_value("Last sector")
    if first is None or last is None:
        raise PartitionTableError(f"Partition {number} not found in GPT", device)
    type_code = field_value("Partition GUID code")
    unique_guid = field_value("Partition unique GUID")
    name = field_value("Partition name")
    return PartitionEntry(
        number=number,
        first_sector=int(first.split()[0]),
        last_sector=int(last.split()[0]),
        type_code=type_code.split()[0] if type_code else None,
        unique_guid=unique_guid,
        name=name.strip("'") if name else None,
    )


def _grow_gpt_entry(device: str, number: int) -> None:
    run_command(["sgdisk", "-e", device])
    entry = read_partition_entry(device, number)
    command = [
        "sgdisk",
        "--set-alignment=1",
        f"--delete={number}",
        f"--new={number}:{entry.first_sector}:0",
    ]
    if entry.type_code:
        command.append(f"--typecode={number}:{entry.type_code}")
    if entry.unique_guid:
        command.append(f"--partition-guid={number}:{entry.unique_guid}")
    if entry.name:
        command.append(f"--change-name={number}:{entry.name}")
    command.append(device)
    run_command(command)
    grown = read_partition_entry(device, number)
    if grown.first_sector != entry.first_sector:
        raise PartitionTableError(
            f"Partition {number} start moved from {entry.first_sector} to {grown.first_sector}",
            device,
        )
    log.info(
        f"Partition {number} grown from sector {entry.last_sector} to {grown.last_sector}"
    )


def grow_last_partition(device: str, number: int, table_type: Optional[TableType]) -> str:
    """Extend partition ``number`` to the end of the device, keeping its start sector.

    GPT tables regenerate the backup header, then delete and recreate the
    entry with the same start, type, GUID and name. Anything else, or a GPT
    failure, falls back to ``parted resizepart N 100%``.

    Returns:
        The partition device node

    Raises:
        PartitionTableError: If both methods fail or the node does not reappear
    """
    grown = False
    if table_type == TableType.GPT:
        try:
            _grow_gpt_entry(device, number)
            grown = True
        except (CommandError, PartitionTableError) as error:
            EventLogger.log_fallback(
                log, f"Growing partition {number}", "sgdisk", "parted resizepart", error=str(error)
            )
    if not grown:
        command = ["parted", "--script", device, "resizepart", str(number), "100%"]
        try:
            run_command(command)
        except CommandError as error:
            raise PartitionTableError(
                format_command_failure("Growing partition failed", command, error), device
            ) from error

    settle_devices(device)
    refresh_partition_mappings(device)
    if not wait_for_partition_node(device, number):
        raise PartitionTableError(f"Partition node for {number} missing after resize", device)
    return partition_node(device, number)


def repair_gpt_after_raw_copy(device: str) -> None:
    """Move the backup GPT header to the end of a larger destination and verify."""
    if detect_table_type(device) != TableType.GPT:
        return
    try:
        run_command(["sgdisk", "-e", device])
    except CommandError as error:
        raise PartitionTableError(f"Relocating backup GPT header failed: {error}", device) from error
    result = run_command(["sgdisk", "-v", device], check=False, readonly=True)
    if result.returncode != 0:
        log.warning(f"sgdisk -v reported problems on {device}: {result.stdout.strip()}")
    settle_devices(device)
