"""Tests for storage/partition_table.py - layout, table writing and growth."""

import pytest

from disk_cloner.domain.models import (
    MIB,
    SECTOR_SIZE,
    BlockSession,
    SessionBackend,
    SizePlan,
    TableType,
)
from disk_cloner.storage import device_lock, devices, partition_table
from disk_cloner.storage.exceptions import CapacityError, PartitionTableError
from disk_cloner.storage.partition_table import (
    ALIGNMENT_SECTORS,
    BuiltTable,
    align_down,
    align_up,
    build_partition_table,
    compute_layout,
    detect_table_type,
    grow_last_partition,
    read_partition_entry,
)
from disk_cloner.storage.planner import plan_sizes


GIB = 1024 * MIB


def identity_plan(records, capacity):
    return SizePlan(
        allocations={record.index: record.size_bytes for record in records},
        destination_capacity=capacity,
        usable_bytes=capacity - 4 * MIB,
    )


SGDISK_INFO = """Partition GUID code: 0FC63DAF-8483-4772-8E79-3D69D8477DE4 (Linux filesystem)
Partition unique GUID: 22222222-2222-4222-8222-222222222222
First sector: 1050624 (at 513.0 MiB)
Last sector: 20969471 (at 10.0 GiB)
Partition size: 19918848 sectors (9.5 GiB)
Attribute flags: 0000000000000000
Partition name: 'rootfs'
"""

SGDISK_INFO_GROWN = SGDISK_INFO.replace("Last sector: 20969471", "Last sector: 41940991")


class TestAlignment:
    def test_align_down(self):
        assert align_down(4095) == 2048
        assert align_down(4096) == 4096

    def test_align_up(self):
        assert align_up(1) == 2048
        assert align_up(2048) == 2048
        assert align_up(2049) == 4096


class TestComputeLayout:
    """Tests for compute_layout()."""

    def test_boundaries_are_aligned(self, make_record):
        records = [
            make_record(1, 100 * MIB, filesystem_type="vfat", is_efi=True),
            make_record(2, 8000 * MIB),
            make_record(3, 2000 * MIB + 12345, filesystem_type="swap"),
        ]
        plan = plan_sizes(records, 6004 * MIB)

        layout = compute_layout(records, plan)

        assert layout[0].start_sector == 2048
        for geometry in layout:
            assert geometry.start_sector % ALIGNMENT_SECTORS == 0
            assert geometry.size_sectors % ALIGNMENT_SECTORS == 0
            assert (geometry.end_sector + 1) % ALIGNMENT_SECTORS == 0
        for previous, current in zip(layout, layout[1:]):
            assert current.start_sector > previous.end_sector

    def test_sizes_round_down(self, make_record):
        records = [make_record(1, 10 * MIB + 3 * SECTOR_SIZE)]

        layout = compute_layout(records, identity_plan(records, GIB))

        assert layout[0].size_bytes == 10 * MIB

    def test_luks_rounds_up_and_never_shrinks(self, make_record):
        source_bytes = 10 * MIB + 3 * SECTOR_SIZE
        records = [make_record(1, source_bytes, filesystem_type="crypto_luks")]
        plan = SizePlan(
            allocations={1: 8 * MIB}, destination_capacity=GIB, usable_bytes=GIB - 4 * MIB
        )

        layout = compute_layout(records, plan)

        assert layout[0].size_sectors >= source_bytes // SECTOR_SIZE
        assert layout[0].size_sectors == 11 * 2048

    def test_geometry_keeps_source_index(self, make_record):
        records = [make_record(2, 10 * MIB), make_record(5, 20 * MIB)]

        layout = compute_layout(records, identity_plan(records, GIB))

        assert [geometry.index for geometry in layout] == [1, 2]
        assert [geometry.source_index for geometry in layout] == [2, 5]

    def test_mbr_limited_to_four_partitions(self, make_record):
        records = [make_record(index, 10 * MIB) for index in range(1, 6)]

        with pytest.raises(PartitionTableError):
            compute_layout(records, identity_plan(records, GIB), TableType.MBR)

    def test_overflow_raises_capacity_error(self, make_record):
        records = [make_record(1, 20 * MIB, filesystem_type="crypto_luks")]
        plan = SizePlan(
            allocations={1: 10 * MIB}, destination_capacity=12 * MIB, usable_bytes=8 * MIB
        )

        with pytest.raises(CapacityError):
            compute_layout(records, plan)

    def test_gpt_reserves_backup_header(self, make_record):
        capacity = 10 * MIB
        records = [make_record(1, 9 * MIB)]

        with pytest.raises(CapacityError):
            compute_layout(records, identity_plan(records, capacity), TableType.GPT)

        # MBR has no backup header, so the same layout fits exactly
        layout = compute_layout(records, identity_plan(records, capacity), TableType.MBR)
        assert layout[0].end_sector == capacity // SECTOR_SIZE - 1


class TestBuildPartitionTable:
    """Tests for build_partition_table()."""

    @pytest.fixture
    def records(self, make_record):
        return [
            make_record(
                1,
                512 * MIB,
                filesystem_type="vfat",
                is_efi=True,
                partition_uuid="11111111-1111-4111-8111-111111111111",
            ),
            make_record(2, 4 * GIB, partition_uuid="22222222-2222-4222-8222-222222222222"),
        ]

    def test_command_order(self, fake_commands, mocker, records):
        mocker.patch.object(partition_table, "wait_for_partition_node", return_value=True)
        plan = plan_sizes(records, 16 * GIB)

        built = build_partition_table(
            "/dev/sdb", records, plan, TableType.GPT, disk_uuid="AAAA-DISK"
        )

        assert isinstance(built, BuiltTable)
        assert built.nodes == {1: "/dev/sdb1", 2: "/dev/sdb2"}
        wipe = fake_commands.index_of("wipefs", "-af", "/dev/sdb")
        label = fake_commands.index_of("parted", "--script", "/dev/sdb", "mklabel", "gpt")
        mkpart = fake_commands.index_of("parted", "--script", "/dev/sdb", "unit", "s", "mkpart")
        disk_guid = fake_commands.index_of("sgdisk", "--disk-guid=AAAA-DISK")
        assert wipe < label < mkpart < disk_guid
        assert fake_commands.ran("parted", "--script", "/dev/sdb", "set", "1", "esp", "on")
        assert fake_commands.ran(
            "sgdisk", "--partition-guid=2:22222222-2222-4222-8222-222222222222"
        )

    def test_mkpart_uses_sector_geometry(self, fake_commands, mocker, records):
        mocker.patch.object(partition_table, "wait_for_partition_node", return_value=True)

        build_partition_table("/dev/sdb", records, plan_sizes(records, 16 * GIB))

        mkparts = fake_commands.matching("parted", "--script", "/dev/sdb", "unit", "s", "mkpart")
        assert mkparts[0][-2:] == ["2048s", f"{2048 + 512 * 2048 - 1}s"]
        assert mkparts[0][6:8] == ["EFI", "fat32"]

    def test_missing_node_is_recorded_and_skipped_for_identity(
        self, fake_commands, mocker, records
    ):
        mocker.patch.object(
            partition_table, "wait_for_partition_node", side_effect=lambda device, index: index == 1
        )

        built = build_partition_table("/dev/sdb", records, plan_sizes(records, 16 * GIB))

        assert built.missing == [2]
        assert built.node_for_source(2) is None
        assert not fake_commands.ran("sgdisk", "--partition-guid=2:22222222-2222-4222-8222-222222222222")

    def test_mklabel_failure_raises_after_retries(self, fake_commands, mocker, records):
        mocker.patch.object(partition_table, "wait_for_partition_node", return_value=True)
        fake_commands.on("parted", "--script", "/dev/sdb", "mklabel", returncode=1, stderr="busy")

        with pytest.raises(PartitionTableError) as exc_info:
            build_partition_table("/dev/sdb", records, plan_sizes(records, 16 * GIB))

        assert "partially wiped" in str(exc_info.value)
        assert len(fake_commands.matching("parted", "--script", "/dev/sdb", "mklabel")) == 3
        assert not fake_commands.ran("parted", "--script", "/dev/sdb", "unit")

    def test_capacity_error_before_any_write(self, fake_commands, make_record):
        records = [make_record(1, 20 * MIB, filesystem_type="crypto_luks")]
        plan = SizePlan(
            allocations={1: 10 * MIB}, destination_capacity=12 * MIB, usable_bytes=8 * MIB
        )

        with pytest.raises(CapacityError):
            build_partition_table("/dev/sdb", records, plan)

        assert fake_commands.calls == []

    def test_mbr_disk_id(self, fake_commands, mocker, make_record):
        mocker.patch.object(partition_table, "wait_for_partition_node", return_value=True)
        records = [make_record(1, 100 * MIB)]

        build_partition_table(
            "/dev/sdb", records, plan_sizes(records, GIB), TableType.MBR, disk_uuid="1a2b3c4d"
        )

        assert fake_commands.ran("parted", "--script", "/dev/sdb", "mklabel", "msdos")
        assert fake_commands.ran("sfdisk", "--disk-id", "/dev/sdb", "0x1a2b3c4d")


class TestDetectTableType:
    def test_blkid_label(self, fake_commands):
        fake_commands.on("blkid", stdout="gpt\n")

        assert detect_table_type("/dev/sda") == TableType.GPT

    def test_parted_fallback(self, fake_commands):
        fake_commands.on("blkid", returncode=2)
        fake_commands.on("parted", stdout="Model: X\nPartition Table: msdos\n")

        assert detect_table_type("/dev/sda") == TableType.MBR

    def test_raw_signature_fallback(self, fake_commands, tmp_path):
        fake_commands.on("blkid", returncode=2)
        fake_commands.on("parted", returncode=1)
        image = tmp_path / "disk.img"
        image.write_bytes(b"\0" * 512 + b"EFI PART" + b"\0" * 504)

        assert detect_table_type(str(image)) == TableType.GPT


class TestGrowLastPartition:
    def test_read_partition_entry(self, fake_commands):
        fake_commands.on("sgdisk", "-i", stdout=SGDISK_INFO)

        entry = read_partition_entry("/dev/nbd0", 2)

        assert entry.first_sector == 1050624
        assert entry.last_sector == 20969471
        assert entry.type_code == "0FC63DAF-8483-4772-8E79-3D69D8477DE4"
        assert entry.name == "rootfs"

    def test_gpt_entry_recreated_at_same_start(self, fake_commands, mocker):
        mocker.patch.object(partition_table, "wait_for_partition_node", return_value=True)
        fake_commands.on("sgdisk", "-i", stdout=SGDISK_INFO)
        fake_commands.on("sgdisk", "-i", stdout=SGDISK_INFO_GROWN)

        node = grow_last_partition("/dev/nbd0", 2, TableType.GPT)

        assert node == "/dev/nbd0p2"
        assert fake_commands.index_of("sgdisk", "-e") < fake_commands.index_of(
            "sgdisk", "--set-alignment=1"
        )
        recreate = fake_commands.matching("sgdisk", "--set-alignment=1")[0]
        assert "--delete=2" in recreate
        assert "--new=2:1050624:0" in recreate
        assert "--partition-guid=2:22222222-2222-4222-8222-222222222222" in recreate
        assert not fake_commands.ran("parted")

    def test_falls_back_to_parted(self, fake_commands, mocker):
        mocker.patch.object(partition_table, "wait_for_partition_node", return_value=True)
        fake_commands.on("sgdisk", "-e", returncode=1, stderr="damaged")

        grow_last_partition("/dev/nbd0", 2, TableType.GPT)

        assert fake_commands.ran("parted", "--script", "/dev/nbd0", "resizepart", "2", "100%")

    def test_missing_node_after_resize(self, fake_commands, mocker):
        mocker.patch.object(partition_table, "wait_for_partition_node", return_value=False)

        with pytest.raises(PartitionTableError):
            grow_last_partition("/dev/loop0", 1, TableType.MBR)

    def test_kpartx_session_maps_refreshed(self, fake_commands, mocker, tmp_path):
        session = BlockSession(
            backing_file=str(tmp_path / "disk.img"),
            device_node="/dev/loop3",
            format="raw",
            session_id="abcd1234",
            backend=SessionBackend.LOOP,
            mapped_partition_nodes=["/dev/mapper/loop3p1"],
            kpartx=True,
        )
        device_lock.register_session(session)
        looked_up = []
        mocker.patch.object(
            devices, "is_block_device", side_effect=lambda path: looked_up.append(path) or True
        )

        node = grow_last_partition("/dev/loop3", 1, TableType.MBR)

        assert node == "/dev/mapper/loop3p1"
        assert looked_up == ["/dev/mapper/loop3p1"]
        assert fake_commands.index_of("parted", "--script", "/dev/loop3") < fake_commands.index_of(
            "kpartx", "-u", "/dev/loop3"
        )
