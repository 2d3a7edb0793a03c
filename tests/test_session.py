"""Tests for storage/session.py - loop/NBD sessions and their teardown."""

import os
import signal
import subprocess

import pytest

from disk_cloner.domain.models import BlockSession, LayeredVolume, SessionBackend, VolumeKind
from disk_cloner.storage import commands, device_lock, mount
from disk_cloner.storage import session as session_module
from disk_cloner.storage.exceptions import (
    BlockConnectionError,
    DeviceBusyError,
    DeviceNotFoundError,
    OperationCancelled,
    SessionBusyError,
    SessionError,
    UnsupportedOperationError,
)
from disk_cloner.storage.mount import mounts_for, read_mount_table
from disk_cloner.storage.session import (
    cancellation_guard,
    connect,
    disconnect,
    disconnect_all,
    find_free_nbd_slot,
    nodes_for_backing_file,
    open_session,
)


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "disk.qcow2"
    path.write_bytes(b"\0" * 4096)
    return os.path.realpath(path)


@pytest.fixture
def partition_glob(mocker):
    """Answer partition node globs from a dict of pattern prefix -> nodes."""
    answers = {}

    def fake_glob(pattern):
        for prefix, nodes in answers.items():
            if pattern.startswith(prefix):
                return list(nodes)
        return []

    mocker.patch.object(session_module.glob, "glob", side_effect=fake_glob)
    return answers


@pytest.fixture
def nbd_host(mocker, fake_commands, partition_glob):
    """One free NBD slot whose server comes up on connect."""
    fake_commands.on("fuser", returncode=1)
    fake_commands.on("blockdev", stdout="1073741824\n")
    mocker.patch.object(session_module, "find_free_nbd_slot", return_value="/dev/nbd0")
    pid = mocker.patch.object(session_module, "nbd_pid", return_value=4242)
    partition_glob["/dev/nbd0p"] = ["/dev/nbd0p1", "/dev/nbd0p2"]
    return pid


def make_session(**overrides):
    values = dict(
        backing_file="/images/disk.qcow2",
        device_node="/dev/nbd0",
        format="qcow2",
        session_id="abcd1234",
        backend=SessionBackend.NBD,
    )
    values.update(overrides)
    return BlockSession(**values)


class TestSlots:
    def test_first_free_slot(self, tmp_path, monkeypatch):
        monkeypatch.setattr(session_module, "SYS_BLOCK", str(tmp_path))
        (tmp_path / "nbd0").mkdir()
        (tmp_path / "nbd0" / "pid").write_text("123\n")
        (tmp_path / "nbd1").mkdir()

        assert find_free_nbd_slot() == "/dev/nbd1"

    def test_no_free_slot(self, tmp_path, monkeypatch):
        monkeypatch.setattr(session_module, "SYS_BLOCK", str(tmp_path))
        (tmp_path / "nbd0").mkdir()
        (tmp_path / "nbd0" / "pid").write_text("123\n")

        with pytest.raises(SessionError):
            find_free_nbd_slot()

    def test_loop_nodes_for_backing_file(self, fake_commands):
        fake_commands.on(
            "losetup",
            "-j",
            stdout="/dev/loop3: []: (/images/disk.img)\n/dev/loop5: [2049]:12 (/images/disk.img)\n",
        )

        assert nodes_for_backing_file(SessionBackend.LOOP, "/images/disk.img") == [
            "/dev/loop3",
            "/dev/loop5",
        ]


class TestConnect:
    """Tests for connect()."""

    def test_nbd_connect(self, image, nbd_host, fake_commands):
        session = connect(image, "qcow2")

        assert session.device_node == "/dev/nbd0"
        assert session.backend == SessionBackend.NBD
        assert session.mapped_partition_nodes == ["/dev/nbd0p1", "/dev/nbd0p2"]
        assert fake_commands.ran("modprobe", "nbd", "max_part=16")
        assert fake_commands.ran("qemu-nbd", "--connect=/dev/nbd0", "-f", "qcow2", image)
        assert device_lock.get_active_session(image) is session

    def test_raw_image_uses_loop_and_kpartx(self, mocker, tmp_path, fake_commands, partition_glob):
        path = tmp_path / "disk.img"
        path.write_bytes(b"\0" * 4096)
        image = os.path.realpath(path)
        fake_commands.on("fuser", returncode=1)
        fake_commands.on("blockdev", stdout="4096\n")
        fake_commands.on("losetup", "-f", stdout="/dev/loop3\n")
        fake_commands.on("losetup", "-j", stdout="")
        fake_commands.on("losetup", "-j", stdout=f"/dev/loop3: []: ({image})\n")
        mocker.patch.object(session_module, "tool_available", return_value=True)
        partition_glob["/dev/mapper/loop3p"] = ["/dev/mapper/loop3p1"]

        session = connect(image, "raw")

        assert session.backend == SessionBackend.LOOP
        assert session.device_node == "/dev/loop3"
        assert fake_commands.ran("kpartx", "-av", "/dev/loop3")
        assert session.kpartx is True
        assert session.partition_node(1) == "/dev/mapper/loop3p1"

    def test_three_failed_attempts_leave_nothing_attached(
        self, mocker, image, nbd_host, fake_commands
    ):
        fake_commands.on("qemu-nbd", "--connect=/dev/nbd0", returncode=1, stderr="Failed to connect")
        mocker.patch.object(
            session_module, "nodes_for_backing_file", side_effect=[[], ["/dev/nbd0"]]
        )

        with pytest.raises(BlockConnectionError) as exc_info:
            connect(image, "qcow2")

        assert exc_info.value.attempts == 3
        assert len(fake_commands.matching("qemu-nbd", "--connect=/dev/nbd0")) == 3
        # one detach per failed attempt plus the leftover sweep
        assert len(fake_commands.matching("qemu-nbd", "--disconnect", "/dev/nbd0")) == 4
        assert device_lock.live_sessions() == []

    def test_device_that_never_comes_up(self, image, nbd_host, fake_commands):
        nbd_host.return_value = None

        with pytest.raises(BlockConnectionError):
            connect(image, "qcow2")

        assert fake_commands.index_of("qemu-nbd", "--connect=/dev/nbd0") < fake_commands.index_of(
            "qemu-nbd", "--disconnect", "/dev/nbd0"
        )

    def test_second_session_for_same_file(self, image, nbd_host):
        first = connect(image, "qcow2")

        with pytest.raises(SessionBusyError) as exc_info:
            connect(image, "qcow2")

        assert exc_info.value.device_node == first.device_node

    def test_loop_attached_by_another_process(self, tmp_path, fake_commands):
        path = tmp_path / "disk.img"
        path.write_bytes(b"\0" * 4096)
        image = os.path.realpath(path)
        fake_commands.on("fuser", returncode=1)
        fake_commands.on("losetup", "-j", stdout=f"/dev/loop1: []: ({image})\n")

        with pytest.raises(SessionBusyError) as exc_info:
            connect(image, "raw")

        assert exc_info.value.device_node == "/dev/loop1"
        assert not fake_commands.ran("losetup", "-f")
        assert not fake_commands.ran("losetup", "-d")

    def test_leftover_sweep_spares_existing_nodes(self, fake_commands):
        fake_commands.on(
            "losetup",
            "-j",
            stdout="/dev/loop1: []: (/images/disk.img)\n/dev/loop3: []: (/images/disk.img)\n",
        )

        session_module._release_leftovers(
            SessionBackend.LOOP, "/images/disk.img", keep=["/dev/loop1"]
        )

        assert fake_commands.matching("losetup", "-d") == [["losetup", "-d", "/dev/loop3"]]

    def test_file_open_elsewhere(self, image, fake_commands):
        fake_commands.on("fuser", returncode=0)

        with pytest.raises(DeviceBusyError):
            connect(image, "qcow2")

        assert not fake_commands.ran("qemu-nbd")

    def test_missing_file(self, tmp_path):
        with pytest.raises(DeviceNotFoundError):
            connect(str(tmp_path / "missing.qcow2"), "qcow2")

    def test_dry_run_refuses(self, image, fake_commands):
        with commands.dry_run_mode():
            with pytest.raises(UnsupportedOperationError):
                connect(image, "qcow2")

        assert fake_commands.calls == []

    def test_partition_mapping_failure_disconnects(self, mocker, image, nbd_host):
        mocker.patch.object(session_module, "_map_partitions", side_effect=RuntimeError("udev"))
        teardown = mocker.patch.object(session_module, "disconnect")

        with pytest.raises(RuntimeError):
            connect(image, "qcow2")

        teardown.assert_called_once()


class TestDisconnect:
    """Tests for disconnect()."""

    def test_releases_mounts_then_volumes_then_device(self, mocker):
        order = []
        session = make_session(mapped_partition_nodes=["/dev/nbd0p1"])
        session.volumes.append(
            LayeredVolume(VolumeKind.LUKS, "luks_x", "/dev/nbd0p1", device_path="/dev/mapper/luks_x")
        )
        device_lock.register_session(session)
        unmount = mocker.patch.object(
            session_module, "unmount_all", side_effect=lambda held: order.append("unmount") or []
        )
        mocker.patch.object(
            session_module.volumes,
            "deactivate_all",
            side_effect=lambda s: order.append("volumes"),
        )
        mocker.patch.object(
            session_module, "_detach", side_effect=lambda *args, **kwargs: order.append("detach")
        )
        mocker.patch.object(session_module, "is_attached", return_value=False)

        assert disconnect(session) is True

        assert order == ["unmount", "volumes", "detach"]
        assert unmount.call_args.args[0] == ["/dev/nbd0", "/dev/nbd0p1", "/dev/mapper/luks_x"]
        assert session.connected is False
        assert device_lock.live_sessions() == []

    def test_unconfirmed_detach_still_releases_session(self, mocker, fake_commands):
        session = make_session()
        device_lock.register_session(session)
        mocker.patch.object(session_module, "unmount_all", return_value=[])
        mocker.patch.object(session_module, "is_attached", return_value=True)

        assert disconnect(session) is False

        assert len(fake_commands.matching("qemu-nbd", "--disconnect")) == 3
        assert session.connected is False
        assert device_lock.get_active_session(session.backing_file) is None

    def test_loop_with_kpartx_mappings(self, mocker, fake_commands):
        session = make_session(
            device_node="/dev/loop3",
            backend=SessionBackend.LOOP,
            mapped_partition_nodes=["/dev/mapper/loop3p1"],
            kpartx=True,
        )
        mocker.patch.object(session_module, "unmount_all", return_value=[])
        mocker.patch.object(session_module, "is_attached", return_value=False)

        disconnect(session)

        assert fake_commands.index_of("kpartx", "-d", "/dev/loop3") < fake_commands.index_of(
            "losetup", "-d", "/dev/loop3"
        )

    def test_no_mount_survives_under_device_prefix(self, mocker, fake_commands, mount_table):
        # p3 was created after connect, so it is not in mapped_partition_nodes
        session = make_session(mapped_partition_nodes=["/dev/nbd0p1"])
        device_lock.register_session(session)
        mount_table(
            "/dev/sda2 / ext4 rw 0 0",
            "/dev/nbd0p1 /mnt/boot vfat rw 0 0",
            "/dev/nbd0p3 /mnt/data ext4 rw 0 0",
        )

        def run(command, **kwargs):
            if command[0] == "umount":
                mount_table.release(command[-1])
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        mocker.patch.object(mount, "run_command", side_effect=run)
        mocker.patch.object(session_module, "is_attached", return_value=False)

        assert disconnect(session) is True

        assert mounts_for(["/dev/nbd0"]) == []
        assert [entry.mountpoint for entry in read_mount_table()] == ["/"]

    def test_already_disconnected(self, fake_commands):
        session = make_session(connected=False)

        assert disconnect(session) is True
        assert fake_commands.calls == []

    def test_disconnect_all_continues_after_failure(self, mocker):
        first = make_session(backing_file="/images/a.qcow2")
        second = make_session(backing_file="/images/b.qcow2", device_node="/dev/nbd1")
        device_lock.register_session(first)
        device_lock.register_session(second)
        teardown = mocker.patch.object(
            session_module, "disconnect", side_effect=[RuntimeError("stuck"), True]
        )

        disconnect_all()

        assert teardown.call_count == 2


class TestOpenSession:
    def test_disconnects_on_exception(self, mocker):
        session = make_session()
        mocker.patch.object(session_module, "connect", return_value=session)
        teardown = mocker.patch.object(session_module, "disconnect")

        with pytest.raises(ValueError):
            with open_session("/images/disk.qcow2") as opened:
                assert opened is session
                raise ValueError("boom")

        teardown.assert_called_once_with(session)

    def test_disconnects_on_normal_exit(self, mocker):
        session = make_session()
        mocker.patch.object(session_module, "connect", return_value=session)
        teardown = mocker.patch.object(session_module, "disconnect")

        with open_session("/images/disk.qcow2", "qcow2"):
            pass

        session_module.connect.assert_called_once_with("/images/disk.qcow2", "qcow2")
        teardown.assert_called_once_with(session)


class TestCancellationGuard:
    def test_signal_raises_operation_cancelled(self):
        before = signal.getsignal(signal.SIGTERM)

        with cancellation_guard():
            handler = signal.getsignal(signal.SIGTERM)
            with pytest.raises(OperationCancelled) as exc_info:
                handler(signal.SIGTERM, None)

        assert exc_info.value.signum == signal.SIGTERM
        assert signal.getsignal(signal.SIGTERM) == before
