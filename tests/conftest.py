"""
Pytest configuration and shared fixtures for disk-cloner tests.

This module provides common fixtures and utilities used across all test modules.
No test touches a real block device: every external command goes through
``subprocess.run``, which the ``fake_commands`` fixture replaces.
"""

import json
import subprocess
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest

from disk_cloner.config import settings
from disk_cloner.domain.models import MIB, PartitionRecord
from disk_cloner.storage import commands, device_lock, mount


GIB = 1024 * MIB

EFI_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
LINUX_GUID = "0fc63daf-8483-4772-8e79-3d69d8477de4"


# ==============================================================================
# Command Fakes
# ==============================================================================


class FakeCommands:
    """Stand-in for ``subprocess.run`` that answers by argv prefix.

    The longest registered prefix wins. Registering the same prefix several
    times queues outcomes; the last one repeats. Unregistered commands
    succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self._rules: List[tuple] = []

    def on(self, *prefix, stdout="", stderr="", returncode=0, raises=None):
        outcome = (returncode, stdout, stderr, raises)
        for rule_prefix, outcomes in self._rules:
            if rule_prefix == prefix:
                outcomes.append(outcome)
                return self
        self._rules.append((prefix, [outcome]))
        return self

    def __call__(self, command, input=None, **kwargs):
        command = [str(part) for part in command]
        self.calls.append(command)
        self.inputs.append(input)
        best = None
        for prefix, outcomes in self._rules:
            if tuple(command[: len(prefix)]) == prefix:
                if best is None or len(prefix) > len(best[0]):
                    best = (prefix, outcomes)
        if best is None:
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")
        outcomes = best[1]
        returncode, stdout, stderr, raises = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if raises is not None:
            raise raises
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)

    def matching(self, *prefix) -> List[List[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]

    def ran(self, *prefix) -> bool:
        return bool(self.matching(*prefix))

    def index_of(self, *prefix) -> int:
        for position, call in enumerate(self.calls):
            if tuple(call[: len(prefix)]) == prefix:
                return position
        raise AssertionError(f"{' '.join(prefix)} was never run")


@pytest.fixture
def fake_commands(mocker) -> FakeCommands:
    """
    Fixture replacing subprocess.run with a FakeCommands instance.

    Returns:
        The FakeCommands recorder; register outcomes with ``.on()``.
    """
    fake = FakeCommands()
    mocker.patch("subprocess.run", side_effect=fake)
    return fake


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


@pytest.fixture
def capture_subprocess_calls(mocker) -> List[List]:
    """
    Fixture that captures all subprocess.run calls for inspection.

    Returns:
        List that will contain all subprocess command arguments.
    """
    calls = []

    def track_call(cmd, **kwargs):
        calls.append(cmd)
        result = Mock()
        result.returncode = 0
        result.stdout = ""
        result.stderr = ""
        return result

    mocker.patch("subprocess.run", side_effect=track_call)
    return calls


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def source_disk_lsblk() -> Dict[str, Any]:
    """
    Fixture providing lsblk JSON for a GPT disk with an ESP and an ext4 root.

    Returns:
        Dict as printed by ``lsblk -J -b -o ...`` for /dev/sda.
    """
    return {
        "blockdevices": [
            {
                "name": "sda",
                "path": "/dev/sda",
                "type": "disk",
                "size": 64 * GIB,
                "model": "Samsung SSD ",
                "fstype": None,
                "uuid": None,
                "partuuid": None,
                "ptuuid": "8f1a2b3c-0000-4000-8000-000000000001",
                "pttype": "gpt",
                "parttype": None,
                "mountpoint": None,
                "children": [
                    {
                        "name": "sda1",
                        "path": "/dev/sda1",
                        "type": "part",
                        "size": 512 * MIB,
                        "fstype": "vfat",
                        "uuid": "ABCD-1234",
                        "partuuid": "11111111-1111-4111-8111-111111111111",
                        "parttype": EFI_GUID,
                        "mountpoint": None,
                    },
                    {
                        "name": "sda2",
                        "path": "/dev/sda2",
                        "type": "part",
                        "size": 40 * GIB,
                        "fstype": "ext4",
                        "uuid": "2f6e9c1a-6b0e-4a57-9e56-6a1c3d1f0a42",
                        "partuuid": "22222222-2222-4222-8222-222222222222",
                        "parttype": LINUX_GUID,
                        "mountpoint": "/mnt/root",
                    },
                ],
            }
        ]
    }


@pytest.fixture
def source_disk_json(source_disk_lsblk) -> str:
    return json.dumps(source_disk_lsblk)


@pytest.fixture
def make_record():
    """
    Fixture providing a PartitionRecord factory with sensible defaults.

    Returns:
        Callable building a PartitionRecord for ``/dev/sda<index>``.
    """

    def factory(index: int, size_bytes: int, **overrides) -> PartitionRecord:
        values = {
            "index": index,
            "device_path": f"/dev/sda{index}",
            "size_bytes": size_bytes,
            "filesystem_type": "ext4",
        }
        values.update(overrides)
        return PartitionRecord(**values)

    return factory


# ==============================================================================
# Mount Table Fixtures
# ==============================================================================


class FakeMountTable:
    """A writable stand-in for /proc/mounts."""

    def __init__(self, path) -> None:
        self.path = path
        self.lines: List[str] = []
        self.path.write_text("")

    def __call__(self, *lines: str) -> None:
        self.lines = list(lines)
        self.path.write_text("".join(f"{line}\n" for line in self.lines))

    def release(self, mountpoint: str) -> None:
        """Drop every entry mounted on ``mountpoint``, as umount would."""
        self(*[line for line in self.lines if line.split()[1] != mountpoint])


@pytest.fixture
def mount_table(tmp_path, monkeypatch) -> FakeMountTable:
    """
    Fixture pointing the mount module at a writable fake /proc/mounts.

    Returns:
        FakeMountTable; call it with fstab-style lines to replace the table.
    """
    table = FakeMountTable(tmp_path / "mounts")
    monkeypatch.setattr(mount, "PROC_MOUNTS", str(table.path))
    return table


# ==============================================================================
# Global State Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """
    Auto-use fixture giving every test default settings and a private lock dir.

    Nothing is read from or written to the real settings file.
    """
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "config" / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    settings.settings_store.values["lock_dir"] = str(tmp_path / "lock")
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture(autouse=True)
def no_sleep(mocker):
    """Auto-use fixture making retry backoff instant."""
    return mocker.patch("time.sleep")


@pytest.fixture(autouse=True)
def reset_global_state():
    """
    Auto-use fixture that resets module-level state after each test.

    Clears the live session registry and any forced dry-run mode.
    """
    yield
    device_lock._sessions.clear()
    commands._dry_run_override = None
