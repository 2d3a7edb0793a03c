"""LUKS and LVM layers stacked on the partitions of a session.

Layers are opened outermost first (LUKS mapping, then the volume groups on
it) and recorded on the owning ``BlockSession`` so that ``deactivate_all``
can close them innermost first before the device is detached.

Passphrases are requested from the caller-supplied ``credential_provider``
at most once per resolver and are only ever passed to cryptsetup on stdin.
"""

from __future__ import annotations

import itertools
import os
import re
from typing import Callable, Optional

from disk_cloner.domain.models import BlockSession, LayeredVolume, VolumeKind, VolumeState
from disk_cloner.logging import LoggerFactory

from .commands import run_command, settle_devices
from .exceptions import CommandError, CredentialError, ResizeError


log = LoggerFactory.for_volumes()

CredentialProvider = Callable[[str], str]

LUKS_OPEN_TIMEOUT = 60

_mapping_counter = itertools.count(1)


def is_luks(device: str) -> bool:
    result = run_command(["cryptsetup", "isLuks", device], check=False, readonly=True)
    return result.returncode == 0


def mapping_name(device: str) -> str:
    """Process-unique device-mapper name for a LUKS container on ``device``."""
    base = re.sub(r"[^A-Za-z0-9_]", "_", os.path.basename(device))
    return f"luks_{base}_{os.getpid()}_{next(_mapping_counter)}"


def volume_groups_on(device: str) -> list[str]:
    """Names of the volume groups ``device`` is a physical volume of."""
    run_command(["pvscan", "--cache", device], check=False)
    result = run_command(
        ["pvs", "--noheadings", "-o", "pv_name,vg_name", device],
        check=False,
        readonly=True,
    )
    groups: list[str] = []
    for line in result.stdout.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[1] not in groups:
            groups.append(fields[1])
    return groups


def list_logical_volumes(volume_group: str) -> list[tuple[str, str, int]]:
    """(path, name, size in bytes) for each LV of ``volume_group``."""
    result = run_command(
        [
            "lvs",
            "--noheadings",
            "--units",
            "b",
            "--nosuffix",
            "-o",
            "lv_path,lv_name,lv_size",
            volume_group,
        ],
        readonly=True,
    )
    volumes = []
    for line in result.stdout.splitlines():
        fields = line.split()
        if len(fields) < 3:
            continue
        try:
            size = int(float(fields[2]))
        except ValueError:
            continue
        volumes.append((fields[0], fields[1], size))
    return volumes


class VolumeResolver:
    """Open the LUKS/LVM layers of one session's partitions."""

    def __init__(
        self,
        session: BlockSession,
        credential_provider: Optional[CredentialProvider] = None,
    ):
        self.session = session
        self.credential_provider = credential_provider
        self._passphrase: Optional[str] = None

    def _credential(self, device: str) -> str:
        if self._passphrase is None:
            if self.credential_provider is None:
                raise CredentialError(device, "no credential provider supplied")
            self._passphrase = self.credential_provider(device)
        return self._passphrase

    def open_luks(self, device: str) -> LayeredVolume:
        """Unlock the LUKS container on ``device``.

        Raises:
            CredentialError: If no passphrase is available or it is rejected
        """
        name = mapping_name(device)
        volume = LayeredVolume(kind=VolumeKind.LUKS, name=name, parent_device=device)
        try:
            run_command(
                ["cryptsetup", "luksOpen", device, name, "--key-file=-"],
                input_text=self._credential(device),
                timeout=LUKS_OPEN_TIMEOUT,
            )
        except CommandError as error:
            raise CredentialError(device, error.output or "luksOpen failed") from error
        volume.device_path = f"/dev/mapper/{name}"
        volume.state = VolumeState.OPEN
        self.session.volumes.append(volume)
        log.info(f"Opened LUKS container {device} as {volume.device_path}")
        return volume

    def activate_lvm(self, device: str) -> list[LayeredVolume]:
        """Activate the volume groups on ``device`` and record their LVs."""
        activated: list[LayeredVolume] = []
        for group in volume_groups_on(device):
            run_command(["vgchange", "-ay", group])
            for path, name, size in list_logical_volumes(group):
                volume = LayeredVolume(
                    kind=VolumeKind.LVM,
                    name=f"{group}/{name}",
                    parent_device=device,
                    device_path=path,
                    volume_group=group,
                    size_bytes=size,
                    state=VolumeState.OPEN,
                )
                self.session.volumes.append(volume)
                activated.append(volume)
            log.info(f"Activated volume group {group} on {device}")
        if activated:
            settle_devices()
        return activated

    def resolve(self, device: str) -> list[LayeredVolume]:
        """Open every layer stacked on ``device``, outermost first."""
        opened: list[LayeredVolume] = []
        inner = device
        if is_luks(device):
            luks = self.open_luks(device)
            opened.append(luks)
            inner = luks.device_path
        opened.extend(self.activate_lvm(inner))
        return opened


def deactivate_all(session: BlockSession) -> None:
    """Close the session's layers innermost first. Failures are logged."""
    closed_groups: set[str] = set()
    for volume in reversed(session.volumes):
        if not volume.is_open:
            continue
        if volume.kind == VolumeKind.LVM:
            group = volume.volume_group
            if group not in closed_groups:
                result = run_command(["vgchange", "-an", group], check=False)
                if result.returncode != 0:
                    log.error(f"Could not deactivate volume group {group}")
                closed_groups.add(group)
            volume.state = VolumeState.CLOSED
            continue
        result = run_command(["cryptsetup", "luksClose", volume.name], check=False)
        if result.returncode != 0:
            log.warning(f"luksClose {volume.name} failed, removing the mapping with dmsetup")
            result = run_command(["dmsetup", "remove", "--force", volume.name], check=False)
        if result.returncode != 0:
            log.error(f"Could not close LUKS mapping {volume.name}")
            continue
        volume.state = VolumeState.CLOSED
        log.info(f"Closed LUKS mapping {volume.name}")


def grow_layers(
    session: BlockSession,
    partition: str,
    logical_volume: Optional[str] = None,
) -> str:
    """Grow the open layers on ``partition`` to fill it.

    Args:
        session: Session owning the opened layers
        partition: Partition node that was just enlarged
        logical_volume: LV name (``vg/lv`` or ``lv``) to extend when the
            volume group holds several

    Returns:
        Device node holding the filesystem to grow next

    Raises:
        ResizeError: If several LVs exist and none was selected
    """
    target = partition
    for volume in session.volumes:
        if volume.kind == VolumeKind.LUKS and volume.is_open and volume.parent_device == partition:
            run_command(["cryptsetup", "resize", volume.name])
            log.info(f"Resized LUKS mapping {volume.name}")
            target = volume.device_path
            break

    candidates = [
        volume
        for volume in session.volumes
        if volume.kind == VolumeKind.LVM and volume.is_open and volume.parent_device == target
    ]
    if not candidates:
        return target

    run_command(["pvresize", target])
    if logical_volume:
        selected = [
            volume
            for volume in candidates
            if logical_volume in (volume.name, volume.name.split("/", 1)[1])
        ]
    else:
        selected = candidates if len(candidates) == 1 else []
    if not selected:
        names = ", ".join(volume.name for volume in candidates)
        raise ResizeError(f"Select the logical volume to extend: {names}")
    lv = selected[0]
    result = run_command(["lvextend", "-l", "+100%FREE", lv.device_path], check=False)
    if result.returncode != 0:
        # lvextend fails when there is no free extent left
        log.warning(f"lvextend on {lv.device_path} made no change: {result.stderr.strip()}")
    log.info(f"Extended logical volume {lv.name}")
    return lv.device_path
