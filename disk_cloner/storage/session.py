"""Expose image files as block devices through loop or NBD.

A ``BlockSession`` owns everything attached for one backing file: the
kernel device node, its partition nodes and any LUKS/LVM layers opened on
top. ``disconnect()`` releases them in reverse order (mounts, volumes,
device) and every entry point that connects also guarantees the
disconnect: ``open_session()`` on normal exit, exceptions and SIGTERM/SIGHUP,
and an ``atexit`` hook for anything still registered at shutdown.

Backends:
    raw images     loop (``losetup -f --show -P``), kpartx if no partition
                   nodes appear
    other formats  NBD (``qemu-nbd --connect``) on the first free slot
"""

from __future__ import annotations

import atexit
import glob
import os
import signal
import threading
import uuid
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from disk_cloner.config import settings
from disk_cloner.domain.models import BlockSession, SessionBackend
from disk_cloner.logging import LoggerFactory

from . import device_lock, volumes
from .commands import is_dry_run, retry, run_command, settle_devices, tool_available, wait_until
from .devices import device_in_use, get_device_size
from .exceptions import (
    BlockConnectionError,
    CommandError,
    DeviceBusyError,
    DeviceNotFoundError,
    OperationCancelled,
    SessionBusyError,
    SessionError,
    UnsupportedOperationError,
)
from .image import get_image_info
from .mount import unmount_all


log = LoggerFactory.for_session()

SYS_BLOCK = "/sys/block"
NBD_CONNECT_TIMEOUT = 30
CANCEL_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


# ==============================================================================
# Slot discovery
# ==============================================================================


def nbd_pid(node: str) -> Optional[int]:
    """PID of the qemu-nbd server behind ``node``, None when the slot is free."""
    name = os.path.basename(node)
    try:
        with open(os.path.join(SYS_BLOCK, name, "pid"), "r", encoding="utf-8") as pid_file:
            value = pid_file.read().strip()
    except OSError:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def find_free_nbd_slot() -> str:
    """First ``/dev/nbdN`` without a server attached.

    Raises:
        SessionError: If every slot is taken
    """
    for slot in range(settings.get_int("nbd_slot_count")):
        name = f"nbd{slot}"
        if not os.path.isdir(os.path.join(SYS_BLOCK, name)):
            continue
        node = f"/dev/{name}"
        if nbd_pid(node) is None:
            return node
    raise SessionError("No free NBD slot available")


def _nbd_serves(pid: int, backing_file: str) -> bool:
    try:
        with open(f"/proc/{pid}/cmdline", "rb") as cmdline_file:
            args = cmdline_file.read().decode(errors="replace").split("\0")
    except OSError:
        return False
    return any(arg and os.path.realpath(arg) == backing_file for arg in args)


def nodes_for_backing_file(backend: SessionBackend, backing_file: str) -> list[str]:
    """Device nodes currently attached to ``backing_file``."""
    if backend == SessionBackend.LOOP:
        result = run_command(["losetup", "-j", backing_file], check=False, readonly=True)
        return [
            line.split(":", 1)[0].strip()
            for line in result.stdout.splitlines()
            if line.startswith("/dev/")
        ]
    nodes = []
    for slot_dir in sorted(glob.glob(os.path.join(SYS_BLOCK, "nbd*"))):
        node = f"/dev/{os.path.basename(slot_dir)}"
        pid = nbd_pid(node)
        if pid is not None and _nbd_serves(pid, backing_file):
            nodes.append(node)
    return nodes


def is_attached(backend: SessionBackend, node: str, backing_file: str) -> bool:
    if backend == SessionBackend.NBD:
        return nbd_pid(node) is not None
    return node in nodes_for_backing_file(backend, backing_file)


# ==============================================================================
# Attach / detach
# ==============================================================================


def _load_module(backend: SessionBackend) -> None:
    if backend == SessionBackend.NBD:
        run_command(["modprobe", "nbd", f"max_part={settings.get_int('nbd_max_part')}"])
    else:
        run_command(["modprobe", "loop"], check=False)


def _attach(backend: SessionBackend, node: Optional[str], backing_file: str, fmt: str) -> str:
    if backend == SessionBackend.NBD:
        run_command(
            ["qemu-nbd", f"--connect={node}", "-f", fmt, backing_file],
            timeout=NBD_CONNECT_TIMEOUT,
        )
        return node
    result = run_command(["losetup", "-f", "--show", "-P", backing_file])
    attached = result.stdout.strip()
    if not attached.startswith("/dev/"):
        raise SessionError(f"losetup returned no device for {backing_file}")
    return attached


def _verify_live(backend: SessionBackend, node: str, backing_file: str) -> None:
    """Raise SessionError unless ``node`` is serving ``backing_file``."""
    alive = wait_until(
        lambda: is_attached(backend, node, backing_file),
        attempts=5,
        delay=1,
        description=f"waiting for {node} to come up",
    )
    if not alive:
        raise SessionError(f"{node} did not attach to {backing_file}")
    try:
        size = get_device_size(node)
    except ValueError as error:
        raise SessionError(f"Could not read size of {node}") from error
    if size <= 0:
        raise SessionError(f"{node} reports size {size}")


def _detach(backend: SessionBackend, node: str, kpartx: bool = False) -> None:
    if backend == SessionBackend.NBD:
        result = run_command(["qemu-nbd", "--disconnect", node], check=False)
        if result.returncode != 0 and tool_available("nbd-client"):
            run_command(["nbd-client", "-d", node], check=False)
        return
    if kpartx:
        run_command(["kpartx", "-d", node], check=False)
    run_command(["losetup", "-d", node], check=False)


def _release_leftovers(
    backend: SessionBackend, backing_file: str, keep: Iterable[str] = ()
) -> None:
    """Detach nodes a failed connect left tied to ``backing_file``.

    Nodes in ``keep`` were attached before the connect started and are left alone.
    """
    keep = set(keep)
    for node in nodes_for_backing_file(backend, backing_file):
        if node in keep:
            continue
        log.warning(f"Releasing leftover {backend.value} device {node} for {backing_file}")
        _detach(backend, node)


def _map_partitions(session: BlockSession) -> None:
    settle_devices(session.device_node)
    nodes = sorted(glob.glob(f"{session.device_node}p[0-9]*"))
    if not nodes and session.backend == SessionBackend.LOOP and tool_available("kpartx"):
        log.info(f"No partition nodes on {session.device_node}, mapping with kpartx")
        run_command(["kpartx", "-av", session.device_node])
        settle_devices()
        session.kpartx = True
        nodes = sorted(glob.glob(f"/dev/mapper/{session.device_name}p[0-9]*"))
    session.mapped_partition_nodes = nodes
    log.debug(f"{session.device_node} partitions: {', '.join(nodes) or 'none'}")


# ==============================================================================
# Public API
# ==============================================================================


def connect(backing_file: str, fmt: Optional[str] = None) -> BlockSession:
    """Expose ``backing_file`` as a block device.

    Slot selection and connection run under the slot pool lock. Each attempt
    that fails after attaching is detached before the next one, and nothing
    tied to the file is left behind when all attempts fail.

    Raises:
        DeviceNotFoundError: If the file does not exist
        SessionBusyError: If the file already has a live session
        DeviceBusyError: If another process holds the file open
        BlockConnectionError: If no attempt produced a live device
    """
    path = os.path.realpath(backing_file)
    if not os.path.isfile(path):
        raise DeviceNotFoundError(path)
    if is_dry_run():
        raise UnsupportedOperationError(
            f"Dry run cannot expose {path} as a block device"
        )
    fmt = fmt or get_image_info(path).format
    backend = SessionBackend.LOOP if fmt == "raw" else SessionBackend.NBD
    attempts = settings.get_int("connect_attempts")
    delay = settings.get_int("connect_retry_delay")

    with device_lock.slot_pool_lock():
        existing = device_lock.get_active_session(path)
        if existing is not None:
            raise SessionBusyError(path, existing.device_node)
        # fuser cannot see kernel loop references
        attached = nodes_for_backing_file(backend, path)
        if attached:
            raise SessionBusyError(path, attached[0])
        if device_in_use(path):
            raise DeviceBusyError(path, "open by another process")
        _load_module(backend)

        pending: dict[str, Optional[str]] = {"node": None}

        def attempt() -> str:
            pending["node"] = find_free_nbd_slot() if backend == SessionBackend.NBD else None
            pending["node"] = _attach(backend, pending["node"], path, fmt)
            _verify_live(backend, pending["node"], path)
            return pending["node"]

        def discard_partial(attempt_number: int, error: BaseException) -> None:
            if pending["node"]:
                log.debug(f"Detaching partial connection {pending['node']} (attempt {attempt_number})")
                _detach(backend, pending["node"])
                pending["node"] = None

        try:
            node = retry(
                attempt,
                attempts=attempts,
                delay=delay,
                exceptions=(CommandError, SessionError),
                description=f"Connecting {path} via {backend.value}",
                on_failure=discard_partial,
            )
        except (CommandError, SessionError) as error:
            _release_leftovers(backend, path, keep=attached)
            raise BlockConnectionError(path, attempts, str(error)) from error
        except BaseException:
            if pending["node"]:
                _detach(backend, pending["node"])
            _release_leftovers(backend, path, keep=attached)
            raise

        session = BlockSession(
            backing_file=path,
            device_node=node,
            format=fmt,
            session_id=uuid.uuid4().hex[:8],
            backend=backend,
        )
        device_lock.register_session(session)

    log.info(f"Connected {path} ({fmt}) as {node} via {backend.value}")
    try:
        _map_partitions(session)
    except BaseException:
        disconnect(session)
        raise
    return session


def disconnect(session: BlockSession) -> bool:
    """Release mounts, layered volumes and the device node, in that order.

    Never raises for teardown failures: they are logged and the remaining
    steps still run.

    Returns:
        True when the device is confirmed detached
    """
    if not session.connected:
        return True
    node = session.device_node
    log.info(f"Disconnecting {node} ({session.backing_file})")

    held = [node, *session.mapped_partition_nodes]
    held += [volume.device_path for volume in session.volumes if volume.device_path]
    failed_mounts = unmount_all(held)
    if failed_mounts:
        log.error(f"Mounts still active on {node}: {', '.join(failed_mounts)}")

    volumes.deactivate_all(session)

    def detach_once() -> bool:
        _detach(session.backend, node, kpartx=session.kpartx)
        if is_attached(session.backend, node, session.backing_file):
            raise SessionError(f"{node} is still attached")
        return True

    try:
        detached = retry(
            detach_once,
            attempts=settings.get_int("disconnect_attempts"),
            delay=settings.get_int("disconnect_retry_delay"),
            exceptions=(CommandError, SessionError),
            description=f"Disconnecting {node}",
        )
    except (CommandError, SessionError) as error:
        log.warning(f"Could not confirm {node} was released: {error}")
        detached = False

    session.connected = False
    device_lock.release_session(session)
    if detached:
        log.info(f"Disconnected {node}")
    return detached


def disconnect_all() -> None:
    """Tear down every session still registered in this process."""
    for session in device_lock.live_sessions():
        log.warning(f"Cleaning up session {session.session_id} on {session.device_node}")
        try:
            disconnect(session)
        except Exception as error:
            log.error(f"Cleanup of {session.device_node} failed: {error}")


atexit.register(disconnect_all)


@contextmanager
def cancellation_guard(signals=CANCEL_SIGNALS) -> Iterator[None]:
    """Turn SIGTERM/SIGHUP into OperationCancelled for the block.

    Handlers can only be installed from the main thread; elsewhere the
    block runs without them.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        raise OperationCancelled(signum)

    previous = {signum: signal.signal(signum, handler) for signum in signals}
    try:
        yield
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)


@contextmanager
def open_session(backing_file: str, fmt: Optional[str] = None) -> Iterator[BlockSession]:
    """Connect ``backing_file`` for the block; always disconnects on exit."""
    with cancellation_guard():
        session = connect(backing_file, fmt)
        try:
            yield session
        finally:
            disconnect(session)
