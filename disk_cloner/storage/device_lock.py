"""Locks and bookkeeping for the shared loop/NBD slot pool.

Selecting a free slot and connecting to it form one critical section: two
invocations racing for the same ``/dev/nbdN`` would otherwise both see it
free. The section is guarded by an in-process ``threading.Lock`` and an
``fcntl.flock`` on a lock file shared by every process on the host.

Usage:
    from disk_cloner.storage.device_lock import slot_pool_lock

    with slot_pool_lock():
        node = find_free_slot()
        attach(node)
"""

from __future__ import annotations

import fcntl
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Generator, Optional

from disk_cloner.config import settings
from disk_cloner.logging import LoggerFactory

from .exceptions import SessionBusyError

if TYPE_CHECKING:
    from disk_cloner.domain.models import BlockSession


log = LoggerFactory.for_session()

LOCK_FILENAME = "slots.lock"

# Serializes slot selection within this process
_slot_lock = threading.Lock()

# Guards the live session registry
_registry_lock = threading.Lock()
_sessions: dict[str, BlockSession] = {}


def _open_lock_file(lock_dir: Path):
    try:
        lock_dir.mkdir(parents=True, exist_ok=True)
        return open(lock_dir / LOCK_FILENAME, "a+")
    except OSError as error:
        log.warning(
            f"Cross-process slot lock unavailable in {lock_dir} ({error}); "
            "serializing within this process only"
        )
        return None


@contextmanager
def slot_pool_lock(lock_dir: Optional[str] = None) -> Generator[None, None, None]:
    """Hold the slot pool exclusively for selection plus connection."""
    directory = Path(lock_dir or settings.get_setting("lock_dir"))
    with _slot_lock:
        handle = _open_lock_file(directory)
        if handle is None:
            yield
            return
        with handle:
            log.trace(f"Waiting for slot pool lock {directory / LOCK_FILENAME}")
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _key(backing_file: str) -> str:
    return os.path.realpath(backing_file)


def register_session(session: BlockSession) -> None:
    """Record a live session.

    Raises:
        SessionBusyError: If the backing file already has a live session
    """
    key = _key(session.backing_file)
    with _registry_lock:
        existing = _sessions.get(key)
        if existing is not None:
            raise SessionBusyError(key, existing.device_node)
        _sessions[key] = session
        log.debug(f"Session {session.session_id} registered for {key} at {session.device_node}")


def release_session(session: BlockSession) -> None:
    key = _key(session.backing_file)
    with _registry_lock:
        if _sessions.get(key) is session:
            del _sessions[key]
            log.debug(f"Session {session.session_id} released for {key}")


def get_active_session(backing_file: str) -> Optional[BlockSession]:
    with _registry_lock:
        return _sessions.get(_key(backing_file))


def live_sessions() -> list[BlockSession]:
    with _registry_lock:
        return list(_sessions.values())


def session_for_device(device_node: str) -> Optional[BlockSession]:
    """Live session exposing ``device_node``, if any."""
    with _registry_lock:
        for session in _sessions.values():
            if session.device_node == device_node:
                return session
    return None
