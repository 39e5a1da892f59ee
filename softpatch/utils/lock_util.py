"""
Cross-process advisory locking on marker files.

Every lock is an OS-level advisory lock on a file opened by the holder. The
kernel drops the lock when the holder's handle is closed or the process
dies, so a crashed launcher, downloader or updater never leaves an orphaned
lock behind.

Typed locks (INSTANCE, DOWNLOADER, UPDATER) live in a shared lock folder and
are always decided while holding the folder's ``global_lock``:

- INSTANCE: one ``instance_lock_<epoch ms>_<n>`` marker per running copy of
  the application. Several may coexist.
- DOWNLOADER: exclusive lock on ``updater_lock``.
- UPDATER: ``updater_lock`` must be free and every instance marker must be
  removable. The caller then keeps ``global_lock`` itself, which blocks every
  other typed acquisition for as long as the update runs.
"""

import atexit
import os
import sys
import time
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

from loguru import logger

from softpatch.utils.constants import (
    GLOBAL_LOCK_NAME,
    INSTANCE_LOCK_PATTERN,
    INSTANCE_LOCK_PREFIX,
    UPDATER_LOCK_NAME,
)
from softpatch.utils.exception import LockFolderError

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


class LockType(Enum):
    INSTANCE = "instance"
    DOWNLOADER = "downloader"
    UPDATER = "updater"


class ConcurrentLock:
    """
    A held advisory lock on a marker file.

    Owns the file descriptor of the marker. Releasing is idempotent.
    """

    def __init__(self, path: Path, fd: int, shared: bool = False) -> None:
        self._path = path
        self._fd: Optional[int] = fd
        self._shared = shared

    @property
    def path(self) -> Path:
        return self._path

    @property
    def shared(self) -> bool:
        return self._shared

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def release(self) -> None:
        """
        Release the OS lock and close the marker file.

        Safe to call even if the lock was already released.
        """
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            _unlock_fd(fd)
        except OSError as e:
            logger.warning(f"Failed to unlock {self._path}: {e}")
        finally:
            os.close(fd)
        logger.debug(f"Released lock: {self._path}")

    def __enter__(self) -> "ConcurrentLock":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "held" if self.is_held else "released"
        return f"ConcurrentLock({str(self._path)!r}, {state})"


def _lock_fd(fd: int, shared: bool) -> None:
    if sys.platform == "win32":
        # msvcrt only offers exclusive byte-range locks
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    else:
        flag = fcntl.LOCK_SH if shared else fcntl.LOCK_EX
        fcntl.flock(fd, flag | fcntl.LOCK_NB)


def _unlock_fd(fd: int) -> None:
    if sys.platform == "win32":
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


def try_lock(path: Path, shared: bool = False) -> Optional[ConcurrentLock]:
    """
    Make a single non-blocking attempt to lock the marker at `path`.

    The marker is created if it does not exist.

    Returns:
        The held lock, or None if another handle holds a conflicting lock.

    Raises:
        OSError: If the marker file cannot be opened or created.
    """
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        _lock_fd(fd, shared)
    except OSError:
        os.close(fd)
        return None
    logger.debug(f"Acquired {'shared' if shared else 'exclusive'} lock: {path}")
    return ConcurrentLock(Path(path), fd, shared)


def acquire_lock(
    path: Path | str,
    timeout: float,
    retry_delay: float,
    shared: bool = False,
) -> Optional[ConcurrentLock]:
    """
    Lock the marker at `path`, retrying until `timeout` elapses.

    Args:
        path: Marker file to lock.
        timeout: Seconds to keep retrying. 0 makes exactly one attempt.
        retry_delay: Seconds to wait between attempts.
        shared: Take a shared (reader) lock instead of an exclusive one.

    Returns:
        The held lock, or None if it could not be obtained in time.

    Raises:
        ValueError: If `retry_delay` is negative.
    """
    if retry_delay < 0:
        raise ValueError(f"retry_delay must be >= 0, got {retry_delay}")

    path = Path(path)
    deadline = time.monotonic() + max(timeout, 0)
    while True:
        lock = try_lock(path, shared)
        if lock is not None:
            return lock
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        time.sleep(min(retry_delay, remaining))


def _delete_marker_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        pass


def _acquire_instance_lock(
    lock_folder: Path, deadline: float, retry_delay: float
) -> Optional[ConcurrentLock]:
    marker_prefix = f"{INSTANCE_LOCK_PREFIX}{int(time.time() * 1000):013d}_"
    index = 0
    while True:
        lock = acquire_lock(lock_folder / f"{marker_prefix}{index}", 0, 0)
        if lock is not None:
            atexit.register(_delete_marker_quietly, lock.path)
            return lock
        index += 1
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        time.sleep(min(retry_delay, remaining))


def _remove_instance_marker(marker: Path) -> bool:
    """
    Remove an instance marker if no running instance holds it.

    Every instance acquisition happens under the global lock, which the caller
    holds, so nothing can re-lock the marker between release and unlink.
    """
    lock = acquire_lock(marker, 0, 0)
    if lock is None:
        logger.info(f"Instance still running, marker is locked: {marker.name}")
        return False
    lock.release()
    try:
        marker.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to delete instance marker {marker}: {e}")
        return False
    return True


def _updater_preconditions_met(lock_folder: Path) -> bool:
    probe = acquire_lock(lock_folder / UPDATER_LOCK_NAME, 0, 0)
    if probe is None:
        logger.info("Another downloader or updater holds the updater lock")
        return False
    probe.release()

    for marker in sorted(lock_folder.iterdir()):
        if not INSTANCE_LOCK_PATTERN.match(marker.name):
            continue
        if not _remove_instance_marker(marker):
            return False
    return True


def acquire_typed_lock(
    lock_type: LockType,
    lock_folder: Path | str,
    timeout: float,
    retry_delay: float,
) -> Optional[ConcurrentLock]:
    """
    Acquire a typed lock inside `lock_folder`.

    The whole decision runs while holding the folder's global lock. The global
    lock is released before returning, except for UPDATER where it *is* the
    returned lock.

    Args:
        lock_type: INSTANCE, DOWNLOADER or UPDATER.
        lock_folder: Shared lock folder, must exist.
        timeout: Seconds of budget, shared by the global lock and the typed lock.
        retry_delay: Seconds between attempts.

    Returns:
        The held lock, or None on contention.

    Raises:
        LockFolderError: If `lock_folder` is not a directory.
        ValueError: If `retry_delay` is negative.
    """
    lock_folder = Path(lock_folder)
    if not lock_folder.is_dir():
        raise LockFolderError(f"Lock folder is not a directory: {lock_folder}")
    if retry_delay < 0:
        raise ValueError(f"retry_delay must be >= 0, got {retry_delay}")

    deadline = time.monotonic() + max(timeout, 0)
    global_lock = acquire_lock(lock_folder / GLOBAL_LOCK_NAME, timeout, retry_delay)
    if global_lock is None:
        logger.info(f"Global lock busy, cannot acquire {lock_type.name} lock")
        return None

    result: Optional[ConcurrentLock] = None
    try:
        match lock_type:
            case LockType.INSTANCE:
                result = _acquire_instance_lock(lock_folder, deadline, retry_delay)
            case LockType.DOWNLOADER:
                result = acquire_lock(lock_folder / UPDATER_LOCK_NAME, 0, 0)
            case LockType.UPDATER:
                if _updater_preconditions_met(lock_folder):
                    result = global_lock
    finally:
        if result is not global_lock:
            global_lock.release()

    if result is None:
        logger.info(f"Failed to acquire {lock_type.name} lock in {lock_folder}")
    else:
        logger.debug(f"Acquired {lock_type.name} lock: {result.path}")
    return result
