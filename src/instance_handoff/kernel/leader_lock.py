"""System-wide named lock that elects the primary instance.

The lock is an OS advisory lock on a file named after the instance token
(flock on POSIX, msvcrt byte-range lock on Windows). The OS drops such locks
when the holder dies, so a lock abandoned by a crashed primary is simply
acquirable by the next launch.
"""

from __future__ import annotations

import errno
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Dict, Optional

from ..errors import LockAcquisitionError, LockContextClosedError
from .lock_context import LockContext

logger = logging.getLogger("instance_handoff.leader_lock")

_CONTENTION_ERRNOS = {errno.EACCES, errno.EAGAIN, errno.EWOULDBLOCK, errno.EDEADLK}

# Re-entrance counter per lock file for this process. A lock that is already
# held here must never be acquired a second time (flock would even allow it
# on a fresh descriptor on some platforms).
_HELD_LOCK = threading.Lock()
_HELD: Dict[str, int] = {}


def _open_lock_file(path: Path) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o666)
    except PermissionError:
        # Global lock file created by another user; flock works on read-only fds.
        fd = os.open(str(path), os.O_RDONLY)
    if hasattr(os, "set_inheritable"):
        os.set_inheritable(fd, False)
    return fd


def _os_try_lock(fd: int) -> bool:
    try:
        if sys.platform == "win32":
            import msvcrt

            os.lseek(fd, 0, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            import fcntl

            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except OSError as e:
        if e.errno in _CONTENTION_ERRNOS:
            return False
        raise


def _os_unlock(fd: int) -> None:
    if sys.platform == "win32":
        import msvcrt

        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


def _write_owner(fd: int) -> None:
    try:
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
    except OSError:
        # Read-only descriptor; the pid is informational only.
        pass


def held_count(lock_path: Path) -> int:
    with _HELD_LOCK:
        return _HELD.get(str(Path(lock_path).absolute()), 0)


class LeaderLock:
    """Non-blocking named lock whose operations all run on a LockContext thread."""

    def __init__(self, lock_name: str, lock_path: Path, context: LockContext) -> None:
        self.lock_name = lock_name
        self.lock_path = Path(lock_path)
        self._context = context
        self._key = str(self.lock_path.absolute())
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def try_acquire(self) -> bool:
        return self._context.execute(self._try_acquire_on_context)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            self._context.execute(self._release_on_context)
        except LockContextClosedError:
            # Coordination thread already stopped; unlock from here instead.
            self._release_on_context()

    def _try_acquire_on_context(self) -> bool:
        if self._fd is not None:
            return False
        with _HELD_LOCK:
            if _HELD.get(self._key, 0) > 0:
                logger.debug("lock %s already held in this process", self.lock_name)
                return False
            _HELD[self._key] = 1
        fd: Optional[int] = None
        try:
            fd = _open_lock_file(self.lock_path)
            acquired = _os_try_lock(fd)
        except OSError as e:
            self._forget()
            if fd is not None:
                os.close(fd)
            raise LockAcquisitionError(f"cannot lock {self.lock_path}: {e}") from e
        if not acquired:
            self._forget()
            os.close(fd)
            return False
        _write_owner(fd)
        self._fd = fd
        logger.info(
            "acquired instance lock %s (pid=%s)",
            self.lock_name,
            os.getpid(),
            extra={"op": "lock_acquire"},
        )
        return True

    def _release_on_context(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            _os_unlock(fd)
        except OSError as e:
            logger.warning("failed to unlock %s: %s", self.lock_name, e)
        finally:
            os.close(fd)
            self._forget()
        logger.info("released instance lock %s", self.lock_name, extra={"op": "lock_release"})

    def _forget(self) -> None:
        with _HELD_LOCK:
            _HELD.pop(self._key, None)
