import errno
import os
import subprocess
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from instance_handoff.errors import LockAcquisitionError
from instance_handoff.kernel.leader_lock import LeaderLock, held_count
from instance_handoff.kernel.lock_context import LockContext

_HOLDER = """
import fcntl, os, sys, time
fd = os.open(sys.argv[1], os.O_RDWR | os.O_CREAT, 0o666)
fcntl.flock(fd, fcntl.LOCK_EX)
sys.stdout.write("locked\\n")
sys.stdout.flush()
time.sleep(60)
"""


class TestLeaderLock(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.path = Path(self._td.name) / "app.lock"
        self.contexts: list = []
        self.locks: list = []

    def tearDown(self) -> None:
        for lock in self.locks:
            lock.release()
        for ctx in self.contexts:
            ctx.close(timeout=2.0)
        self._td.cleanup()

    def _lock(self) -> LeaderLock:
        ctx = LockContext(name="test-leader-lock")
        self.contexts.append(ctx)
        lock = LeaderLock("Local\\app", self.path, ctx)
        self.locks.append(lock)
        return lock

    def test_first_acquire_wins_second_rejected(self) -> None:
        a, b = self._lock(), self._lock()
        self.assertTrue(a.try_acquire())
        self.assertTrue(a.held)
        self.assertFalse(b.try_acquire())
        self.assertFalse(b.held)
        self.assertEqual(held_count(self.path), 1)

    def test_reentrant_acquire_rejected(self) -> None:
        a = self._lock()
        self.assertTrue(a.try_acquire())
        self.assertFalse(a.try_acquire())
        a.release()
        self.assertEqual(held_count(self.path), 0)

    def test_release_allows_reacquire_and_is_idempotent(self) -> None:
        a, b = self._lock(), self._lock()
        self.assertTrue(a.try_acquire())
        a.release()
        a.release()
        self.assertFalse(a.held)
        self.assertTrue(b.try_acquire())
        b.release()

    def test_release_without_acquire_is_noop(self) -> None:
        a = self._lock()
        a.release()
        self.assertFalse(a.held)

    def test_release_after_context_closed(self) -> None:
        a = self._lock()
        self.assertTrue(a.try_acquire())
        self.contexts[-1].close(timeout=2.0)
        a.release()
        self.assertFalse(a.held)
        self.assertTrue(self._lock().try_acquire())

    def test_concurrent_release_is_safe(self) -> None:
        a = self._lock()
        self.assertTrue(a.try_acquire())
        threads = [threading.Thread(target=a.release) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertFalse(a.held)
        self.assertEqual(held_count(self.path), 0)

    def test_stale_lock_file_is_taken_over(self) -> None:
        self.path.write_text("99999999\n", encoding="utf-8")
        a = self._lock()
        self.assertTrue(a.try_acquire())
        self.assertEqual(self.path.read_text(encoding="utf-8").strip(), str(os.getpid()))
        a.release()

    def test_lock_ops_run_on_coordination_thread(self) -> None:
        a = self._lock()
        seen = []
        with patch(
            "instance_handoff.kernel.leader_lock._os_try_lock",
            side_effect=lambda fd: seen.append(threading.get_ident()) or True,
        ), patch(
            "instance_handoff.kernel.leader_lock._os_unlock",
            side_effect=lambda fd: seen.append(threading.get_ident()),
        ):
            self.assertTrue(a.try_acquire())
            a.release()
        self.assertEqual(seen, [self.contexts[-1].thread_ident] * 2)

    @unittest.skipIf(sys.platform == "win32", "exercises the flock path")
    def test_contention_errno_returns_false(self) -> None:
        a = self._lock()
        with patch("fcntl.flock", side_effect=OSError(errno.EWOULDBLOCK, "would block")):
            self.assertFalse(a.try_acquire())
        self.assertEqual(held_count(self.path), 0)

    def test_os_failure_is_fatal(self) -> None:
        a = self._lock()
        with patch(
            "instance_handoff.kernel.leader_lock._os_try_lock",
            side_effect=OSError(errno.EIO, "I/O error"),
        ):
            with self.assertRaises(LockAcquisitionError):
                a.try_acquire()
        self.assertEqual(held_count(self.path), 0)

    @unittest.skipIf(sys.platform == "win32", "flock holder script is POSIX only")
    def test_lock_held_by_other_process_then_abandoned(self) -> None:
        proc = subprocess.Popen(
            [sys.executable, "-c", _HOLDER, str(self.path)],
            stdout=subprocess.PIPE,
            text=True,
        )
        try:
            assert proc.stdout is not None
            self.assertEqual(proc.stdout.readline().strip(), "locked")
            a = self._lock()
            self.assertFalse(a.try_acquire())
        finally:
            proc.kill()
            proc.wait(timeout=10)
            if proc.stdout is not None:
                proc.stdout.close()
        # The holder died without unlocking; the OS dropped its lock.
        deadline = time.monotonic() + 5.0
        acquired = False
        while time.monotonic() < deadline and not acquired:
            acquired = self._lock().try_acquire()
            if not acquired:
                time.sleep(0.05)
        self.assertTrue(acquired)


if __name__ == "__main__":
    unittest.main()
