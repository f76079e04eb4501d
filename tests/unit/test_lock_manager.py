"""
Unit tests for the per-job lock manager.

Tests use real lock files (flock) under a private temp directory.
"""
import os
import subprocess
import time

import pytest

from cronwarden import lock_manager
from cronwarden.lock_manager import (
    LOCK_ATTEMPTS,
    LockError,
    LockHeldError,
    LockManager,
    is_process_alive,
)

pytestmark = pytest.mark.skipif(os.name == 'nt', reason="flock semantics are POSIX-only")


@pytest.fixture
def locks(lock_dir):
    return LockManager(lock_dir=str(lock_dir))


def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


class TestLockFileNaming:

    def test_sanitized_name(self, locks, lock_dir):
        """Lock files use the sanitized job name."""
        assert locks.lock_file("Nightly Backup!") == lock_dir / "nightly_backup.lck"

    def test_environment_prefix(self, lock_dir):
        """The environment prefixes the lock name."""
        locks = LockManager(lock_dir=str(lock_dir), environment="Prod")
        assert locks.lock_file("backup") == lock_dir / "prod-backup.lck"

    def test_default_dir_is_temp_dir(self):
        """Locks default to the system temp dir."""
        import tempfile
        assert LockManager().lock_dir == LockManager(lock_dir=tempfile.gettempdir()).lock_dir


class TestAcquireRelease:

    def test_acquire_writes_pid(self, locks):
        """The holder's PID is written into the lock file."""
        locks.acquire_lock("job")
        try:
            assert locks.lock_file("job").read_text() == str(os.getpid())
            assert locks.is_held("job")
        finally:
            locks.release_lock("job")

    def test_release_empties_file(self, locks):
        """Release truncates the lock file."""
        locks.acquire_lock("job")
        locks.release_lock("job")
        assert locks.lock_file("job").read_text() == ""
        assert not locks.is_held("job")

    def test_acquire_release_acquire(self, locks):
        """Release leaves no residual OS lock behind."""
        locks.acquire_lock("job")
        locks.release_lock("job")
        locks.acquire_lock("job")
        locks.release_lock("job")

    def test_released_lock_available_to_other_manager(self, lock_dir, locks):
        """A released lock can be taken by another holder."""
        locks.acquire_lock("job")
        locks.release_lock("job")

        other = LockManager(lock_dir=str(lock_dir))
        other.acquire_lock("job")
        other.release_lock("job")

    def test_double_acquire_is_a_bug(self, locks):
        """Acquiring twice in one manager is a plain LockError."""
        locks.acquire_lock("job")
        try:
            with pytest.raises(LockError, match="Lock already acquired") as exc_info:
                locks.acquire_lock("job")
            assert not isinstance(exc_info.value, LockHeldError)
        finally:
            locks.release_lock("job")

    def test_release_without_acquire_is_a_bug(self, locks):
        """Releasing an unheld lock is a LockError."""
        with pytest.raises(LockError, match="Lock NOT held"):
            locks.release_lock("job")

    def test_held_by_other_holder(self, lock_dir, locks):
        """A second holder (separate open file) gets LockHeldError."""
        locks.acquire_lock("job")
        try:
            other = LockManager(lock_dir=str(lock_dir))
            with pytest.raises(LockHeldError, match="Job is still locked"):
                other.acquire_lock("job")
            assert not other.is_held("job")
        finally:
            locks.release_lock("job")

    def test_bounded_retries(self, lock_dir, locks, monkeypatch):
        """Acquisition gives up after a fixed number of short sleeps."""
        sleeps = []
        monkeypatch.setattr(lock_manager.time, "sleep", lambda s: sleeps.append(s))

        locks.acquire_lock("job")
        try:
            with pytest.raises(LockHeldError):
                LockManager(lock_dir=str(lock_dir)).acquire_lock("job")
        finally:
            locks.release_lock("job")

        assert len(sleeps) == LOCK_ATTEMPTS
        assert all(s == lock_manager.LOCK_RETRY_DELAY for s in sleeps)

    def test_unwritable_lock_dir(self, tmp_path):
        """A missing lock directory is a hard LockError."""
        locks = LockManager(lock_dir=str(tmp_path / "missing" / "dir"))
        with pytest.raises(LockError, match="Unable to create file") as exc_info:
            locks.acquire_lock("job")
        assert not isinstance(exc_info.value, LockHeldError)

    def test_hold_releases_on_error(self, locks):
        """hold() releases the lock when the body raises."""
        with pytest.raises(RuntimeError):
            with locks.hold("job") as path:
                assert path == locks.lock_file("job")
                raise RuntimeError("boom")
        assert not locks.is_held("job")
        locks.acquire_lock("job")
        locks.release_lock("job")

    def test_independent_managers_track_own_handles(self, lock_dir):
        """Managers only know about their own locks."""
        a = LockManager(lock_dir=str(lock_dir))
        b = LockManager(lock_dir=str(lock_dir))
        a.acquire_lock("one")
        b.acquire_lock("two")
        try:
            assert a.is_held("one") and not a.is_held("two")
            assert b.is_held("two") and not b.is_held("one")
        finally:
            a.release_lock("one")
            b.release_lock("two")


class TestLockAge:

    def test_missing_file(self, locks):
        """No lock file means age zero."""
        assert locks.get_lock_age("job") == 0

    def test_empty_file(self, locks):
        """An empty lock file means age zero."""
        locks.lock_file("job").write_text("")
        assert locks.get_lock_age("job") == 0

    def test_garbage_content(self, locks):
        """Non-numeric content means age zero."""
        locks.lock_file("job").write_text("not-a-pid")
        assert locks.get_lock_age("job") == 0

    def test_zero_right_after_acquire(self, locks):
        """A fresh lock is zero seconds old."""
        locks.acquire_lock("job")
        try:
            assert locks.get_lock_age("job") == 0
        finally:
            locks.release_lock("job")

    def test_grows_with_elapsed_time(self, locks):
        """Age follows the lock file's mtime while the holder lives."""
        locks.acquire_lock("job")
        try:
            path = locks.lock_file("job")
            now = time.time()
            os.utime(path, (now - 5, now - 5))
            first = locks.get_lock_age("job")
            os.utime(path, (now - 30, now - 30))
            second = locks.get_lock_age("job")
        finally:
            locks.release_lock("job")

        assert first >= 5
        assert second >= 30
        assert second > first

    def test_dead_holder(self, locks):
        """A crashed holder's lock has zero age."""
        path = locks.lock_file("job")
        path.write_text(str(dead_pid()))
        now = time.time()
        os.utime(path, (now - 600, now - 600))
        assert locks.get_lock_age("job") == 0

    def test_zero_after_release(self, locks):
        """A released lock has no age."""
        locks.acquire_lock("job")
        path = locks.lock_file("job")
        now = time.time()
        os.utime(path, (now - 600, now - 600))
        locks.release_lock("job")
        assert locks.get_lock_age("job") == 0


class TestIsProcessAlive:

    def test_self(self):
        """The current process is alive."""
        assert is_process_alive(os.getpid()) is True

    def test_dead(self):
        """A reaped child is not alive."""
        assert is_process_alive(dead_pid()) is False

    def test_invalid(self):
        """Non-positive PIDs are never alive."""
        assert is_process_alive(0) is False
        assert is_process_alive(-1) is False
