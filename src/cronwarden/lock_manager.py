"""
Per-job lock files for cross-process mutual exclusion.

Each job maps to ``<lock_dir>/[<environment>-]<sanitized-name>.lck``. While
held, the file carries an OS-level exclusive advisory lock and its content is
exactly the holder's PID. The modification time of the file doubles as the
start time of the current run, which is what max-runtime checks measure.

Design:
- Non-blocking exclusive lock with a small bounded retry loop
- Open handles are tracked per manager instance, keyed by lock-file path
- Double acquire / release-without-acquire are treated as caller bugs
"""
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Generator, IO, Optional

from cronwarden import system
from cronwarden.security_utils import sanitize_name

if os.name == 'nt':
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

LOCK_ATTEMPTS = 5
LOCK_RETRY_DELAY = 0.00025  # seconds


class LockError(Exception):
    """Lock file could not be created/opened, or the lock API was misused."""
    pass


class LockHeldError(LockError):
    """Another process holds the lock. Routine, not a fault."""
    pass


def _try_lock(handle: IO) -> bool:
    """Attempt a non-blocking exclusive lock; False if someone else has it."""
    try:
        if os.name == 'nt':
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    except OSError as e:
        if os.name == 'nt':
            return False
        raise LockError(f"Unable to lock file ({handle.name}): {e}")
    return True


def _unlock(handle: IO) -> None:
    if os.name == 'nt':
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def is_process_alive(pid: int) -> bool:
    """
    Probe a PID with signal 0.

    A PermissionError means the process exists but belongs to someone else,
    so it counts as alive.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class LockManager:
    """
    Acquires, releases and inspects per-job lock files.

    Example:
        locks = LockManager(environment="prod")

        locks.acquire_lock("nightly backup")
        try:
            run_backup()
        finally:
            locks.release_lock("nightly backup")

        # or
        with locks.hold("nightly backup"):
            run_backup()
    """

    def __init__(self, lock_dir: Optional[str] = None, environment: Optional[str] = None):
        """
        Initialize the lock manager.

        Args:
            lock_dir: Directory for lock files (default: system temp dir)
            environment: Optional namespace prefix for lock-file names
        """
        self.lock_dir = Path(lock_dir or system.get_temp_dir())
        self.environment = environment
        self._handles: Dict[str, IO] = {}

    def lock_file(self, name: str) -> Path:
        """
        Lock-file path for a job name.

        Args:
            name: Job name (sanitized before use)

        Returns:
            Path of the job's lock file
        """
        job = sanitize_name(name)
        if self.environment:
            env = sanitize_name(self.environment)
            return self.lock_dir / f"{env}-{job}.lck"
        return self.lock_dir / f"{job}.lck"

    def acquire_lock(self, name: str) -> None:
        """
        Take the exclusive lock for a job and stamp it with our PID.

        Args:
            name: Job name

        Raises:
            LockError: If this manager already holds the lock, or the file
                cannot be created or opened
            LockHeldError: If another holder keeps the lock for all attempts
        """
        lock_file = self.lock_file(name)
        key = str(lock_file)

        if key in self._handles:
            raise LockError(f"Lock already acquired (Lockfile: {lock_file}).")

        try:
            lock_file.touch(exist_ok=True)
        except OSError as e:
            raise LockError(f"Unable to create file (File: {lock_file}): {e}")

        try:
            handle = open(lock_file, 'r+')
        except OSError as e:
            raise LockError(f"Unable to open file (File: {lock_file}): {e}")

        for attempt in range(1, LOCK_ATTEMPTS + 1):
            if _try_lock(handle):
                self._handles[key] = handle
                handle.seek(0)
                handle.truncate()
                handle.write(str(os.getpid()))
                handle.flush()
                logger.debug(f"Lock acquired: {lock_file} (attempt {attempt})")
                return
            time.sleep(LOCK_RETRY_DELAY)

        handle.close()
        raise LockHeldError(f"Job is still locked (Lockfile: {lock_file})!")

    def release_lock(self, name: str) -> None:
        """
        Empty the lock file and drop the OS lock.

        Args:
            name: Job name

        Raises:
            LockError: If this manager does not hold the lock
        """
        lock_file = self.lock_file(name)
        key = str(lock_file)

        handle = self._handles.pop(key, None)
        if handle is None:
            raise LockError(f"Lock NOT held - bug? Lockfile: {lock_file}")

        try:
            handle.seek(0)
            handle.truncate()
            handle.flush()
            _unlock(handle)
        finally:
            handle.close()
        logger.debug(f"Lock released: {lock_file}")

    def is_held(self, name: str) -> bool:
        """True if this manager currently holds the job's lock."""
        return str(self.lock_file(name)) in self._handles

    def get_lock_age(self, name: str) -> int:
        """
        Seconds since the current holder took the lock.

        Returns 0 when the lock file is missing or empty, or when the PID in
        it is not a live process. A crashed holder therefore never counts as
        an overrun.

        Args:
            name: Job name

        Returns:
            Lock age in whole seconds
        """
        lock_file = self.lock_file(name)

        try:
            content = lock_file.read_text().strip()
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.warning(f"Cannot read lock file {lock_file}: {e}")
            return 0

        if not content:
            return 0

        try:
            pid = int(content)
        except ValueError:
            logger.warning(f"Lock file {lock_file} has unexpected content: {content!r}")
            return 0

        if not is_process_alive(pid):
            logger.debug(f"Lock holder {pid} is gone: {lock_file}")
            return 0

        try:
            mtime = lock_file.stat().st_mtime
        except FileNotFoundError:
            return 0

        return max(0, int(time.time() - mtime))

    @contextmanager
    def hold(self, name: str) -> Generator[Path, None, None]:
        """
        Context manager around acquire_lock/release_lock.

        The lock is released on every exit path once acquired.

        Yields:
            The lock-file path
        """
        self.acquire_lock(name)
        try:
            yield self.lock_file(name)
        finally:
            self.release_lock(name)

