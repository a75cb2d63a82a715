"""
Singleton guard for the svcman daemon.
An exclusively created PID file proves that one daemon instance is alive
and lets `daemon --stop` find it.
"""

import logging
import os
import signal
import time
from typing import Optional

import psutil

from svcman.errors import AlreadyRunning, LockError


LOCK_PATH = "/tmp/svcman.pid"

logger = logging.getLogger(__name__)


def default_lock_path() -> str:
    """Return the lock path from SVCMAN_LOCK_PATH, falling back to /tmp/svcman.pid."""
    return os.environ.get("SVCMAN_LOCK_PATH", LOCK_PATH)


class SingletonGuard:
    """
    Exclusive lock record holding the daemon's PID.
    """

    def __init__(self, path: Optional[str] = None):
        """
        Initialize the guard.

        Args:
            path: Location of the lock record (default: SVCMAN_LOCK_PATH or /tmp/svcman.pid)
        """
        self.path = path or default_lock_path()
        self._held = False

    @property
    def held(self) -> bool:
        """Whether this guard created the current lock record."""
        return self._held

    def acquire(self) -> None:
        """
        Create the lock record, refusing if it already exists.

        A record naming a PID that no longer exists is treated as stale and
        replaced once. An empty record, or one naming a live process, always
        counts as held.

        Raises:
            AlreadyRunning: If the record is held by someone else
            LockError: On any other I/O failure
        """
        try:
            self._create()
        except AlreadyRunning:
            pid = self.read_pid_quietly()
            if pid is None or psutil.pid_exists(pid):
                raise AlreadyRunning(self.path, pid)

            logger.warning(f"Removing stale lock record {self.path} left by PID {pid}")
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise LockError(f"Failed to remove stale lock {self.path}: {e}") from e
            self._create()

    def _create(self) -> None:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise AlreadyRunning(self.path, self.read_pid_quietly())
        except OSError as e:
            raise LockError(f"Failed to create lock {self.path}: {e}") from e
        os.close(fd)
        self._held = True

    def write_pid(self, pid: Optional[int] = None) -> None:
        """
        Record the owning process ID.

        Args:
            pid: Process ID to write (default: the current process)

        Raises:
            LockError: If the record cannot be written
        """
        if pid is None:
            pid = os.getpid()
        try:
            with open(self.path, 'w') as f:
                f.write(str(pid))
        except OSError as e:
            raise LockError(f"Failed to write PID to {self.path}: {e}") from e

    def release(self) -> None:
        """Remove the lock record. Safe to call more than once."""
        if not self._held:
            return
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove lock {self.path}: {e}")
        self._held = False

    def is_held(self) -> bool:
        """Check whether any process currently holds the lock record."""
        return os.path.exists(self.path)

    def read_pid(self) -> Optional[int]:
        """
        Read the PID stored in the lock record.

        Returns:
            The PID, or None if there is no lock record

        Raises:
            LockError: If the record cannot be read or does not hold an integer
        """
        try:
            with open(self.path, 'r') as f:
                content = f.read().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LockError(f"Failed to read {self.path}: {e}") from e

        try:
            return int(content)
        except ValueError:
            raise LockError(f"Lock record {self.path} does not contain a PID: {content!r}")

    def read_pid_quietly(self) -> Optional[int]:
        try:
            return self.read_pid()
        except LockError:
            return None

    def wait_until_released(self, timeout: Optional[float] = None, poll: float = 0.2) -> bool:
        """
        Block until the lock record disappears.

        Args:
            timeout: Maximum seconds to wait (default: forever)
            poll: Seconds between checks

        Returns:
            True if the record is gone, False on timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.is_held():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(poll)
        return True

    def __enter__(self) -> "SingletonGuard":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def stop_daemon(path: Optional[str] = None) -> bool:
    """
    Ask a running daemon to terminate.

    The lock record is left in place; the daemon removes it once it has
    stopped its services.

    Args:
        path: Location of the lock record

    Returns:
        True if SIGTERM was sent, False if no daemon is running

    Raises:
        LockError: If the record is unreadable or names a process that cannot
            be signalled
    """
    guard = SingletonGuard(path)
    path = guard.path
    pid = guard.read_pid()
    if pid is None:
        logger.info("Daemon is not running")
        return False

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        raise LockError(f"Stale lock record {path}: PID {pid} is not running")
    except PermissionError as e:
        raise LockError(f"Not permitted to signal daemon PID {pid}: {e}") from e
    except OSError as e:
        raise LockError(f"Failed to signal daemon PID {pid}: {e}") from e

    logger.info(f"Sent SIGTERM to daemon PID {pid}")
    return True
