"""
Tests for the singleton guard and the stop operation.
"""

import os
import signal
import subprocess
import pytest

from svcman.errors import AlreadyRunning, LockError
from svcman.lock import SingletonGuard, stop_daemon, default_lock_path

from conftest import SKIP_ON_WINDOWS


def _dead_pid() -> int:
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


class TestAcquire:
    """Tests for exclusive acquisition."""

    def test_acquire_creates_lock_record(self, lock_path):
        guard = SingletonGuard(lock_path)

        guard.acquire()

        assert os.path.exists(lock_path)
        assert guard.held
        guard.release()

    def test_second_guard_fails_with_already_running(self, lock_path):
        """Test that a second acquire without release fails."""
        first = SingletonGuard(lock_path)
        first.acquire()
        first.write_pid()

        second = SingletonGuard(lock_path)
        with pytest.raises(AlreadyRunning) as exc_info:
            second.acquire()

        assert exc_info.value.pid == os.getpid()
        assert not second.held
        first.release()

    def test_same_guard_twice_fails(self, lock_path):
        """Process identity does not matter: re-acquiring is refused too."""
        guard = SingletonGuard(lock_path)
        guard.acquire()

        with pytest.raises(AlreadyRunning):
            guard.acquire()

        guard.release()

    def test_acquire_after_release_succeeds(self, lock_path):
        guard = SingletonGuard(lock_path)
        guard.acquire()
        guard.release()

        guard.acquire()

        assert guard.held
        guard.release()

    def test_stale_lock_from_dead_process_is_replaced(self, lock_path):
        with open(lock_path, 'w') as f:
            f.write(str(_dead_pid()))

        guard = SingletonGuard(lock_path)
        guard.acquire()

        assert guard.held
        guard.release()
        assert not os.path.exists(lock_path)

    def test_empty_lock_record_is_not_stale(self, lock_path):
        open(lock_path, 'w').close()

        with pytest.raises(AlreadyRunning):
            SingletonGuard(lock_path).acquire()

    def test_io_error_is_lock_error(self, temp_dir):
        guard = SingletonGuard(os.path.join(temp_dir, "missing", "dir", "svcman.pid"))

        with pytest.raises(LockError):
            guard.acquire()

    def test_context_manager_releases(self, lock_path):
        with SingletonGuard(lock_path) as guard:
            assert guard.is_held()

        assert not os.path.exists(lock_path)

    def test_default_lock_path_from_environment(self, lock_path):
        assert default_lock_path() == lock_path
        assert SingletonGuard().path == lock_path


class TestPidRecord:
    """Tests for reading and writing the PID."""

    def test_write_and_read_pid(self, lock_path):
        guard = SingletonGuard(lock_path)
        guard.acquire()

        guard.write_pid(4242)

        with open(lock_path) as f:
            assert f.read() == "4242"
        assert guard.read_pid() == 4242
        guard.release()

    def test_read_pid_without_record(self, lock_path):
        assert SingletonGuard(lock_path).read_pid() is None

    def test_read_pid_rejects_garbage(self, lock_path):
        with open(lock_path, 'w') as f:
            f.write("not-a-pid")

        with pytest.raises(LockError):
            SingletonGuard(lock_path).read_pid()

    def test_release_only_removes_own_record(self, lock_path):
        owner = SingletonGuard(lock_path)
        owner.acquire()

        SingletonGuard(lock_path).release()

        assert os.path.exists(lock_path)
        owner.release()

    def test_wait_until_released_times_out(self, lock_path):
        guard = SingletonGuard(lock_path)
        guard.acquire()

        assert guard.wait_until_released(timeout=0.3, poll=0.05) is False
        guard.release()
        assert guard.wait_until_released(timeout=0.3, poll=0.05) is True


class TestStopDaemon:
    """Tests for signalling a running daemon."""

    def test_stop_without_daemon_is_noop(self, lock_path):
        assert stop_daemon(lock_path) is False

    @SKIP_ON_WINDOWS
    def test_stop_sends_sigterm_and_keeps_record(self, lock_path):
        proc = subprocess.Popen(["sleep", "30"])
        try:
            with open(lock_path, 'w') as f:
                f.write(str(proc.pid))

            assert stop_daemon(lock_path) is True

            assert proc.wait(timeout=5) == -signal.SIGTERM
            # the daemon removes its own record while draining
            assert os.path.exists(lock_path)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    def test_stop_with_stale_record(self, lock_path):
        with open(lock_path, 'w') as f:
            f.write(str(_dead_pid()))

        with pytest.raises(LockError, match="Stale"):
            stop_daemon(lock_path)

    def test_stop_with_unparsable_record(self, lock_path):
        with open(lock_path, 'w') as f:
            f.write("garbage")

        with pytest.raises(LockError):
            stop_daemon(lock_path)
