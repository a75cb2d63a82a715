"""
Process manager for svcman.
Spawns service commands as process groups and kills whole groups.
"""

import os
import signal
import subprocess
import time
import logging
import shlex
from typing import Optional, Dict, List
from dataclasses import dataclass, field

import psutil

from svcman.errors import SpawnError, KillError


@dataclass
class ProcessGroup:
    """Handle to a spawned process group."""
    name: str
    popen: subprocess.Popen
    workdir: str
    started_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def pgid(self) -> int:
        # start_new_session makes the leader's PID the group ID
        return self.popen.pid

    def is_running(self) -> bool:
        return self.popen.poll() is None


class ProcessManager:
    """
    Starts and stops service process groups.
    """

    def __init__(self, log_dir: Optional[str] = None):
        """
        Initialize ProcessManager.

        Args:
            log_dir: Directory for per-service output logs; when None the
                children inherit the daemon's stdout and stderr
        """
        self.log_dir = log_dir
        self.logger = logging.getLogger(__name__)

    def build_environment(self, env_overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Build the environment for a service.

        The daemon's PATH is always passed through explicitly, then every
        override is applied on top.

        Args:
            env_overrides: Extra environment variables for the service

        Returns:
            Environment mapping for the child process
        """
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", os.defpath)
        if env_overrides:
            env.update(env_overrides)
        return env

    def spawn(
        self,
        name: str,
        workdir: str,
        command_line: str,
        env_overrides: Optional[Dict[str, str]] = None
    ) -> ProcessGroup:
        """
        Start a command as the leader of a new process group.

        Args:
            name: Service name
            workdir: Directory the command runs in
            command_line: Command line, split with shell quoting rules
            env_overrides: Extra environment variables

        Returns:
            ProcessGroup handle

        Raises:
            SpawnError: If the command is empty or cannot be started
        """
        try:
            cmd_parts = shlex.split(command_line)
        except ValueError as e:
            raise SpawnError(name, f"Invalid run_command {command_line!r}: {e}") from e
        if not cmd_parts:
            raise SpawnError(name, "run_command is empty")

        if not os.path.isdir(workdir):
            raise SpawnError(name, f"Working directory does not exist: {workdir}")

        self.logger.info(f"[{name}] Starting in {workdir}: {command_line}")

        log_file = None
        try:
            if self.log_dir:
                os.makedirs(self.log_dir, exist_ok=True)
                log_file = open(os.path.join(self.log_dir, f"{name}.log"), 'ab')

            popen = subprocess.Popen(
                cmd_parts,
                cwd=workdir,
                env=self.build_environment(env_overrides),
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT if log_file else None,
                start_new_session=True,  # new session, new process group
            )
        except OSError as e:
            raise SpawnError(name, f"Failed to start {command_line!r}: {e}") from e
        finally:
            # the child holds its own descriptor
            if log_file:
                log_file.close()

        self.logger.info(f"[{name}] Spawned process group {popen.pid}")
        return ProcessGroup(name=name, popen=popen, workdir=workdir)

    def kill(self, handle: ProcessGroup, timeout: float = 5) -> None:
        """
        Terminate a whole process group.

        Sends SIGTERM to the group, waits for the leader, then sends SIGKILL
        to the group so that no descendant outlives the call.

        Args:
            handle: Process group to kill
            timeout: Seconds to wait for the leader after SIGTERM

        Raises:
            KillError: If the group is already gone or cannot be signalled
        """
        name = handle.name
        pgid = handle.pgid

        self.logger.info(f"[{name}] Sending SIGTERM to process group {pgid}")
        try:
            os.killpg(pgid, signal.SIGTERM)
        except ProcessLookupError:
            # reap a leader that exited on its own
            handle.popen.poll()
            raise KillError(name, f"Process group {pgid} has already exited")
        except PermissionError as e:
            raise KillError(name, f"Not permitted to signal process group {pgid}: {e}") from e

        try:
            handle.popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.logger.warning(
                f"[{name}] Process group {pgid} did not terminate after "
                f"{timeout} seconds, sending SIGKILL"
            )

        # take down stragglers that ignored SIGTERM or outlived the leader
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            raise KillError(name, f"Not permitted to kill process group {pgid}: {e}") from e

        try:
            handle.popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            raise KillError(name, f"Process group leader {pgid} did not exit after SIGKILL")

        self._wait_for_group_exit(pgid, timeout)
        self.logger.info(f"[{name}] Process group {pgid} terminated")

    def _wait_for_group_exit(self, pgid: int, timeout: float) -> None:
        # Orphaned members are reparented and reaped asynchronously after
        # SIGKILL; zombies no longer count as alive.
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not group_members(pgid):
                return
            time.sleep(0.05)
        self.logger.warning(f"Process group {pgid} still has members after SIGKILL")


def group_members(pgid: int) -> List[psutil.Process]:
    """
    List the live (non-zombie) processes in a process group.

    Args:
        pgid: Process group ID

    Returns:
        Processes whose group is pgid
    """
    members = []
    for proc in psutil.process_iter(['pid', 'status']):
        try:
            if proc.info['status'] == psutil.STATUS_ZOMBIE:
                continue
            if os.getpgid(proc.pid) == pgid:
                members.append(proc)
        except (ProcessLookupError, psutil.Error):
            continue
    return members
