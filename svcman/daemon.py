"""
Daemon process for svcman.
Starts the configured services, watches git-backed sources for upstream
changes and replaces a service's process when its source changes.
"""

import os
import sys
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from svcman.config import Config, ServiceSpec, load_config
from svcman.errors import (
    AlreadyRunning, ConfigError, CloneError, FetchError, KillError,
    LockError, SignalSetupError, SpawnError,
)
from svcman.listener import NotificationListener
from svcman.lock import SingletonGuard, default_lock_path
from svcman.log import setup_logging
from svcman.process_manager import ProcessManager, ProcessGroup
from svcman.signals import TerminationFlag, install_signal_handlers, restore_signal_handlers
from svcman.sources import SourceSync


logger = logging.getLogger(__name__)


class DaemonState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class RunningService:
    """A started service tracked by the daemon loop."""
    name: str
    handle: ProcessGroup
    workdir: str


class Daemon:
    """
    Main daemon loop that owns every running service.
    """

    def __init__(
        self,
        config: Config,
        flag: Optional[TerminationFlag] = None,
        process_manager: Optional[ProcessManager] = None,
        source_sync: Optional[SourceSync] = None,
        listener: Optional[NotificationListener] = None,
        guard: Optional[SingletonGuard] = None,
        tick: float = 1.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the daemon.

        Args:
            config: Loaded configuration, read-only from here on
            flag: Termination flag shared with the signal bridge and listener
            process_manager: Process group controller
            source_sync: Source Sync for git-backed services
            listener: Notification listener; built from the config when
                listen_port is set and none is given
            guard: Lock record to remove once draining is done
            tick: Seconds between termination flag checks
            clock: Monotonic time source
        """
        self.config = config
        self.flag = flag or TerminationFlag()
        self.process_manager = process_manager or ProcessManager(config.log_dir)
        self.source_sync = source_sync or SourceSync(config.root)
        self.listener = listener
        self.guard = guard
        self.tick = tick
        self.clock = clock

        self.state = DaemonState.STARTING
        self.services: Dict[str, RunningService] = {}
        self.last_reconcile = clock()
        self._reconcile_requested = threading.Event()

    def start_services(self) -> None:
        """
        Start every enabled service in configuration order.

        A service that fails to resolve, clone or spawn is logged and left out
        of the tracked set; the others still start.
        """
        # Each service is cloned then spawned before the next one is touched,
        # so a slow clone never delays services already declared ahead of it.
        for name, spec in self.config.services.items():
            if not spec.enabled:
                logger.debug(f"[{name}] Disabled, not starting")
                continue

            running = self.start_service(name, spec)
            if running:
                self.services[name] = running

        logger.info(f"Started {len(self.services)} of {len(self.config.services)} services")

    def start_service(self, name: str, spec: ServiceSpec) -> Optional[RunningService]:
        """
        Materialize and spawn a single service.

        Returns:
            The running service, or None if it could not be started
        """
        try:
            workdir = spec.working_dir(self.config.root, name)
        except ConfigError as e:
            logger.error(f"Not starting service: {e}")
            return None

        if spec.is_git:
            try:
                self.source_sync.ensure_present(name, spec)
            except CloneError as e:
                logger.error(f"Not starting service: {e}")
                return None

        try:
            handle = self.process_manager.spawn(name, workdir, spec.run_command, spec.env)
        except SpawnError as e:
            logger.error(f"Not starting service: {e}")
            return None

        return RunningService(name=name, handle=handle, workdir=workdir)

    def request_reconcile(self, service: Optional[str] = None) -> None:
        """
        Ask the loop to run a reconciliation pass at its next tick.
        Safe to call from any thread.
        """
        logger.info(f"Early reconciliation requested by notification for {service or 'all services'}")
        self._reconcile_requested.set()

    def reconcile_due(self) -> bool:
        if self._reconcile_requested.is_set():
            return True
        return self.clock() - self.last_reconcile >= self.config.reconcile_interval

    def reconcile(self) -> None:
        """
        Run one reconciliation pass.

        Git-backed services are checked one at a time in configuration order.
        The tracked set is rebuilt rather than edited in place so a service
        dropped by a failed update does not disturb the iteration.
        """
        self._reconcile_requested.clear()
        logger.debug("Starting reconciliation pass")

        tracked: Dict[str, RunningService] = {}
        for name, running in self.services.items():
            spec = self.config.services[name]
            if not spec.is_git or self.flag.is_set():
                tracked[name] = running
                continue

            try:
                changed = self.source_sync.check_for_update(name, spec)
            except FetchError as e:
                logger.error(f"Skipping update check this pass: {e}")
                tracked[name] = running
                continue

            if not changed:
                logger.debug(f"[{name}] Up to date")
                tracked[name] = running
                continue

            logger.info(f"[{name}] Upstream changed, updating")
            replacement = self.update_service(running, spec)
            if replacement is not None:
                tracked[name] = replacement

        self.services = tracked
        self.last_reconcile = self.clock()

    def update_service(self, running: RunningService, spec: ServiceSpec) -> Optional[RunningService]:
        """
        Stop, resync and restart one service.

        If the fresh clone fails the current process keeps running untouched.
        Any failure after the old process group was killed leaves the service
        stopped; there is no fallback to the previous source tree.

        Returns:
            The tracked entry to keep: the new process, the unchanged old one,
            or None when the service is left stopped
        """
        name = running.name

        try:
            self.source_sync.clone_update(name, spec)
        except CloneError as e:
            logger.error(f"Update abandoned, keeping current process: {e}")
            return running

        try:
            self.process_manager.kill(running.handle)
        except KillError as e:
            logger.error(f"Update failed, service removed from tracking: {e}")
            self.source_sync.discard_update(name)
            return None

        try:
            workdir = self.source_sync.replace_with_update(name)
        except OSError as e:
            logger.error(f"[{name}] Update failed replacing source, service left stopped: {e}")
            self.source_sync.discard_update(name)
            return None

        try:
            handle = self.process_manager.spawn(name, str(workdir), spec.run_command, spec.env)
        except SpawnError as e:
            logger.error(f"Update failed restarting, service left stopped: {e}")
            return None

        logger.info(f"[{name}] Updated and restarted")
        return RunningService(name=name, handle=handle, workdir=str(workdir))

    def run(self) -> None:
        """
        Start services, then tick until the termination flag is set and drain.
        """
        try:
            logger.info(f"Starting svcman daemon (PID {os.getpid()})")
            self.start_services()
            self._start_listener()

            self.last_reconcile = self.clock()
            self.state = DaemonState.RUNNING
            logger.info("Entering main loop")

            while not self.flag.wait(self.tick):
                if self.reconcile_due():
                    self.reconcile()

            logger.info("Termination requested")
        finally:
            self.drain()

    def _start_listener(self) -> None:
        if self.listener is None and self.config.listen_port is not None:
            self.listener = NotificationListener(
                self.config.listen_host,
                self.config.listen_port,
                self.flag,
                self.request_reconcile
            )

        if self.listener is not None:
            try:
                self.listener.start()
            except Exception as e:
                logger.error(f"Notification listener failed to start: {e}")

    def drain(self) -> None:
        """
        Kill every tracked process group, join the listener and remove the
        lock record. A group that fails to die does not stop the others.
        """
        self.state = DaemonState.DRAINING
        # the listener watches the same flag; make sure it winds down
        self.flag.set()

        for name, running in self.services.items():
            try:
                self.process_manager.kill(running.handle)
            except KillError as e:
                logger.error(f"Error stopping service during shutdown: {e}")
        self.services = {}

        if self.listener is not None:
            self.listener.join(timeout=5)
            if self.listener.is_alive():
                logger.warning("Notification listener did not stop within 5 seconds")

        if self.guard is not None:
            self.guard.release()

        self.state = DaemonState.STOPPED
        logger.info("Shutdown complete")


def daemon_main(config_path: str, lock_path: Optional[str] = None) -> int:
    """
    Body of the daemon process.

    Args:
        config_path: Configuration file to load
        lock_path: Lock record location (default: the configured lock path)

    Returns:
        Exit code (0 after an orderly shutdown, 1 on a fatal startup error)
    """
    setup_logging()
    guard = SingletonGuard(lock_path or default_lock_path())

    try:
        guard.acquire()
        guard.write_pid()
    except (AlreadyRunning, LockError) as e:
        logger.error(f"Cannot start daemon: {e}")
        guard.release()
        return 1

    previous_handlers = {}
    try:
        flag = TerminationFlag()
        previous_handlers = install_signal_handlers(flag)

        config = load_config(config_path)
        setup_logging(bool(config.debug), config.log_dir)

        Daemon(config, flag, guard=guard).run()
        return 0
    except (SignalSetupError, ConfigError) as e:
        logger.error(f"Cannot start daemon: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error in daemon: {e}", exc_info=True)
        return 1
    finally:
        guard.release()
        restore_signal_handlers(previous_handlers)


def start_daemon(
    config_path: str,
    fork: bool = True,
    wait: bool = False,
    lock_path: Optional[str] = None
) -> int:
    """
    Launch the daemon, in the background unless fork is False.

    The launcher takes the lock only to refuse a second instance and drops
    it before forking; the backgrounded child takes it again and writes its
    own PID.

    Args:
        config_path: Configuration file to load
        fork: Detach into a background process
        wait: Block until the daemon has exited
        lock_path: Lock record location

    Returns:
        Exit code for the launcher

    Raises:
        AlreadyRunning: If a daemon already holds the lock
        LockError: If the lock record cannot be created
    """
    lock_path = lock_path or default_lock_path()
    config_path = os.path.abspath(os.path.expanduser(config_path))

    guard = SingletonGuard(lock_path)
    guard.acquire()
    guard.release()

    if not fork:
        return daemon_main(config_path, lock_path)

    sys.stdout.flush()
    sys.stderr.flush()
    pid = os.fork()

    if pid == 0:  # Child process
        code = 1
        try:
            os.setsid()
            _redirect_stdin()
            code = daemon_main(config_path, lock_path)
        except BaseException as e:
            sys.stderr.write(f"Daemon failed: {e}\n")
            sys.stderr.flush()
        finally:
            os._exit(code)

    # Parent process
    logger.info(f"Daemon started in background with PID {pid}")
    if not wait:
        return 0
    return _wait_for_daemon(guard, pid)


def _redirect_stdin() -> None:
    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)


def _wait_for_daemon(guard: SingletonGuard, pid: int, startup_timeout: float = 10.0) -> int:
    # The lock record may not exist yet; wait for it to appear first
    deadline = time.monotonic() + startup_timeout
    while not guard.is_held():
        finished, status = os.waitpid(pid, os.WNOHANG)
        if finished:
            return os.waitstatus_to_exitcode(status)
        if time.monotonic() >= deadline:
            break
        time.sleep(0.1)

    guard.wait_until_released()
    _, status = os.waitpid(pid, 0)
    return os.waitstatus_to_exitcode(status)
