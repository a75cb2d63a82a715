"""
Error types for svcman.
Fatal errors abort the daemon before its loop starts; per-service errors
only degrade the service named in them.
"""

from typing import Optional


class SvcmanError(Exception):
    """Base class for all svcman errors."""


class ConfigError(SvcmanError):
    """Configuration could not be loaded or a service definition is invalid."""

    def __init__(self, message: str, service: Optional[str] = None):
        self.service = service
        if service:
            message = f"[{service}] {message}"
        super().__init__(message)


class AlreadyRunning(SvcmanError):
    """The lock record is held by another daemon instance."""

    def __init__(self, path: str, pid: Optional[int] = None):
        self.path = path
        self.pid = pid
        detail = f" (PID {pid})" if pid else ""
        super().__init__(f"Daemon already running{detail}: lock held at {path}")


class LockError(SvcmanError):
    """Lock record could not be created, written or read."""


class SignalSetupError(SvcmanError):
    """Termination signal handlers could not be installed."""


class ServiceError(SvcmanError):
    """Base class for errors scoped to one service."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"[{service}] {message}")


class SpawnError(ServiceError):
    """Run command could not be started."""


class KillError(ServiceError):
    """Process group could not be terminated."""


class CloneError(ServiceError):
    """Repository could not be cloned."""


class FetchError(ServiceError):
    """Fetch from the origin remote failed."""
