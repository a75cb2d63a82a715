"""
Termination signal bridge.
SIGTERM and SIGINT only flip a shared flag; the daemon loop polls it and
does all cleanup on the main thread.
"""

import signal
import time
from typing import Dict, Optional

from svcman.errors import SignalSetupError


TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class TerminationFlag:
    """
    Thread-shared, set-once termination flag.

    Setting it is a single attribute assignment, so it is safe from a signal
    handler that interrupts the main thread anywhere, including inside wait().
    """

    def __init__(self, poll_interval: float = 0.05):
        self._set = False
        self.poll_interval = poll_interval

    def set(self) -> None:
        self._set = True

    def is_set(self) -> bool:
        return self._set

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep until the flag is set or timeout expires; returns the flag."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._set:
            if deadline is None:
                time.sleep(self.poll_interval)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(self.poll_interval, remaining))
        return self._set

    def __bool__(self) -> bool:
        return self.is_set()


def install_signal_handlers(flag: TerminationFlag) -> Dict[int, object]:
    """
    Register handlers that set the termination flag.

    Args:
        flag: Flag shared with the daemon loop and the listener

    Returns:
        Previous handlers keyed by signal number

    Raises:
        SignalSetupError: If registration fails (e.g. outside the main thread)
    """
    def _handle(signum, frame):
        flag.set()

    previous = {}
    try:
        for signum in TERMINATION_SIGNALS:
            previous[signum] = signal.signal(signum, _handle)
    except (ValueError, OSError) as e:
        restore_signal_handlers(previous)
        raise SignalSetupError(f"Could not install signal handlers: {e}") from e

    return previous


def restore_signal_handlers(previous: Dict[int, object]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)
