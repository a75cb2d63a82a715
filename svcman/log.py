"""
Logging setup for svcman.
"""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(debug: bool = False, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure logging for the daemon.

    Everything goes to stderr; when log_dir is given it is also written to
    <log_dir>/daemon.log.

    Args:
        debug: Log at DEBUG level instead of INFO
        log_dir: Optional directory for the daemon log file

    Returns:
        The svcman package logger
    """
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, "daemon.log")))

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )

    return logging.getLogger("svcman")
