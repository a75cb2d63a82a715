"""
Notification listener for svcman.
Accepts out-of-band update triggers over HTTP and asks the daemon loop to
run a reconciliation pass early.
"""

import json
import logging
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Callable, Optional

from svcman.signals import TerminationFlag


logger = logging.getLogger(__name__)


class NotificationHandler(BaseHTTPRequestHandler):
    """Handles webhook requests."""

    server: "NotificationServer"

    def do_GET(self):
        if self.path == "/health":
            self._respond(200, {"status": "ok"})
        else:
            self._respond(404, {"error": "not found"})

    def do_POST(self):
        parts = [p for p in self.path.split("?", 1)[0].split("/") if p]
        if not parts or parts[0] != "notify" or len(parts) > 2:
            self._respond(404, {"error": "not found"})
            return

        # drain the body so the client is not left blocking
        length = int(self.headers.get("Content-Length") or 0)
        if length:
            self.rfile.read(length)

        service = parts[1] if len(parts) == 2 else None
        logger.info(f"Update notification received for {service or 'all services'}")
        try:
            self.server.on_notify(service)
        except Exception as e:
            logger.error(f"Notification callback failed: {e}")
            self._respond(500, {"error": str(e)})
            return
        self._respond(202, {"accepted": True, "service": service})

    def _respond(self, status: int, body: dict):
        payload = json.dumps(body).encode('utf-8')
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")


class NotificationServer(HTTPServer):
    def __init__(self, address, on_notify: Callable[[Optional[str]], None]):
        self.on_notify = on_notify
        super().__init__(address, NotificationHandler)


class NotificationListener:
    """
    Runs the notification server on a background thread until the shared
    termination flag is set.
    """

    def __init__(
        self,
        host: str,
        port: int,
        flag: TerminationFlag,
        on_notify: Callable[[Optional[str]], None],
        poll_interval: float = 0.5
    ):
        """
        Initialize the listener.

        Args:
            host: Address to bind
            port: Port to bind (0 picks a free port)
            flag: Termination flag shared with the daemon loop
            on_notify: Called with the service name (or None) for each trigger
            poll_interval: Seconds between termination flag checks
        """
        self.host = host
        self.port = port
        self.flag = flag
        self.on_notify = on_notify
        self.poll_interval = poll_interval
        self.server: Optional[NotificationServer] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def address(self) -> Optional[tuple]:
        return self.server.server_address if self.server else None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name="svcman-listener",
            daemon=True
        )
        self._thread.start()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until the server is bound (or has given up)."""
        return self._ready.wait(timeout)

    def _run(self) -> None:
        try:
            self.server = NotificationServer((self.host, self.port), self.on_notify)
        except OSError as e:
            logger.error(f"Notification listener could not bind {self.host}:{self.port}: {e}")
            self._ready.set()
            return

        self.server.timeout = self.poll_interval
        logger.info(f"Notification listener on {self.server.server_address[0]}:{self.server.server_address[1]}")
        self._ready.set()

        try:
            while not self.flag.is_set():
                self.server.handle_request()
        except Exception as e:
            logger.error(f"Notification listener failed: {e}", exc_info=True)
        finally:
            self.server.server_close()
            logger.info("Notification listener stopped")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
