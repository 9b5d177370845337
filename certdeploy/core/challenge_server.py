"""
Temporary HTTP listener answering ACME HTTP-01 challenges.

Serves only /.well-known/acme-challenge/<token> from the shared webroot
for the duration of an issuance, then shuts down.
"""

import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

logger = logging.getLogger(__name__)

CHALLENGE_PREFIX = "/.well-known/acme-challenge/"


def is_port_free(host: str, port: int) -> bool:
    """Check whether a TCP port can be bound right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class _ChallengeHandler(BaseHTTPRequestHandler):
    challenge_dir: Path

    def do_GET(self):
        path = self.path.split("?", 1)[0]
        token = path[len(CHALLENGE_PREFIX) :] if path.startswith(CHALLENGE_PREFIX) else ""

        # Tokens are base64url; reject anything that could escape the directory
        if not token or "/" in token or token.startswith("."):
            self.send_error(404)
            return

        try:
            body = (self.challenge_dir / token).read_bytes()
        except OSError:
            self.send_error(404)
            return

        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug(f"challenge listener: {self.address_string()} {format % args}")


class ChallengeServer:
    """HTTP-01 responder bound for the duration of one issuance."""

    def __init__(self, webroot: str, host: str = "0.0.0.0", port: int = 80):
        self.challenge_dir = Path(webroot) / ".well-known" / "acme-challenge"
        self.host = host
        self.port = port
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> int | None:
        if self._server is None:
            return None
        return self._server.server_address[1]

    def start(self) -> None:
        """Bind the listener and serve in a background thread."""
        if self._server is not None:
            return
        self.challenge_dir.mkdir(parents=True, exist_ok=True)

        handler = type("ChallengeHandler", (_ChallengeHandler,), {"challenge_dir": self.challenge_dir})
        self._server = ThreadingHTTPServer((self.host, self.port), handler)
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="acme-challenge", daemon=True)
        self._thread.start()
        logger.info(f"Challenge listener started on {self.host}:{self.bound_port}")

    def stop(self) -> None:
        """Shut the listener down and release the port."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        logger.info(f"Challenge listener on {self.host}:{self.port} stopped")
        self._server = None
        self._thread = None
