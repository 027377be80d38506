"""
X server supervision.

The greeter owns exactly one X server process per run. It lives in the
module-level DisplayServer slot and is only touched through
start_display_server() / stop_display_server(), which serialize on one
lock and may be called from any thread.

Readiness is confirmed by completing an X11 connection setup handshake
on the server's Unix socket, not by the process merely existing.
"""

import logging
import os
import socket
import struct
import subprocess
import threading
import time

from vtgreet.config import GreeterConfig
from vtgreet.errors import ChildSpawnFailure, DisplayServerTimeout

log = logging.getLogger("vtgreet.display")

X11_SOCKET_DIR = "/tmp/.X11-unix"
PROBE_TIMEOUT = 0.5
STOP_TIMEOUT = 5.0

_SETUP_FAILED = 0
_SETUP_SUCCESS = 1
_SETUP_AUTHENTICATE = 2


# ---------------------------------------------------------------------------
# X11 connection probe
# ---------------------------------------------------------------------------

class DisplayRefused(ConnectionError):
    """The X server answered the connection setup with Failed/Authenticate."""


def display_socket_path(display: str) -> str:
    """':1' or ':1.0' -> /tmp/.X11-unix/X1. Only local displays are supported."""
    host, sep, rest = display.partition(":")
    if not sep or host or not rest:
        raise ValueError(f"Not a local display name: {display!r}")
    number = rest.split(".", 1)[0]
    if not number.isdigit():
        raise ValueError(f"Not a local display name: {display!r}")
    return os.path.join(X11_SOCKET_DIR, f"X{number}")


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise ConnectionError("X server closed the connection")
        buf += chunk
    return buf


def probe_display(display: str, timeout: float = PROBE_TIMEOUT) -> None:
    """Open and immediately drop one X11 client connection.

    Returns when the server accepts the setup request, raises OSError
    (ConnectionRefusedError, FileNotFoundError, DisplayRefused, ...) otherwise.
    """
    path = display_socket_path(display)
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        sock.connect(path)
        # byte order 'l', protocol 11.0, no authorization
        sock.sendall(struct.pack("<cxHHHH2x", b"l", 11, 0, 0, 0))
        status, reason_len, _major, _minor, extra_len = struct.unpack(
            "<BBHHH", _recv_exact(sock, 8)
        )
        if status == _SETUP_SUCCESS:
            return
        if status == _SETUP_FAILED:
            reason = _recv_exact(sock, reason_len) if reason_len else b""
        elif status == _SETUP_AUTHENTICATE:
            reason = _recv_exact(sock, extra_len * 4) if extra_len else b""
        else:
            reason = f"unexpected setup status {status}".encode()
        raise DisplayRefused(reason.rstrip(b"\0").decode(errors="replace") or "refused")


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------

def server_command(config: GreeterConfig) -> list[str]:
    return [
        config.x_server,
        config.display,
        config.vt,
        "-dpi", str(config.dpi),
        "-nolisten", "tcp",
    ]


class DisplayServer:
    """Process-wide X server slot.

    start() spawns at most once until stop() clears the slot. The check
    and the spawn happen under the same lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._process: subprocess.Popen | None = None
        self._ready = False

    def start(self, config: GreeterConfig) -> None:
        with self._lock:
            if self._process is not None:
                log.debug("X server already started")
                return

            os.environ["DISPLAY"] = config.display
            argv = server_command(config)
            try:
                self._process = subprocess.Popen(argv, stdin=subprocess.DEVNULL)
            except OSError as e:
                raise ChildSpawnFailure(f"Could not start the X server ({argv[0]}): {e}") from e
            log.info(f"Started X server pid {self._process.pid}: {' '.join(argv)}")

            self._wait_until_ready(config)
            self._ready = True
            log.info(f"X server ready on {config.display}")

    def _wait_until_ready(self, config: GreeterConfig) -> None:
        deadline = time.monotonic() + config.ready_timeout
        while True:
            try:
                probe_display(config.display)
                return
            except OSError as e:
                last_error = str(e)
                log.debug(f"X server not ready yet: {e}")

            status = self._process.poll()
            if status is not None:
                raise ChildSpawnFailure(f"X server exited with status {status} before accepting connections")
            if time.monotonic() >= deadline:
                raise DisplayServerTimeout(config.display, config.ready_timeout, last_error)
            time.sleep(config.ready_poll_interval)

    def stop(self) -> None:
        with self._lock:
            if self._process is None:
                return
            process, self._process = self._process, None
            self._ready = False
            log.info(f"Stopping X server pid {process.pid}")
            process.kill()
            try:
                process.wait(timeout=STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                log.warning(f"X server pid {process.pid} did not exit after kill")

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._process is not None and self._ready


_server = DisplayServer()


def start_display_server(config: GreeterConfig) -> None:
    """Start the X server if needed and block until it accepts connections."""
    _server.start(config)


def stop_display_server() -> None:
    _server.stop()


def display_server_ready() -> bool:
    return _server.ready
