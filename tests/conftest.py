"""
pytest configuration and fixtures.
"""

import socket
import threading
from typing import Generator, List, Optional
import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rtspproxy.session import SessionRegistry


class FakeUpstream:
    """In-memory upstream client recording every call the relay makes."""

    def __init__(self, uri=None, connect_ok=True, status=200, message="OK",
                 headers=None, body=b"", **opts):
        self.uri = uri
        self.opts = opts
        self.connect_ok = connect_ok
        self.next_status = status
        self.next_message = message
        self.next_headers = headers or {}
        self.body = body
        self.calls: List[str] = []
        self.added: List[tuple] = []
        self.is_connected = False
        self.closed = False
        self._status: Optional[int] = None
        self._message: Optional[str] = None
        self._headers = {}

    def open(self):
        self.calls.append("open")
        self.is_connected = self.connect_ok
        return self.connect_ok

    def connected(self):
        return self.is_connected

    def close(self):
        self.closed = True
        self.is_connected = False

    def reset(self):
        self.calls.append("reset")
        self._status = None
        self._message = None
        self._headers = {}

    def _answer(self, call):
        self.calls.append(call)
        self._status = self.next_status
        self._message = self.next_message
        self._headers = dict(self.next_headers)
        return self._status is not None and 200 <= self._status < 300

    def setup(self):
        return self._answer("setup")

    def describe(self):
        self._answer("describe")
        return self.body

    def options(self):
        return self._answer("options")

    def teardown(self):
        return self._answer("teardown")

    def request(self, method):
        return self._answer(f"request:{method}")

    def add_req_header(self, name, value):
        self.added.append((name, value))

    def status(self):
        return self._status

    def status_message(self):
        return self._message

    def get_header(self, name):
        return self._headers.get(name)


class FakeUpstreamFactory:
    """Client factory handing out FakeUpstream instances."""

    def __init__(self, **defaults):
        self.defaults = defaults
        self.created: List[FakeUpstream] = []

    def __call__(self, uri, **opts):
        client = FakeUpstream(uri, **{**self.defaults, **opts})
        self.created.append(client)
        return client

    @property
    def client(self) -> FakeUpstream:
        return self.created[-1]


@pytest.fixture
def client_config() -> dict:
    """Upstream configuration as the connection server passes it."""
    return {
        "address": "10.0.1.105",
        "media_path": "/mpeg4/media.amp",
        "client_port_range": "6970-6971",
        "transport_protocol": "RTP/AVP;unicast",
    }


@pytest.fixture
def factory() -> FakeUpstreamFactory:
    return FakeUpstreamFactory()


@pytest.fixture
def registry(client_config, factory) -> SessionRegistry:
    return SessionRegistry(client_config, factory)


class FakeCamera:
    """
    Minimal RTSP source on a local socket.

    Answers each request read from the single accepted connection with the
    next canned response, and records the raw requests it got.
    """

    def __init__(self, responses: List[bytes]):
        self.responses = list(responses)
        self.requests: List[bytes] = []
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))
        self._socket.listen(1)
        self._socket.settimeout(5.0)
        self.port = self._socket.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def _serve(self):
        try:
            conn, _ = self._socket.accept()
        except OSError:
            return
        with conn, conn.makefile("rb") as rfile:
            while self.responses:
                lines = []
                while True:
                    line = rfile.readline()
                    if not line:
                        return
                    lines.append(line)
                    if line == b"\r\n":
                        break
                self.requests.append(b"".join(lines))
                conn.sendall(self.responses.pop(0))

    def stop(self):
        self._socket.close()
        self._thread.join(timeout=5.0)


@pytest.fixture
def camera_factory() -> Generator:
    """Start FakeCamera instances and stop them after the test."""
    cameras = []

    def make(*responses: bytes) -> FakeCamera:
        camera = FakeCamera(list(responses)).start()
        cameras.append(camera)
        return camera

    yield make

    for camera in cameras:
        camera.stop()


@pytest.fixture
def free_port() -> int:
    """Get a port nobody listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]
