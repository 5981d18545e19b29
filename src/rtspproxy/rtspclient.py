from rtspproxy.exceptions import RTSPProtocolError
from rtspproxy.helpers import RTSPParser, RTSPRequestBuilder
from typing import List, Optional, Protocol
from urllib.parse import urlparse
from loguru import logger

import socket


DEFAULT_PORT = 554
DEFAULT_TIMEOUT = 10.0
USER_AGENT = "rtspproxy/0.2"


class UpstreamClient(Protocol):
    """Operations the proxy relay needs from an upstream RTSP client."""

    def open(self) -> bool: ...
    def connected(self) -> bool: ...
    def close(self) -> None: ...
    def reset(self) -> None: ...
    def setup(self) -> bool: ...
    def describe(self) -> bytes: ...
    def options(self) -> bool: ...
    def teardown(self) -> bool: ...
    def request(self, method: str) -> bool: ...
    def add_req_header(self, name: str, value: str) -> None: ...
    def status(self) -> Optional[int]: ...
    def status_message(self) -> Optional[str]: ...
    def get_header(self, name: str) -> Optional[List[str]]: ...


class RTSPClient:
    """
    Blocking RTSP client for the upstream media source.

    One instance keeps one TCP connection to the camera and accumulates the
    headers of the request being built plus the status and headers of the
    last response. reset() clears that per-request state while leaving the
    connection open, so a client can serve a whole sequence of commands.
    Failures never raise out of the request methods: they leave the status
    unset and return False.
    """

    def __init__(self, address, media_path="/", port=DEFAULT_PORT,
                 client_port_range=None, transport_protocol="RTP/AVP;unicast",
                 timeout=DEFAULT_TIMEOUT, user_agent=USER_AGENT, **extra):
        """
        Initialize the client.

        Args:
            address (str): Hostname or IP address of the RTSP source
            media_path (str): Path of the stream on the source
            port (int): RTSP port of the source
            client_port_range (str): RTP/RTCP client ports, e.g. "6970-6971"
            transport_protocol (str): Transport spec used by SETUP
            timeout (float): Socket timeout in seconds
            user_agent (str): Value of the User-Agent request header
            **extra: Further options, kept for reference only
        """
        self.address = address
        self.port = int(port)
        self.media_path = media_path if media_path.startswith("/") else "/" + media_path
        self.client_port_range = client_port_range
        self.transport_protocol = transport_protocol
        self.timeout = float(timeout) if timeout is not None else None
        self.user_agent = user_agent
        self.extra = extra

        self.session_id = None
        self.cseq = 1
        self._socket = None
        self._rfile = None
        self._req_headers = []
        self._response = None

    @classmethod
    def from_uri(cls, uri, **opts):
        """
        Build a client from an rtsp:// URI; explicit options win over URI parts.
        """
        parsed = urlparse(uri)
        settings = {
            "address": parsed.hostname,
            "port": parsed.port or DEFAULT_PORT,
            "media_path": parsed.path or "/",
        }
        settings.update({k: v for k, v in opts.items() if v is not None})
        if not settings.get("address"):
            raise ValueError(f"No upstream address in {uri!r} or client options")
        return cls(**settings)

    @property
    def uri(self):
        return f"rtsp://{self.address}:{self.port}{self.media_path}"

    # connection management
    def open(self):
        """
        Connect to the upstream source.

        Returns: bool: True if the TCP connection was established
        """
        self.close()
        try:
            self._socket = socket.create_connection((self.address, self.port), timeout=self.timeout)
            self._rfile = self._socket.makefile("rb")
            logger.info(f"Connected to RTSP source at {self.address}:{self.port}")
            return True
        except OSError as e:
            logger.error(f"Couldn't connect to RTSP source {self.address}:{self.port}: {e}")
            self.close()
            return False

    def connected(self):
        return self._socket is not None

    def close(self):
        if self._rfile:
            self._rfile.close()
            self._rfile = None
        if self._socket:
            try:
                self._socket.close()
            finally:
                self._socket = None
                logger.debug(f"Connection to {self.address}:{self.port} closed")

    def reset(self):
        """Forget the request headers and the last response."""
        self._req_headers = []
        self._response = None

    # request state
    def add_req_header(self, name, value):
        self._req_headers.append((name, value))

    def _has_req_header(self, name):
        return any(key.lower() == name.lower() for key, _ in self._req_headers)

    def status(self):
        return self._response.status_code if self._response else None

    def status_message(self):
        return self._response.status_message if self._response else None

    def get_header(self, name):
        return self._response.get_header(name) if self._response else None

    # RTSP methods
    def _send_request(self, method):
        """
        Send one request with the accumulated headers and read the response.

        Returns: bool: True if a 2xx response was received
        """
        if not self.connected() and not self.open():
            return False

        headers = list(self._req_headers)
        if self.session_id and not self._has_req_header("Session"):
            headers.append(("Session", self.session_id))

        request = RTSPRequestBuilder.build(method, self.uri, self.cseq, headers, self.user_agent)
        self.cseq += 1
        logger.debug(f"Sending {method} to {self.address}:{self.port}: {request!r}")
        try:
            self._socket.sendall(request)
            self._response = RTSPParser.read_response(self._rfile)
        except (OSError, RTSPProtocolError) as e:
            logger.error(f"{method} to {self.address}:{self.port} failed: {e}")
            self._response = None
            self.close()
            return False

        logger.debug(f"Response: {self._response.status_code} {self._response.status_message}")
        session = self._response.get_header("Session")
        if session:
            self.session_id = session[0].split(";")[0].strip()
        return 200 <= self._response.status_code < 300

    def request(self, method):
        return self._send_request(method.upper())

    def options(self):
        return self._send_request("OPTIONS")

    def describe(self):
        """
        Send DESCRIBE.

        Returns: bytes: The session description, empty on failure
        """
        if not self._has_req_header("Accept"):
            self.add_req_header("Accept", "application/sdp")
        if not self._send_request("DESCRIBE"):
            return b""
        return self._response.body

    def setup(self):
        if not self._has_req_header("Transport"):
            transport = self.transport_protocol
            if self.client_port_range:
                transport += f";client_port={self.client_port_range}"
            self.add_req_header("Transport", transport)
        return self._send_request("SETUP")

    def play(self):
        return self._send_request("PLAY")

    def pause(self):
        return self._send_request("PAUSE")

    def teardown(self):
        ok = self._send_request("TEARDOWN")
        self.session_id = None
        return ok
