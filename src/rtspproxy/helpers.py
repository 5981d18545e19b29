from rtspproxy.exceptions import MalformedHeader, MalformedStartLine, RTSPProtocolError
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from loguru import logger

import re


CRLF = "\r\n"
ENCODING = "latin-1"


@dataclass
class Request:
    """A downstream RTSP request, complete once its blank line was read."""
    method: str
    uri: str
    protocol: str
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class Response:
    """A response on its way back to the downstream client."""
    status_code: int
    status_message: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    sequence: List[Tuple[str, str]] = field(default_factory=list)
    body: Optional[bytes] = None


@dataclass
class UpstreamResponse:
    """A response read from the upstream RTSP source."""
    status_code: int
    status_message: str
    headers: Dict[str, List[str]] = field(default_factory=dict)
    body: bytes = b""

    def get_header(self, name):
        return self.headers.get(name.lower())


# === RTSP Response Builder ===
class RTSPResponseBuilder:
    @staticmethod
    def build(response: Response) -> bytes:
        lines = [f"RTSP/1.0 {response.status_code} {response.status_message}"]
        lines.extend(f"{name}: {value}" for name, value in response.headers)
        lines.extend(f"{name}: {value}" for name, value in response.sequence)
        head = CRLF.join(lines) + CRLF
        if not response.body:
            return (head + CRLF).encode(ENCODING)
        head += f"Content-Length: {len(response.body)}" + CRLF + CRLF
        return head.encode(ENCODING) + response.body + (CRLF + CRLF).encode(ENCODING)

    @staticmethod
    def build_status(code, message) -> bytes:
        """Bare `<code> <message>` answer used for rejected requests."""
        return f"{code} {message}{CRLF}{CRLF}".encode(ENCODING)


# === RTSP Request Builder ===
class RTSPRequestBuilder:
    @staticmethod
    def build(method, uri, cseq, headers=None, user_agent=None) -> bytes:
        lines = [
            f"{method} {uri} RTSP/1.0",
            f"CSeq: {cseq}"
        ]
        if user_agent:
            lines.append(f"User-Agent: {user_agent}")
        for name, value in (headers or []):
            lines.append(f"{name}: {value}")
        return (CRLF.join(lines) + CRLF + CRLF).encode(ENCODING)


# === RTSP Parser ===
class RTSPParser:
    START_LINE_REGEX = re.compile(r"^(\w+)\s+(\S+)(?:\s+(\S+))?\r\n\Z")
    PROTOCOL_REGEX = re.compile(r"RTSP/1\.\d", re.IGNORECASE)
    HEADER_REGEX = re.compile(r"^([-A-Za-z0-9]+)\s*:\s*(.*)\r\n\Z")
    STATUS_LINE_REGEX = re.compile(r"^RTSP/\d+\.\d+\s+(\d+)\s*(.*?)\r?\n?\Z")

    @staticmethod
    def parse_start_line(line: str) -> Tuple[str, str, str]:
        """
        Split a request start line into method, URI and protocol.

        Args: line (str): Raw line, including its line terminator

        Returns: tuple: (method, uri, protocol), method upper-cased

        Raises: MalformedStartLine: If method or URI is missing or the
            protocol is not RTSP/1.x
        """
        match = RTSPParser.START_LINE_REGEX.match(line)
        if not match:
            raise MalformedStartLine(line)
        method, uri, protocol = match.groups()
        if not protocol or not RTSPParser.PROTOCOL_REGEX.fullmatch(protocol):
            raise MalformedStartLine(line)
        return method.upper(), uri, protocol

    @staticmethod
    def parse_header(line: str) -> Tuple[str, str]:
        match = RTSPParser.HEADER_REGEX.match(line)
        if not match:
            raise MalformedHeader(line)
        return match.group(1), match.group(2)

    @staticmethod
    def read_response(rfile) -> UpstreamResponse:
        """
        Read one RTSP response (status line, headers, body) from a binary stream.

        Header values are grouped by lower-cased name, keeping every value
        in the order the server sent them. The body is read according to
        Content-Length.

        Raises: RTSPProtocolError: If the stream ends early or the status
            line is not an RTSP status line
        """
        status_line = rfile.readline().decode(ENCODING)
        if not status_line:
            raise RTSPProtocolError("Connection closed before status line")
        match = RTSPParser.STATUS_LINE_REGEX.match(status_line)
        if not match:
            raise RTSPProtocolError(f"Invalid status line: {status_line!r}")

        response = UpstreamResponse(int(match.group(1)), match.group(2).strip())
        while True:
            line = rfile.readline().decode(ENCODING)
            if not line:
                raise RTSPProtocolError("Connection closed inside headers")
            line = line.rstrip("\r\n")
            if not line:
                break
            if ":" not in line:
                logger.warning(f"Malformed RTSP header: {line}")
                continue
            key, value = line.split(":", 1)
            response.headers.setdefault(key.strip().lower(), []).append(value.strip())

        length = response.get_header("Content-Length")
        if length:
            try:
                size = int(length[-1])
            except ValueError:
                raise RTSPProtocolError(f"Invalid Content-Length: {length[-1]!r}")
            body = rfile.read(size) if size > 0 else b""
            if len(body) < size:
                raise RTSPProtocolError("Connection closed inside body")
            response.body = body
        return response


class RequestReader:
    """
    Reads downstream requests one at a time from a binary line stream.

    The reader keeps the partially read request between lines and starts
    from a clean state after every request it hands out.
    """

    def __init__(self, rfile):
        self.rfile = rfile
        self._reset()

    def _reset(self):
        self.method = None
        self.uri = None
        self.protocol = None
        self.headers = {}

    def read_request(self) -> Optional[Request]:
        """
        Read lines until a request is complete.

        Returns: Request: The next request, or None once the stream ends

        Raises: MalformedStartLine: If the start line is invalid. No
            header lines are consumed after it.
        """
        while True:
            raw = self.rfile.readline()
            if not raw:
                self._reset()
                return None
            line = raw.decode(ENCODING)
            logger.trace(f"got line: {line!r}")

            if self.method is None:
                # idle line between requests
                if line == CRLF:
                    continue
                try:
                    self.method, self.uri, self.protocol = RTSPParser.parse_start_line(line)
                except MalformedStartLine:
                    self._reset()
                    raise
                logger.debug(f"method: {self.method}, uri: {self.uri}, protocol: {self.protocol}")
                continue

            if line == CRLF:
                request = Request(self.method, self.uri, self.protocol, self.headers)
                self._reset()
                return request

            try:
                name, value = RTSPParser.parse_header(line)
            except MalformedHeader as e:
                logger.warning(str(e))
                continue
            self.headers[name] = value
