from rtspproxy.exceptions import MalformedStartLine, UpstreamUnreachable
from rtspproxy.helpers import Request, RequestReader, Response, RTSPResponseBuilder
from rtspproxy.session import SessionRegistry
from enum import Enum
from loguru import logger


# Request headers copied from the downstream request to the upstream one
REQUEST_HEADER_ALLOWLIST = (
    "Accept", "Bandwidth", "Accept-Language", "ClientChallenge", "PlayerStarttime",
    "RegionData", "GUID", "ClientID", "Transport", "Session", "x-retransmit",
    "x-dynamic-rate", "x-transport-options",
)

# Upstream response headers passed back to the downstream client
RESPONSE_HEADER_ALLOWLIST = (
    "Content-Type", "Content-Base", "Public", "Allow", "Transport", "Session",
)

# Spellings of the sequence header echoed back verbatim
SEQUENCE_HEADERS = ("CSeq", "Cseq", "cseq")

FALLBACK_STATUS = (405, "Bad request")
BAD_REQUEST_STATUS = (403, "Bad request")
NOT_FOUND_STATUS = (404, "Resource not found")


class Command(Enum):
    """RTSP methods with dedicated proxy behaviour; GENERIC covers the rest."""
    SETUP = "SETUP"
    DESCRIBE = "DESCRIBE"
    OPTIONS = "OPTIONS"
    TEARDOWN = "TEARDOWN"
    PLAY = "PLAY"
    GENERIC = None

    @classmethod
    def from_method(cls, method):
        try:
            command = cls(method.upper())
        except ValueError:
            return cls.GENERIC
        return command


class RelayState(Enum):
    IDLE = "IDLE"
    REQUEST_RECEIVED = "REQUEST_RECEIVED"
    UPSTREAM_ENSURED = "UPSTREAM_ENSURED"
    UPSTREAM_INVOKED = "UPSTREAM_INVOKED"
    RESPONSE_BUILT = "RESPONSE_BUILT"
    CONNECTION_RESET = "CONNECTION_RESET"


# Upstream operation per command; each returns (ok, body)
DISPATCH = {
    Command.SETUP: lambda client, method: (client.setup(), None),
    Command.DESCRIBE: lambda client, method: (True, client.describe()),
    Command.OPTIONS: lambda client, method: (client.options(), None),
    Command.TEARDOWN: lambda client, method: (client.teardown(), None),
}


def _generic_request(client, method):
    return client.request(method), None


RESET_BEFORE = frozenset({Command.PLAY})
RESET_AFTER = frozenset({Command.SETUP, Command.DESCRIBE, Command.TEARDOWN})


class ProxyRelay:
    """
    Relays the requests of one downstream connection to the upstream source.

    serve() reads requests from the downstream stream one by one, hands
    each to proxy_request() together with the connection's session and
    writes back the response before reading the next request.

    States per request:
        IDLE -> REQUEST_RECEIVED -> UPSTREAM_ENSURED -> UPSTREAM_INVOKED
        -> RESPONSE_BUILT -> IDLE, or CONNECTION_RESET when the upstream
        source cannot be reached.
    """

    def __init__(self, rfile, wfile, registry: SessionRegistry):
        """
        Args:
            rfile: Binary stream the downstream requests are read from
            wfile: Binary stream responses are written to
            registry (SessionRegistry): The connection's session holder
        """
        self.reader = RequestReader(rfile)
        self.wfile = wfile
        self.registry = registry
        self.state = RelayState.IDLE

    def serve(self):
        """
        Handle requests until the downstream stream ends.

        A malformed start line is answered with 403 and ends the connection.
        """
        while True:
            try:
                request = self.reader.read_request()
            except MalformedStartLine as e:
                logger.warning(str(e))
                self.return_status(*BAD_REQUEST_STATUS)
                return
            if request is None:
                logger.debug("Downstream stream closed")
                return
            self.handle(request)

    def handle(self, request: Request):
        """Proxy one complete request and write its response."""
        self.state = RelayState.REQUEST_RECEIVED
        session = self.registry.get_or_create(request.uri)
        logger.info(f"[Session {session.session_id}] {request.method} request, "
                    f"CSeq {self._cseq(request.headers)}")

        command = Command.from_method(request.method)
        client = session.rtsp_client
        if command in RESET_BEFORE:
            logger.debug(f"[Session {session.session_id}] resetting rtsp client before {request.method}")
            client.reset()

        try:
            response = self.proxy_request(request.method, session, request.headers)
        except UpstreamUnreachable as e:
            logger.error(f"[Session {session.session_id}] {e}")
            self.state = RelayState.CONNECTION_RESET
            self.return_status(*NOT_FOUND_STATUS)
            self.state = RelayState.IDLE
            return

        # keep the upstream connection for further commands
        if command in RESET_AFTER:
            logger.debug(f"[Session {session.session_id}] resetting rtsp client")
            client.reset()

        self.write_response(response)
        self.state = RelayState.IDLE

    def proxy_request(self, method, session, headers) -> Response:
        """
        Forward one request upstream and build the downstream response.

        Args:
            method (str): Upper-cased RTSP method
            session (ProxySession): The connection's session
            headers (dict): Headers of the downstream request

        Returns: Response: The response to send downstream

        Raises: UpstreamUnreachable: If the upstream connection can't be opened
        """
        client = session.rtsp_client
        logger.debug(f"[Session {session.session_id}] proxying {method} / {session.media_uri}")

        if not client.connected() and not client.open():
            raise UpstreamUnreachable(f"Failed to connect to upstream for {method}")
        self.state = RelayState.UPSTREAM_ENSURED

        for name in REQUEST_HEADER_ALLOWLIST:
            value = headers.get(name)
            if value is not None:
                client.add_req_header(name, value)

        command = Command.from_method(method)
        operation = DISPATCH.get(command, _generic_request)
        _, body = operation(client, method)
        self.state = RelayState.UPSTREAM_INVOKED

        status_code = client.status()
        status_message = client.status_message()
        logger.debug(f"[Session {session.session_id}] upstream answered {status_code} {status_message}")
        if not status_code:
            status_code, status_message = FALLBACK_STATUS

        response = Response(status_code, status_message or "")
        for name in RESPONSE_HEADER_ALLOWLIST:
            for value in client.get_header(name) or []:
                logger.trace(f"header: {name}, value: {value!r}")
                response.headers.append((name, value))

        for name in SEQUENCE_HEADERS:
            if headers.get(name):
                response.sequence.append((name, headers[name]))

        if body:
            response.body = body
        self.state = RelayState.RESPONSE_BUILT
        return response

    @staticmethod
    def _cseq(headers):
        for name in SEQUENCE_HEADERS:
            if name in headers:
                return headers[name]
        return "-"

    def write_response(self, response: Response):
        data = RTSPResponseBuilder.build(response)
        self.wfile.write(data)
        self.wfile.flush()
        logger.debug(f">> {data!r}")

    def return_status(self, code, message):
        self.wfile.write(RTSPResponseBuilder.build_status(code, message))
        self.wfile.flush()
        logger.info(f"Returning status {code} {message}")
