"""Exceptions raised by the proxy."""


class RTSPProxyError(Exception):
    """Base proxy exception."""
    pass


class MalformedStartLine(RTSPProxyError):
    """Raised when the first line of a request is not `METHOD URI RTSP/1.x`."""

    def __init__(self, line):
        super().__init__(f"Invalid request: {line!r}")
        self.line = line


class MalformedHeader(RTSPProxyError):
    """Raised for a header line that is not `Name: value`."""

    def __init__(self, line):
        super().__init__(f"Invalid header: {line!r}")
        self.line = line


class NoUpstreamConfig(RTSPProxyError):
    """Raised when the connection server supplied no upstream client configuration."""
    pass


class UpstreamUnreachable(RTSPProxyError):
    """Raised when the upstream RTSP source cannot be connected to."""
    pass


class RTSPProtocolError(RTSPProxyError):
    """Raised when an upstream response cannot be framed or parsed."""
    pass
