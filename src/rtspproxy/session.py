from rtspproxy.exceptions import NoUpstreamConfig
from rtspproxy.rtspclient import RTSPClient
from loguru import logger

import random


class ProxySession:
    """
    Upstream state for one downstream connection.

    Holds the upstream client options, the media URI of the first request
    and the upstream client, which is only built when first used.
    """

    def __init__(self, client_opts, media_uri, client_factory=RTSPClient.from_uri):
        """
        Initialize a new session.

        Args:
            client_opts (dict): Upstream client options, passed through as-is
            media_uri (str): URI of the request that created the session
            client_factory (callable): Builds the upstream client from
                (uri, **client_opts)
        """
        self.client_opts = client_opts
        self.media_uri = media_uri
        self.client_factory = client_factory
        self.session_id = f"PROXY_{random.randint(0, 9999999999):010d}"
        self._rtsp_client = None

    @property
    def rtsp_client(self):
        if self._rtsp_client is None:
            self._rtsp_client = self.client_factory(self.media_uri, **self.client_opts)
            logger.debug(f"[Session {self.session_id}] Upstream client built for {self.media_uri}")
        return self._rtsp_client

    def close(self):
        """Close the upstream connection, if one was ever opened."""
        if self._rtsp_client is not None:
            self._rtsp_client.close()
            logger.info(f"[Session {self.session_id}] Upstream connection closed")


class SessionRegistry:
    """
    Holds the single ProxySession of a downstream connection.

    The first request creates the session; every later request on the same
    connection gets it back unchanged, whatever URI it carries.
    """

    def __init__(self, client_config=None, client_factory=RTSPClient.from_uri):
        self.client_config = client_config
        self.client_factory = client_factory
        self.session = None

    def get_or_create(self, uri, client_config=None):
        """
        Return the connection's session, creating it on first use.

        Args:
            uri (str): URI of the current request
            client_config (dict): Upstream options; defaults to the ones
                the registry was built with

        Returns: ProxySession: The connection's session

        Raises: NoUpstreamConfig: If no upstream configuration is known
        """
        if self.session is not None:
            return self.session

        config = client_config if client_config is not None else self.client_config
        if config is None:
            raise NoUpstreamConfig("Could not find client configuration")

        self.session = ProxySession(dict(config), uri, self.client_factory)
        logger.info(f"[Session {self.session.session_id}] Session started for {uri}")
        return self.session

    def close(self):
        if self.session is not None:
            self.session.close()
            logger.info(f"[Session {self.session.session_id}] Session ended")
            self.session = None
