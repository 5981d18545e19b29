from rtspproxy.exceptions import RTSPProxyError
from rtspproxy.proxy import ProxyRelay
from rtspproxy.session import SessionRegistry
from rtspproxy.rtspclient import RTSPClient

from loguru import logger

import threading
import socket


class ClientHandler(threading.Thread):
    def __init__(self, client_socket, address, client_config, client_factory=RTSPClient.from_uri):
        super().__init__(daemon=True)
        self.client_socket = client_socket
        self.client_address = address
        self.registry = SessionRegistry(client_config, client_factory)
        self.rfile = client_socket.makefile("rb")
        self.wfile = client_socket.makefile("wb")
        self.relay = ProxyRelay(self.rfile, self.wfile, self.registry)

    @property
    def session_id(self):
        return self.registry.session.session_id if self.registry.session else "N/A"

    def run(self):
        try:
            self.relay.serve()
        except (OSError, ValueError) as e:
            # downstream socket closed or reset while blocked on it
            logger.info(f"[Session {self.session_id}] Connection from {self.client_address} dropped: {e}")
        except RTSPProxyError as e:
            logger.error(f"[Session {self.session_id}] {e}")
        except Exception as e:
            logger.exception(f"ClientHandler crashed: {e}")
        finally:
            self.shutdown()

    def stop(self):
        """Wake the handler up by shutting the downstream socket down."""
        try:
            if self.client_socket:
                self.client_socket.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Socket shutdown error: {e}")

    def shutdown(self):
        self.registry.close()
        try:
            for stream in (self.rfile, self.wfile):
                if stream and not stream.closed:
                    stream.close()
            if self.client_socket:
                self.client_socket.close()
                self.client_socket = None
                logger.info(f"Connection from {self.client_address} closed")
        except OSError as e:
            logger.warning(f"Shutdown error: {e}")
