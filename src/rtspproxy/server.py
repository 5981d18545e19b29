from rtspproxy.clienthandler import ClientHandler
from rtspproxy.exceptions import NoUpstreamConfig
from rtspproxy.rtspclient import RTSPClient
from loguru import logger

import socket
import threading
import time


DEFAULT_VALUES = {
    "port": 554,
    "host": "0.0.0.0",
    "listen": 3,
}


class Server:
    """
    RTSP proxy server accepting downstream connections.

    This class manages the listening TCP socket and spawns one
    ClientHandler thread per connection; every handler relays to the
    upstream source described by the client configuration.
    """

    def __init__(self, port=DEFAULT_VALUES["port"], host=DEFAULT_VALUES["host"],
                 client_config=None, listen=DEFAULT_VALUES["listen"],
                 client_factory=RTSPClient.from_uri):
        """
        Initialize the proxy server.

        Args:
            port (int): The port number to listen on for RTSP connections
            host (str): The hostname or IP address to bind to
            client_config (dict): Upstream client options (address,
                media_path, client_port_range, transport_protocol, ...)
            listen (int): Listen backlog
            client_factory (callable): Builds upstream clients from
                (uri, **client_config)

        Raises: NoUpstreamConfig: If no client configuration is given
        """
        if not client_config:
            raise NoUpstreamConfig("No rtsp_client definition specified")
        self.host = host
        self.port = port
        self.listen = listen
        self.client_config = client_config
        self.client_factory = client_factory
        self.server_socket = None
        self.client_threads = []
        self.running = False
        self.cleanup_thread = None
        self.lock = threading.Lock()  # guards client_threads

    def initialize_socket(self):
        """
        Create, bind and listen on the server socket.

        Raises: OSError: If the socket cannot be bound
        """
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        # Allow socket reuse to avoid "address already in use" errors
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        # Wake up regularly so shutdown() is noticed
        self.server_socket.settimeout(1.0)
        self.server_socket.bind((self.host, self.port))
        self.server_socket.listen(self.listen)
        self.port = self.server_socket.getsockname()[1]
        logger.info(f"RTSP proxy listening on {self.host}:{self.port}")

    def run(self):
        """
        Main server loop that accepts incoming connections.

        Runs until shutdown() is called or a KeyboardInterrupt arrives,
        spawning a ClientHandler for each connection. A cleanup thread
        drops finished handlers.
        """
        self.initialize_socket()
        server_socket = self.server_socket
        self.running = True

        self.cleanup_thread = threading.Thread(target=self._cleanup_dead_threads, daemon=True)
        self.cleanup_thread.start()

        try:
            while self.running:
                try:
                    client_socket, addr = server_socket.accept()
                    logger.info(f"Accepted connection from {addr}")
                    client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                    handler = ClientHandler(client_socket, addr, self.client_config, self.client_factory)
                    with self.lock: self.client_threads.append(handler)
                    handler.start()
                except socket.timeout: continue
                except OSError as e:
                    if self.running:  # Only log if we're supposed to be running
                        logger.error(f"Error accepting connection: {e}")
        except KeyboardInterrupt: logger.info("Server shutdown requested via KeyboardInterrupt")
        finally: self.shutdown()

    def _cleanup_dead_threads(self):
        """
        Periodically drop terminated client threads from client_threads.
        """
        while self.running:
            with self.lock:
                active_threads = [t for t in self.client_threads if t.is_alive()]
                if len(active_threads) < len(self.client_threads):
                    logger.debug(f"Cleaned up {len(self.client_threads) - len(active_threads)} dead threads")
                    self.client_threads = active_threads
            time.sleep(5)

    def shutdown(self):
        """
        Stop accepting connections and close every client connection.
        """
        if not self.running and self.server_socket is None:
            return
        logger.info("Shutting down server...")
        self.running = False

        if self.server_socket:
            self.server_socket.close()
            self.server_socket = None
            logger.info("Server socket closed")

        with self.lock: active_threads = list(self.client_threads)
        for thread in active_threads:
            if thread.is_alive():
                thread.stop()
                thread.join(timeout=1)
                if thread.is_alive(): logger.warning(f"[Session {thread.session_id}] ClientHandler thread did not terminate in time")
                else: logger.info(f"[Session {thread.session_id}] ClientHandler thread joined")

        if self.cleanup_thread and self.cleanup_thread.is_alive() and self.cleanup_thread is not threading.current_thread():
            self.cleanup_thread.join(timeout=1)
        logger.info("Server shutdown complete")
