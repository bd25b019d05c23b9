import socket
import threading
import logging
from typing import Iterable, Optional, Union

from .config import ProxyConfig
from .handler import RequestHandler
from .pool import ConnectionPool
from .proxy import ForwardingProxy
from .rules import Rule, RuleSet
from .static import AssetServer, StaticAssets

logger = logging.getLogger(__name__)


class ProxyServer:
    """Accept loop of the dev proxy; each client connection gets its own thread."""

    def __init__(self, host: str = "localhost", port: int = 5173,
                 rules: Union[RuleSet, Iterable[Rule], None] = None,
                 assets: Optional[AssetServer] = None,
                 connect_timeout: float = 5.0, upstream_timeout: float = 30.0,
                 client_timeout: float = 60.0, pool_max_idle: int = 8,
                 pool_idle_timeout: float = 30.0, grace_period: float = 5.0,
                 buffer_size: int = 4096, max_connections: int = 128):
        """
        Initialize the proxy server.

        Args:
            host: Host address to bind the proxy
            port: Port number to listen on (0 picks a free port at bind time)
            rules: Routing rules, checked in order
            assets: Collaborator for paths no rule matches
            connect_timeout: Seconds allowed to connect to an upstream
            upstream_timeout: Seconds allowed between upstream reads
            client_timeout: Seconds a client connection may stay silent
            pool_max_idle: Idle upstream connections kept per origin (0 disables reuse)
            pool_idle_timeout: Seconds an idle upstream connection is kept
            grace_period: Default seconds in-flight requests get on shutdown
            buffer_size: Socket read size in bytes
            max_connections: Listen backlog
        """
        self._host = host
        self._port = port
        self._rules = rules if isinstance(rules, RuleSet) else RuleSet(rules or ())
        self._grace_period = grace_period
        self._max_connections = max_connections

        # Initialize server socket
        self._server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._bound = False

        self._pool = ConnectionPool(
            connect_timeout=connect_timeout,
            read_timeout=upstream_timeout,
            max_idle_per_origin=pool_max_idle,
            idle_timeout=pool_idle_timeout,
            buffer_size=buffer_size,
        )
        self._handler = RequestHandler(
            self._rules,
            ForwardingProxy(self._pool, buffer_size),
            assets if assets is not None else StaticAssets(),
            timeout=client_timeout,
            buffer_size=buffer_size,
        )

        self._running = False

    @classmethod
    def from_config(cls, config: ProxyConfig) -> 'ProxyServer':
        """
        Build a server from loaded configuration.

        Raises:
            ConfigurationError: If the routes are invalid
        """
        return cls(
            host=config.get("host"),
            port=config.get("port"),
            rules=config.build_rules(),
            assets=StaticAssets(config.get("static_root")),
            connect_timeout=config.get("connect_timeout"),
            upstream_timeout=config.get("upstream_timeout"),
            client_timeout=config.get("client_timeout"),
            pool_max_idle=config.get("pool_max_idle"),
            pool_idle_timeout=config.get("pool_idle_timeout"),
            grace_period=config.get("shutdown_grace_period"),
            buffer_size=config.get("buffer_size"),
            max_connections=config.get("max_connections"),
        )

    @property
    def host(self) -> str:
        """Get the host address."""
        return self._host

    @property
    def port(self) -> int:
        """Get the port number (the actual one once bound)."""
        return self._port

    @property
    def rules(self) -> RuleSet:
        return self._rules

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def handler(self) -> RequestHandler:
        return self._handler

    @property
    def server_socket(self) -> socket.socket:
        """Get the server socket."""
        return self._server_socket

    def bind(self) -> None:
        """Bind and listen; safe to call before start() to learn the port."""
        if self._bound:
            return
        self._server_socket.bind((self._host, self._port))
        self._server_socket.listen(self._max_connections)
        self._port = self._server_socket.getsockname()[1]
        self._bound = True

    def start(self) -> None:
        """Start the proxy server; blocks until shutdown()."""
        self._running = True
        try:
            self.bind()
            logger.info(f"Dev proxy started on {self._host}:{self._port}")
            for rule in self._rules:
                logger.info(f"  {rule.prefix} -> {rule.target}"
                            f"{' (changeOrigin)' if rule.change_origin else ''}")

            while self._running:
                try:
                    client_socket, client_address = self._server_socket.accept()
                    if not self._running:
                        client_socket.close()
                        break

                    # Handle each client in a separate thread
                    thread = threading.Thread(
                        target=self._handler.handle_client,
                        args=(client_socket, client_address)
                    )
                    thread.daemon = True
                    thread.start()
                except Exception as e:
                    if self._running:  # Only log if we're still meant to be running
                        logger.error(f"Server error: {e}")

        finally:
            self._server_socket.close()

    def shutdown(self, grace_period: Optional[float] = None) -> None:
        """
        Shutdown the proxy server gracefully.

        New connections are refused at once; in-flight requests, including
        upgraded tunnels, get ``grace_period`` seconds before being cut.
        """
        self._running = False
        # Create a dummy connection to unblock accept()
        if self._bound:
            wake_host = "127.0.0.1" if self._host in ("", "0.0.0.0") else self._host
            try:
                with socket.create_connection((wake_host, self._port), timeout=1):
                    pass
            except OSError:
                pass
        self._server_socket.close()

        self._handler.drain(self._grace_period if grace_period is None else grace_period)
        self._pool.close()
        logger.info("Dev proxy stopped")
