import logging
import select
import socket
import ssl
import threading
import time
from typing import Dict, List, Optional, Tuple

from .errors import UpstreamTimeout, UpstreamUnreachable
from .rules import Target
from .stream import Endpoint, upstream_endpoint

logger = logging.getLogger(__name__)

PoolKey = Tuple[str, str, int, bool]


def _pool_key(target: Target) -> PoolKey:
    return (target.scheme, target.host, target.port, target.verify_tls)


class UpstreamConnection:
    """A connection to one upstream target, owned by at most one request at a time."""

    def __init__(self, target: Target, sock: socket.socket, buffer_size: int = 4096):
        self.target = target
        self.socket = sock
        self.endpoint: Endpoint = upstream_endpoint(sock, buffer_size)
        self.idle_since = time.monotonic()
        self.requests = 0
        self.closed = False

    def is_dropped(self) -> bool:
        """
        Check whether an idle connection is unusable.

        An idle HTTP connection has nothing to read; if the socket is
        readable the peer either closed it or sent something unsolicited.
        """
        if self.closed:
            return True
        try:
            readable, _, _ = select.select([self.socket], [], [], 0)
        except (OSError, ValueError):
            return True
        return bool(readable)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.socket.close()
        except OSError:
            pass

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<UpstreamConnection {self.target.origin} {state} requests={self.requests}>"


class ConnectionPool:
    """
    Keep-alive pool of upstream connections, keyed by target origin.

    Only idle connections live in the pool. ``acquire`` removes a connection
    from its idle list under the lock, so a checked-out connection is never
    visible to another request until ``release`` puts it back.
    """

    def __init__(self, connect_timeout: float = 5.0, read_timeout: float = 30.0,
                 max_idle_per_origin: int = 8, idle_timeout: float = 30.0,
                 buffer_size: int = 4096):
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._max_idle = max_idle_per_origin
        self._idle_timeout = idle_timeout
        self._buffer_size = buffer_size
        self._idle: Dict[PoolKey, List[UpstreamConnection]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._ssl_contexts: Dict[bool, ssl.SSLContext] = {}

    @property
    def enabled(self) -> bool:
        return self._max_idle > 0

    def idle_count(self, target: Optional[Target] = None) -> int:
        """Number of idle connections, for one target or overall."""
        with self._lock:
            if target is not None:
                return len(self._idle.get(_pool_key(target), []))
            return sum(len(connections) for connections in self._idle.values())

    def acquire(self, target: Target, reuse: bool = True) -> UpstreamConnection:
        """
        Check out a connection to the target, reusing an idle one if possible.

        Args:
            target: Upstream target
            reuse: False forces a fresh connection (used for upgrades)

        Raises:
            UpstreamUnreachable: Connection refused, reset or TLS failure
            UpstreamTimeout: Connection not established in time
        """
        if reuse:
            while True:
                connection = self._pop_idle(target)
                if connection is None:
                    break
                if connection.is_dropped():
                    logger.debug(f"Discarding dropped connection to {target.origin}")
                    connection.close()
                    continue
                return connection

        return self._open(target)

    def _pop_idle(self, target: Target) -> Optional[UpstreamConnection]:
        now = time.monotonic()
        expired = []
        found = None
        with self._lock:
            connections = self._idle.get(_pool_key(target), [])
            while connections:
                connection = connections.pop()
                if now - connection.idle_since > self._idle_timeout:
                    expired.append(connection)
                    continue
                found = connection
                break
        for connection in expired:
            connection.close()
        return found

    def release(self, connection: UpstreamConnection) -> None:
        """Return a healthy connection after a complete exchange."""
        if connection.closed:
            return
        connection.idle_since = time.monotonic()
        with self._lock:
            connections = self._idle.setdefault(_pool_key(connection.target), [])
            if not self._closed and len(connections) < self._max_idle:
                connections.append(connection)
                return
        connection.close()

    def close(self) -> None:
        """Close every idle connection and refuse further returns."""
        with self._lock:
            self._closed = True
            connections = [c for idle in self._idle.values() for c in idle]
            self._idle.clear()
        for connection in connections:
            connection.close()

    def _ssl_context(self, verify: bool) -> ssl.SSLContext:
        context = self._ssl_contexts.get(verify)
        if context is None:
            context = ssl.create_default_context()
            if not verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            self._ssl_contexts[verify] = context
        return context

    def _open(self, target: Target) -> UpstreamConnection:
        address = (target.host, target.port)
        try:
            sock = socket.create_connection(address, timeout=self._connect_timeout)
        except socket.timeout as e:
            raise UpstreamTimeout(f"connecting to {target.origin} timed out") from e
        except OSError as e:
            raise UpstreamUnreachable(f"cannot connect to {target.origin}: {e}") from e

        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            if target.is_secure:
                sock = self._ssl_context(target.verify_tls).wrap_socket(
                    sock, server_hostname=target.host)
            sock.settimeout(self._read_timeout)
        except socket.timeout as e:
            sock.close()
            raise UpstreamTimeout(f"TLS handshake with {target.origin} timed out") from e
        except OSError as e:
            sock.close()
            raise UpstreamUnreachable(f"cannot set up connection to {target.origin}: {e}") from e

        logger.debug(f"Opened upstream connection to {target.origin}")
        return UpstreamConnection(target, sock, self._buffer_size)
