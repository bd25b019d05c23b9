import socket
import logging
import threading
import time
from typing import Dict, Tuple

from .errors import ClientDisconnected
from .models import HTTPRequest, HTTPResponse
from .proxy import ForwardingProxy
from .rules import RuleSet
from .static import AssetServer
from .stream import Endpoint, client_endpoint, discard, relay_body, request_framing

logger = logging.getLogger(__name__)


class RequestHandler:
    """Serves the requests arriving on individual client connections."""

    def __init__(self, rules: RuleSet, proxy: ForwardingProxy, assets: AssetServer,
                 timeout: float = 60.0, buffer_size: int = 4096):
        """
        Initialize the request handler.

        Args:
            rules: Routing rules, read-only
            proxy: Forwarder for requests that match a rule
            assets: Collaborator for requests that match nothing
            timeout: Client socket timeout in seconds
            buffer_size: Socket read size in bytes
        """
        self._rules = rules
        self._proxy = proxy
        self._assets = assets
        self._timeout = timeout
        self._buffer_size = buffer_size

        # Open client sockets, mapped to whether a request is in flight on them
        self._connections: Dict[socket.socket, bool] = {}
        self._condition = threading.Condition()
        self._stopping = False

    @property
    def active_connections(self) -> int:
        with self._condition:
            return len(self._connections)

    def handle_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int]) -> None:
        """
        Handle an individual client connection until it closes.

        Args:
            client_socket: Socket object for client connection
            client_address: Tuple of client's IP and port
        """
        client_socket.settimeout(self._timeout)
        client = client_endpoint(client_socket, self._buffer_size)
        self._track(client_socket)

        try:
            while self._mark(client_socket, busy=False):
                try:
                    head = client.read_head()
                except ValueError:
                    self._reply(client, HTTPResponse.create_error(431, "Request Header Fields Too Large"))
                    break
                if head is None:
                    break
                self._mark(client_socket, busy=True)

                request = HTTPRequest.from_head(head, client_address)
                if not request:
                    self._reply(client, HTTPResponse.create_error(400, "Bad Request"))
                    break
                if not self._serve(client, request):
                    break

        except ClientDisconnected as e:
            logger.debug(f"Client {client_address} disconnected: {e}")
        except Exception as e:
            logger.exception(f"Error handling client {client_address}: {e}")
        finally:
            self._untrack(client_socket)
            client_socket.close()

    def _serve(self, client: Endpoint, request: HTTPRequest) -> bool:
        """Dispatch one request; returns whether the connection stays open."""
        rule = self._rules.match(request.path)
        if rule is None:
            return self._serve_asset(client, request)

        try:
            bound = request.bind(rule)
        except Exception as e:
            logger.exception(f"Rewrite for {rule.prefix!r} failed on {request.target!r}: {e}")
            self._reply(client, HTTPResponse.create_error(500, "Internal Server Error"))
            return False
        return self._proxy.forward(bound, client)

    def _serve_asset(self, client: Endpoint, request: HTTPRequest) -> bool:
        try:
            framing = request_framing(request.headers)
        except ValueError as e:
            self._reply(client, HTTPResponse.create_error(400, "Bad Request", str(e)))
            return False
        relay_body(client, framing, discard, buffer_size=self._buffer_size)

        response = self._assets.serve(request)
        keep_alive = request.keep_alive
        if not keep_alive:
            response.headers.set("Connection", "close")
        client.sendall(response.to_bytes(include_body=request.method != "HEAD"))
        logger.debug(f"{request.method} {request.target} -> static {response.status_code}")
        return keep_alive

    @staticmethod
    def _reply(client: Endpoint, response: HTTPResponse) -> None:
        response.headers.set("Connection", "close")
        client.sendall(response.to_bytes())

    def _track(self, client_socket: socket.socket) -> None:
        with self._condition:
            self._connections[client_socket] = False

    def _untrack(self, client_socket: socket.socket) -> None:
        with self._condition:
            self._connections.pop(client_socket, None)
            self._condition.notify_all()

    def _mark(self, client_socket: socket.socket, busy: bool) -> bool:
        """Record connection state; False means stop serving this connection."""
        with self._condition:
            if self._stopping and not busy:
                return False
            self._connections[client_socket] = busy
            return True

    def drain(self, grace_period: float) -> None:
        """
        Stop serving: close idle connections, wait for in-flight ones, then
        force-close whatever is still open when the grace period ends.
        """
        deadline = time.monotonic() + grace_period
        with self._condition:
            self._stopping = True
            idle = [sock for sock, busy in self._connections.items() if not busy]
        for sock in idle:
            _force_close(sock)

        with self._condition:
            while self._connections:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._condition.wait(remaining)
            leftover = list(self._connections)

        if leftover:
            logger.info(f"Closing {len(leftover)} connection(s) still open after grace period")
        for sock in leftover:
            _force_close(sock)


def _force_close(sock: socket.socket) -> None:
    """Wake any thread blocked on the socket; the owning thread closes it."""
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
