import logging
from typing import Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from .errors import ClientDisconnected, ProxyError
from .models import Headers, HTTPRequest, HTTPResponse
from .pool import ConnectionPool, UpstreamConnection
from .stream import (CHUNKED, FIXED, NO_BODY, UNTIL_CLOSE, Endpoint, Framing,
                     relay_body, request_framing, response_framing, tunnel)

logger = logging.getLogger(__name__)

# Hop-by-hop headers (RFC 7230 section 6.1) never cross from one leg to the other
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

REDIRECT_STATUSES = {201, 301, 302, 303, 307, 308}

CONTINUE_RESPONSE = b"HTTP/1.1 100 Continue\r\n\r\n"


def end_to_end_headers(headers: Headers) -> Headers:
    """Copy headers without hop-by-hop fields or anything named in Connection."""
    dropped = HOP_BY_HOP_HEADERS | headers.tokens("Connection")
    return Headers((name, value) for name, value in headers if name.lower() not in dropped)


def _rewrite_referer(referer: str, client_host: Optional[str], request: HTTPRequest) -> str:
    parsed = urlsplit(referer)
    if not client_host or parsed.netloc.lower() != client_host.lower():
        return referer
    target = request.rule.target
    return urlunsplit((target.scheme, target.authority) + tuple(parsed[2:]))


def upstream_headers(request: HTTPRequest, framing: Framing, keep_alive: bool) -> Headers:
    """
    Build the header list sent upstream for a bound request.

    Args:
        request: Request with its matched rule
        framing: Request body framing as read from the client
        keep_alive: Whether the upstream connection may be reused afterwards

    Returns:
        Outbound headers
    """
    rule = request.rule
    target = rule.target
    client_host = request.host
    headers = end_to_end_headers(request.headers)
    headers.remove("Expect")

    if rule.change_origin or not client_host:
        headers.set("Host", target.authority)
    if rule.change_origin:
        origin = headers.get("Origin")
        if origin and origin != "null":
            headers.set("Origin", target.origin)
        referer = headers.get("Referer")
        if referer:
            headers.set("Referer", _rewrite_referer(referer, client_host, request))

    if rule.xfwd:
        client_ip = request.client_address[0] if request.client_address else "unknown"
        existing = headers.get("X-Forwarded-For")
        headers.set("X-Forwarded-For", f"{existing}, {client_ip}" if existing else client_ip)
        if client_host:
            headers.set("X-Forwarded-Host", client_host)
        headers.set("X-Forwarded-Proto", "ws" if request.is_upgrade else "http")

    if framing.kind == CHUNKED:
        headers.remove("Content-Length")
        headers.add("Transfer-Encoding", "chunked")

    if request.is_upgrade:
        headers.add("Connection", "Upgrade")
        headers.add("Upgrade", request.headers.get("Upgrade"))
    else:
        headers.add("Connection", "keep-alive" if keep_alive else "close")
    return headers


class ForwardingProxy:
    """Executes one proxied request end-to-end against a rule's target."""

    def __init__(self, pool: ConnectionPool, buffer_size: int = 4096):
        """
        Initialize the forwarding proxy.

        Args:
            pool: Upstream connection pool shared by all requests
            buffer_size: Relay read size in bytes
        """
        self._pool = pool
        self._buffer_size = buffer_size

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def forward(self, request: HTTPRequest, client: Endpoint) -> bool:
        """
        Proxy a bound request and stream the response back to the client.

        Upstream failures are answered with 502/504 when no response bytes
        have reached the client yet. ClientDisconnected propagates to the
        caller after the upstream connection has been closed.

        Args:
            request: Request with ``rule`` and ``upstream_path`` set
            client: Client connection leg, positioned at the request body

        Returns:
            True if the client connection can serve another request
        """
        state = {"headers_sent": False}
        connection: Optional[UpstreamConnection] = None
        reusable = False

        try:
            framing = request_framing(request.headers)
        except ValueError as e:
            client.sendall(HTTPResponse.create_error(400, "Bad Request", str(e)).to_bytes())
            return False

        try:
            connection = self._pool.acquire(request.rule.target, reuse=not request.is_upgrade)
            connection.requests += 1
            reusable, keep_alive = self._exchange(request, framing, client, connection, state)
            return keep_alive

        except ClientDisconnected:
            raise
        except ProxyError as e:
            logger.error(f"{request.method} {request.target} -> {request.rule.target}: "
                         f"{e.__class__.__name__}: {e}")
            if not state["headers_sent"]:
                response = HTTPResponse.create_error(e.status_code, e.reason, str(e))
                response.headers.set("Connection", "close")
                client.sendall(response.to_bytes(include_body=request.method != "HEAD"))
            return False

        finally:
            if connection is not None:
                if reusable:
                    self._pool.release(connection)
                else:
                    connection.close()

    def _exchange(self, request: HTTPRequest, framing: Framing, client: Endpoint,
                  connection: UpstreamConnection, state: dict) -> Tuple[bool, bool]:
        upstream = connection.endpoint
        outbound = upstream_headers(request, framing, keep_alive=self._pool.enabled)
        head = f"{request.method} {request.upstream_path} HTTP/1.1\r\n".encode("latin-1")
        upstream.sendall(head + outbound.encode() + b"\r\n")

        if framing.kind != NO_BODY:
            if request.expects_continue and request.protocol == "HTTP/1.1":
                client.sendall(CONTINUE_RESPONSE)
            relay_body(client, framing, upstream.sendall, buffer_size=self._buffer_size)

        response = self._read_response(upstream, client, request)
        logger.debug(f"{request.method} {request.target} -> "
                     f"{request.rule.target}{request.upstream_path} {response.status_code}")

        if response.status_code == 101:
            if not request.is_upgrade:
                raise upstream.truncated("unsolicited 101 Switching Protocols")
            client.sendall(response.head_bytes())
            state["headers_sent"] = True
            tunnel(client, upstream, self._buffer_size)
            return False, False

        try:
            body_framing = response_framing(request.method, response.status_code, response.headers)
        except ValueError as e:
            raise upstream.truncated(str(e))

        # HTTP/1.0 clients cannot read chunked bodies; they get a close-delimited one
        dechunk = body_framing.kind == CHUNKED and request.protocol != "HTTP/1.1"
        keep_alive = request.keep_alive and body_framing.kind != UNTIL_CLOSE and not dechunk
        client.sendall(self._client_head(request, response, body_framing, keep_alive))
        state["headers_sent"] = True
        relay_body(upstream, body_framing, client.sendall,
                   keep_chunked=not dechunk, buffer_size=self._buffer_size)

        reusable = (
            self._pool.enabled
            and not request.is_upgrade
            and body_framing.kind in (NO_BODY, FIXED, CHUNKED)
            and response.keep_alive
        )
        return reusable, keep_alive

    def _read_response(self, upstream: Endpoint, client: Endpoint,
                       request: HTTPRequest) -> HTTPResponse:
        """Read the final response head, relaying interim 1xx responses."""
        while True:
            try:
                head = upstream.read_head()
            except ValueError as e:
                raise upstream.truncated(str(e))
            if head is None:
                raise upstream.truncated("upstream closed the connection without responding")

            response = HTTPResponse.from_head(head)
            if response is None:
                raise upstream.truncated(f"unparseable response head {head[:80]!r}")
            if 100 <= response.status_code < 200 and response.status_code != 101:
                # 100 Continue was already answered locally
                if response.status_code != 100 and request.protocol == "HTTP/1.1":
                    client.sendall(head)
                continue
            return response

    def _client_head(self, request: HTTPRequest, response: HTTPResponse,
                     framing: Framing, keep_alive: bool) -> bytes:
        headers = end_to_end_headers(response.headers)

        if framing.kind == CHUNKED:
            headers.remove("Content-Length")
            if request.protocol == "HTTP/1.1":
                headers.add("Transfer-Encoding", "chunked")

        if request.rule.auto_rewrite and response.status_code in REDIRECT_STATUSES:
            location = headers.get("Location")
            if location:
                headers.set("Location", self._rewrite_location(location, request))

        if not keep_alive:
            headers.add("Connection", "close")
        elif request.protocol == "HTTP/1.0":
            headers.add("Connection", "keep-alive")

        client_response = HTTPResponse(response.status_code, response.status_message, headers)
        return client_response.head_bytes()

    @staticmethod
    def _rewrite_location(location: str, request: HTTPRequest) -> str:
        """Point redirects at the target back at the client-facing host."""
        parsed = urlsplit(location)
        target = request.rule.target
        if not parsed.netloc or not request.host:
            return location
        if parsed.netloc.lower() not in (target.authority.lower(), f"{target.host}:{target.port}".lower()):
            return location
        return urlunsplit(("http", request.host) + tuple(parsed[2:]))
