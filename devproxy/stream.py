"""
Byte-level plumbing shared by the request handler and the forwarding proxy.

An Endpoint wraps one leg of a proxied exchange (client side or upstream
side). Socket failures on a leg are raised as that leg's ProxyError class,
so callers can tell "the client went away" from "the upstream broke"
without inspecting errno values.
"""
import select
import socket
import ssl
from typing import Callable, NamedTuple, Optional, Type

from .errors import (ClientDisconnected, MalformedUpstreamResponse, ProxyError,
                     UpstreamTimeout, UpstreamUnreachable)
from .models import Headers

MAX_HEAD_SIZE = 64 * 1024
MAX_LINE_SIZE = 8 * 1024

# Body framing kinds
NO_BODY = "none"
FIXED = "length"
CHUNKED = "chunked"
UNTIL_CLOSE = "close"


class Framing(NamedTuple):
    kind: str
    length: int = 0


class Endpoint:
    """Buffered reader and writer over one socket with per-leg error types."""

    def __init__(self, sock: socket.socket, broken: Type[ProxyError],
                 timed_out: Type[ProxyError], truncated: Type[ProxyError],
                 buffer_size: int = 4096):
        self._sock = sock
        self._broken = broken
        self._timed_out = timed_out
        self._truncated = truncated
        self._buffer_size = buffer_size
        self._buffer = bytearray()

    @property
    def socket(self) -> socket.socket:
        return self._sock

    def truncated(self, message: str) -> ProxyError:
        return self._truncated(message)

    def _recv(self, size: int) -> bytes:
        try:
            return self._sock.recv(size)
        except socket.timeout as e:
            raise self._timed_out("timed out waiting for data") from e
        except OSError as e:
            raise self._broken(str(e) or e.__class__.__name__) from e

    def sendall(self, data: bytes) -> None:
        if not data:
            return
        try:
            self._sock.sendall(data)
        except socket.timeout as e:
            raise self._timed_out("timed out sending data") from e
        except OSError as e:
            raise self._broken(str(e) or e.__class__.__name__) from e

    def _fill(self) -> bool:
        data = self._recv(self._buffer_size)
        if not data:
            return False
        self._buffer.extend(data)
        return True

    def read_head(self, limit: int = MAX_HEAD_SIZE) -> Optional[bytes]:
        """
        Read one message head, up to and including the blank line.

        Returns:
            Head bytes, or None if the peer closed before sending anything

        Raises:
            ValueError: If the head grows past ``limit``
        """
        while True:
            end = self._buffer.find(b"\r\n\r\n")
            if end != -1:
                head = bytes(self._buffer[:end + 4])
                del self._buffer[:end + 4]
                return head
            if len(self._buffer) > limit:
                raise ValueError("message head too large")
            if not self._fill():
                if self._buffer.strip():
                    raise self._truncated("connection closed inside message head")
                return None

    def readline(self, limit: int = MAX_LINE_SIZE) -> bytes:
        """Read one CRLF-terminated line including the terminator."""
        while True:
            end = self._buffer.find(b"\r\n")
            if end != -1:
                line = bytes(self._buffer[:end + 2])
                del self._buffer[:end + 2]
                return line
            if len(self._buffer) > limit:
                raise self._truncated("line too long")
            if not self._fill():
                raise self._truncated("connection closed inside a line")

    def read_some(self, size: int) -> bytes:
        """Return up to ``size`` bytes; empty only when the peer closed."""
        if self._buffer:
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            return data
        return self._recv(min(size, self._buffer_size))

    def read_exact(self, size: int) -> bytes:
        data = bytearray()
        while len(data) < size:
            chunk = self.read_some(size - len(data))
            if not chunk:
                raise self._truncated(f"connection closed after {len(data)} of {size} bytes")
            data.extend(chunk)
        return bytes(data)

    def drain_buffer(self) -> bytes:
        """Hand over whatever has been read ahead but not consumed."""
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


def client_endpoint(sock: socket.socket, buffer_size: int = 4096) -> Endpoint:
    return Endpoint(sock, ClientDisconnected, ClientDisconnected, ClientDisconnected, buffer_size)


def upstream_endpoint(sock: socket.socket, buffer_size: int = 4096) -> Endpoint:
    return Endpoint(sock, UpstreamUnreachable, UpstreamTimeout, MalformedUpstreamResponse, buffer_size)


def _content_length(headers: Headers) -> Optional[int]:
    values = {value.strip() for value in headers.get_all("Content-Length")}
    if not values:
        return None
    if len(values) > 1:
        raise ValueError(f"conflicting Content-Length values {sorted(values)}")
    value = values.pop()
    if not value.isdigit():
        raise ValueError(f"invalid Content-Length {value!r}")
    return int(value)


def _is_chunked(headers: Headers) -> Optional[bool]:
    codings = [token.strip().lower() for value in headers.get_all("Transfer-Encoding")
               for token in value.split(",") if token.strip()]
    if not codings:
        return None
    return codings[-1] == "chunked"


def request_framing(headers: Headers) -> Framing:
    """
    Work out how a request body is delimited.

    Raises:
        ValueError: If the framing headers are invalid
    """
    chunked = _is_chunked(headers)
    if chunked is not None:
        if not chunked:
            raise ValueError("request Transfer-Encoding must end in chunked")
        return Framing(CHUNKED)
    length = _content_length(headers)
    if length:
        return Framing(FIXED, length)
    return Framing(NO_BODY)


def response_framing(method: str, status_code: int, headers: Headers) -> Framing:
    """
    Work out how a response body is delimited.

    Raises:
        ValueError: If Content-Length is invalid
    """
    if method == "HEAD" or 100 <= status_code < 200 or status_code in (204, 304):
        return Framing(NO_BODY)
    chunked = _is_chunked(headers)
    if chunked is not None:
        return Framing(CHUNKED) if chunked else Framing(UNTIL_CLOSE)
    length = _content_length(headers)
    if length is None:
        return Framing(UNTIL_CLOSE)
    if length == 0:
        return Framing(NO_BODY)
    return Framing(FIXED, length)


def relay_fixed(source: Endpoint, length: int, write: Callable[[bytes], None],
                buffer_size: int = 4096) -> None:
    remaining = length
    while remaining:
        data = source.read_some(min(buffer_size, remaining))
        if not data:
            raise source.truncated(f"body ended {remaining} bytes early")
        write(data)
        remaining -= len(data)


def relay_chunked(source: Endpoint, write: Callable[[bytes], None],
                  keep_framing: bool = True, buffer_size: int = 4096) -> None:
    """
    Relay a chunked body one chunk at a time.

    With ``keep_framing`` the chunk framing is re-emitted; otherwise only the
    payload is written (for HTTP/1.0 readers).
    """
    while True:
        line = source.readline()
        size_field = line.split(b";", 1)[0].strip()
        try:
            size = int(size_field, 16)
        except ValueError:
            raise source.truncated(f"invalid chunk size {size_field!r}")
        if size < 0:
            raise source.truncated(f"invalid chunk size {size_field!r}")

        if size == 0:
            if keep_framing:
                write(b"0\r\n")
            # Trailer section ends with an empty line
            while True:
                trailer = source.readline()
                if keep_framing:
                    write(trailer)
                if trailer == b"\r\n":
                    return

        if keep_framing:
            write(b"%x\r\n" % size)
        relay_fixed(source, size, write, buffer_size)
        if source.read_exact(2) != b"\r\n":
            raise source.truncated("chunk not terminated by CRLF")
        if keep_framing:
            write(b"\r\n")


def relay_until_close(source: Endpoint, write: Callable[[bytes], None],
                      buffer_size: int = 4096) -> None:
    while True:
        data = source.read_some(buffer_size)
        if not data:
            return
        write(data)


def relay_body(source: Endpoint, framing: Framing, write: Callable[[bytes], None],
               keep_chunked: bool = True, buffer_size: int = 4096) -> None:
    """Relay a message body delimited by ``framing`` from source to write."""
    if framing.kind == FIXED:
        relay_fixed(source, framing.length, write, buffer_size)
    elif framing.kind == CHUNKED:
        relay_chunked(source, write, keep_chunked, buffer_size)
    elif framing.kind == UNTIL_CLOSE:
        relay_until_close(source, write, buffer_size)


def discard(_data: bytes) -> None:
    pass


def _pending(sock: socket.socket) -> bool:
    return isinstance(sock, ssl.SSLSocket) and sock.pending() > 0


def tunnel(client: Endpoint, upstream: Endpoint, buffer_size: int = 4096) -> None:
    """
    Relay raw bytes both ways until either side closes.

    Bytes already read ahead on either endpoint are flushed first. Socket
    errors simply end the tunnel.
    """
    try:
        upstream.socket.sendall(client.drain_buffer())
        client.socket.sendall(upstream.drain_buffer())
    except OSError:
        return

    peers = {client.socket: upstream.socket, upstream.socket: client.socket}
    sockets = list(peers)
    while True:
        ready = [sock for sock in sockets if _pending(sock)]
        if not ready:
            try:
                ready, _, errored = select.select(sockets, [], sockets)
            except (OSError, ValueError):
                return
            if errored:
                return

        for sock in ready:
            try:
                data = sock.recv(buffer_size)
                if not data:
                    return
                peers[sock].sendall(data)
            except OSError:
                return
