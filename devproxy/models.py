from dataclasses import dataclass, field, replace
from typing import Iterable, Iterator, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from .rules import Rule, rewrite

# Header bytes are carried through as latin-1 so nothing is lost in transit.
HEADER_ENCODING = "latin-1"


class Headers:
    """Ordered, case-insensitive, multi-valued HTTP header list."""

    def __init__(self, items: Iterable[Tuple[str, str]] = ()):
        self._items: List[Tuple[str, str]] = list(items)

    @classmethod
    def parse(cls, lines: Iterable[str]) -> 'Headers':
        """
        Parse header lines (without CRLF).

        Raises:
            ValueError: On a line that is not a valid header field
        """
        headers = cls()
        for line in lines:
            if not line:
                continue
            if line[0] in " \t":
                raise ValueError("Obsolete header line folding is not supported")
            name, sep, value = line.partition(":")
            if not sep or not name or name != name.rstrip():
                raise ValueError(f"Invalid header line: {line!r}")
            headers.add(name, value.strip())
        return headers

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        name = name.lower()
        for key, value in self._items:
            if key.lower() == name:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self._items if key.lower() == name]

    def tokens(self, name: str) -> Set[str]:
        """Lower-cased comma-separated tokens across every value of a header."""
        return {
            token.strip().lower()
            for value in self.get_all(name)
            for token in value.split(",")
            if token.strip()
        }

    def add(self, name: str, value: str) -> None:
        self._items.append((name, value))

    def set(self, name: str, value: str) -> None:
        """Replace every value of a header, keeping its first position."""
        lowered = name.lower()
        for index, (key, _) in enumerate(self._items):
            if key.lower() == lowered:
                self._items[index] = (key, value)
                self._items = [
                    item for position, item in enumerate(self._items)
                    if position <= index or item[0].lower() != lowered
                ]
                return
        self._items.append((name, value))

    def remove(self, name: str) -> None:
        name = name.lower()
        self._items = [item for item in self._items if item[0].lower() != name]

    def copy(self) -> 'Headers':
        return Headers(self._items)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._items)

    def encode(self) -> bytes:
        return "".join(f"{key}: {value}\r\n" for key, value in self._items).encode(HEADER_ENCODING)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self._items == other._items

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"


def _split_head(head: bytes) -> List[str]:
    text = head.decode(HEADER_ENCODING)
    if text.endswith("\r\n\r\n"):
        text = text[:-4]
    return text.split("\r\n")


@dataclass
class HTTPRequest:
    """
    One inbound request as seen by the proxy.

    The body is not held here; it stays on the client connection and is
    streamed when the request is served. ``rule`` and ``upstream_path`` are
    filled in by ``bind`` once a route matched.
    """
    method: str
    target: str
    protocol: str
    headers: Headers
    client_address: Optional[Tuple[str, int]] = None
    rule: Optional[Rule] = None
    upstream_path: Optional[str] = None

    @classmethod
    def from_head(cls, head: bytes,
                  client_address: Optional[Tuple[str, int]] = None) -> Optional['HTTPRequest']:
        """Create HTTPRequest from a raw request head, or None if it is malformed."""
        try:
            request_line, *header_lines = _split_head(head)
            method, target, protocol = request_line.split(" ")
            if not protocol.startswith("HTTP/1."):
                return None

            # Absolute-form targets are reduced to origin-form for routing
            if target.lower().startswith(("http://", "https://")):
                parsed = urlsplit(target)
                target = (parsed.path or "/") + (f"?{parsed.query}" if parsed.query else "")
            if not target.startswith("/") and target != "*":
                return None

            return cls(
                method=method,
                target=target,
                protocol=protocol,
                headers=Headers.parse(header_lines),
                client_address=client_address,
            )
        except ValueError:
            return None

    @property
    def path(self) -> str:
        """Request path without query string or fragment."""
        for index, char in enumerate(self.target):
            if char in "?#":
                return self.target[:index]
        return self.target

    @property
    def host(self) -> Optional[str]:
        return self.headers.get("Host")

    @property
    def keep_alive(self) -> bool:
        tokens = self.headers.tokens("Connection")
        if self.protocol == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens

    @property
    def is_upgrade(self) -> bool:
        return "Upgrade" in self.headers and "upgrade" in self.headers.tokens("Connection")

    @property
    def expects_continue(self) -> bool:
        return (self.headers.get("Expect") or "").lower() == "100-continue"

    def bind(self, rule: Rule) -> 'HTTPRequest':
        """Attach a matched rule and compute the upstream request target."""
        return replace(self, rule=rule, upstream_path=rule.target.join(rewrite(rule, self.target)))


@dataclass
class HTTPResponse:
    """Model representing an HTTP response."""
    status_code: int
    status_message: str
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""
    protocol: str = "HTTP/1.1"

    @classmethod
    def from_head(cls, head: bytes) -> Optional['HTTPResponse']:
        """Create HTTPResponse from a raw response head, or None if it is malformed."""
        try:
            status_line, *header_lines = _split_head(head)
            protocol, status_code, *status_message = status_line.split(" ")
            if not protocol.startswith("HTTP/1.") or len(status_code) != 3:
                return None

            return cls(
                status_code=int(status_code),
                status_message=" ".join(status_message),
                headers=Headers.parse(header_lines),
                protocol=protocol,
            )
        except ValueError:
            return None

    @property
    def keep_alive(self) -> bool:
        tokens = self.headers.tokens("Connection")
        if self.protocol == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens

    def head_bytes(self, protocol: str = "HTTP/1.1") -> bytes:
        status_line = f"{protocol} {self.status_code} {self.status_message}\r\n"
        return status_line.encode(HEADER_ENCODING) + self.headers.encode() + b"\r\n"

    def to_bytes(self, include_body: bool = True) -> bytes:
        """Serialize a fully buffered response, filling in Content-Length."""
        if "Content-Length" not in self.headers and "Transfer-Encoding" not in self.headers:
            self.headers.set("Content-Length", str(len(self.body)))
        return self.head_bytes() + (self.body if include_body else b"")

    @classmethod
    def create_error(cls, status_code: int, message: str,
                     detail: Optional[str] = None) -> 'HTTPResponse':
        """Create a plain-text error response."""
        body = f"{status_code} {message}"
        if detail:
            body += f": {detail}"
        body = (body + "\n").encode("utf-8")
        return cls(
            status_code=status_code,
            status_message=message,
            headers=Headers([
                ("Content-Type", "text/plain; charset=utf-8"),
                ("Content-Length", str(len(body))),
            ]),
            body=body,
        )
