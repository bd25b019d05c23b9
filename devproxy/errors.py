"""
Exception types raised by the dev proxy.

Only ConfigurationError is fatal. Everything derived from ProxyError is
scoped to a single request and is turned into an HTTP response (or a silent
close) by the code that handles that request.
"""


class ConfigurationError(ValueError):
    """Invalid, duplicate or unreachable routing configuration."""


class ProxyError(Exception):
    """Base class for per-request failures."""

    status_code = 502
    reason = "Bad Gateway"


class UpstreamUnreachable(ProxyError):
    """The upstream refused or reset the connection."""


class UpstreamTimeout(ProxyError):
    """The upstream did not connect or answer within the configured deadline."""

    status_code = 504
    reason = "Gateway Timeout"


class MalformedUpstreamResponse(ProxyError):
    """The upstream broke HTTP framing."""


class ClientDisconnected(ProxyError):
    """The client went away mid-request. Never reported to anyone."""

    status_code = 499
    reason = "Client Closed Request"
