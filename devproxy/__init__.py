"""
A development-time reverse proxy that routes request path prefixes to
backend origins and hands everything else to a static asset server.
"""

from .server import ProxyServer
from .handler import RequestHandler
from .proxy import ForwardingProxy
from .pool import ConnectionPool, UpstreamConnection
from .models import Headers, HTTPRequest, HTTPResponse
from .rules import PathRewrite, Rule, RuleSet, Target, regex_rewrite, rewrite, strip_prefix
from .static import StaticAssets
from .config import ProxyConfig
from .errors import (ClientDisconnected, ConfigurationError, MalformedUpstreamResponse,
                     ProxyError, UpstreamTimeout, UpstreamUnreachable)

__version__ = "0.1.0"

__all__ = [
    'ProxyServer', 'RequestHandler', 'ForwardingProxy', 'ConnectionPool', 'UpstreamConnection',
    'Headers', 'HTTPRequest', 'HTTPResponse', 'PathRewrite', 'Rule', 'RuleSet', 'Target',
    'regex_rewrite', 'rewrite', 'strip_prefix', 'StaticAssets', 'ProxyConfig',
    'ClientDisconnected', 'ConfigurationError', 'MalformedUpstreamResponse', 'ProxyError',
    'UpstreamTimeout', 'UpstreamUnreachable',
]
