"""Core proxy library components."""

from .auth import AuthNegotiator, AuthPolicy, StaticCredentials
from .dns_handler import (
    FallbackResolver,
    ResolvedAddress,
    Resolver,
    SystemResolver,
    UpstreamResolver,
    create_resolver,
)
from .proxy_server import SocksProxy, create_proxy_server, run_server
from .proxy_stats import ProxyStats
from .relay import Relay
from .socks_handler import SocksHandler
from .udp_relay import UdpAssociation

__all__ = [
    "AuthNegotiator",
    "AuthPolicy",
    "create_proxy_server",
    "create_resolver",
    "FallbackResolver",
    "ProxyStats",
    "Relay",
    "ResolvedAddress",
    "Resolver",
    "run_server",
    "SocksHandler",
    "SocksProxy",
    "StaticCredentials",
    "SystemResolver",
    "UdpAssociation",
    "UpstreamResolver",
]
