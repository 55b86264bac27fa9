"""Core proxy functionality and main entry point for the SOCKS proxy server.

This module serves as the main entry point for the SOCKS proxy server functionality.
It provides a clean interface to the underlying proxy implementation by exposing
only the necessary components through its public API.

Example:
    from socks_relay.core.proxy import ServerConfig, create_proxy_server, create_resolver

    # Start a SOCKS proxy server on localhost:1080 that resolves through Quad9
    create_proxy_server(
        ServerConfig(listen_host="127.0.0.1", resolver=create_resolver(["9.9.9.9"]))
    )

Attributes:
    __all__ (list): List of public components exposed by this module
"""

from .config import ServerConfig
from .lib import AuthPolicy, StaticCredentials, create_proxy_server, create_resolver

__all__ = ["AuthPolicy", "create_proxy_server", "create_resolver", "ServerConfig", "StaticCredentials"]
