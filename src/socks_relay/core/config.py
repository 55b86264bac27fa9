"""Server configuration.

A ServerConfig is built once at startup (normally by the CLI) and shared
read-only by every session; it is frozen so nothing can change it while
requests are being served.

Example:
    config = ServerConfig(
        listen_host="127.0.0.1",
        listen_port=1080,
        resolver=create_resolver(["9.9.9.9"]),
        auth=AuthPolicy.user_pass(StaticCredentials({"alice": "secret"})),
    )
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field

from socks_relay.core.lib.auth import AuthPolicy
from socks_relay.core.lib.dns_handler import DEFAULT_RESOLVE_TIMEOUT, Resolver, SystemResolver
from socks_relay.core.lib.relay import BUFFER_SIZE

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 1080
DEFAULT_CONNECT_TIMEOUT = 3.0
DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_BIND_TIMEOUT = 30.0


@dataclass(frozen=True)
class ServerConfig:
    """Everything a session needs to know about the server.

    Attributes:
        listen_host: Address the listener binds to
        listen_port: Port the listener binds to (0 picks a free one)
        resolver: Hostname resolution policy
        auth: Authentication policy
        resolve_timeout: Deadline for resolving a request's domain name
        connect_timeout: Deadline for the outbound CONNECT dial
        handshake_timeout: Deadline for auth plus request parsing
        bind_timeout: How long BIND waits for the inbound connection
        relay_linger: Silence tolerated on one direction after the other closed
            (None waits for both directions)
        idle_timeout: Tear down relays idle for this long (None disables)
        outbound_address: Source address for outbound connections
        buffer_size: Relay chunk size per direction
    """

    listen_host: str = DEFAULT_HOST
    listen_port: int = DEFAULT_PORT
    resolver: Resolver = field(default_factory=SystemResolver)
    auth: AuthPolicy = field(default_factory=AuthPolicy.no_auth)
    resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    bind_timeout: float = DEFAULT_BIND_TIMEOUT
    relay_linger: float | None = None
    idle_timeout: float | None = None
    outbound_address: str | None = None
    buffer_size: int = BUFFER_SIZE

    def __post_init__(self) -> None:
        if not 0 <= self.listen_port < 65536:
            msg = f"listen port {self.listen_port} out of range"
            raise ValueError(msg)
        for name in (
            "resolve_timeout",
            "connect_timeout",
            "handshake_timeout",
            "bind_timeout",
        ):
            if getattr(self, name) <= 0:
                msg = f"{name} must be positive"
                raise ValueError(msg)
        for name in ("relay_linger", "idle_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                msg = f"{name} must be positive"
                raise ValueError(msg)
        if self.buffer_size <= 0:
            msg = "buffer_size must be positive"
            raise ValueError(msg)
        if self.outbound_address is not None:
            ipaddress.ip_address(self.outbound_address)

    @property
    def listen_address(self) -> tuple[str, int]:
        return (self.listen_host, self.listen_port)
