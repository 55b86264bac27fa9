"""SOCKS protocol handler implementation for the proxy server.

This module implements the SOCKS5 protocol according to RFC 1928, providing:
- Protocol negotiation and handshaking (no-auth and username/password)
- Address type handling (IPv4, IPv6 and domain names)
- DNS resolution through the configured resolver policy
- CONNECT, BIND and UDP ASSOCIATE commands
- Bi-directional data forwarding
- Connection tracking
- Error handling and reporting

Each accepted connection gets its own handler instance running in its own
thread. The phases always run in order: authentication, request parsing,
command execution. Every failure before the relay starts is answered with the
matching reply code; failures after that only end the session.

Example:
    # The handler is automatically used by the SocksProxy server class
    server = SocksProxy(config)
    server.serve_forever()
"""

from __future__ import annotations

import contextlib
import itertools
import select
import socket
import socketserver
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from socks_relay.core.constants import AddressType, AuthMethod, Command, Reply
from socks_relay.core.exceptions import (
    AuthError,
    BindError,
    BindFailure,
    DialError,
    ProtocolError,
    ProxyError,
)

from .auth import AuthNegotiator
from .protocol import Address, Request, encode_reply, read_request
from .proxy_stats import proxy_stats
from .relay import POLL_INTERVAL, Relay
from .udp_relay import UdpAssociation

if TYPE_CHECKING:
    from socks_relay.core.config import ServerConfig

    from .proxy_server import SocksProxy

_session_ids = itertools.count(1)


@dataclass
class Session:
    """State owned by the thread serving one client connection.

    Attributes:
        id: Process-unique session number used in logs
        client: Accepted client socket
        client_address: Peer address of ``client``
        deadline: Monotonic time by which the handshake must be complete
        method: Negotiated authentication method
        username: Authenticated user, if any
        request: Parsed command frame
        replied: Whether a command reply has been written
    """

    id: int
    client: socket.socket
    client_address: tuple
    deadline: float
    method: AuthMethod | None = None
    username: str | None = None
    request: Request | None = None
    replied: bool = False
    started: float = field(default_factory=time.monotonic)

    def remaining(self) -> float:
        return max(self.deadline - time.monotonic(), 0.0)


class SocksHandler(socketserver.BaseRequestHandler):
    """Handle incoming SOCKS5 connections."""

    server: SocksProxy

    def setup(self) -> None:
        self.config: ServerConfig = self.server.config
        self.session = Session(
            id=next(_session_ids),
            client=self.request,
            client_address=self.client_address,
            deadline=time.monotonic() + self.config.handshake_timeout,
        )
        self.log = logger.bind(
            session=self.session.id,
            client=f"{self.client_address[0]}:{self.client_address[1]}",
        )
        self._commands: dict[Command, Callable[[Request], None]] = {
            Command.CONNECT: self.handle_connect,
            Command.BIND: self.handle_bind,
            Command.UDP_ASSOCIATE: self.handle_udp_associate,
        }

    @property
    def label(self) -> str:
        return f"session {self.session.id}"

    def _arm_deadline(self) -> None:
        remaining = self.session.remaining()
        if remaining <= 0:
            raise TimeoutError("handshake deadline passed")
        self.request.settimeout(remaining)

    def _send_reply(self, reply: Reply, address: Address | None = None) -> None:
        """Send SOCKS5 response."""
        self.request.sendall(encode_reply(reply, address))
        self.session.replied = True

    def _fail(self, error: ProxyError) -> None:
        """Answer ``error`` on the wire unless the peer is already gone."""
        with contextlib.suppress(OSError):
            self._send_reply(error.reply)

    def handle(self) -> None:
        """Handle incoming SOCKS5 connection."""
        session = self.session
        proxy_stats.session_started(session.id, self.client_address)
        self.log.debug("Session opened")
        try:
            self._arm_deadline()
            result = AuthNegotiator(self.config.auth).negotiate(self.request)
            session.method, session.username = result.method, result.username

            self._arm_deadline()
            session.request = read_request(self.request)
            self.request.settimeout(None)
            command, address = session.request.command, session.request.address
            self.log.info(
                f"{command.name} {address}"
                + (f" as {session.username}" if session.username else "")
            )
            proxy_stats.session_command(session.id, command.name, str(address))
            self._commands[command](session.request)
        except AuthError as e:
            proxy_stats.session_failed(type(e).__name__)
            self.log.warning(f"Authentication failed: {e}")
        except ProtocolError as e:
            proxy_stats.session_failed(type(e).__name__)
            self.log.warning(f"Protocol error: {e}")
            if not session.replied and session.method is not None:
                self._fail(e)
        except ProxyError as e:
            proxy_stats.session_failed(type(e).__name__)
            self.log.info(f"Request failed: {e}")
            if not session.replied:
                self._fail(e)
        except (TimeoutError, socket.timeout):
            proxy_stats.session_failed("timeout")
            self.log.info("Client did not finish the handshake in time")
        except OSError as e:
            self.log.debug(f"Client connection error: {e}")
        finally:
            proxy_stats.session_ended(session.id)
            self.log.debug(f"Session closed after {time.monotonic() - session.started:.1f}s")

    def _destination(self, address: Address) -> str:
        """Return an IP for ``address``, resolving domain names first.

        Raises:
            ResolutionError: If the name cannot be resolved within the deadline
        """
        if address.type is not AddressType.DOMAIN:
            return address.host
        resolved = self.config.resolver.resolve(
            address.host, time.monotonic() + self.config.resolve_timeout
        )
        self.log.debug(f"Resolved {resolved.hostname} to {resolved.host}")
        return resolved.host

    def _dial(self, host: str, port: int) -> socket.socket:
        source = (self.config.outbound_address, 0) if self.config.outbound_address else None
        try:
            return socket.create_connection(
                (host, port), timeout=self.config.connect_timeout, source_address=source
            )
        except OSError as e:
            raise DialError.from_os_error(host, port, e) from e

    def _relay(self, remote: socket.socket) -> None:
        relay = Relay(
            self.request,
            remote,
            label=self.label,
            buffer_size=self.config.buffer_size,
            linger=self.config.relay_linger,
            idle_timeout=self.config.idle_timeout,
            cancel=self.server.stopping,
        )
        result = relay.run()
        for error in result.errors:
            self.log.debug(f"Relay error: {error}")

    def handle_connect(self, request: Request) -> None:
        """Handle CONNECT command."""
        host = self._destination(request.address)
        remote = self._dial(host, request.address.port)
        try:
            self._send_reply(Reply.SUCCEEDED, Address.from_sockname(remote.getsockname()))
        except OSError:
            remote.close()
            raise
        self._relay(remote)

    def _expected_peer(self, request: Request) -> str | None:
        if request.address.is_unspecified:
            return None
        return Address.from_host(self._destination(request.address), 0).host

    def _accept_peer(self, listener: socket.socket) -> tuple[socket.socket, tuple]:
        deadline = time.monotonic() + self.config.bind_timeout
        while not self.server.stopping.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            readable, _, _ = select.select(
                [listener, self.request], [], [], min(remaining, POLL_INTERVAL)
            )
            if self.request in readable:
                raise BindError(BindFailure.CANCELLED)
            if listener in readable:
                return listener.accept()
        raise BindError(BindFailure.TIMEOUT, f"{self.config.bind_timeout:g}s")

    def handle_bind(self, request: Request) -> None:
        """Handle BIND command: wait for one inbound connection for the client."""
        expected = self._expected_peer(request)
        local_host = self.request.getsockname()[0]
        with socket.socket(self.request.family, socket.SOCK_STREAM) as listener:
            listener.bind((local_host, 0))
            listener.listen(1)
            bound = Address.from_sockname(listener.getsockname())
            self._send_reply(Reply.SUCCEEDED, bound)
            # the second reply is still owed
            self.session.replied = False
            self.log.debug(f"BIND listening on {bound}")

            peer, peer_address = self._accept_peer(listener)
        peer_host = Address.from_host(peer_address[0].split("%", 1)[0], peer_address[1])
        if expected is not None and peer_host.host != expected:
            peer.close()
            raise BindError(BindFailure.PEER_REJECTED, str(peer_host))
        try:
            self._send_reply(Reply.SUCCEEDED, peer_host)
        except OSError:
            peer.close()
            raise
        self.log.info(f"BIND accepted {peer_host}")
        self._relay(peer)

    def handle_udp_associate(self, request: Request) -> None:
        """Handle UDP ASSOCIATE command."""
        association = UdpAssociation(
            self.request,
            self.config.resolver,
            request.address,
            resolve_timeout=self.config.resolve_timeout,
            cancel=self.server.stopping,
            label=self.label,
        )
        try:
            bound = association.open()
            self._send_reply(Reply.SUCCEEDED, bound)
        except OSError:
            association.close()
            raise
        self.log.debug(f"UDP relay on {bound}")
        association.run()
