"""UDP ASSOCIATE relay.

One UDP socket serves both directions of an association:
- datagrams from the client carry a SOCKS5 UDP header naming the destination;
  the header is stripped and the payload sent on to the destination
- datagrams from anyone else are wrapped in a header carrying their source
  address and sent back to the client

The association lives exactly as long as the TCP control connection: the loop
watches that connection and ends when it reaches EOF or fails.
"""

from __future__ import annotations

import contextlib
import ipaddress
import select
import socket
import threading
import time

from loguru import logger

from socks_relay.core.constants import AddressType
from socks_relay.core.exceptions import ProtocolError, ResolutionError

from .dns_handler import DEFAULT_RESOLVE_TIMEOUT, Resolver
from .protocol import Address, build_udp_datagram, parse_udp_datagram
from .proxy_stats import proxy_stats
from .relay import POLL_INTERVAL

MAX_DATAGRAM = 65535


def _normalize(host: str) -> str:
    ip = ipaddress.ip_address(host.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return str(ip)


class UdpAssociation:
    """Relay datagrams for one client until its control connection closes.

    Args:
        control: TCP connection the UDP ASSOCIATE request arrived on
        resolver: Used for datagrams addressed to domain names
        requested: DST.ADDR/DST.PORT from the request; a concrete port restricts
            which client port may use the association
        cancel: Set to stop the association from outside
    """

    def __init__(
        self,
        control: socket.socket,
        resolver: Resolver,
        requested: Address,
        *,
        resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
        cancel: threading.Event | None = None,
        label: str = "udp",
    ) -> None:
        self.control = control
        self.resolver = resolver
        self.resolve_timeout = resolve_timeout
        self.label = label
        self._cancel = cancel if cancel is not None else threading.Event()
        self._client_host = _normalize(control.getpeername()[0])
        self._client_port = requested.port or None
        self._client_addr: tuple | None = None
        self.sock: socket.socket | None = None
        self.datagrams_up = 0
        self.datagrams_down = 0

    def open(self) -> Address:
        """Bind the relay socket on all addresses of the control connection's family.

        Returns:
            Address: The control connection's local IP with the relay port, which
            is where the client reaches the relay
        """
        wildcard = "::" if self.control.family == socket.AF_INET6 else "0.0.0.0"
        self.sock = socket.socket(self.control.family, socket.SOCK_DGRAM)
        self.sock.bind((wildcard, 0))
        local_host = self.control.getsockname()[0].split("%", 1)[0]
        return Address.from_host(local_host, self.sock.getsockname()[1])

    def close(self) -> None:
        if self.sock is not None:
            with contextlib.suppress(OSError):
                self.sock.close()

    def run(self) -> None:
        """Forward datagrams until the control connection closes."""
        if self.sock is None:
            msg = "open() must be called before run()"
            raise RuntimeError(msg)
        self.control.settimeout(None)
        try:
            while not self._cancel.is_set():
                readable, _, _ = select.select([self.control, self.sock], [], [], POLL_INTERVAL)
                if self.control in readable and not self._control_alive():
                    break
                if self.sock in readable:
                    self._receive()
        finally:
            self.close()
            logger.debug(
                f"{self.label}: association closed, {self.datagrams_up} datagrams up, "
                f"{self.datagrams_down} datagrams down"
            )

    def _control_alive(self) -> bool:
        try:
            return bool(self.control.recv(1024))
        except OSError:
            return False

    def _is_client(self, addr: tuple) -> bool:
        if self._client_addr is not None:
            return addr[:2] == self._client_addr[:2]
        if _normalize(addr[0]) != self._client_host:
            return False
        if self._client_port is not None and addr[1] != self._client_port:
            return False
        self._client_addr = addr
        logger.debug(f"{self.label}: client datagrams come from {addr[0]}:{addr[1]}")
        return True

    def _receive(self) -> None:
        try:
            data, addr = self.sock.recvfrom(MAX_DATAGRAM)
        except OSError as e:
            # ICMP errors for earlier sends surface here on some platforms
            logger.debug(f"{self.label}: recvfrom failed: {e}")
            return
        if self._is_client(addr):
            self._from_client(data)
        elif self._client_addr is not None:
            self._from_remote(data, addr)
        else:
            logger.debug(f"{self.label}: dropping datagram from {addr[0]}:{addr[1]} before client")

    def _target(self, address: Address) -> tuple | None:
        host = address.host
        if address.type is AddressType.DOMAIN:
            resolved = self.resolver.resolve(host, time.monotonic() + self.resolve_timeout)
            host = resolved.host
        ip = ipaddress.ip_address(host)
        if self.sock.family == socket.AF_INET:
            if ip.version != 4:
                logger.debug(f"{self.label}: cannot reach IPv6 {host} from an IPv4 relay socket")
                return None
            return (host, address.port)
        if ip.version == 4:
            host = f"::ffff:{host}"
        return (host, address.port, 0, 0)

    def _from_client(self, data: bytes) -> None:
        try:
            datagram = parse_udp_datagram(data)
        except ProtocolError as e:
            logger.debug(f"{self.label}: dropping malformed datagram: {e}")
            return
        if datagram.fragment != 0:
            logger.debug(f"{self.label}: dropping fragment {datagram.fragment}")
            return
        try:
            target = self._target(datagram.address)
        except ResolutionError as e:
            logger.debug(f"{self.label}: {e}")
            return
        if target is None:
            return
        try:
            self.sock.sendto(datagram.payload, target)
        except OSError as e:
            logger.debug(f"{self.label}: send to {datagram.address} failed: {e}")
            return
        self.datagrams_up += 1
        proxy_stats.update_bytes(sent=len(datagram.payload), received=0)

    def _from_remote(self, data: bytes, addr: tuple) -> None:
        source = Address.from_host(addr[0].split("%", 1)[0], addr[1])
        try:
            self.sock.sendto(build_udp_datagram(source, data), self._client_addr)
        except OSError as e:
            logger.debug(f"{self.label}: send to client failed: {e}")
            return
        self.datagrams_down += 1
        proxy_stats.update_bytes(sent=0, received=len(data))
