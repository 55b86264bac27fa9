"""SOCKS5 frame parsing and encoding.

This module implements the wire formats of RFC 1928 and RFC 1929:
- Method selection request and reply
- Username/password subnegotiation
- Command request and reply
- UDP request header

Reads from a socket always go through ``recv_exact`` so that a frame split
across several TCP segments is reassembled, and a peer that closes mid-frame
surfaces as a ProtocolError instead of a short buffer.

Example:
    request = read_request(client_socket)
    client_socket.sendall(encode_reply(Reply.SUCCEEDED, Address.from_sockname(remote.getsockname())))
"""

from __future__ import annotations

import functools
import ipaddress
import socket
import struct
from collections.abc import Callable
from dataclasses import dataclass

from socks_relay.core.constants import (
    AUTH_VERSION,
    RESERVED,
    SOCKS_VERSION,
    AddressType,
    AuthMethod,
    Command,
    Reply,
)
from socks_relay.core.exceptions import ProtocolError, ProtocolFailure

Reader = Callable[[int], bytes]

MAX_DOMAIN_LENGTH = 255


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes from ``sock``.

    Raises:
        ProtocolError: If the peer closes the connection before ``size`` bytes arrive
    """
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            raise ProtocolError(ProtocolFailure.TRUNCATED, f"expected {size} bytes, got {len(buf)}")
        buf.extend(chunk)
    return bytes(buf)


class _BufferReader:
    """Reader over an in-memory datagram."""

    def __init__(self, data: bytes) -> None:
        self._view = memoryview(data)
        self._offset = 0

    def __call__(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._view):
            raise ProtocolError(ProtocolFailure.MALFORMED, "datagram too short")
        chunk = bytes(self._view[self._offset : end])
        self._offset = end
        return chunk

    def rest(self) -> bytes:
        return bytes(self._view[self._offset :])


@dataclass(frozen=True)
class Address:
    """Destination or bound address as carried in SOCKS5 frames.

    Attributes:
        host: Dotted IPv4, IPv6 text form, or a domain name
        port: Port number in host byte order
        type: Wire address type
    """

    host: str
    port: int
    type: AddressType

    @classmethod
    def from_host(cls, host: str, port: int) -> Address:
        """Build an address, classifying ``host`` as IPv4, IPv6 or domain name."""
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            return cls(host, port, AddressType.DOMAIN)
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        address_type = AddressType.IPV4 if ip.version == 4 else AddressType.IPV6
        return cls(str(ip), port, address_type)

    @classmethod
    def from_sockname(cls, sockname: tuple) -> Address:
        # IPv6 socket names are 4-tuples
        return cls.from_host(sockname[0], sockname[1])

    @property
    def is_unspecified(self) -> bool:
        if self.type is AddressType.DOMAIN:
            return False
        return ipaddress.ip_address(self.host).is_unspecified

    def encode(self) -> bytes:
        if self.type is AddressType.DOMAIN:
            raw = self.host.encode("utf-8")
            if not 0 < len(raw) <= MAX_DOMAIN_LENGTH:
                msg = f"domain name length {len(raw)} out of range"
                raise ValueError(msg)
            body = struct.pack("!B", len(raw)) + raw
        else:
            body = ipaddress.ip_address(self.host).packed
        return struct.pack("!B", self.type) + body + struct.pack("!H", self.port)

    def __str__(self) -> str:
        if self.type is AddressType.IPV6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


UNSPECIFIED_ADDRESS = Address("0.0.0.0", 0, AddressType.IPV4)


def read_address(read: Reader) -> Address:
    """Decode ATYP, address and port using ``read``."""
    (address_type,) = read(1)
    if address_type == AddressType.IPV4:
        host = str(ipaddress.IPv4Address(read(4)))
    elif address_type == AddressType.IPV6:
        host = str(ipaddress.IPv6Address(read(16)))
    elif address_type == AddressType.DOMAIN:
        (length,) = read(1)
        if length == 0:
            raise ProtocolError(ProtocolFailure.MALFORMED, "empty domain name")
        try:
            host = read(length).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(ProtocolFailure.MALFORMED, "domain name is not valid UTF-8") from e
    else:
        raise ProtocolError(ProtocolFailure.ADDRESS_TYPE_NOT_SUPPORTED, f"0x{address_type:02x}")
    (port,) = struct.unpack("!H", read(2))
    return Address(host, port, AddressType(address_type))


@dataclass(frozen=True)
class Request:
    """Parsed command frame."""

    command: Command
    address: Address


def read_methods(sock: socket.socket) -> list[int]:
    """Read the method selection message and return the offered methods."""
    version, count = recv_exact(sock, 2)
    if version != SOCKS_VERSION:
        raise ProtocolError(ProtocolFailure.BAD_VERSION, f"got {version}")
    return list(recv_exact(sock, count)) if count else []


def encode_method_reply(method: AuthMethod) -> bytes:
    return struct.pack("!BB", SOCKS_VERSION, method)


def read_credentials(sock: socket.socket) -> tuple[int, str, str]:
    """Read an RFC 1929 request, returning (version, username, password)."""
    version, username_length = recv_exact(sock, 2)
    username = recv_exact(sock, username_length) if username_length else b""
    (password_length,) = recv_exact(sock, 1)
    password = recv_exact(sock, password_length) if password_length else b""
    return (
        version,
        username.decode("utf-8", errors="replace"),
        password.decode("utf-8", errors="replace"),
    )


def encode_auth_reply(status: int) -> bytes:
    return struct.pack("!BB", AUTH_VERSION, status)


def read_request(sock: socket.socket) -> Request:
    """Read and validate a command request.

    The address is consumed before the command is validated so that an
    unknown address type is reported as such regardless of the command byte.

    Raises:
        ProtocolError: Bad version, unsupported address type or command
    """
    read = functools.partial(recv_exact, sock)
    version, command, _reserved = read(3)
    if version != SOCKS_VERSION:
        raise ProtocolError(ProtocolFailure.BAD_VERSION, f"got {version}")
    address = read_address(read)
    try:
        return Request(Command(command), address)
    except ValueError:
        raise ProtocolError(ProtocolFailure.COMMAND_NOT_SUPPORTED, f"0x{command:02x}") from None


def encode_reply(reply: Reply, address: Address | None = None) -> bytes:
    bound = address or UNSPECIFIED_ADDRESS
    return struct.pack("!BBB", SOCKS_VERSION, reply, RESERVED) + bound.encode()


@dataclass(frozen=True)
class UdpDatagram:
    fragment: int
    address: Address
    payload: bytes


def parse_udp_datagram(data: bytes) -> UdpDatagram:
    """Split a client datagram into header fields and payload."""
    read = _BufferReader(data)
    read(2)  # RSV
    (fragment,) = read(1)
    address = read_address(read)
    return UdpDatagram(fragment, address, read.rest())


def build_udp_datagram(address: Address, payload: bytes) -> bytes:
    return struct.pack("!HB", 0, 0) + address.encode() + payload
