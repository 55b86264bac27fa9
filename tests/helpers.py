"""Minimal SOCKS5 client used by the tests."""

import functools
import socket

from socks_relay.core.constants import Command
from socks_relay.core.lib.protocol import Address, read_address, recv_exact


def connect(address: tuple[str, int], timeout: float = 5.0) -> socket.socket:
    return socket.create_connection(address, timeout=timeout)


def greet(sock: socket.socket, methods: tuple[int, ...] = (0,)) -> bytes:
    sock.sendall(bytes([5, len(methods), *methods]))
    return recv_exact(sock, 2)


def login(sock: socket.socket, username: str, password: str) -> bytes:
    user, pw = username.encode(), password.encode()
    sock.sendall(bytes([1, len(user)]) + user + bytes([len(pw)]) + pw)
    return recv_exact(sock, 2)


def read_reply(sock: socket.socket) -> tuple[int, Address]:
    read = functools.partial(recv_exact, sock)
    version, reply, _reserved = read(3)
    assert version == 5
    return reply, read_address(read)


def request(sock: socket.socket, command: Command, address: Address) -> tuple[int, Address]:
    sock.sendall(bytes([5, command, 0]) + address.encode())
    return read_reply(sock)


def recv_until_closed(sock: socket.socket) -> bytes:
    data = bytearray()
    while chunk := sock.recv(4096):
        data.extend(chunk)
    return bytes(data)
