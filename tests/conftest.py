import contextlib
import socket
import threading
import time
from types import SimpleNamespace

import pytest

from socks_relay.core.config import ServerConfig
from socks_relay.core.exceptions import ResolutionError, ResolutionFailure
from socks_relay.core.lib.dns_handler import ResolvedAddress, select_address
from socks_relay.core.lib.proxy_server import SocksProxy


class StaticResolver:
    """Resolver answering from a fixed table."""

    def __init__(self, table: dict[str, list[str]] | None = None) -> None:
        self.table = table or {}
        self.calls: list[str] = []

    def resolve(self, hostname: str, deadline: float) -> ResolvedAddress:
        self.calls.append(hostname)
        if hostname not in self.table:
            raise ResolutionError(hostname, ResolutionFailure.NO_ADDRESS)
        return select_address(hostname, self.table[hostname])


class StallingResolver:
    """Resolver that never answers before the deadline."""

    def resolve(self, hostname: str, deadline: float) -> ResolvedAddress:
        time.sleep(max(deadline - time.monotonic(), 0))
        raise ResolutionError(hostname, ResolutionFailure.TIMEOUT)


def _echo(conn: socket.socket) -> None:
    with conn:
        try:
            while data := conn.recv(4096):
                conn.sendall(data)
        except OSError:
            pass


@contextlib.contextmanager
def _serve_echo(family: int, host: str):
    stop = threading.Event()
    with socket.socket(family, socket.SOCK_STREAM) as listener:
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((host, 0))
        listener.listen(8)
        listener.settimeout(0.1)

        def serve() -> None:
            while not stop.is_set():
                try:
                    conn, _ = listener.accept()
                except socket.timeout:
                    continue
                except OSError:
                    return
                conn.settimeout(None)
                threading.Thread(target=_echo, args=(conn,), daemon=True).start()

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        try:
            yield listener.getsockname()[:2]
        finally:
            stop.set()
            thread.join(timeout=1.0)


@pytest.fixture
def echo_server():
    with _serve_echo(socket.AF_INET, "127.0.0.1") as address:
        yield address


@pytest.fixture
def echo_server_v6():
    if not socket.has_ipv6:
        pytest.skip("IPv6 not available")
    try:
        with _serve_echo(socket.AF_INET6, "::1") as address:
            yield address
    except OSError as e:
        pytest.skip(f"cannot listen on ::1: {e}")


@pytest.fixture
def udp_echo_server():
    stop = threading.Event()
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.settimeout(0.1)

        def serve() -> None:
            while not stop.is_set():
                try:
                    data, addr = sock.recvfrom(65535)
                except socket.timeout:
                    continue
                except OSError:
                    return
                sock.sendto(data.upper(), addr)

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        try:
            yield sock.getsockname()
        finally:
            stop.set()
            thread.join(timeout=1.0)


@pytest.fixture
def static_resolver():
    return StaticResolver()


@pytest.fixture
def stalling_resolver():
    return StallingResolver()


@pytest.fixture
def start_proxy(static_resolver):
    """Factory starting a proxy on an ephemeral loopback port."""
    servers: list[tuple[SocksProxy, threading.Thread]] = []

    def _start(**overrides) -> tuple[str, int]:
        overrides.setdefault("listen_host", "127.0.0.1")
        overrides.setdefault("listen_port", 0)
        overrides.setdefault("resolver", static_resolver)
        server = SocksProxy(ServerConfig(**overrides))
        thread = threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
        thread.start()
        servers.append((server, thread))
        return server.bound_address

    yield _start

    for server, thread in servers:
        server.shutdown()
        server.server_close()
        thread.join(timeout=2.0)


@pytest.fixture
def sink_server():
    """Accept one connection and record what arrives until EOF."""
    received = bytearray()
    closed = threading.Event()
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        listener.settimeout(5.0)

        def serve() -> None:
            try:
                conn, _ = listener.accept()
            except OSError:
                return
            with conn:
                conn.settimeout(10.0)
                try:
                    while chunk := conn.recv(4096):
                        received.extend(chunk)
                except OSError:
                    return
            closed.set()

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        yield SimpleNamespace(address=listener.getsockname(), received=received, closed=closed)
        thread.join(timeout=1.0)
