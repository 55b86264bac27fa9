import errno
import socket
import threading
import time

import pytest

from socks_relay.core.lib.protocol import Address, build_udp_datagram
from socks_relay.core.lib.udp_relay import UdpAssociation

OFF_HOST = ("192.0.2.1", 9)


@pytest.fixture
def control_pair():
    with socket.socket() as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        client = socket.create_connection(listener.getsockname(), timeout=5.0)
        control, _ = listener.accept()
    yield control, client
    control.close()
    client.close()


def _require_route(address: tuple[str, int]) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as route_check:
        try:
            route_check.connect(address)
        except OSError as e:
            if e.errno in (errno.ENETUNREACH, errno.EHOSTUNREACH):
                pytest.skip(f"no route to {address[0]}")
            raise


def test_relay_socket_listens_on_all_addresses(control_pair, static_resolver):
    control, _ = control_pair
    association = UdpAssociation(control, static_resolver, Address.from_host("0.0.0.0", 0))
    try:
        bound = association.open()
        assert bound.host == "127.0.0.1"
        assert association.sock.getsockname() == ("0.0.0.0", bound.port)
    finally:
        association.close()


def test_loopback_client_reaches_off_host_destination(control_pair, static_resolver):
    _require_route(OFF_HOST)
    control, client = control_pair
    association = UdpAssociation(control, static_resolver, Address.from_host("0.0.0.0", 0))
    bound = association.open()
    thread = threading.Thread(target=association.run, daemon=True)
    thread.start()

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as udp:
        udp.bind(("127.0.0.1", 0))
        udp.sendto(build_udp_datagram(Address.from_host(*OFF_HOST), b"hi"), (bound.host, bound.port))
        deadline = time.monotonic() + 3.0
        while association.datagrams_up == 0 and time.monotonic() < deadline:
            time.sleep(0.05)

    client.close()
    thread.join(timeout=3.0)
    assert association.datagrams_up == 1
    assert not thread.is_alive()


def test_association_ends_when_control_closes(control_pair, static_resolver):
    control, client = control_pair
    association = UdpAssociation(control, static_resolver, Address.from_host("0.0.0.0", 0))
    association.open()
    thread = threading.Thread(target=association.run, daemon=True)
    thread.start()

    client.close()
    thread.join(timeout=3.0)
    assert not thread.is_alive()
    assert association.sock.fileno() == -1
