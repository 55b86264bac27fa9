import socket
import time

import pytest
from helpers import connect, greet, login, read_reply, recv_until_closed, request

from socks_relay.core.constants import AddressType, Command, Reply
from socks_relay.core.lib.auth import AuthPolicy, StaticCredentials
from socks_relay.core.lib.protocol import Address, build_udp_datagram, parse_udp_datagram


def _closed_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_connect_ipv4_relays_both_ways(start_proxy, echo_server):
    proxy = start_proxy()
    with connect(proxy) as client:
        assert greet(client) == b"\x05\x00"
        reply, bound = request(client, Command.CONNECT, Address.from_host(*echo_server))
        assert reply == Reply.SUCCEEDED
        assert bound.type is AddressType.IPV4
        assert bound.host == "127.0.0.1"
        assert bound.port != 0

        client.sendall(b"hello")
        assert client.recv(5) == b"hello"


def test_connect_domain_uses_resolver(start_proxy, static_resolver, echo_server):
    static_resolver.table["echo.test"] = ["127.0.0.1"]
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        reply, _ = request(client, Command.CONNECT, Address.from_host("echo.test", echo_server[1]))
        assert reply == Reply.SUCCEEDED
        client.sendall(b"ping")
        assert client.recv(4) == b"ping"
    assert static_resolver.calls == ["echo.test"]


def test_connect_domain_with_only_ipv6(start_proxy, static_resolver, echo_server_v6):
    static_resolver.table["v6only.test"] = ["::1"]
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        reply, bound = request(client, Command.CONNECT, Address.from_host("v6only.test", echo_server_v6[1]))
        assert reply == Reply.SUCCEEDED
        assert bound.type is AddressType.IPV6
        client.sendall(b"six")
        assert client.recv(3) == b"six"


def test_connect_ipv6_literal(start_proxy, echo_server_v6):
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        reply, _ = request(client, Command.CONNECT, Address.from_host("::1", echo_server_v6[1]))
        assert reply == Reply.SUCCEEDED


def test_remote_close_propagates_eof(start_proxy, echo_server):
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        request(client, Command.CONNECT, Address.from_host(*echo_server))
        client.sendall(b"last words")
        client.shutdown(socket.SHUT_WR)
        assert recv_until_closed(client) == b"last words"


def test_unsupported_address_type(start_proxy):
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        client.sendall(b"\x05\x01\x00\x09")
        reply, bound = read_reply(client)
        assert reply == Reply.ADDRESS_TYPE_NOT_SUPPORTED
        assert bound == Address("0.0.0.0", 0, AddressType.IPV4)
        assert client.recv(1) == b""


def test_unsupported_command(start_proxy):
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        client.sendall(b"\x05\x09\x00" + Address.from_host("127.0.0.1", 80).encode())
        reply, _ = read_reply(client)
        assert reply == Reply.COMMAND_NOT_SUPPORTED
        assert client.recv(1) == b""


def test_unknown_name_is_host_unreachable(start_proxy):
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        reply, _ = request(client, Command.CONNECT, Address.from_host("missing.test", 80))
        assert reply == Reply.HOST_UNREACHABLE


def test_resolution_timeout_replies_within_deadline(start_proxy, stalling_resolver):
    proxy = start_proxy(resolver=stalling_resolver, resolve_timeout=0.3)
    with connect(proxy) as client:
        greet(client)
        started = time.monotonic()
        reply, _ = request(client, Command.CONNECT, Address.from_host("slow.test", 80))
        elapsed = time.monotonic() - started
    assert reply == Reply.HOST_UNREACHABLE
    assert elapsed < 2.0


def test_connection_refused(start_proxy):
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        reply, _ = request(client, Command.CONNECT, Address.from_host("127.0.0.1", _closed_port()))
        assert reply == Reply.CONNECTION_REFUSED


def test_bad_greeting_version_closes_without_reply(start_proxy):
    proxy = start_proxy()
    with connect(proxy) as client:
        client.sendall(b"\x04\x01\x00")
        assert client.recv(16) == b""


def test_handshake_timeout_closes_connection(start_proxy):
    proxy = start_proxy(handshake_timeout=0.3)
    with connect(proxy) as client:
        started = time.monotonic()
        assert client.recv(16) == b""
        assert time.monotonic() - started < 2.0


def test_no_acceptable_method(start_proxy):
    policy = AuthPolicy.user_pass(StaticCredentials({"alice": "secret"}))
    proxy = start_proxy(auth=policy)
    with connect(proxy) as client:
        assert greet(client, (0,)) == b"\x05\xff"
        assert client.recv(1) == b""


def test_username_password_login(start_proxy, echo_server):
    policy = AuthPolicy.user_pass(StaticCredentials({"alice": "secret"}))
    proxy = start_proxy(auth=policy)
    with connect(proxy) as client:
        assert greet(client, (0, 2)) == b"\x05\x02"
        assert login(client, "alice", "secret") == b"\x01\x00"
        reply, _ = request(client, Command.CONNECT, Address.from_host(*echo_server))
        assert reply == Reply.SUCCEEDED


def test_wrong_password_is_rejected(start_proxy):
    policy = AuthPolicy.user_pass(StaticCredentials({"alice": "secret"}))
    proxy = start_proxy(auth=policy)
    with connect(proxy) as client:
        greet(client, (2,))
        assert login(client, "alice", "nope") == b"\x01\x01"
        assert client.recv(1) == b""


def test_anonymous_allowed_next_to_credentials(start_proxy):
    policy = AuthPolicy.user_pass(StaticCredentials({"alice": "secret"}), allow_anonymous=True)
    proxy = start_proxy(auth=policy)
    with connect(proxy) as client:
        assert greet(client, (0,)) == b"\x05\x00"
    with connect(proxy) as client:
        assert greet(client, (0, 2)) == b"\x05\x02"


def test_udp_associate_round_trip(start_proxy, udp_echo_server):
    proxy = start_proxy()
    with connect(proxy) as control, socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as udp:
        udp.bind(("127.0.0.1", 0))
        udp.settimeout(5.0)
        greet(control)
        reply, relay = request(control, Command.UDP_ASSOCIATE, Address.from_host("0.0.0.0", udp.getsockname()[1]))
        assert reply == Reply.SUCCEEDED
        assert relay.port != 0

        target = Address.from_host(*udp_echo_server)
        udp.sendto(build_udp_datagram(target, b"quack"), (relay.host, relay.port))
        data, _ = udp.recvfrom(65535)
        datagram = parse_udp_datagram(data)
        assert datagram.fragment == 0
        assert datagram.address == target
        assert datagram.payload == b"QUACK"


def test_udp_fragments_are_dropped(start_proxy, udp_echo_server):
    proxy = start_proxy()
    with connect(proxy) as control, socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as udp:
        udp.bind(("127.0.0.1", 0))
        udp.settimeout(0.5)
        greet(control)
        _, relay = request(control, Command.UDP_ASSOCIATE, Address.from_host("0.0.0.0", 0))

        fragment = bytearray(build_udp_datagram(Address.from_host(*udp_echo_server), b"frag"))
        fragment[2] = 1
        udp.sendto(bytes(fragment), (relay.host, relay.port))
        with pytest.raises(socket.timeout):
            udp.recvfrom(65535)


def test_bind_accepts_inbound_connection(start_proxy):
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        reply, bound = request(client, Command.BIND, Address.from_host("0.0.0.0", 0))
        assert reply == Reply.SUCCEEDED
        assert bound.port != 0

        with socket.create_connection((bound.host, bound.port), timeout=5.0) as peer:
            reply, peer_address = read_reply(client)
            assert reply == Reply.SUCCEEDED
            assert peer_address.port == peer.getsockname()[1]

            peer.sendall(b"ping")
            assert client.recv(4) == b"ping"
            client.sendall(b"pong")
            assert peer.recv(4) == b"pong"


def test_bind_timeout(start_proxy):
    proxy = start_proxy(bind_timeout=0.3)
    with connect(proxy) as client:
        greet(client)
        reply, _ = request(client, Command.BIND, Address.from_host("0.0.0.0", 0))
        assert reply == Reply.SUCCEEDED
        reply, _ = read_reply(client)
        assert reply == Reply.TTL_EXPIRED


def test_bind_rejects_unexpected_peer(start_proxy):
    proxy = start_proxy()
    with connect(proxy) as client:
        greet(client)
        _, bound = request(client, Command.BIND, Address.from_host("10.0.0.1", 0))
        with socket.create_connection((bound.host, bound.port), timeout=5.0):
            reply, _ = read_reply(client)
            assert reply == Reply.NOT_ALLOWED


def test_client_close_reaches_destination_as_eof(start_proxy, sink_server):
    proxy = start_proxy()
    client = connect(proxy)
    greet(client)
    reply, _ = request(client, Command.CONNECT, Address.from_host(*sink_server.address))
    assert reply == Reply.SUCCEEDED

    client.sendall(b"bye")
    client.close()
    assert sink_server.closed.wait(timeout=3.0)
    assert bytes(sink_server.received) == b"bye"


def test_udp_association_ends_with_control_connection(start_proxy, udp_echo_server):
    proxy = start_proxy()
    control = connect(proxy)
    greet(control)
    _, relay = request(control, Command.UDP_ASSOCIATE, Address.from_host("0.0.0.0", 0))
    datagram = build_udp_datagram(Address.from_host(*udp_echo_server), b"ping")

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as udp:
        udp.settimeout(0.5)
        udp.connect((relay.host, relay.port))
        udp.send(datagram)
        assert parse_udp_datagram(udp.recv(65535)).payload == b"PING"

        control.close()
        deadline = time.monotonic() + 5.0
        while True:
            assert time.monotonic() < deadline, "relay port still answering"
            try:
                udp.send(datagram)
                udp.recv(65535)
            except ConnectionRefusedError:
                break
            except socket.timeout:
                continue
