import socket

import pytest

from socks_relay.core.constants import AuthMethod
from socks_relay.core.exceptions import AuthError, AuthFailure
from socks_relay.core.lib.auth import AuthNegotiator, AuthPolicy, StaticCredentials, parse_credential


@pytest.fixture
def pair():
    server, client = socket.socketpair()
    server.settimeout(5.0)
    client.settimeout(5.0)
    yield server, client
    server.close()
    client.close()


@pytest.fixture
def credentials():
    return StaticCredentials({"alice": "secret"})


def test_parse_credential_keeps_colons_in_password():
    assert parse_credential("bob:a:b:c") == ("bob", "a:b:c")
    with pytest.raises(ValueError):
        parse_credential("nopassword")
    with pytest.raises(ValueError):
        parse_credential(":password")


def test_credentials_from_file(tmp_path):
    path = tmp_path / "users"
    path.write_text("# operators\nalice:secret\n\nbob:hunter2\n", encoding="utf-8")
    credentials = StaticCredentials.from_file(path)
    assert len(credentials) == 2
    assert credentials.valid("bob", "hunter2")
    assert not credentials.valid("bob", "secret")
    assert not credentials.valid("carol", "secret")


def test_credentials_file_error_names_line(tmp_path):
    path = tmp_path / "users"
    path.write_text("alice:secret\nbroken\n", encoding="utf-8")
    with pytest.raises(ValueError, match=r"users:2"):
        StaticCredentials.from_file(path)


def test_policy_selection_follows_server_preference(credentials):
    policy = AuthPolicy.user_pass(credentials, allow_anonymous=True)
    assert policy.select([0, 2]) is AuthMethod.USERNAME_PASSWORD
    assert policy.select([0]) is AuthMethod.NO_AUTH
    assert policy.select([1]) is AuthMethod.NO_ACCEPTABLE
    assert AuthPolicy.no_auth().select([2]) is AuthMethod.NO_ACCEPTABLE


def test_policy_validation(credentials):
    with pytest.raises(ValueError):
        AuthPolicy(methods=())
    with pytest.raises(ValueError):
        AuthPolicy(methods=(AuthMethod.USERNAME_PASSWORD,))
    with pytest.raises(ValueError):
        AuthPolicy(methods=(AuthMethod.GSSAPI,), credentials=credentials)


def test_negotiate_no_auth(pair):
    server, client = pair
    client.sendall(b"\x05\x01\x00")
    result = AuthNegotiator(AuthPolicy.no_auth()).negotiate(server)
    assert result.method is AuthMethod.NO_AUTH
    assert result.username is None
    assert client.recv(2) == b"\x05\x00"


def test_negotiate_no_acceptable_method(pair, credentials):
    server, client = pair
    client.sendall(b"\x05\x01\x00")
    with pytest.raises(AuthError) as exc_info:
        AuthNegotiator(AuthPolicy.user_pass(credentials)).negotiate(server)
    assert exc_info.value.reason is AuthFailure.NO_ACCEPTABLE_METHOD
    assert client.recv(2) == b"\x05\xff"


def test_negotiate_user_pass(pair, credentials):
    server, client = pair
    client.sendall(b"\x05\x01\x02" + b"\x01\x05alice\x06secret")
    result = AuthNegotiator(AuthPolicy.user_pass(credentials)).negotiate(server)
    assert result.username == "alice"
    assert client.recv(4) == b"\x05\x02\x01\x00"


def test_negotiate_rejects_bad_password(pair, credentials):
    server, client = pair
    client.sendall(b"\x05\x01\x02" + b"\x01\x05alice\x05wrong")
    with pytest.raises(AuthError) as exc_info:
        AuthNegotiator(AuthPolicy.user_pass(credentials)).negotiate(server)
    assert exc_info.value.reason is AuthFailure.INVALID_CREDENTIALS
    assert exc_info.value.username == "alice"
    assert client.recv(4) == b"\x05\x02\x01\x01"


def test_negotiate_rejects_wrong_subnegotiation_version(pair, credentials):
    server, client = pair
    client.sendall(b"\x05\x01\x02" + b"\x05\x05alice\x06secret")
    with pytest.raises(AuthError):
        AuthNegotiator(AuthPolicy.user_pass(credentials)).negotiate(server)
