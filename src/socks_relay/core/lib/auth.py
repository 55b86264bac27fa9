"""SOCKS5 authentication negotiation.

The negotiator runs before any request frame is read:
1. Read the methods the client offers
2. Pick the first method in server preference order that the client offered,
   or answer 0xFF and fail
3. For username/password, read the RFC 1929 frame and check it against the
   credential store

Example:
    policy = AuthPolicy.user_pass(StaticCredentials({"alice": "secret"}))
    result = AuthNegotiator(policy).negotiate(client_socket)
"""

from __future__ import annotations

import hmac
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from socks_relay.core.constants import AUTH_FAILURE, AUTH_SUCCESS, AUTH_VERSION, AuthMethod
from socks_relay.core.exceptions import AuthError, AuthFailure

from .protocol import encode_auth_reply, encode_method_reply, read_credentials, read_methods

SUPPORTED_METHODS = frozenset({AuthMethod.NO_AUTH, AuthMethod.USERNAME_PASSWORD})


class CredentialStore(Protocol):
    def valid(self, username: str, password: str) -> bool: ...


def parse_credential(value: str) -> tuple[str, str]:
    """Split ``name:password``; the password may itself contain colons."""
    username, sep, password = value.partition(":")
    if not sep or not username:
        msg = f"expected name:password, got {value!r}"
        raise ValueError(msg)
    return username, password


@dataclass(frozen=True)
class StaticCredentials:
    """In-memory username to password map."""

    users: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_pairs(cls, pairs: list[str]) -> StaticCredentials:
        return cls(dict(parse_credential(pair) for pair in pairs))

    @classmethod
    def from_file(cls, path: Path) -> StaticCredentials:
        """Load ``name:password`` lines, skipping blanks and ``#`` comments."""
        users: dict[str, str] = {}
        for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                username, password = parse_credential(line)
            except ValueError as e:
                msg = f"{path}:{lineno}: {e}"
                raise ValueError(msg) from None
            users[username] = password
        return cls(users)

    def merged(self, other: StaticCredentials) -> StaticCredentials:
        return StaticCredentials({**self.users, **other.users})

    def valid(self, username: str, password: str) -> bool:
        expected = self.users.get(username)
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode(), password.encode())

    def __len__(self) -> int:
        return len(self.users)


@dataclass(frozen=True)
class AuthPolicy:
    """Accepted methods in server preference order plus the credential store."""

    methods: tuple[AuthMethod, ...] = (AuthMethod.NO_AUTH,)
    credentials: CredentialStore | None = None

    def __post_init__(self) -> None:
        if not self.methods:
            msg = "auth policy needs at least one method"
            raise ValueError(msg)
        unsupported = set(self.methods) - SUPPORTED_METHODS
        if unsupported:
            msg = f"unsupported auth methods: {sorted(m.name for m in unsupported)}"
            raise ValueError(msg)
        if AuthMethod.USERNAME_PASSWORD in self.methods and self.credentials is None:
            msg = "username/password auth requires a credential store"
            raise ValueError(msg)

    @classmethod
    def no_auth(cls) -> AuthPolicy:
        return cls()

    @classmethod
    def user_pass(cls, credentials: CredentialStore, *, allow_anonymous: bool = False) -> AuthPolicy:
        methods = (AuthMethod.USERNAME_PASSWORD,)
        if allow_anonymous:
            methods += (AuthMethod.NO_AUTH,)
        return cls(methods, credentials)

    def select(self, offered: list[int]) -> AuthMethod:
        for method in self.methods:
            if method in offered:
                return method
        return AuthMethod.NO_ACCEPTABLE


@dataclass(frozen=True)
class AuthResult:
    method: AuthMethod
    username: str | None = None


class AuthNegotiator:
    """Run method selection and the selected sub-negotiation on one connection."""

    def __init__(self, policy: AuthPolicy) -> None:
        self.policy = policy

    def negotiate(self, sock) -> AuthResult:
        """Authenticate the client on ``sock``.

        Returns:
            AuthResult: Selected method and, for username/password, the user

        Raises:
            ProtocolError: If the greeting is malformed
            AuthError: If no method matches or the credentials are rejected
        """
        offered = read_methods(sock)
        method = self.policy.select(offered)
        sock.sendall(encode_method_reply(method))
        if method is AuthMethod.NO_ACCEPTABLE:
            raise AuthError(AuthFailure.NO_ACCEPTABLE_METHOD)
        if method is AuthMethod.USERNAME_PASSWORD:
            return self._user_pass(sock)
        return AuthResult(method)

    def _user_pass(self, sock) -> AuthResult:
        version, username, password = read_credentials(sock)
        accepted = (
            version == AUTH_VERSION
            and self.policy.credentials is not None
            and self.policy.credentials.valid(username, password)
        )
        sock.sendall(encode_auth_reply(AUTH_SUCCESS if accepted else AUTH_FAILURE))
        if not accepted:
            raise AuthError(AuthFailure.INVALID_CREDENTIALS, username)
        return AuthResult(AuthMethod.USERNAME_PASSWORD, username)
