"""Custom exceptions for the proxy server.

This module defines the error taxonomy used throughout the proxy server.
Every session-level failure is one of:
- ProtocolError: malformed frame, bad version, unsupported command or address type
- AuthError: no acceptable method, invalid credentials
- ResolutionError: hostname lookup timed out or produced no address
- DialError: outbound connection refused, unreachable or timed out
- BindError: no inbound connection arrived for a BIND request
- RelayError: I/O failure after the relay has started

Errors that are reported to the client carry a ``reply`` code; the handler writes
that code on the wire before closing the session. Only ListenerError is fatal for
the whole server.

Example:
    try:
        resolved = resolver.resolve("example.com", deadline)
    except ResolutionError as e:
        send_reply(e.reply)
"""

from __future__ import annotations

import errno
import socket
from enum import Enum

from socks_relay.core.constants import Reply


class ProxyError(Exception):
    """Base exception for proxy errors."""

    reply: Reply = Reply.GENERAL_FAILURE


class ProtocolFailure(Enum):
    BAD_VERSION = "bad version"
    MALFORMED = "malformed frame"
    TRUNCATED = "connection closed mid-frame"
    COMMAND_NOT_SUPPORTED = "command not supported"
    ADDRESS_TYPE_NOT_SUPPORTED = "address type not supported"


class ProtocolError(ProxyError):
    """Raised when a client frame cannot be accepted."""

    def __init__(self, reason: ProtocolFailure, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)

    @property
    def reply(self) -> Reply:  # type: ignore[override]
        if self.reason is ProtocolFailure.COMMAND_NOT_SUPPORTED:
            return Reply.COMMAND_NOT_SUPPORTED
        if self.reason is ProtocolFailure.ADDRESS_TYPE_NOT_SUPPORTED:
            return Reply.ADDRESS_TYPE_NOT_SUPPORTED
        return Reply.GENERAL_FAILURE


class AuthFailure(Enum):
    NO_ACCEPTABLE_METHOD = "no acceptable authentication method"
    INVALID_CREDENTIALS = "invalid credentials"


class AuthError(ProxyError):
    """Raised when method negotiation or authentication fails.

    The auth reply has already been written when this is raised, so no request
    reply follows.
    """

    def __init__(self, reason: AuthFailure, username: str | None = None) -> None:
        self.reason = reason
        self.username = username
        super().__init__(reason.value)


class ResolutionFailure(Enum):
    TIMEOUT = "timed out"
    NO_ADDRESS = "no address"
    FAILED = "lookup failed"


class ResolutionError(ProxyError):
    """Raised when DNS resolution fails."""

    reply = Reply.HOST_UNREACHABLE

    def __init__(self, hostname: str, reason: ResolutionFailure, detail: str = "") -> None:
        self.hostname = hostname
        self.reason = reason
        self.detail = detail
        message = f"could not resolve {hostname}: {reason.value}"
        super().__init__(f"{message} ({detail})" if detail else message)


class DialError(ProxyError):
    """Raised when the outbound connection cannot be established."""

    _ERRNO_REPLIES = {
        errno.ECONNREFUSED: Reply.CONNECTION_REFUSED,
        errno.ENETUNREACH: Reply.NETWORK_UNREACHABLE,
        errno.EHOSTUNREACH: Reply.HOST_UNREACHABLE,
        errno.ETIMEDOUT: Reply.HOST_UNREACHABLE,
        errno.EACCES: Reply.NOT_ALLOWED,
        errno.EPERM: Reply.NOT_ALLOWED,
    }

    def __init__(self, host: str, port: int, reply: Reply, cause: str) -> None:
        self.host = host
        self.port = port
        self.reply = reply
        super().__init__(f"dial {host}:{port} failed: {cause}")

    @classmethod
    def from_os_error(cls, host: str, port: int, exc: OSError) -> DialError:
        """Map a connect() failure to the nearest SOCKS5 reply code."""
        if isinstance(exc, (TimeoutError, socket.timeout)):
            reply = Reply.HOST_UNREACHABLE
        elif isinstance(exc, socket.gaierror):
            reply = Reply.HOST_UNREACHABLE
        else:
            reply = cls._ERRNO_REPLIES.get(exc.errno, Reply.GENERAL_FAILURE)
        return cls(host, port, reply, str(exc) or type(exc).__name__)


class BindFailure(Enum):
    TIMEOUT = "no inbound connection before timeout"
    PEER_REJECTED = "inbound connection from unexpected peer"
    CANCELLED = "client closed the control connection"


class BindError(ProxyError):
    """Raised when a BIND request cannot be completed."""

    _REPLIES = {
        BindFailure.TIMEOUT: Reply.TTL_EXPIRED,
        BindFailure.PEER_REJECTED: Reply.NOT_ALLOWED,
        BindFailure.CANCELLED: Reply.GENERAL_FAILURE,
    }

    def __init__(self, reason: BindFailure, detail: str = "") -> None:
        self.reason = reason
        self.reply = self._REPLIES[reason]
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class RelayError(ProxyError):
    """Raised for I/O failures once bytes are flowing; never sent as a reply."""

    def __init__(self, direction: str, cause: OSError) -> None:
        self.direction = direction
        self.cause = cause
        super().__init__(f"{direction}: {cause}")


class ListenerError(ProxyError):
    """Raised when the listening socket can no longer accept connections."""
