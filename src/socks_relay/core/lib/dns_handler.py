"""DNS resolution using dnspython.

Resolvers turn a hostname into a single IP address before the deadline they are
given (an absolute ``time.monotonic()`` value). All of them apply the same
address-family policy: the first IPv4 address wins; without one, the first IPv6
address; no address at all is a ResolutionError.

Available policies:
- SystemResolver: the operating system's getaddrinfo
- UpstreamResolver: explicit nameservers queried with dnspython over UDP or TCP
- FallbackResolver: tries several resolvers in order inside one deadline

Nothing is cached; every call performs its own lookup.

Example:
    resolver = create_resolver(["9.9.9.9", "[2620:fe::fe]:53"], fallback_to_system=True)
    resolved = resolver.resolve("example.com", time.monotonic() + 5)
"""

from __future__ import annotations

import concurrent.futures
import ipaddress
import socket
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

import dns.exception
import dns.nameserver
import dns.rdatatype
import dns.resolver
from loguru import logger

from socks_relay.core.exceptions import ResolutionError, ResolutionFailure

# DNS resolver constants
DEFAULT_RESOLVE_TIMEOUT = 5.0  # seconds, whole lookup
DEFAULT_QUERY_TIMEOUT = 3.0  # seconds, single nameserver
DEFAULT_DNS_PORT = 53
SYSTEM_RESOLVER_WORKERS = 16

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass(frozen=True)
class ResolvedAddress:
    """Outcome of a successful lookup.

    Attributes:
        hostname: Name that was asked for, kept for logging
        address: Selected address
    """

    hostname: str
    address: IPAddress

    @property
    def host(self) -> str:
        return str(self.address)


class Resolver(Protocol):
    """Name resolution capability consumed by the request handler."""

    def resolve(self, hostname: str, deadline: float) -> ResolvedAddress: ...


def select_address(hostname: str, addresses: Iterable[str | IPAddress]) -> ResolvedAddress:
    """Apply the address-family policy to a lookup result.

    Args:
        hostname: Name the addresses belong to
        addresses: Addresses in the order the lookup returned them

    Returns:
        ResolvedAddress: First IPv4 address, else first IPv6 address

    Raises:
        ResolutionError: If ``addresses`` is empty
    """
    first_v6: IPAddress | None = None
    for raw in addresses:
        address = ipaddress.ip_address(raw) if isinstance(raw, str) else raw
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        if address.version == 4:
            return ResolvedAddress(hostname, address)
        if first_v6 is None:
            first_v6 = address
    if first_v6 is not None:
        return ResolvedAddress(hostname, first_v6)
    raise ResolutionError(hostname, ResolutionFailure.NO_ADDRESS)


def _literal(hostname: str) -> ResolvedAddress | None:
    try:
        return select_address(hostname, [hostname])
    except ValueError:
        return None


def _remaining(hostname: str, deadline: float) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise ResolutionError(hostname, ResolutionFailure.TIMEOUT)
    return remaining


def parse_nameserver(value: str) -> tuple[str, int]:
    """Parse ``host``, ``host:port`` or ``[v6]:port`` into (ip, port).

    Raises:
        ValueError: If the host is not an IP address or the port is invalid
    """
    value = value.strip()
    host, port = value, DEFAULT_DNS_PORT
    if value.startswith("["):
        host, sep, tail = value[1:].partition("]")
        if not sep:
            msg = f"unterminated '[' in nameserver {value!r}"
            raise ValueError(msg)
        if tail:
            if not tail.startswith(":"):
                msg = f"unexpected text after ']' in nameserver {value!r}"
                raise ValueError(msg)
            port = int(tail[1:])
    elif value.count(":") == 1:
        host, _, port_text = value.partition(":")
        port = int(port_text)
    ipaddress.ip_address(host)
    if not 0 < port < 65536:
        msg = f"port {port} out of range in nameserver {value!r}"
        raise ValueError(msg)
    return host, port


class SystemResolver:
    """Resolve through the operating system's getaddrinfo.

    getaddrinfo cannot be interrupted, so lookups run on a small worker pool and
    the caller stops waiting at the deadline.
    """

    def __init__(self, max_workers: int = SYSTEM_RESOLVER_WORKERS) -> None:
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="system-dns"
        )

    def _lookup(self, hostname: str) -> list[str]:
        infos = socket.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
        return [info[4][0] for info in infos]

    def resolve(self, hostname: str, deadline: float) -> ResolvedAddress:
        if literal := _literal(hostname):
            return literal

        remaining = _remaining(hostname, deadline)
        future = self._pool.submit(self._lookup, hostname)
        try:
            addresses = future.result(timeout=remaining)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise ResolutionError(hostname, ResolutionFailure.TIMEOUT) from None
        except socket.gaierror as e:
            no_name = {socket.EAI_NONAME, getattr(socket, "EAI_NODATA", socket.EAI_NONAME)}
            reason = ResolutionFailure.NO_ADDRESS if e.errno in no_name else ResolutionFailure.FAILED
            raise ResolutionError(hostname, reason, str(e)) from e
        except (OSError, UnicodeError) as e:
            raise ResolutionError(hostname, ResolutionFailure.FAILED, str(e)) from e
        return select_address(hostname, addresses)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def __repr__(self) -> str:
        return "SystemResolver()"


class UpstreamResolver:
    """Resolve by querying explicit nameservers with dnspython.

    A records are asked for first; AAAA only when the name has no A records,
    which is enough to honour the IPv4-first policy with one round trip in the
    common case.
    """

    def __init__(
        self,
        nameservers: Sequence[str],
        *,
        tcp: bool = False,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
    ) -> None:
        if not nameservers:
            msg = "at least one nameserver is required"
            raise ValueError(msg)
        self.nameservers = tuple(parse_nameserver(ns) for ns in nameservers)
        self.tcp = tcp
        self.resolver = dns.resolver.Resolver(configure=False)
        self.resolver.nameservers = [
            dns.nameserver.Do53Nameserver(host, port) for host, port in self.nameservers
        ]
        self.resolver.timeout = query_timeout

    def _query(self, hostname: str, rdtype: dns.rdatatype.RdataType, deadline: float) -> list[str]:
        answer = self.resolver.resolve(
            hostname,
            rdtype,
            tcp=self.tcp,
            search=False,
            lifetime=_remaining(hostname, deadline),
            raise_on_no_answer=False,
        )
        if answer.rrset is None:
            return []
        return [rdata.address for rdata in answer.rrset]

    def resolve(self, hostname: str, deadline: float) -> ResolvedAddress:
        if literal := _literal(hostname):
            return literal

        try:
            addresses = self._query(hostname, dns.rdatatype.A, deadline)
            if not addresses:
                addresses = self._query(hostname, dns.rdatatype.AAAA, deadline)
        except dns.resolver.NXDOMAIN as e:
            raise ResolutionError(hostname, ResolutionFailure.NO_ADDRESS, "NXDOMAIN") from e
        except dns.exception.Timeout as e:
            raise ResolutionError(hostname, ResolutionFailure.TIMEOUT, str(e)) from e
        except dns.exception.DNSException as e:
            logger.debug(f"Upstream lookup of {hostname} failed: {e}")
            raise ResolutionError(hostname, ResolutionFailure.FAILED, str(e)) from e
        return select_address(hostname, addresses)

    def __repr__(self) -> str:
        servers = ", ".join(f"{host}:{port}" for host, port in self.nameservers)
        transport = "tcp" if self.tcp else "udp"
        return f"UpstreamResolver({servers} over {transport})"


class FallbackResolver:
    """Try each resolver in turn until one answers or the deadline passes."""

    def __init__(self, resolvers: Sequence[Resolver]) -> None:
        if not resolvers:
            msg = "at least one resolver is required"
            raise ValueError(msg)
        self.resolvers = tuple(resolvers)

    def resolve(self, hostname: str, deadline: float) -> ResolvedAddress:
        *earlier, last = self.resolvers
        for resolver in earlier:
            try:
                return resolver.resolve(hostname, deadline)
            except ResolutionError as e:
                logger.debug(f"{resolver!r} failed for {hostname}: {e}")
                if time.monotonic() >= deadline:
                    raise ResolutionError(hostname, ResolutionFailure.TIMEOUT) from e
        return last.resolve(hostname, deadline)

    def __repr__(self) -> str:
        return f"FallbackResolver({', '.join(repr(r) for r in self.resolvers)})"


def create_resolver(
    nameservers: Sequence[str] = (),
    *,
    tcp: bool = False,
    fallback_to_system: bool = False,
    query_timeout: float = DEFAULT_QUERY_TIMEOUT,
) -> Resolver:
    """Build the resolver policy described by the configuration.

    Args:
        nameservers: Upstream servers; empty means the system resolver
        tcp: Query upstream servers over TCP instead of UDP
        fallback_to_system: Ask the system resolver when the upstream servers fail
        query_timeout: Per-nameserver timeout in seconds

    Returns:
        Resolver: Configured resolver
    """
    if not nameservers:
        return SystemResolver()
    upstream = UpstreamResolver(nameservers, tcp=tcp, query_timeout=query_timeout)
    if fallback_to_system:
        return FallbackResolver([upstream, SystemResolver()])
    return upstream
