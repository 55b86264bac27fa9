"""SOCKS proxy server command interface.

This module turns command-line values into a ServerConfig and starts the
server:
- Interface name lookup
- Resolver policy selection
- Credential loading
- Clipboard sharing of the proxy address
- Error handling

Example:
    # Start a SOCKS proxy with default settings
    run_socks_proxy(build_config())
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pyperclip
from loguru import logger
from rich.console import Console

from socks_relay.core.config import DEFAULT_HOST, DEFAULT_PORT, ServerConfig
from socks_relay.core.lib.auth import AuthPolicy, StaticCredentials
from socks_relay.core.lib.dns_handler import create_resolver
from socks_relay.core.network import interface_address
from socks_relay.core.proxy import create_proxy_server

console = Console()


def load_credentials(users: Sequence[str], credentials_file: Path | None) -> StaticCredentials:
    credentials = StaticCredentials.from_pairs(list(users))
    if credentials_file is not None:
        credentials = StaticCredentials.from_file(credentials_file).merged(credentials)
    return credentials


def build_config(
    *,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    interface: str | None = None,
    nameservers: Sequence[str] = (),
    dns_tcp: bool = False,
    system_dns_fallback: bool = False,
    users: Sequence[str] = (),
    credentials_file: Path | None = None,
    allow_anonymous: bool = False,
    **timeouts,
) -> ServerConfig:
    """Build the server configuration from command-line values.

    Args:
        host: Listen address, ignored when ``interface`` is given
        port: Listen port
        interface: Listen on the first IPv4 address of this interface
        nameservers: Upstream DNS servers; empty uses the system resolver
        dns_tcp: Query upstream servers over TCP
        system_dns_fallback: Fall back to the system resolver
        users: ``name:password`` pairs
        credentials_file: File of ``name:password`` lines
        allow_anonymous: Accept no-auth clients next to authenticated ones
        **timeouts: Remaining ServerConfig fields (timeouts, outbound address)

    Raises:
        ValueError: If any value is invalid
    """
    if interface:
        host = interface_address(interface)

    credentials = load_credentials(users, credentials_file)
    if len(credentials):
        auth = AuthPolicy.user_pass(credentials, allow_anonymous=allow_anonymous)
    else:
        auth = AuthPolicy.no_auth()

    resolver = create_resolver(nameservers, tcp=dns_tcp, fallback_to_system=system_dns_fallback)
    return ServerConfig(listen_host=host, listen_port=port, resolver=resolver, auth=auth, **timeouts)


def copy_address(config: ServerConfig) -> None:
    """Copy ``host:port`` to the clipboard, warning when no clipboard is available."""
    proxy_address = f"{config.listen_host}:{config.listen_port}"
    try:
        pyperclip.copy(proxy_address)
        console.print(f"[bold green]Proxy address {proxy_address} copied to clipboard")
    except pyperclip.PyperclipException as e:
        console.print(f"[yellow]Could not copy to clipboard: {e}")


def run_socks_proxy(config: ServerConfig, *, show_ui: bool = False, copy: bool = False) -> None:
    """Run the SOCKS proxy server until interrupted."""
    if copy:
        copy_address(config)

    methods = ", ".join(method.name for method in config.auth.methods)
    console.print(
        f"[green]SOCKS5 proxy server starting on {config.listen_host}:{config.listen_port} "
        f"(auth: {methods})"
    )
    logger.info(f"Resolver policy: {config.resolver!r}")

    try:
        create_proxy_server(config, show_ui=show_ui)
    except KeyboardInterrupt:
        pass
