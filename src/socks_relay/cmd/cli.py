"""Command-line interface for the SOCKS proxy server.

This module provides the main command-line interface for the proxy server, handling:
- Command-line argument parsing
- Logging setup
- Server initialization
- One-off resolver checks
- Interface listing
- Error reporting

Every option of the ``proxy`` command can also be set through an environment
variable named ``SOCKS_RELAY_<OPTION>``.

Example:
    # Run from command line:
    $ socks-relay proxy --port 1080 --nameserver 9.9.9.9 --user alice:secret
    $ socks-relay resolve example.com --nameserver 1.1.1.1
"""

from __future__ import annotations

import sys
import time
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from socks_relay import __version__
from socks_relay.core.config import (
    DEFAULT_BIND_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_HOST,
    DEFAULT_PORT,
)
from socks_relay.core.exceptions import ListenerError, ResolutionError
from socks_relay.core.lib.dns_handler import DEFAULT_RESOLVE_TIMEOUT, create_resolver
from socks_relay.core.network import scan_interfaces
from socks_relay.core.utils.log_config import LOG_DIR, setup_logging

from .socks import build_config, run_socks_proxy

console = Console()
app = typer.Typer(help="SOCKS5 proxy server with a configurable DNS resolution policy")

ENV_PREFIX = "SOCKS_RELAY_"


def _nameserver_option():
    return typer.Option(
        [],
        "--nameserver",
        "-n",
        envvar=f"{ENV_PREFIX}NAMESERVERS",
        help="Upstream DNS server as host, host:port or [v6]:port (repeatable)",
    )


def _dns_tcp_option():
    return typer.Option(False, "--dns-tcp", envvar=f"{ENV_PREFIX}DNS_TCP", help="Query DNS over TCP")


def _fallback_option():
    return typer.Option(
        False,
        "--system-dns-fallback",
        envvar=f"{ENV_PREFIX}SYSTEM_DNS_FALLBACK",
        help="Use the system resolver when the upstream servers fail",
    )


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[cyan]SOCKS Relay v{__version__}[/cyan]")
        raise typer.Exit


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """SOCKS5 proxy server with a configurable DNS resolution policy."""


@app.command(name="proxy")
def start_proxy(
    host: str = typer.Option(DEFAULT_HOST, "--host", "-H", envvar=f"{ENV_PREFIX}HOST", help="Address to listen on"),
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", envvar=f"{ENV_PREFIX}PORT", help="Port to listen on"),
    interface: str | None = typer.Option(
        None, "--interface", "-i", envvar=f"{ENV_PREFIX}INTERFACE", help="Listen on this interface's IPv4 address"
    ),
    nameservers: list[str] = _nameserver_option(),
    dns_tcp: bool = _dns_tcp_option(),
    system_dns_fallback: bool = _fallback_option(),
    users: list[str] = typer.Option(
        [], "--user", "-u", envvar=f"{ENV_PREFIX}USERS", help="Accepted credentials as name:password (repeatable)"
    ),
    credentials_file: Path | None = typer.Option(
        None,
        "--credentials-file",
        envvar=f"{ENV_PREFIX}CREDENTIALS_FILE",
        exists=True,
        dir_okay=False,
        help="File with one name:password per line",
    ),
    allow_anonymous: bool = typer.Option(
        False, "--allow-anonymous", envvar=f"{ENV_PREFIX}ALLOW_ANONYMOUS", help="Also accept clients without credentials"
    ),
    resolve_timeout: float = typer.Option(
        DEFAULT_RESOLVE_TIMEOUT, envvar=f"{ENV_PREFIX}RESOLVE_TIMEOUT", help="Seconds allowed for a DNS lookup"
    ),
    connect_timeout: float = typer.Option(
        DEFAULT_CONNECT_TIMEOUT, envvar=f"{ENV_PREFIX}CONNECT_TIMEOUT", help="Seconds allowed for an outbound connect"
    ),
    handshake_timeout: float = typer.Option(
        DEFAULT_HANDSHAKE_TIMEOUT, envvar=f"{ENV_PREFIX}HANDSHAKE_TIMEOUT", help="Seconds allowed for auth and request"
    ),
    bind_timeout: float = typer.Option(
        DEFAULT_BIND_TIMEOUT, envvar=f"{ENV_PREFIX}BIND_TIMEOUT", help="Seconds BIND waits for the inbound connection"
    ),
    relay_linger: float | None = typer.Option(
        None, envvar=f"{ENV_PREFIX}RELAY_LINGER", help="Close a half-closed relay after this many silent seconds"
    ),
    idle_timeout: float | None = typer.Option(
        None, envvar=f"{ENV_PREFIX}IDLE_TIMEOUT", help="Close relays idle for this many seconds"
    ),
    outbound_address: str | None = typer.Option(
        None, envvar=f"{ENV_PREFIX}OUTBOUND_ADDRESS", help="Source address for outbound connections"
    ),
    ui: bool = typer.Option(False, "--ui", help="Show live statistics"),
    copy: bool = typer.Option(False, "--copy", help="Copy the proxy address to the clipboard"),
    debug: bool = typer.Option(False, "--debug", envvar=f"{ENV_PREFIX}DEBUG", help="Enable debug logging"),
    log_file: Path | None = typer.Option(None, "--log-file", envvar=f"{ENV_PREFIX}LOG_FILE", help="Also log to this file"),
    log_json: bool = typer.Option(False, "--log-json", envvar=f"{ENV_PREFIX}LOG_JSON", help="Log JSON records"),
):
    """Start the SOCKS proxy server."""
    if debug and log_file is None:
        log_file = LOG_DIR / "proxy.log"
    setup_logging("DEBUG" if debug else "INFO", log_file, serialize=log_json)

    try:
        config = build_config(
            host=host,
            port=port,
            interface=interface,
            nameservers=nameservers,
            dns_tcp=dns_tcp,
            system_dns_fallback=system_dns_fallback,
            users=users,
            credentials_file=credentials_file,
            allow_anonymous=allow_anonymous,
            resolve_timeout=resolve_timeout,
            connect_timeout=connect_timeout,
            handshake_timeout=handshake_timeout,
            bind_timeout=bind_timeout,
            relay_linger=relay_linger,
            idle_timeout=idle_timeout,
            outbound_address=outbound_address,
        )
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}")
        raise typer.Exit(2) from None

    try:
        run_socks_proxy(config, show_ui=ui, copy=copy)
    except ListenerError:
        raise typer.Exit(1) from None
    except OSError as e:
        logger.error(f"Cannot start proxy server: {e}")
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from None


@app.command()
def resolve(
    hostname: str = typer.Argument(..., help="Name to resolve"),
    nameservers: list[str] = _nameserver_option(),
    dns_tcp: bool = _dns_tcp_option(),
    system_dns_fallback: bool = _fallback_option(),
    timeout: float = typer.Option(DEFAULT_RESOLVE_TIMEOUT, "--timeout", "-t", help="Deadline in seconds"),
):
    """Resolve a name with the same policy the proxy would use."""
    setup_logging("WARNING")
    try:
        resolver = create_resolver(nameservers, tcp=dns_tcp, fallback_to_system=system_dns_fallback)
    except ValueError as e:
        console.print(f"[red]Invalid nameserver: {e}")
        raise typer.Exit(2) from None

    start = time.monotonic()
    try:
        result = resolver.resolve(hostname, start + timeout)
    except ResolutionError as e:
        console.print(f"[red]{e}")
        raise typer.Exit(1) from None
    elapsed_ms = (time.monotonic() - start) * 1000
    console.print(f"{result.hostname} -> [green]{result.host}[/green] ({elapsed_ms:.0f} ms via {resolver!r})")


@app.command()
def interfaces(
    all_: bool = typer.Option(False, "--all", "-a", help="Include virtual interfaces"),
):
    """Show the interfaces the proxy can listen on."""
    table = Table(title="Network Interfaces")
    table.add_column("Name", style="cyan")
    table.add_column("IPv4", style="green")
    table.add_column("IPv6", style="green")
    table.add_column("Status")
    table.add_column("Wireless")

    for iface in scan_interfaces(include_virtual=all_):
        table.add_row(
            iface.name,
            iface.ipv4 or "-",
            iface.ipv6 or "-",
            "up" if iface.is_up else "[red]down",
            "yes" if iface.is_wireless else "no",
        )
    console.print(table)


if __name__ == "__main__":
    sys.exit(app())
