"""SOCKS proxy server implementation.

This module owns the listening socket and runs one thread per accepted
connection. It provides:
- The threaded TCP server class
- Fatal handling of listener resource exhaustion
- Clean shutdown that cancels running relays
- UI integration

Session errors are handled inside the request handler; anything that still
escapes is logged by ``handle_error`` and only ends that session.

Example:
    # Create and start a proxy server
    create_proxy_server(ServerConfig(listen_host="127.0.0.1", listen_port=1080))
"""

from __future__ import annotations

import contextlib
import errno
import socket
import socketserver
import threading
from typing import TYPE_CHECKING

from loguru import logger
from rich.console import Console

from socks_relay.core.exceptions import ListenerError

from .proxy_ui import create_proxy_ui
from .socks_handler import SocksHandler

if TYPE_CHECKING:
    from socks_relay.core.config import ServerConfig

console = Console()

# accept() failures that mean the process is out of resources
FATAL_ACCEPT_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM})


class SocksProxy(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """SOCKS proxy server implementation."""

    allow_reuse_address = True
    daemon_threads = True
    request_queue_size = 100

    def __init__(
        self,
        config: ServerConfig,
        handler_class: type[socketserver.BaseRequestHandler] = SocksHandler,
        bind_and_activate: bool = True,
    ) -> None:
        self.config = config
        self.stopping = threading.Event()
        if ":" in config.listen_host:
            self.address_family = socket.AF_INET6
        super().__init__(config.listen_address, handler_class, bind_and_activate)

    @property
    def bound_address(self) -> tuple[str, int]:
        host, port = self.server_address[:2]
        return host, port

    def get_request(self) -> tuple[socket.socket, tuple]:
        try:
            return super().get_request()
        except OSError as e:
            if e.errno in FATAL_ACCEPT_ERRNOS:
                logger.critical(f"Listener cannot accept connections: {e}")
                raise ListenerError(str(e)) from e
            raise

    def handle_error(self, request, client_address) -> None:
        logger.opt(exception=True).error(
            f"Unhandled error in session for {client_address[0]}:{client_address[1]}"
        )

    def server_close(self) -> None:
        self.stopping.set()
        super().server_close()


def run_server(config: ServerConfig) -> None:
    """Serve until interrupted.

    Args:
        config: Server configuration

    Raises:
        ListenerError: If the listener runs out of resources
    """
    server: SocksProxy | None = None
    try:
        server = SocksProxy(config)
        host, port = server.bound_address
        logger.info(f"Listening on {host}:{port} with {config.resolver!r}")
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server stopping")
    finally:
        if server:
            with contextlib.suppress(Exception):
                server.server_close()
                logger.info("Server closed")


def create_proxy_server(config: ServerConfig, *, show_ui: bool = False) -> None:
    """Start the proxy server, optionally with the live dashboard.

    Args:
        config: Server configuration
        show_ui: Display live statistics in the terminal
    """
    ui = None
    if show_ui:
        ui, ui_thread = create_proxy_ui(config.listen_host, config.listen_port)
        ui_thread.start()
    try:
        run_server(config)
    except ListenerError as e:
        console.print(f"[red]Listener failed: {e}")
        raise
    finally:
        if ui is not None:
            ui.running = False
