"""User interface component for the SOCKS proxy server.

This module implements a real-time terminal dashboard using rich. It shows:
- Current server address and port
- Real-time bandwidth usage with automatic unit scaling
- Number of active sessions and a row per live session
- Commands served and failures seen since start

The UI runs in a daemon thread and only reads the shared statistics, so the
proxy keeps working if the terminal goes away.

Example:
    ui, ui_thread = create_proxy_ui("192.168.1.100", 1080)
    ui_thread.start()
"""

import threading
import time

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from socks_relay.core.utils.utils import format_bytes, format_duration

from .proxy_stats import ProxyStats, proxy_stats

console = Console()

BANDWIDTH_THRESHOLD = 100  # bytes
MAX_SESSION_ROWS = 15


class ProxyUI:
    """Live statistics display for the proxy server."""

    def __init__(self, server_ip: str, port: int = 1080, stats: ProxyStats = proxy_stats) -> None:
        """Initialize the proxy UI handler.

        Args:
            server_ip: IP address of the proxy server
            port: Port number the proxy server is listening on
            stats: Statistics source
        """
        self.server_ip = server_ip
        self.port = port
        self.stats = stats
        self.running = True
        self._refresh_rate = 0.5
        self._last_bandwidth = 0.0
        self._start_time = time.monotonic()
        self._spinner = Spinner("dots", text="")

    def _generate_table(self) -> Table:
        """Generate statistics table."""
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="green", no_wrap=True)

        bandwidth = self.stats.get_bandwidth()
        # Only update bandwidth if it changed significantly (avoid jitter)
        if abs(bandwidth - self._last_bandwidth) > BANDWIDTH_THRESHOLD:
            self._last_bandwidth = bandwidth

        spinner_text = self._spinner.render(time.monotonic() - self._start_time)
        table.add_row("Bandwidth", f"{spinner_text} {format_bytes(self._last_bandwidth)}/s")
        table.add_row("Uptime", format_duration(self.stats.uptime()))
        table.add_row("Active Sessions", str(self.stats.active_connections))
        table.add_row("Total Sessions", str(self.stats.total_sessions))
        table.add_row("Sent", format_bytes(self.stats.total_bytes_sent))
        table.add_row("Received", format_bytes(self.stats.total_bytes_received))
        commands, failures = self.stats.snapshot_counters()
        commands = ", ".join(f"{name} {count}" for name, count in sorted(commands.items()))
        table.add_row("Commands", commands or "-")
        failures = ", ".join(f"{name} {count}" for name, count in sorted(failures.items()))
        table.add_row("Failures", failures or "-")
        return table

    def _generate_sessions(self) -> Table:
        table = Table(box=None, padding=(0, 1), header_style="bold cyan")
        table.add_column("#", justify="right")
        table.add_column("Client")
        table.add_column("Command")
        table.add_column("Target")
        table.add_column("Age", justify="right")
        for session_id, info in self.stats.snapshot_sessions()[:MAX_SESSION_ROWS]:
            table.add_row(str(session_id), info.client, info.command, info.target, format_duration(info.duration))
        return table

    def _generate_display(self) -> Panel:
        """Generate the main display panel."""
        title = Text(f"SOCKS5 Proxy: {self.server_ip}:{self.port}", style="bold cyan")
        return Panel(
            Group(self._generate_table(), Text(""), self._generate_sessions()),
            title=title,
            subtitle="Press Ctrl+C to exit",
            border_style="blue",
            padding=(1, 2),
        )

    def run(self) -> None:
        """Run the UI with efficient updates."""
        try:
            with Live(
                self._generate_display(),
                console=console,
                refresh_per_second=4,
                transient=False,
                auto_refresh=False,
            ) as live:
                while self.running:
                    live.update(self._generate_display(), refresh=True)
                    time.sleep(self._refresh_rate)
        except KeyboardInterrupt:
            self.running = False


def create_proxy_ui(host: str, port: int) -> tuple[ProxyUI, threading.Thread]:
    """Create the UI and the daemon thread that drives it."""
    ui = ProxyUI(host, port)
    return ui, threading.Thread(target=ui.run, name="proxy-ui", daemon=True)
