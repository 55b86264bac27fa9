"""Statistics tracking and monitoring for the SOCKS proxy server.

This module provides real-time statistics tracking for the proxy server, including:
- Active session tracking (client, command, destination)
- Bandwidth monitoring
- Data transfer tracking per direction
- Per-command and per-outcome counters

All counters are updated from the session threads and read by the dashboard,
so every access goes through one lock.

Example:
    # Global stats object is automatically created
    from .proxy_stats import proxy_stats

    # Track new session
    proxy_stats.session_started(session_id, ("127.0.0.1", 50000))

    # Update transfer statistics
    proxy_stats.update_bytes(sent=1024, received=2048)
"""

import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime

BANDWIDTH_WINDOW = 5  # seconds


@dataclass
class SessionInfo:
    """Snapshot of one live session for display."""

    client: str
    started: float = field(default_factory=time.monotonic)
    command: str = "-"
    target: str = "-"

    @property
    def duration(self) -> float:
        return time.monotonic() - self.started


class ProxyStats:
    """Thread-safe statistics tracker for SOCKS proxy server.

    Maintains real-time statistics about proxy server operations including:
    - Active sessions
    - Bandwidth usage and history
    - Total bytes transferred (client to destination is "sent")
    - Server uptime
    """

    def __init__(self) -> None:
        """Initialize proxy statistics tracker.

        Creates a new statistics tracker with zeroed counters and
        an empty bandwidth history buffer. Records start time with
        timezone awareness.
        """
        self.sessions: dict[int, SessionInfo] = {}
        self.total_sessions = 0
        self.total_bytes_sent = 0
        self.total_bytes_received = 0
        self.commands: Counter[str] = Counter()
        self.failures: Counter[str] = Counter()
        self.bandwidth_history: deque[tuple[int, float]] = deque(maxlen=600)
        self.start_time = datetime.now(tz=UTC)
        self._lock = threading.Lock()

    @property
    def active_connections(self) -> int:
        with self._lock:
            return len(self.sessions)

    def session_started(self, session_id: int, client_address: tuple) -> None:
        with self._lock:
            self.total_sessions += 1
            self.sessions[session_id] = SessionInfo(client=f"{client_address[0]}:{client_address[1]}")

    def session_command(self, session_id: int, command: str, target: str) -> None:
        with self._lock:
            self.commands[command] += 1
            info = self.sessions.get(session_id)
            if info is not None:
                info.command = command
                info.target = target

    def session_failed(self, reason: str) -> None:
        with self._lock:
            self.failures[reason] += 1

    def session_ended(self, session_id: int) -> None:
        with self._lock:
            self.sessions.pop(session_id, None)

    def snapshot_counters(self) -> tuple[dict[str, int], dict[str, int]]:
        with self._lock:
            return dict(self.commands), dict(self.failures)

    def snapshot_sessions(self) -> list[tuple[int, SessionInfo]]:
        with self._lock:
            return sorted(self.sessions.items())

    def update_bytes(self, sent: int, received: int) -> None:
        """Update byte transfer statistics.

        Args:
            sent: Number of bytes sent towards destinations
            received: Number of bytes received from destinations
        """
        with self._lock:
            self.total_bytes_sent += sent
            self.total_bytes_received += received
            self.bandwidth_history.append((sent + received, time.monotonic()))

    def get_bandwidth(self) -> float:
        """Calculate current bandwidth usage in bytes per second.

        Returns:
            float: Average bandwidth usage over the last window in bytes/second
        """
        with self._lock:
            cutoff = time.monotonic() - BANDWIDTH_WINDOW
            total_bytes = sum(bytes_ for bytes_, ts in self.bandwidth_history if ts > cutoff)
            return total_bytes / BANDWIDTH_WINDOW

    def uptime(self) -> float:
        return (datetime.now(tz=UTC) - self.start_time).total_seconds()


# Global statistics object
proxy_stats = ProxyStats()
