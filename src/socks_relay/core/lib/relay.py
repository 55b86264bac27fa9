"""Bidirectional byte relay between two connected sockets.

Two copy loops run concurrently, one per direction. Both sockets are switched
to non-blocking mode and each loop polls in ``POLL_INTERVAL`` steps, so a loop
waiting on a slow reader still notices cancellation.

A loop stops:
- on clean EOF from its source, after flushing its chunk; the write side of the
  destination is shut down so the peer sees EOF, and the other loop carries on
- on a read or write error, or when its destination hangs up; the whole relay
  is cancelled, since the stream can no longer be delivered intact
- when the relay is cancelled, idle for ``idle_timeout`` or, if ``linger`` is
  set, silent for ``linger`` seconds after the other loop finished

Both sockets are closed once both loops are done. Each loop holds at most one
chunk of ``buffer_size`` bytes.

Example:
    relay = Relay(client_socket, remote_socket, label="session 7")
    result = relay.run()
"""

from __future__ import annotations

import contextlib
import errno
import select
import socket
import threading
import time
from dataclasses import dataclass, field

from loguru import logger

from socks_relay.core.exceptions import RelayError

from .proxy_stats import proxy_stats

BUFFER_SIZE = 4096
POLL_INTERVAL = 0.5  # seconds between cancellation checks

UPSTREAM = "client->remote"
DOWNSTREAM = "remote->client"

_HANGUP = select.POLLHUP | select.POLLERR | select.POLLNVAL


@dataclass
class RelayResult:
    """Byte counts and errors of a finished relay."""

    bytes_up: int = 0
    bytes_down: int = 0
    errors: list[RelayError] = field(default_factory=list)


class Relay:
    """Copy bytes both ways between ``client`` and ``remote`` until both sides finish."""

    def __init__(
        self,
        client: socket.socket,
        remote: socket.socket,
        *,
        label: str = "relay",
        buffer_size: int = BUFFER_SIZE,
        linger: float | None = None,
        idle_timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.client = client
        self.remote = remote
        self.label = label
        self.buffer_size = buffer_size
        self.linger = linger
        self.idle_timeout = idle_timeout
        self._cancel = cancel if cancel is not None else threading.Event()
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._first_done_at: float | None = None
        self._last_activity = time.monotonic()
        self.result = RelayResult()

    def cancel(self) -> None:
        """Ask both loops to stop at their next poll."""
        self._stopped.set()

    def run(self) -> RelayResult:
        """Run both directions and block until they finish, then close both sockets."""
        for sock in (self.client, self.remote):
            sock.setblocking(False)

        upstream = threading.Thread(
            target=self._pipe,
            args=(self.client, self.remote, UPSTREAM),
            name=f"{self.label} {UPSTREAM}",
            daemon=True,
        )
        upstream.start()
        try:
            self._pipe(self.remote, self.client, DOWNSTREAM)
            upstream.join()
        finally:
            for sock in (self.client, self.remote):
                with contextlib.suppress(OSError):
                    sock.close()
        logger.debug(
            f"{self.label}: relay finished, {self.result.bytes_up} bytes up, "
            f"{self.result.bytes_down} bytes down"
        )
        return self.result

    def _should_stop(self) -> bool:
        if self._cancel.is_set() or self._stopped.is_set():
            return True
        now = time.monotonic()
        with self._lock:
            if self.linger is not None and self._first_done_at is not None:
                quiet_since = max(self._first_done_at, self._last_activity)
                if now - quiet_since >= self.linger:
                    return True
            return self.idle_timeout is not None and now - self._last_activity >= self.idle_timeout

    def _record(self, direction: str, size: int) -> None:
        with self._lock:
            self._last_activity = time.monotonic()
            if direction == UPSTREAM:
                self.result.bytes_up += size
            else:
                self.result.bytes_down += size
        if direction == UPSTREAM:
            proxy_stats.update_bytes(sent=size, received=0)
        else:
            proxy_stats.update_bytes(sent=0, received=size)

    def _poll(self, src: socket.socket, dst: socket.socket, writing: bool) -> tuple[int, int]:
        """Wait one poll interval; return the (src, dst) event masks."""
        poller = select.poll()
        if writing:
            # src stays unwatched while a chunk is pending: one chunk per direction
            poller.register(dst, select.POLLOUT)
        else:
            poller.register(src, select.POLLIN)
            # no events requested: hangup and error are always reported
            poller.register(dst, 0)
        events = dict(poller.poll(POLL_INTERVAL * 1000))
        return events.get(src.fileno(), 0), events.get(dst.fileno(), 0)

    def _pipe(self, src: socket.socket, dst: socket.socket, direction: str) -> None:
        pending = memoryview(b"")
        try:
            while not self._should_stop():
                src_events, dst_events = self._poll(src, dst, writing=bool(pending))
                if dst_events & _HANGUP:
                    raise BrokenPipeError(errno.EPIPE, "destination hung up")
                if pending:
                    if dst_events & select.POLLOUT:
                        with contextlib.suppress(BlockingIOError, InterruptedError):
                            sent = dst.send(pending)
                            pending = pending[sent:]
                            self._record(direction, sent)
                    continue
                if not src_events:
                    continue
                try:
                    data = src.recv(self.buffer_size)
                except (BlockingIOError, InterruptedError):
                    continue
                if not data:
                    break
                pending = memoryview(data)
                with self._lock:
                    self._last_activity = time.monotonic()
        except (OSError, ValueError) as e:
            # ValueError: poll() on a closed socket
            error = RelayError(direction, e if isinstance(e, OSError) else OSError(str(e)))
            with self._lock:
                self.result.errors.append(error)
            logger.debug(f"{self.label}: {error}")
            self._stopped.set()
        finally:
            with contextlib.suppress(OSError):
                dst.shutdown(socket.SHUT_WR)
            with self._lock:
                if self._first_done_at is None:
                    self._first_done_at = time.monotonic()
