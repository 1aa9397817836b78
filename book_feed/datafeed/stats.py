"""Telemetry counters for the streaming transport."""

from __future__ import annotations

import time
from collections import deque

LATENCY_WINDOW = 100


class StatsAggregator:
    """
    Message/byte/error counters plus a rolling latency average.

    Uptime accumulates across connections: mark_connected() starts the clock,
    mark_disconnected() folds the elapsed time into connection_uptime.
    """

    __slots__ = (
        'total_messages', 'total_errors', 'total_reconnects', 'protocol_errors',
        'bytes_received', 'bytes_sent', 'connection_uptime', 'average_latency',
        '_latencies', '_connected_at',
    )

    def __init__(self, latency_window: int = LATENCY_WINDOW) -> None:
        self._latencies: deque[float] = deque(maxlen=latency_window)
        self._connected_at: float | None = None
        self.reset()

    def reset(self) -> None:
        self.total_messages = 0
        self.total_errors = 0
        self.total_reconnects = 0
        self.protocol_errors = 0
        self.bytes_received = 0
        self.bytes_sent = 0
        self.connection_uptime = 0.0  # ms
        self.average_latency = 0.0    # ms
        self._latencies.clear()

    def record_message(self, size: int) -> None:
        self.total_messages += 1
        self.bytes_received += size

    def record_sent(self, size: int) -> None:
        self.bytes_sent += size

    def record_error(self) -> None:
        self.total_errors += 1

    def record_protocol_error(self) -> None:
        self.protocol_errors += 1

    def record_reconnect(self) -> None:
        self.total_reconnects += 1

    def record_latency(self, latency_ms: float) -> None:
        """Add a sample; the oldest is evicted once the window is full."""
        self._latencies.append(latency_ms)
        self.average_latency = sum(self._latencies) / len(self._latencies)

    @property
    def latency_samples(self) -> list[float]:
        return list(self._latencies)

    def mark_connected(self) -> None:
        self._connected_at = time.monotonic()

    def mark_disconnected(self) -> None:
        if self._connected_at is not None:
            self.connection_uptime += (time.monotonic() - self._connected_at) * 1000
            self._connected_at = None

    def current_uptime(self) -> float:
        """Accumulated uptime including the live connection, in ms."""
        live = 0.0
        if self._connected_at is not None:
            live = (time.monotonic() - self._connected_at) * 1000
        return self.connection_uptime + live

    def snapshot(self) -> dict[str, float | int]:
        return {
            "total_messages": self.total_messages,
            "total_errors": self.total_errors,
            "total_reconnects": self.total_reconnects,
            "protocol_errors": self.protocol_errors,
            "bytes_received": self.bytes_received,
            "bytes_sent": self.bytes_sent,
            "connection_uptime": self.current_uptime(),
            "average_latency": self.average_latency,
        }
