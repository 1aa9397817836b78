"""
Configuration for book_feed components.

All durations are milliseconds, matching the epoch-ms timestamps used on the
wire. Components receive their config object explicitly at construction.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml


@dataclass
class ConnectionConfig:
    """Streaming transport settings."""
    url: str = "ws://localhost:8080/ws"
    reconnect_attempts: int = 10
    reconnect_interval_ms: float = 3000.0       # Backoff base
    max_reconnect_interval_ms: float = 30000.0  # Backoff cap (before jitter)
    reconnect_jitter_ms: float = 1000.0
    heartbeat_interval_ms: float = 30000.0      # <= 0 disables heartbeats
    connect_timeout_ms: float = 10000.0
    latency_window: int = 100


@dataclass
class RestConfig:
    """REST fallback client settings."""
    base_url: str = "http://localhost:8080"
    timeout_ms: float = 10000.0
    retry_attempts: int = 3
    retry_delay_ms: float = 1000.0
    cache_ttl_ms: float = 5000.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class FeedConfig:
    """Top-level settings for MarketFeed."""
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    rest: RestConfig = field(default_factory=RestConfig)
    symbols: list[str] = field(default_factory=list)
    enable_websocket: bool = True
    enable_polling: bool = False
    poll_interval_ms: float = 1000.0
    max_depth: int = 20
    stale_after_ms: float = 10000.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FeedConfig:
        """Build from a nested mapping; unknown keys raise ValueError."""
        data = dict(data)
        connection = _build(ConnectionConfig, data.pop("connection", None) or {})
        rest = _build(RestConfig, data.pop("rest", None) or {})
        config = _build(cls, data)
        config.connection = connection
        config.rest = rest
        config.symbols = [s.upper() for s in config.symbols]
        return config

    @classmethod
    def from_yaml(cls, path: str | Path) -> FeedConfig:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
        return cls.from_dict(data)


def _build(kind: type, values: Mapping[str, Any]) -> Any:
    known = {f.name for f in dataclasses.fields(kind)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown {kind.__name__} keys: {', '.join(sorted(unknown))}")
    return kind(**values)
