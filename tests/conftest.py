"""Shared fixtures for book_feed tests."""

import pytest

from book_feed.config import ConnectionConfig
from book_feed.datafeed.orderbook import OrderBook, now_ms


@pytest.fixture
def make_book():
    """Factory for OrderBook snapshots with float price -> quantity maps."""
    def _make(bids=None, asks=None, symbol="BTCUSDT", sources=("binance",), last_update=None):
        return OrderBook(
            symbol=symbol,
            bids=bids or {},
            asks=asks or {},
            last_update=now_ms() if last_update is None else last_update,
            sources=sources,
            version="1",
        )
    return _make


@pytest.fixture
def connection_config():
    """Fast timers; reconnect delay long enough that it never fires by itself."""
    return ConnectionConfig(
        url="ws://test/ws",
        reconnect_attempts=5,
        reconnect_interval_ms=60_000,
        max_reconnect_interval_ms=60_000,
        reconnect_jitter_ms=0,
        heartbeat_interval_ms=0,
        connect_timeout_ms=50,
    )
