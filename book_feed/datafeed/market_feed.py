"""
Market feed: streaming transport + REST fallback feeding one order book store.

Handles:
1. WebSocket stream with resubscription on every reconnect
2. REST polling, either as the primary path (streaming disabled) or as a
   fallback while the stream is down
3. REST backfill when a symbol is subscribed with polling enabled
4. Normalization, validation and publication of every stored book

Analytics are not run per update; callers query the store on demand.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Iterable

import aiohttp
import structlog

from .. import errors
from ..config import FeedConfig
from ..engine import analytics
from ..events import BookRejected, BookUpdated, EventBus, MessageReceived
from ..types import BookSummary
from .connection import ConnectionManager
from .normalize import extract_order_book_payload, normalize_order_book
from .orderbook import OrderBook, OrderBookStore, now_ms
from .rest_client import RestClient
from .stats import StatsAggregator
from .subscriptions import SubscriptionRegistry

logger = structlog.get_logger(__name__)

ORDERBOOK_UPDATE = "orderbook_update"


class MarketFeed:
    """
    Composes the data-plane components around an explicit FeedConfig.

    Usage:
        feed = MarketFeed(FeedConfig(symbols=["BTCUSDT"]))
        feed.events.subscribe(BookUpdated, on_book)
        await feed.start()
        ...
        await feed.stop()
    """

    def __init__(
        self,
        config: FeedConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config

        # Core components
        self.events = EventBus()
        self.stats = StatsAggregator(config.connection.latency_window)
        self.connection = ConnectionManager(config.connection, self.stats, self.events, session=session)
        self.registry = SubscriptionRegistry(self.connection)
        self.store = OrderBookStore(stale_after_ms=config.stale_after_ms)
        self.rest = RestClient(config.rest, session=session)

        # State
        self._running = False
        self._poll_task: asyncio.Task | None = None
        self.total_updates = 0
        self.last_update_time: int | None = None
        self.exchanges: set[str] = set()

        # Rolling update rate tracking
        self._update_count_last = 0
        self._rate_calc_time = time.perf_counter()
        self._updates_per_sec = 0.0

        self._unsubscribe_messages = self.events.subscribe(MessageReceived, self._on_message)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def polling(self) -> bool:
        return self.config.enable_polling or not self.config.enable_websocket

    # ===== LIFECYCLE =====

    async def start(self) -> None:
        """Subscribe configured symbols, connect the stream and start polling."""
        if self._running:
            return
        self._running = True
        logger.info(
            "feed_starting",
            symbols=self.config.symbols,
            websocket=self.config.enable_websocket,
            polling=self.polling,
        )

        await self.registry.add(self.config.symbols)
        if self.config.enable_websocket:
            await self.connection.connect()
        if self.polling:
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        self._running = False
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.connection.close()
        await self.rest.close()
        logger.info("feed_stopped", total_updates=self.total_updates)

    async def __aenter__(self) -> MarketFeed:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ===== SUBSCRIPTIONS =====

    async def subscribe(self, symbols: str | Iterable[str]) -> list[str]:
        """Add symbols; with polling enabled each new one is backfilled via REST."""
        added = await self.registry.add(symbols)
        if added and self.polling and self._running:
            for symbol in added:
                await self.fetch(symbol)
        return added

    async def unsubscribe(self, symbols: str | Iterable[str]) -> list[str]:
        """Remove symbols from the desired set and drop their books."""
        removed = await self.registry.remove(symbols)
        for symbol in removed:
            self.store.remove(symbol)
        return removed

    # ===== INGESTION =====

    def _on_message(self, event: MessageReceived) -> None:
        """
        Route stream messages; only order book updates are ingested here.

        HOT PATH - called for every non-heartbeat message.
        """
        data = event.data
        if not isinstance(data, dict) or data.get("type") != ORDERBOOK_UPDATE:
            return
        payload, envelope_symbol = extract_order_book_payload(data)
        self.ingest(payload, source="stream", symbol=envelope_symbol, received_at=event.received_at)

    def ingest(
        self,
        payload: Any,
        source: str = "stream",
        symbol: str | None = None,
        received_at: int | None = None,
    ) -> OrderBook | None:
        """
        Normalize, store, validate and publish one order book payload.

        Malformed payloads are dropped and published as BookRejected.
        """
        try:
            normalized = normalize_order_book(payload, symbol=symbol, received_at=received_at)
        except errors.ProtocolError as exc:
            self.stats.record_protocol_error()
            logger.warning("book_rejected", source=source, error=exc.message)
            self.events.publish(BookRejected(error=exc, payload=payload, source=source))
            return None

        book = normalized.book
        if normalized.rejected_levels:
            logger.warning("levels_rejected", symbol=book.symbol, count=normalized.rejected_levels, source=source)
        return self._store(book, source)

    def _store(self, book: OrderBook, source: str) -> OrderBook | None:
        if book.symbol not in self.registry:
            # In-flight update for a withdrawn subscription
            logger.debug("unsubscribed_book_ignored", symbol=book.symbol, source=source)
            return None

        self.store.apply(book)
        self.total_updates += 1
        self.last_update_time = now_ms()
        self.exchanges.update(book.sources)

        validation = analytics.validate(book, stale_after_ms=self.config.stale_after_ms)
        if not validation.is_valid:
            flagged = errors.ValidationError(
                f"Order book {book.symbol} failed validation",
                symbol=book.symbol,
                issues=validation.issues,
                warnings=validation.warnings,
            )
            logger.warning("book_flagged", **flagged.to_dict())
        self.events.publish(BookUpdated(book.symbol, book, validation, source))
        return book

    async def fetch(self, symbol: str) -> OrderBook | None:
        """Fetch one symbol via REST and store it; failures are logged, not raised."""
        try:
            book = await self.rest.get_order_book(symbol, depth=self.config.max_depth)
        except errors.FeedError as exc:
            logger.warning("rest_fetch_failed", symbol=symbol.upper(), **exc.to_dict())
            return None
        return self._store(book, "rest")

    async def refresh(self) -> list[OrderBook]:
        """Re-fetch every subscribed symbol via REST."""
        books = []
        for symbol in self.registry.symbols:
            book = await self.fetch(symbol)
            if book is not None:
                books.append(book)
        return books

    async def _poll_loop(self) -> None:
        """
        Poll subscribed symbols every poll_interval_ms.

        When streaming is enabled, polls are skipped while the stream is open.
        """
        interval = self.config.poll_interval_ms / 1000
        while self._running:
            if not (self.config.enable_websocket and self.connection.is_open):
                await self.refresh()
            await asyncio.sleep(interval)

    # ===== QUERIES =====

    def get_order_book(self, symbol: str) -> OrderBook | None:
        return self.store.get(symbol)

    def market_summary(self, now: int | None = None) -> dict[str, BookSummary]:
        now = now_ms() if now is None else now
        return {
            book.symbol: analytics.summarize(book, now, self.config.stale_after_ms)
            for book in self.store
        }

    def updates_per_sec(self) -> float:
        """Rolling store update rate, recomputed at most once per second."""
        now = time.perf_counter()
        elapsed = now - self._rate_calc_time
        if elapsed >= 1.0:
            self._updates_per_sec = (self.total_updates - self._update_count_last) / elapsed
            self._update_count_last = self.total_updates
            self._rate_calc_time = now
        return self._updates_per_sec

    def get_stats(self) -> dict[str, Any]:
        stats = self.connection.get_stats()
        stats.update(
            total_updates=self.total_updates,
            last_update_time=self.last_update_time,
            updates_per_sec=self.updates_per_sec(),
            exchanges=sorted(self.exchanges),
            subscriptions=self.registry.symbols,
            stale_symbols=self.store.stale_symbols(),
        )
        return stats
