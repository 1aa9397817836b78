"""End-to-end tests for MarketFeed against a local aiohttp backend."""

import aiohttp
import orjson
import pytest
from aiohttp import test_utils, web

from book_feed.config import ConnectionConfig, FeedConfig, RestConfig
from book_feed.datafeed.market_feed import MarketFeed
from book_feed.events import BookRejected, BookUpdated
from tests.fakes import wait_until


def book_payload(bid="100", ask="101"):
    return {"Bids": {bid: "1"}, "Asks": {ask: "2"}, "Sources": ["mock"]}


@pytest.fixture
async def backend():
    state = {"sockets": [], "received": [], "rest_hits": 0}

    async def stream(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        state["sockets"].append(ws)
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            data = orjson.loads(msg.data)
            state["received"].append(data)
            if data.get("type") == "subscribe":
                await ws.send_str(orjson.dumps({
                    "type": "orderbook_update",
                    "symbol": data["symbol"],
                    "data": book_payload(),
                }).decode())
        return ws

    async def orderbook(request):
        state["rest_hits"] += 1
        return web.json_response({"Symbol": request.match_info["symbol"], **book_payload("99", "102")})

    app = web.Application()
    app.router.add_get("/ws", stream)
    app.router.add_get("/api/orderbook/{symbol}", orderbook)

    server = test_utils.TestServer(app)
    await server.start_server()
    state["ws_url"] = str(server.make_url("/ws")).replace("http://", "ws://")
    state["api_url"] = str(server.make_url("/")).rstrip("/")
    yield state
    await server.close()


def feed_config(backend, **overrides):
    options = {
        "connection": ConnectionConfig(
            url=backend["ws_url"],
            reconnect_interval_ms=10,
            max_reconnect_interval_ms=10,
            reconnect_jitter_ms=0,
            heartbeat_interval_ms=0,
            connect_timeout_ms=2000,
        ),
        "rest": RestConfig(base_url=backend["api_url"], retry_delay_ms=1, cache_ttl_ms=0),
        "symbols": ["BTCUSDT"],
        "poll_interval_ms": 20,
    }
    options.update(overrides)
    return FeedConfig(**options)


def subscribes(backend):
    return [m["symbol"] for m in backend["received"] if m.get("type") == "subscribe"]


async def test_stream_populates_store(backend):
    feed = MarketFeed(feed_config(backend))
    updates = []
    feed.events.subscribe(BookUpdated, updates.append)

    async with feed:
        await wait_until(lambda: feed.get_order_book("BTCUSDT") is not None)

        book = feed.get_order_book("btcusdt")
        assert book.bids == {100.0: 1.0}
        assert book.asks == {101.0: 2.0}
        assert updates[0].source == "stream"
        assert updates[0].validation.is_valid
        assert subscribes(backend) == ["BTCUSDT"]

        stats = feed.get_stats()
        assert stats["total_updates"] == 1
        assert stats["exchanges"] == ["mock"]
        assert stats["subscriptions"] == ["BTCUSDT"]

        summary = feed.market_summary()["BTCUSDT"]
        assert summary.prices.spread == 1.0
        assert summary.is_stale is False


async def test_server_close_triggers_reconnect_and_resubscribe(backend):
    feed = MarketFeed(feed_config(backend, symbols=["BTCUSDT", "ETHUSDT"]))

    async with feed:
        await wait_until(lambda: len(subscribes(backend)) == 2)
        await backend["sockets"][0].close()

        await wait_until(lambda: len(subscribes(backend)) == 4 and feed.connection.is_open)
        assert subscribes(backend) == ["BTCUSDT", "ETHUSDT", "BTCUSDT", "ETHUSDT"]
        assert feed.get_stats()["total_reconnects"] == 1


async def test_live_subscribe_and_unsubscribe(backend):
    feed = MarketFeed(feed_config(backend))

    async with feed:
        await wait_until(lambda: feed.get_order_book("BTCUSDT") is not None)

        assert await feed.subscribe(["solusdt"]) == ["SOLUSDT"]
        await wait_until(lambda: feed.get_order_book("SOLUSDT") is not None)

        assert await feed.unsubscribe("solusdt") == ["SOLUSDT"]
        assert feed.get_order_book("SOLUSDT") is None
        await wait_until(lambda: any(m.get("type") == "unsubscribe" for m in backend["received"]))


async def test_polling_only_mode(backend):
    feed = MarketFeed(feed_config(backend, enable_websocket=False))
    updates = []
    feed.events.subscribe(BookUpdated, updates.append)

    async with feed:
        await wait_until(lambda: backend["rest_hits"] >= 2)

        book = feed.get_order_book("BTCUSDT")
        assert book.bids == {99.0: 1.0}
        assert updates[0].source == "rest"
        assert backend["sockets"] == []

        await feed.subscribe("ethusdt")
        assert feed.get_order_book("ETHUSDT") is not None


class TestIngest:

    async def test_malformed_payload_rejected(self):
        feed = MarketFeed(FeedConfig(symbols=["BTCUSDT"]))
        await feed.registry.add("BTCUSDT")
        rejected = []
        feed.events.subscribe(BookRejected, rejected.append)

        assert feed.ingest({"Symbol": "BTCUSDT", "Bids": {}}) is None

        assert len(rejected) == 1
        assert feed.stats.protocol_errors == 1
        assert feed.get_order_book("BTCUSDT") is None

    async def test_unsubscribed_symbol_ignored(self):
        feed = MarketFeed(FeedConfig())
        assert feed.ingest({"Symbol": "XRPUSDT", "Bids": {}, "Asks": {}}) is None
        assert len(feed.store) == 0

    async def test_crossed_book_is_stored_and_flagged(self):
        feed = MarketFeed(FeedConfig())
        await feed.registry.add("BTCUSDT")
        updates = []
        feed.events.subscribe(BookUpdated, updates.append)

        book = feed.ingest({"Symbol": "BTCUSDT", "Bids": {"101": "1"}, "Asks": {"100": "1"}})

        assert book is not None
        assert feed.get_order_book("BTCUSDT") is book
        assert updates[0].validation.is_valid is False

    async def test_snapshot_replaces_previous_book(self):
        feed = MarketFeed(FeedConfig())
        await feed.registry.add("BTCUSDT")
        feed.ingest({"Symbol": "BTCUSDT", "Bids": {"100": "1", "99": "1"}, "Asks": {"101": "1"}})
        feed.ingest({"Symbol": "BTCUSDT", "Bids": {"98": "3"}, "Asks": {"102": "1"}})

        assert feed.get_order_book("BTCUSDT").bids == {98.0: 3.0}
        assert feed.total_updates == 2
