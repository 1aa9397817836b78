"""Tests for the REST client against a local aiohttp server."""

import asyncio
from collections import Counter

import pytest
from aiohttp import test_utils, web

from book_feed import errors
from book_feed.config import RestConfig
from book_feed.datafeed.rest_client import RestClient


@pytest.fixture
async def backend():
    state = {"hits": Counter(), "flaky_failures": 0, "seen": {}}

    async def orderbook(request):
        symbol = request.match_info["symbol"]
        state["hits"]["orderbook"] += 1
        state["seen"]["depth"] = request.query.get("depth")
        if symbol == "NOPEUSDT":
            return web.json_response({"error": "unknown symbol"}, status=404)
        return web.json_response({
            "Symbol": symbol,
            "Bids": {"100": "1"},
            "Asks": [{"Price": "101", "Quantity": "2"}],
            "Sources": ["mock"],
            "LastUpdate": 1_700_000_000_000,
        })

    async def flaky(request):
        state["hits"]["flaky"] += 1
        if state["flaky_failures"] > 0:
            state["flaky_failures"] -= 1
            return web.json_response({"error": "busy"}, status=503)
        return web.json_response({"ok": True})

    async def missing(request):
        state["hits"]["missing"] += 1
        return web.json_response({"error": "not found"}, status=404)

    async def slow(request):
        state["hits"]["slow"] += 1
        await asyncio.sleep(0.5)
        return web.json_response({"late": True})

    async def text(request):
        return web.Response(text="pong")

    async def bad_json(request):
        return web.Response(text="{bad", content_type="application/json")

    async def symbols(request):
        return web.json_response({"symbols": ["BTCUSDT", "ETHUSDT"]})

    async def echo(request):
        state["hits"]["echo"] += 1
        body = await request.json() if request.can_read_body else None
        return web.json_response({
            "method": request.method,
            "query": dict(request.query),
            "trace": request.headers.get("X-Trace"),
            "body": body,
            "path": request.path,
        })

    app = web.Application()
    app.router.add_get("/api/orderbook/{symbol}", orderbook)
    app.router.add_get("/api/flaky", flaky)
    app.router.add_get("/api/missing", missing)
    app.router.add_route("*", "/api/slow", slow)
    app.router.add_get("/api/text", text)
    app.router.add_get("/api/bad-json", bad_json)
    app.router.add_get("/api/symbols", symbols)
    app.router.add_get("/api/echo", echo)
    app.router.add_get("/api/history/{symbol}", echo)
    app.router.add_post("/api/subscribe", echo)
    app.router.add_delete("/api/subscribe/{symbol}", echo)

    server = test_utils.TestServer(app)
    await server.start_server()
    state["base_url"] = str(server.make_url("/")).rstrip("/")
    yield state
    await server.close()


def client_for(backend, **overrides):
    options = {"base_url": backend["base_url"], "retry_delay_ms": 1, "timeout_ms": 2000}
    options.update(overrides)
    return RestClient(RestConfig(**options))


class TestCache:

    async def test_get_is_cached_within_ttl(self, backend):
        async with client_for(backend) as api:
            first = await api.get("/api/echo", {"a": 1})
            second = await api.get("/api/echo", {"a": 1})
        assert first == second
        assert backend["hits"]["echo"] == 1

    async def test_query_is_part_of_the_key(self, backend):
        async with client_for(backend) as api:
            await api.get("/api/echo", {"a": 1})
            await api.get("/api/echo", {"a": 2})
            assert api.cache_stats()["size"] == 2
        assert backend["hits"]["echo"] == 2

    async def test_entry_expires(self, backend):
        async with client_for(backend, cache_ttl_ms=30) as api:
            await api.get("/api/echo")
            await asyncio.sleep(0.06)
            await api.get("/api/echo")
        assert backend["hits"]["echo"] == 2

    async def test_expired_entries_pruned_on_write(self, backend):
        async with client_for(backend, cache_ttl_ms=30) as api:
            await api.get("/api/echo", {"a": 1})
            await asyncio.sleep(0.06)
            await api.get("/api/echo", {"a": 2})
            stats = api.cache_stats()
        assert stats["size"] == 1
        assert stats["entries"][0].endswith("a=2")

    async def test_clear_cache(self, backend):
        async with client_for(backend) as api:
            await api.get("/api/echo")
            api.clear_cache()
            await api.get("/api/echo")
        assert backend["hits"]["echo"] == 2


class TestRetries:

    async def test_5xx_retried_until_success(self, backend):
        backend["flaky_failures"] = 2
        async with client_for(backend, retry_attempts=3) as api:
            assert await api.get("/api/flaky") == {"ok": True}
        assert backend["hits"]["flaky"] == 3

    async def test_5xx_exhausts_attempts(self, backend):
        backend["flaky_failures"] = 10
        async with client_for(backend, retry_attempts=3) as api:
            with pytest.raises(errors.HTTPError) as info:
                await api.get("/api/flaky")
        assert info.value.status == 503
        assert info.value.retryable
        assert backend["hits"]["flaky"] == 3

    async def test_4xx_is_terminal(self, backend):
        async with client_for(backend, retry_attempts=3) as api:
            with pytest.raises(errors.HTTPError) as info:
                await api.get("/api/missing")
        assert info.value.status == 404
        assert info.value.body == {"error": "not found"}
        assert not info.value.retryable
        assert backend["hits"]["missing"] == 1

    async def test_get_timeout_retried(self, backend):
        async with client_for(backend, retry_attempts=2, timeout_ms=50) as api:
            with pytest.raises(errors.TimeoutError):
                await api.get("/api/slow")
        assert backend["hits"]["slow"] == 2

    async def test_post_timeout_not_retried(self, backend):
        async with client_for(backend, retry_attempts=3, timeout_ms=50) as api:
            with pytest.raises(errors.TimeoutError):
                await api.post("/api/slow", {"x": 1})
        assert backend["hits"]["slow"] == 1

    async def test_network_failure(self):
        api = RestClient(RestConfig(base_url="http://127.0.0.1:1", retry_attempts=2, retry_delay_ms=1))
        async with api:
            with pytest.raises(errors.ConnectionError):
                await api.get("/api/health")


class TestBodies:

    async def test_text_response(self, backend):
        async with client_for(backend) as api:
            assert await api.get("/api/text") == "pong"

    async def test_invalid_json_is_protocol_error(self, backend):
        async with client_for(backend, retry_attempts=1) as api:
            with pytest.raises(errors.ProtocolError):
                await api.get("/api/bad-json")


class TestInterceptors:

    async def test_order_and_effect(self, backend):
        calls = []

        def first(url, options):
            calls.append("first")
            options["headers"]["X-Trace"] = "abc"
            return options

        async def second(url, options):
            calls.append("second")
            return options

        def tag(response, url, options):
            calls.append("response")
            return response._replace(data={**response.data, "tagged": True})

        async with client_for(backend) as api:
            api.add_request_interceptor(first)
            api.add_request_interceptor(second)
            api.add_response_interceptor(tag)
            data = await api.get("/api/echo")

        assert calls == ["first", "second", "response"]
        assert data["trace"] == "abc"
        assert data["tagged"] is True


class TestEndpoints:

    async def test_get_order_book(self, backend):
        async with client_for(backend) as api:
            book = await api.get_order_book("btcusdt", depth=5)

        assert book.symbol == "BTCUSDT"
        assert book.bids == {100.0: 1.0}
        assert book.asks == {101.0: 2.0}
        assert book.sources == ("mock",)
        assert book.last_update == 1_700_000_000_000
        assert backend["seen"]["depth"] == "5"

    async def test_get_multiple_order_books(self, backend):
        async with client_for(backend) as api:
            books, failures = await api.get_multiple_order_books(["btcusdt", "nopeusdt"])

        assert list(books) == ["BTCUSDT"]
        assert "NOPEUSDT" in failures

    async def test_symbols_history_and_subscriptions(self, backend):
        async with client_for(backend) as api:
            assert await api.get_symbols() == ["BTCUSDT", "ETHUSDT"]

            history = await api.get_history("ethusdt", interval="5m", limit=10)
            assert history["path"] == "/api/history/ETHUSDT"
            assert history["query"] == {"interval": "5m", "limit": "10"}

            subscribed = await api.subscribe_symbol("solusdt")
            assert subscribed["method"] == "POST"
            assert subscribed["body"] == {"symbol": "SOLUSDT"}

            removed = await api.unsubscribe_symbol("solusdt")
            assert removed["method"] == "DELETE"
            assert removed["path"] == "/api/subscribe/SOLUSDT"

    @pytest.mark.parametrize("symbol,valid", [
        ("BTCUSDT", True), ("ethusdt", True), ("BTC", False), ("BTC-USD", False), (42, False),
    ])
    def test_is_valid_symbol(self, symbol, valid):
        assert RestClient.is_valid_symbol(symbol) is valid
