"""Tests for the desired-subscription registry."""

from book_feed.datafeed.connection import ConnectionManager
from book_feed.datafeed.subscriptions import SubscriptionRegistry
from tests.fakes import FakeSession, FakeWebSocket


def make(config, *outcomes):
    manager = ConnectionManager(config, session=FakeSession(*outcomes))
    return manager, SubscriptionRegistry(manager)


async def test_add_while_closed_only_marks_pending(connection_config):
    manager, registry = make(connection_config)

    added = await registry.add(["btcusdt", " ethusdt ", "BTCUSDT", ""])

    assert added == ["BTCUSDT", "ETHUSDT"]
    assert registry.symbols == ["BTCUSDT", "ETHUSDT"]
    assert registry.resync_pending
    assert not manager.outbound_queue
    assert "btcusdt" in registry and len(registry) == 2


async def test_resync_while_closed_sends_nothing(connection_config):
    manager, registry = make(connection_config)
    await registry.add("BTCUSDT")

    assert await registry.resync() == 0
    assert await registry.resync() == 0
    assert not manager.outbound_queue


async def test_repeated_reconnects_subscribe_once_per_open(connection_config):
    sockets = [FakeWebSocket() for _ in range(3)]
    manager, registry = make(connection_config, *sockets)
    await registry.add(["BTCUSDT", "ETHUSDT"])

    for ws in sockets:
        await manager.connect()
        await manager.disconnect()

    for ws in sockets:
        assert [m["symbol"] for m in ws.sent_json()] == ["BTCUSDT", "ETHUSDT"]
    assert not registry.resync_pending


async def test_live_add_and_remove(connection_config):
    ws = FakeWebSocket()
    manager, registry = make(connection_config, ws)
    await manager.connect()

    assert await registry.add("solusdt") == ["SOLUSDT"]
    assert await registry.add("solusdt") == []
    assert await registry.remove(["SOLUSDT", "XRPUSDT"]) == ["SOLUSDT"]

    frames = ws.sent_json()
    assert [(m["type"], m["symbol"]) for m in frames] == [
        ("subscribe", "SOLUSDT"),
        ("unsubscribe", "SOLUSDT"),
    ]
    assert all(isinstance(m["timestamp"], int) for m in frames)
    assert not registry.resync_pending
    await manager.disconnect()


async def test_removed_symbol_not_resubscribed(connection_config):
    first, second = FakeWebSocket(), FakeWebSocket()
    manager, registry = make(connection_config, first, second)
    await registry.add(["BTCUSDT", "ETHUSDT"])
    await manager.connect()
    await manager.disconnect()

    await registry.remove("ETHUSDT")
    assert registry.resync_pending
    await manager.connect()

    assert [m["symbol"] for m in second.sent_json()] == ["BTCUSDT"]
    await manager.disconnect()
