"""In-memory stand-ins for aiohttp WebSocket objects used by transport tests."""

from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace
from typing import Any

import aiohttp
import orjson

HANG = "hang"


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll predicate until true; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class FakeWebSocket:
    """Minimal ClientWebSocketResponse: records sends, replays queued frames."""

    def __init__(self, fail_send: bool = False, send_delay: float = 0.0) -> None:
        self.sent: list[Any] = []
        self.send_delay = send_delay
        self.closed = False
        self.close_code: int | None = None
        self.fail_send = fail_send
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send_str(self, data: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.closed or self.fail_send:
            raise ConnectionResetError("socket is closed")
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        if self.closed or self.fail_send:
            raise ConnectionResetError("socket is closed")
        self.sent.append(data)

    async def close(self, code: int = 1000, message: bytes = b"") -> bool:
        if self.closed:
            return False
        self.closed = True
        self.close_code = code
        self._incoming.put_nowait(None)
        return True

    def exception(self) -> BaseException | None:
        return None

    def feed_text(self, text: str) -> None:
        self._incoming.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=text))

    def feed_json(self, data: Any) -> None:
        self.feed_text(orjson.dumps(data).decode())

    def drop(self, code: int = 1006) -> None:
        """Server-side close that the client did not ask for."""
        self.closed = True
        self.close_code = code
        self._incoming.put_nowait(None)

    def sent_json(self) -> list[Any]:
        return [orjson.loads(m) for m in self.sent]

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> SimpleNamespace:
        msg = await self._incoming.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


class FakeSession:
    """ws_connect() hands out scripted outcomes: sockets, exceptions or HANG."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.sockets: list[FakeWebSocket] = []
        self.connect_calls = 0
        self.closed = False

    async def ws_connect(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.connect_calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else FakeWebSocket()
        if outcome == HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, BaseException):
            raise outcome
        self.sockets.append(outcome)
        return outcome

    async def close(self) -> None:
        self.closed = True
