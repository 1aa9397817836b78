"""
Streaming transport connection manager.

Owns one WebSocket's lifecycle as an explicit state machine:

    DISCONNECTED/RECONNECTING --connect()--> CONNECTING --open--> OPEN
    OPEN/CONNECTING --close--> DISCONNECTED (--unclean--> RECONNECTING)
    any --disconnect()--> DISCONNECTED (no reconnect)

Each timer is one asyncio task per purpose (reader, heartbeat, reconnect),
cancelled exactly on the transitions that leave its owning state. The
handshake deadline is enforced with asyncio.wait_for and ends with it.

Performance notes:
- orjson for parsing and serializing
- Per-message logging only at debug level
"""

from __future__ import annotations

import asyncio
import random
import uuid
from collections import deque
from typing import TYPE_CHECKING, Any, Callable

import aiohttp
import orjson
import structlog

from .. import errors
from ..config import ConnectionConfig
from ..events import Closed, ErrorOccurred, EventBus, MessageReceived, Opened
from ..types import ConnectionState
from .orderbook import now_ms
from .stats import StatsAggregator

if TYPE_CHECKING:
    from .subscriptions import SubscriptionRegistry

logger = structlog.get_logger(__name__)

MANUAL_CLOSE_CODE = 1000
MANUAL_CLOSE_REASON = "Manual disconnect"
MAX_BACKOFF_EXPONENT = 32


def reconnect_delay(
    attempt: int,
    base_ms: float,
    max_ms: float,
    jitter_ms: float = 1000.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Backoff delay in ms for the given (1-based) reconnect attempt.

    min(base * 2^(attempt-1), max) plus uniform jitter in [0, jitter_ms).
    """
    exponent = min(max(attempt - 1, 0), MAX_BACKOFF_EXPONENT)
    exponential = min(base_ms * 2 ** exponent, max_ms)
    return exponential + rng() * jitter_ms


def new_connection_id() -> str:
    return uuid.uuid4().hex[:9]


def serialize(message: Any) -> str | bytes:
    """Strings and bytes go out as-is; everything else as JSON text."""
    if isinstance(message, (str, bytes)):
        return message
    return orjson.dumps(message).decode()


class ConnectionManager:
    """
    WebSocket connection with heartbeat, backoff reconnect and an outbound queue.

    Usage:
        manager = ConnectionManager(ConnectionConfig(url="wss://..."), stats, events)
        await manager.connect()
        await manager.send({"type": "subscribe", "symbol": "BTCUSDT"})
        ...
        await manager.close()

    Thread-safety: NOT thread-safe. Designed for single-threaded async use.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        stats: StatsAggregator | None = None,
        events: EventBus | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config
        self.stats = stats or StatsAggregator(config.latency_window)
        self.events = events or EventBus()

        # State
        self.state = ConnectionState.DISCONNECTED
        self.attempt = 0
        self.connection_id: str | None = None
        self.outbound_queue: deque[Any] = deque()

        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._registry: SubscriptionRegistry | None = None
        self._closing = False  # Explicit local disconnect in progress

        # One task per timer purpose
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

        self._log = logger.bind(url=config.url)

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def attach_registry(self, registry: SubscriptionRegistry) -> None:
        """Registry to resync on every Open transition."""
        self._registry = registry

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # ===== LIFECYCLE =====

    async def connect(self) -> None:
        """Start a connection attempt; no-op while connecting or open."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN, ConnectionState.CLOSING):
            self._log.debug("connect_ignored", state=self.state.value)
            return

        if self.reconnect_pending and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        self.state = ConnectionState.CONNECTING
        self.connection_id = new_connection_id()
        self._closing = False
        log = self._log.bind(connection_id=self.connection_id, attempt=self.attempt)
        log.info("connecting")

        session = await self._ensure_session()
        timeout = self.config.connect_timeout_ms / 1000
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(self.config.url, autoping=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            self._handle_error(errors.TimeoutError(
                f"Connection timeout after {self.config.connect_timeout_ms:.0f}ms",
                timeout=timeout,
                cause=exc,
            ))
            return
        except (aiohttp.ClientError, OSError) as exc:
            self._handle_error(errors.ConnectionError(
                f"Failed to connect to {self.config.url}: {exc}",
                cause=exc,
            ))
            return

        if self._closing or self.state is not ConnectionState.CONNECTING:
            # disconnect() ran while the handshake was in flight
            await ws.close(code=MANUAL_CLOSE_CODE, message=MANUAL_CLOSE_REASON.encode())
            return

        await self._handle_open(ws)

    async def _handle_open(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws
        self.state = ConnectionState.OPEN
        self.attempt = 0
        self.stats.mark_connected()
        self._log.info("connected", connection_id=self.connection_id)

        self._reader_task = asyncio.create_task(self._read_loop(ws))
        if self.config.heartbeat_interval_ms > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        await self._flush_queue()
        if not self._still_open(ws):
            return
        if self._registry is not None:
            await self._registry.resync()
        if not self._still_open(ws):
            return

        self.events.publish(Opened(connection_id=self.connection_id, url=self.config.url))

    def _still_open(self, ws: aiohttp.ClientWebSocketResponse) -> bool:
        """False once disconnect() or a close replaced or dropped `ws`."""
        return not self._closing and self._ws is ws and self.is_open and not ws.closed

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Receive until the socket closes, then run the close transition."""
        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    self._handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._record_error(errors.ConnectionError(
                        f"WebSocket error: {ws.exception()}",
                        cause=ws.exception(),
                    ))
                    break
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, OSError) as exc:
            self._record_error(errors.ConnectionError(f"Receive failed: {exc}", cause=exc))

        if ws is self._ws:
            if not ws.closed:
                await ws.close()
            self._handle_close(ws.close_code, "Connection closed", clean=self._closing)

    def _handle_close(self, code: int | None, reason: str, clean: bool) -> None:
        self._cancel_task("_heartbeat_task")
        self._reader_task = None
        self._ws = None
        self.stats.mark_disconnected()
        self.state = ConnectionState.DISCONNECTED

        will_reconnect = not clean and self.attempt < self.config.reconnect_attempts
        self._log.info(
            "disconnected",
            connection_id=self.connection_id,
            code=code,
            was_clean=clean,
            will_reconnect=will_reconnect,
        )
        self.events.publish(Closed(code=code, reason=reason, was_clean=clean, will_reconnect=will_reconnect))

        if will_reconnect:
            self._schedule_reconnect()
        elif not clean:
            self._log.warning("reconnect_attempts_exhausted", attempts=self.attempt)

    def _record_error(self, error: errors.FeedError) -> None:
        self.stats.record_error()
        self._log.warning("connection_error", **error.to_dict())
        self.events.publish(ErrorOccurred(error=error, connection_id=self.connection_id))

    def _handle_error(self, error: errors.FeedError) -> None:
        """Transport-level error; while connecting it counts as an unclean close."""
        self._record_error(error)
        if self.state is ConnectionState.CONNECTING:
            self._handle_close(None, str(error), clean=False)

    def _schedule_reconnect(self) -> bool:
        """Schedule one backoff reconnect. Returns False if one is already pending."""
        if self.reconnect_pending:
            return False

        self.attempt += 1
        self.stats.record_reconnect()
        delay = reconnect_delay(
            self.attempt,
            self.config.reconnect_interval_ms,
            self.config.max_reconnect_interval_ms,
            self.config.reconnect_jitter_ms,
        )
        self.state = ConnectionState.RECONNECTING
        self._log.info(
            "reconnect_scheduled",
            delay_ms=round(delay),
            attempt=self.attempt,
            max_attempts=self.config.reconnect_attempts,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay / 1000))
        return True

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self.connect()

    async def disconnect(self) -> None:
        """Close cleanly. Cancels all timers and never schedules a reconnect."""
        self._log.info("disconnecting", connection_id=self.connection_id)
        self._closing = True
        was_connected = self.state in (ConnectionState.OPEN, ConnectionState.CONNECTING)

        self._cancel_task("_reconnect_task")
        self._cancel_task("_heartbeat_task")
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        ws, self._ws = self._ws, None
        if ws is not None:
            self.state = ConnectionState.CLOSING
            if not ws.closed:
                await ws.close(code=MANUAL_CLOSE_CODE, message=MANUAL_CLOSE_REASON.encode())

        self.stats.mark_disconnected()
        self.outbound_queue.clear()
        if self._registry is not None:
            self._registry.clear_pending()
        self.state = ConnectionState.DISCONNECTED

        if was_connected:
            self.events.publish(Closed(
                code=MANUAL_CLOSE_CODE,
                reason=MANUAL_CLOSE_REASON,
                was_clean=True,
                will_reconnect=False,
            ))

    async def reconnect(self) -> None:
        """Force a fresh connection with the attempt counter reset."""
        await self.disconnect()
        self.attempt = 0
        await self.connect()

    async def close(self) -> None:
        """Disconnect and release the HTTP session if this manager created it."""
        await self.disconnect()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> ConnectionManager:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _cancel_task(self, attr: str) -> None:
        task = getattr(self, attr)
        setattr(self, attr, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ===== OUTBOUND =====

    async def send(self, message: Any, queue: bool = True) -> bool:
        """
        Transmit now if OPEN, else queue for the next Open transition.

        Returns True when transmitted, False otherwise. With queue=False an
        untransmitted message is dropped instead of queued; subscription
        control frames use this since the registry replays them on Open.
        Never raises because the transport is down.
        """
        ws = self._ws
        if self.state is not ConnectionState.OPEN or ws is None or ws.closed:
            if queue:
                self.outbound_queue.append(message)
                self._log.debug("message_queued", queued=len(self.outbound_queue))
            return False

        payload = serialize(message)
        try:
            if isinstance(payload, bytes):
                await ws.send_bytes(payload)
            else:
                await ws.send_str(payload)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            # disconnect() has already cleared the queue
            if queue and not self._closing:
                self.outbound_queue.appendleft(message)
            self._record_error(errors.ConnectionError(f"Send failed: {exc}", cause=exc))
            # Closing unblocks the reader, whose close transition reconnects
            if not ws.closed:
                await ws.close()
            return False

        self.stats.record_sent(len(payload))
        return True

    async def _flush_queue(self) -> None:
        """Send queued messages in FIFO order while the socket stays open."""
        while self.outbound_queue and self.is_open:
            message = self.outbound_queue.popleft()
            if not await self.send(message):
                break

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_interval_ms / 1000
        while self.is_open:
            await asyncio.sleep(interval)
            if self.is_open:
                await self.send({
                    "type": "ping",
                    "requestTime": now_ms(),
                    "connectionId": self.connection_id,
                })

    # ===== INBOUND =====

    def _handle_message(self, raw: str | bytes) -> None:
        """
        Count, parse and dispatch one inbound frame.

        HOT PATH - called for every message.
        """
        size = len(raw) if isinstance(raw, bytes) else len(raw.encode())
        self.stats.record_message(size)
        received_at = now_ms()

        try:
            data: Any = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            # Not structured data: pass the text through
            self.stats.record_protocol_error()
            error = errors.ProtocolError("Inbound message is not JSON", raw=raw, cause=exc)
            self._log.debug("protocol_error", **error.to_dict())
            data = raw.decode(errors="replace") if isinstance(raw, bytes) else raw

        channel = "message"
        if isinstance(data, dict):
            msg_type = data.get("type")
            if msg_type == "pong":
                self._handle_pong(data, received_at)
                return

            timestamp = data.get("timestamp")
            if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool) and timestamp > 0:
                self.stats.record_latency(received_at - timestamp)

            if isinstance(msg_type, str):
                channel = f"message:{msg_type}"

        self.events.publish(MessageReceived(data=data, raw=raw, received_at=received_at, channel=channel))

    def _handle_pong(self, data: dict, received_at: int) -> None:
        request_time = data.get("requestTime")
        if isinstance(request_time, (int, float)) and not isinstance(request_time, bool):
            latency = received_at - request_time
            self.stats.record_latency(latency)
            self._log.debug("heartbeat_latency", latency_ms=latency)

    # ===== INTROSPECTION =====

    def state_info(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "is_connected": self.is_open,
            "url": self.config.url,
            "connection_id": self.connection_id,
            "attempt": self.attempt,
            "subscriptions": self._registry.symbols if self._registry is not None else [],
            "queued_messages": len(self.outbound_queue),
        }

    def get_stats(self) -> dict[str, Any]:
        stats = self.stats.snapshot()
        stats.update(
            is_connected=self.is_open,
            reconnect_attempts=self.attempt,
            queued_messages=len(self.outbound_queue),
            connection_id=self.connection_id,
        )
        return stats
