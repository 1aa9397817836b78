"""
Desired-subscription registry.

The registry's symbol set is the single source of truth for what should be
subscribed, independent of the transport's current state. Changes made while
the transport is down are only recorded; the resync on the next Open
transition realizes them. Nothing is queued for later, so a resync can never
be duplicated in the outbound queue.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Iterator

import structlog

from .orderbook import now_ms

if TYPE_CHECKING:
    from .connection import ConnectionManager

logger = structlog.get_logger(__name__)


def _as_symbols(symbols: str | Iterable[str]) -> list[str]:
    if isinstance(symbols, str):
        symbols = [symbols]
    return [s.strip().upper() for s in symbols if s and s.strip()]


def control_message(kind: str, symbol: str) -> dict:
    """Subscribe/unsubscribe control frame."""
    return {"type": kind, "symbol": symbol.upper(), "timestamp": now_ms()}


class SubscriptionRegistry:
    """
    Tracks desired symbols and replays them whenever a connection opens.

    Usage:
        registry = SubscriptionRegistry(manager)   # attaches itself
        await registry.add(["btcusdt", "ETHUSDT"])
    """

    __slots__ = ('_manager', '_symbols', 'resync_pending')

    def __init__(self, manager: ConnectionManager) -> None:
        self._manager = manager
        self._symbols: set[str] = set()
        self.resync_pending = False
        manager.attach_registry(self)

    @property
    def symbols(self) -> list[str]:
        return sorted(self._symbols)

    async def add(self, symbols: str | Iterable[str]) -> list[str]:
        """Add symbols; returns the ones that were not already desired."""
        added = [s for s in dict.fromkeys(_as_symbols(symbols)) if s not in self._symbols]
        self._symbols.update(added)
        if not added:
            return added

        live = await self._send_all("subscribe", added)
        logger.info("subscriptions_added", symbols=added, live=live)
        return added

    async def remove(self, symbols: str | Iterable[str]) -> list[str]:
        """Remove symbols; returns the ones that were actually desired."""
        removed = [s for s in dict.fromkeys(_as_symbols(symbols)) if s in self._symbols]
        self._symbols.difference_update(removed)
        if not removed:
            return removed

        live = await self._send_all("unsubscribe", removed)
        logger.info("subscriptions_removed", symbols=removed, live=live)
        return removed

    async def _send_all(self, kind: str, symbols: list[str]) -> bool:
        """
        Send one control frame per symbol without queueing.

        Stops at the first frame that is not transmitted and leaves the
        change to the resync on the next Open. Returns True if all went out.
        """
        for symbol in symbols:
            if not await self._manager.send(control_message(kind, symbol), queue=False):
                self.resync_pending = True
                return False
        return True

    async def resync(self) -> int:
        """
        Send one subscribe per desired symbol. Only acts while the transport
        is open; returns the number of subscribe messages sent.
        """
        if not self._manager.is_open:
            if self._symbols:
                self.resync_pending = True
            return 0

        self.resync_pending = False
        sent = 0
        for symbol in sorted(self._symbols):
            if not await self._manager.send(control_message("subscribe", symbol), queue=False):
                self.resync_pending = True
                break
            sent += 1
        if sent:
            logger.info("subscriptions_resynced", count=sent, total=len(self._symbols))
        return sent

    def clear_pending(self) -> None:
        self.resync_pending = False

    def __contains__(self, symbol: object) -> bool:
        return isinstance(symbol, str) and symbol.upper() in self._symbols

    def __len__(self) -> int:
        return len(self._symbols)

    def __iter__(self) -> Iterator[str]:
        return iter(self.symbols)
