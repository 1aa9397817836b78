"""
Per-symbol order book snapshots and the store that holds them.

The feed is snapshot-style at this layer: every update replaces a symbol's
book wholesale (last writer wins), so books are never merged or patched.

Performance strategy:
1. dict[float, float] per side for O(1) level lookup
2. Sorted price lists built lazily on first read, then cached
3. Books are not mutated after construction, so the cache never goes stale
"""

from __future__ import annotations

import math
import time
from typing import Iterable, Iterator, Mapping

from ..types import PriceLevel

STALE_AFTER_MS = 10_000


def now_ms() -> int:
    return int(time.time() * 1000)


class OrderBook:
    """
    Immutable-by-convention snapshot of one symbol's resting levels.

    Thread-safety: NOT thread-safe. Designed for single-threaded async use.
    """

    __slots__ = (
        'symbol', 'bids', 'asks', 'last_update', 'sources', 'version',
        '_bid_prices_sorted', '_ask_prices_sorted',
    )

    def __init__(
        self,
        symbol: str,
        bids: Mapping[float, float] | None = None,
        asks: Mapping[float, float] | None = None,
        last_update: int | None = None,
        sources: Iterable[str] = (),
        version: str = "0",
    ) -> None:
        self.symbol = symbol.upper()

        # Core data: price -> quantity
        self.bids: dict[float, float] = dict(bids or {})
        self.asks: dict[float, float] = dict(asks or {})

        self.last_update: int = now_ms() if last_update is None else int(last_update)
        self.sources: tuple[str, ...] = tuple(sources)
        self.version: str = str(version)

        # Cached sorted price arrays - built lazily
        self._bid_prices_sorted: list[float] | None = None  # Descending (best bid first)
        self._ask_prices_sorted: list[float] | None = None  # Ascending (best ask first)

    def __repr__(self) -> str:
        return (
            f"OrderBook({self.symbol!r}, bids={len(self.bids)}, asks={len(self.asks)}, "
            f"version={self.version!r})"
        )

    @property
    def exchange(self) -> str:
        """Primary contributing exchange, used to tag books in comparisons."""
        return self.sources[0] if self.sources else "unknown"

    def _ensure_sorted(self) -> None:
        # Sorted views hold finite prices only
        if self._bid_prices_sorted is None:
            self._bid_prices_sorted = sorted((p for p in self.bids if math.isfinite(p)), reverse=True)
            self._ask_prices_sorted = sorted(p for p in self.asks if math.isfinite(p))

    def sorted_bids(self, levels: int | None = None) -> list[PriceLevel]:
        """Bid levels, best (highest) first."""
        self._ensure_sorted()
        prices = self._bid_prices_sorted[:levels] if levels is not None else self._bid_prices_sorted
        return [PriceLevel(p, self.bids[p]) for p in prices]

    def sorted_asks(self, levels: int | None = None) -> list[PriceLevel]:
        """Ask levels, best (lowest) first."""
        self._ensure_sorted()
        prices = self._ask_prices_sorted[:levels] if levels is not None else self._ask_prices_sorted
        return [PriceLevel(p, self.asks[p]) for p in prices]

    @property
    def best_bid(self) -> float:
        """Best bid price. Returns 0.0 if no bids."""
        self._ensure_sorted()
        return self._bid_prices_sorted[0] if self._bid_prices_sorted else 0.0

    @property
    def best_ask(self) -> float:
        """Best ask price. Returns 0.0 if no asks."""
        self._ensure_sorted()
        return self._ask_prices_sorted[0] if self._ask_prices_sorted else 0.0

    @property
    def is_crossed(self) -> bool:
        bb, ba = self.best_bid, self.best_ask
        return bb > 0 and ba > 0 and bb >= ba

    def age_ms(self, now: int | None = None) -> int:
        return (now_ms() if now is None else now) - self.last_update

    def is_stale(self, now: int | None = None, stale_after_ms: float = STALE_AFTER_MS) -> bool:
        return self.age_ms(now) > stale_after_ms

    def to_wire(self) -> dict:
        """Canonical wire shape shared by the stream and REST paths."""
        return {
            "Symbol": self.symbol,
            "Bids": {_fmt(p): _fmt(q) for p, q in self.bids.items()},
            "Asks": {_fmt(p): _fmt(q) for p, q in self.asks.items()},
            "LastUpdate": self.last_update,
            "Sources": list(self.sources),
            "Version": self.version,
        }


def _fmt(value: float) -> str:
    return repr(float(value))


class OrderBookStore:
    """
    Holds the current OrderBook per symbol.

    Mutated only through apply()/remove(); readers get the stored snapshot
    objects directly since books are never modified in place.
    """

    __slots__ = ('_books', 'stale_after_ms')

    def __init__(self, stale_after_ms: float = STALE_AFTER_MS) -> None:
        self._books: dict[str, OrderBook] = {}
        self.stale_after_ms = stale_after_ms

    def apply(self, book: OrderBook) -> OrderBook:
        """Replace the stored book for book.symbol wholesale."""
        self._books[book.symbol] = book
        return book

    def get(self, symbol: str) -> OrderBook | None:
        """Current book, or None when the symbol has no data."""
        return self._books.get(symbol.upper())

    def remove(self, symbol: str) -> bool:
        return self._books.pop(symbol.upper(), None) is not None

    def clear(self) -> None:
        self._books.clear()

    def symbols(self) -> list[str]:
        return list(self._books)

    def books(self) -> list[OrderBook]:
        return list(self._books.values())

    def is_stale(self, symbol: str, now: int | None = None) -> bool:
        book = self.get(symbol)
        return book is not None and book.is_stale(now, self.stale_after_ms)

    def stale_symbols(self, now: int | None = None) -> list[str]:
        """Symbols whose book is older than stale_after_ms. Stale books stay stored."""
        now = now_ms() if now is None else now
        return [s for s, b in self._books.items() if b.is_stale(now, self.stale_after_ms)]

    def __contains__(self, symbol: object) -> bool:
        return isinstance(symbol, str) and symbol.upper() in self._books

    def __len__(self) -> int:
        return len(self._books)

    def __iter__(self) -> Iterator[OrderBook]:
        return iter(list(self._books.values()))
