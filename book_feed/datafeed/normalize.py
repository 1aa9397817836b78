"""
Normalization of heterogeneous order book payloads.

Wire payloads carry each side either as a price -> quantity map
({"100.5": "2"}) or as an array of level objects ([{"Price": 100.5,
"Quantity": 2}]) or [price, qty] pairs. Field names arrive in several
capitalisations. Everything is converted to the canonical dict[float, float]
form before it reaches the OrderBookStore.

Malformed levels (non-numeric, non-finite, price <= 0, quantity <= 0) are
rejected and counted, never coerced into the store.
"""

from __future__ import annotations

import math
from typing import Any, Mapping, NamedTuple, Sequence, Union

from .. import errors
from .orderbook import OrderBook, now_ms


class ArrayForm(NamedTuple):
    """Side given as a sequence of level objects or [price, qty] pairs."""
    entries: Sequence[Any]


class MapForm(NamedTuple):
    """Side given as a price -> quantity mapping."""
    entries: Mapping[Any, Any]


SideForm = Union[ArrayForm, MapForm]


class NormalizedBook(NamedTuple):
    book: OrderBook
    rejected_levels: int


def _lower_keys(obj: Mapping[str, Any]) -> dict[str, Any]:
    return {str(k).lower(): v for k, v in obj.items()}


def parse_number(value: Any) -> float | None:
    """Finite float from a number or numeric string; None otherwise."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_level(price: Any, quantity: Any) -> tuple[float, float] | None:
    """Validated (price, quantity), or None when the level must be rejected."""
    p = parse_number(price)
    q = parse_number(quantity)
    if p is None or q is None or p <= 0 or q <= 0:
        return None
    return p, q


def classify_side(raw: Any, name: str) -> SideForm:
    """Tag a raw side as ArrayForm or MapForm; anything else is a ProtocolError."""
    if isinstance(raw, Mapping):
        return MapForm(raw)
    if isinstance(raw, (list, tuple)):
        return ArrayForm(raw)
    raise errors.ProtocolError(f"{name} must be a map or an array, got {type(raw).__name__}")


def normalize_side(form: SideForm) -> tuple[dict[float, float], int]:
    """Canonical price -> quantity map plus the number of rejected levels."""
    levels: dict[float, float] = {}
    rejected = 0

    if isinstance(form, MapForm):
        pairs = form.entries.items()
    else:
        pairs = []
        for entry in form.entries:
            if isinstance(entry, Mapping):
                fields = _lower_keys(entry)
                pairs.append((fields.get("price"), fields.get("quantity", fields.get("qty"))))
            elif isinstance(entry, (list, tuple)) and len(entry) >= 2:
                pairs.append((entry[0], entry[1]))
            else:
                pairs.append((None, None))

    for price, quantity in pairs:
        level = parse_level(price, quantity)
        if level is None:
            rejected += 1
            continue
        levels[level[0]] = level[1]

    return levels, rejected


def normalize_order_book(
    payload: Mapping[str, Any],
    *,
    symbol: str | None = None,
    received_at: int | None = None,
) -> NormalizedBook:
    """
    Convert one order book payload (stream or REST) into an OrderBook.

    Args:
        payload: Object with Symbol, Bids, Asks and optional LastUpdate,
            Sources/Exchange, Version in any capitalisation
        symbol: Fallback symbol when the payload carries none
        received_at: Fallback LastUpdate (epoch ms)

    Raises:
        ProtocolError: payload is not an object, has no symbol, or a side is
            missing or of the wrong shape
    """
    if not isinstance(payload, Mapping):
        raise errors.ProtocolError("Order book payload must be an object")

    fields = _lower_keys(payload)
    book_symbol = fields.get("symbol") or symbol
    if not isinstance(book_symbol, str) or not book_symbol:
        raise errors.ProtocolError("Order book payload has no symbol")

    if "bids" not in fields or "asks" not in fields:
        raise errors.ProtocolError(f"Order book for {book_symbol} is missing Bids or Asks")

    bids, rejected_bids = normalize_side(classify_side(fields["bids"], "Bids"))
    asks, rejected_asks = normalize_side(classify_side(fields["asks"], "Asks"))

    last_update = parse_number(fields.get("lastupdate"))
    if last_update is None:
        last_update = received_at if received_at is not None else now_ms()

    sources = fields.get("sources")
    if isinstance(sources, str):
        sources = [sources]
    elif not isinstance(sources, (list, tuple)):
        sources = []
    exchange = fields.get("exchange")
    if not sources and isinstance(exchange, str) and exchange:
        sources = [exchange]

    version = fields.get("version")
    book = OrderBook(
        symbol=book_symbol,
        bids=bids,
        asks=asks,
        last_update=int(last_update),
        sources=[str(s) for s in sources],
        version="0" if version is None else str(version),
    )
    return NormalizedBook(book, rejected_bids + rejected_asks)


def extract_order_book_payload(message: Mapping[str, Any]) -> tuple[Mapping[str, Any], str | None]:
    """
    Unwrap a streaming envelope {type, symbol?, data?, timestamp?}.

    Returns the inner order book object and the envelope-level symbol.
    """
    data = message.get("data")
    inner = data if isinstance(data, Mapping) else message
    envelope_symbol = message.get("symbol")
    return inner, envelope_symbol if isinstance(envelope_symbol, str) else None
