"""
Market analytics over order book snapshots.

Every function is pure: it takes OrderBook snapshot(s), never mutates them,
and returns a fresh NamedTuple. Nothing here formats values for display.

Numeric policy:
- Levels with non-finite or non-positive price or quantity are ignored
- Every division guards its denominator; results are 0.0 instead of NaN/inf

Performance notes:
- numpy for cumulative volumes and price-range masks
- Side levels are sorted once per call via OrderBook's cached sort
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Sequence

import numpy as np

from ..datafeed.orderbook import STALE_AFTER_MS, OrderBook, now_ms
from ..types import (
    ArbitrageOpportunity,
    BestPrices,
    BookSummary,
    Comparison,
    ComparisonSummary,
    Depth,
    DepthLevel,
    ExchangeQuote,
    Fill,
    PriceLevel,
    QualityMetrics,
    Side,
    SizingPoint,
    SizingResult,
    SlippageResult,
    ValidationResult,
    VolumeStats,
    VWAPResult,
)

EMPTY_PRICES = BestPrices(0.0, 0.0, 0.0, 0.0, 0.0)

# Volume below this is treated as fully filled (float residue)
FILL_EPSILON = 1e-12
MIN_SIZING_STEP = 0.01
MAX_SIZING_STEPS = 100_000
LARGE_SPREAD_PERCENT = 10.0


def _div(numerator: float, denominator: float) -> float:
    if denominator == 0 or not math.isfinite(denominator):
        return 0.0
    result = numerator / denominator
    return result if math.isfinite(result) else 0.0


def _valid(level: PriceLevel) -> bool:
    return (
        math.isfinite(level.price) and math.isfinite(level.quantity)
        and level.price > 0 and level.quantity > 0
    )


def _side(book: OrderBook, side: Side | str, levels: int | None = None) -> list[PriceLevel]:
    """
    Valid levels of the side a market order of `side` consumes, best first.

    Buying consumes asks ascending, selling consumes bids descending.
    """
    ordered = book.sorted_asks() if Side(side) is Side.BUY else book.sorted_bids()
    valid = [lvl for lvl in ordered if _valid(lvl)]
    return valid[:levels] if levels is not None else valid


def _bids(book: OrderBook, levels: int | None = None) -> list[PriceLevel]:
    return _side(book, Side.SELL, levels)


def _asks(book: OrderBook, levels: int | None = None) -> list[PriceLevel]:
    return _side(book, Side.BUY, levels)


# ===== PRICE CALCULATIONS =====

def best_prices(book: OrderBook | None) -> BestPrices:
    """
    Best bid/ask, spread, mid price and spread percent.

    All-zero result when either side has no valid level.
    """
    if book is None:
        return EMPTY_PRICES
    bids = _bids(book, 1)
    asks = _asks(book, 1)
    if not bids or not asks:
        return EMPTY_PRICES

    best_bid = bids[0].price
    best_ask = asks[0].price
    spread = best_ask - best_bid
    mid_price = (best_bid + best_ask) / 2
    return BestPrices(
        best_bid=best_bid,
        best_ask=best_ask,
        spread=spread,
        spread_percent=_div(spread, mid_price) * 100,
        mid_price=mid_price,
    )


def _depth_levels(levels: list[PriceLevel]) -> list[DepthLevel]:
    if not levels:
        return []
    prices = np.array([lvl.price for lvl in levels], dtype=float)
    quantities = np.array([lvl.quantity for lvl in levels], dtype=float)
    cumulative = np.cumsum(quantities)
    return [
        DepthLevel(float(p), float(q), float(c), float(p * q))
        for p, q, c in zip(prices, quantities, cumulative)
    ]


def depth(book: OrderBook, levels: int = 10) -> Depth:
    """
    Up to `levels` price levels per side, ordered toward the market, with
    cumulative volume and the bid/ask volume imbalance in [-1, 1].
    """
    levels = max(int(levels), 0)
    bid_depth = _depth_levels(_bids(book, levels))
    ask_depth = _depth_levels(_asks(book, levels))

    total_bid = bid_depth[-1].cumulative_volume if bid_depth else 0.0
    total_ask = ask_depth[-1].cumulative_volume if ask_depth else 0.0
    return Depth(
        bids=bid_depth,
        asks=ask_depth,
        total_bid_volume=total_bid,
        total_ask_volume=total_ask,
        imbalance=_div(total_bid - total_ask, total_bid + total_ask),
    )


# ===== TRADING CALCULATIONS =====

def vwap(book: OrderBook, volume: float, side: Side | str = Side.BUY) -> VWAPResult:
    """
    Volume-weighted price of a market order of `volume` on `side`.

    Levels are consumed greedily from the best price on the opposite side
    until the volume is filled or the side is exhausted. price_impact is the
    percent distance of the VWAP from that best price.
    """
    levels = _side(book, side)
    if volume <= 0 or not math.isfinite(volume) or not levels:
        remaining = max(float(volume), 0.0) if math.isfinite(volume) else 0.0
        return VWAPResult(0.0, 0.0, remaining, 0.0, 0.0, levels[0].price if levels else 0.0, [])

    reference_price = levels[0].price
    remaining = float(volume)
    total_cost = 0.0
    filled = 0.0
    fills: list[Fill] = []

    for level in levels:
        if remaining <= FILL_EPSILON:
            break
        quantity = min(remaining, level.quantity)
        cost = quantity * level.price
        total_cost += cost
        filled += quantity
        remaining -= quantity
        fills.append(Fill(level.price, quantity, cost))

    if remaining <= FILL_EPSILON:
        remaining = 0.0

    average = _div(total_cost, filled)
    return VWAPResult(
        vwap=average,
        filled_volume=filled,
        remaining_volume=remaining,
        total_cost=total_cost,
        price_impact=_div(average - reference_price, reference_price) * 100 if filled else 0.0,
        reference_price=reference_price,
        fills=fills,
    )


def slippage(book: OrderBook, order_size: float, side: Side | str = Side.BUY) -> SlippageResult:
    """Slippage of a market order vs. the best price on the consumed side."""
    result = vwap(book, order_size, side)
    filled = result.filled_volume > 0
    absolute = result.vwap - result.reference_price if filled else 0.0
    return SlippageResult(
        expected_price=result.vwap,
        slippage_percent=result.price_impact,
        slippage_absolute=absolute,
        can_fill_completely=filled and result.remaining_volume == 0,
        fillable_volume=result.filled_volume,
        remaining_volume=result.remaining_volume,
    )


def optimal_sizing(
    book: OrderBook,
    max_slippage_pct: float = 0.1,
    side: Side | str = Side.BUY,
) -> SizingResult:
    """
    Largest order size that fills completely within max_slippage_pct.

    The candidate grows by a fixed step (quantity of the best level on the
    consumed side, floor 0.01) until the book can no longer fill it or its
    slippage exceeds the limit. recommendations holds every explored point,
    including the one that breached the limit.
    """
    levels = _side(book, side)
    if not levels:
        return SizingResult(0.0, [], 0.0)

    reference_price = levels[0].price
    available = float(np.sum([lvl.quantity for lvl in levels]))
    step = max(levels[0].quantity, MIN_SIZING_STEP)

    # Running fill over the levels, advanced as the candidate grows
    index = 0
    consumed_qty = 0.0
    consumed_cost = 0.0

    recommendations: list[SizingPoint] = []
    max_size = 0.0
    for n in range(1, MAX_SIZING_STEPS + 1):
        size = step * n
        if size > available + FILL_EPSILON:
            break
        while index < len(levels) and consumed_qty + levels[index].quantity <= size + FILL_EPSILON:
            consumed_qty += levels[index].quantity
            consumed_cost += levels[index].quantity * levels[index].price
            index += 1

        filled, cost = consumed_qty, consumed_cost
        if index < len(levels):
            partial = max(size - consumed_qty, 0.0)
            filled += partial
            cost += partial * levels[index].price

        price = _div(cost, filled)
        slip = _div(price - reference_price, reference_price) * 100
        recommendations.append(SizingPoint(size, price, slip, cost))
        if abs(slip) > max_slippage_pct:
            break
        max_size = size

    return SizingResult(max_size=max_size, recommendations=recommendations, reference_price=reference_price)


# ===== MARKET METRICS =====

def quality_metrics(book: OrderBook) -> QualityMetrics:
    """Spread in bps, near-book liquidity, efficiency and stability."""
    prices = best_prices(book)
    if not prices.best_bid or not prices.best_ask:
        return QualityMetrics(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)

    near = depth(book, 20)
    spread_bps = _div(prices.spread, prices.mid_price) * 10_000
    total_near_volume = near.total_bid_volume + near.total_ask_volume
    liquidity = _div(total_near_volume, prices.mid_price)
    # 1 / (spread_bps * 1/liquidity)
    efficiency = _div(liquidity, spread_bps) if liquidity > 0 else 0.0

    return QualityMetrics(
        spread=prices.spread,
        spread_bps=spread_bps,
        depth=total_near_volume,
        liquidity=liquidity,
        efficiency=efficiency,
        stability=1 - abs(near.imbalance),
        mid_price=prices.mid_price,
    )


def volume_stats(book: OrderBook, pct_range: float = 1.0) -> VolumeStats:
    """Resting volume within pct_range% below best bid and above best ask."""
    prices = best_prices(book)
    if not prices.best_bid or not prices.best_ask:
        return VolumeStats(0.0, 0.0, 0.0, 0.0)

    def in_range(levels: list[PriceLevel], low: float, high: float) -> float:
        if not levels:
            return 0.0
        p = np.array([lvl.price for lvl in levels], dtype=float)
        q = np.array([lvl.quantity for lvl in levels], dtype=float)
        return float(q[(p >= low) & (p <= high)].sum())

    bid_volume = in_range(_bids(book), prices.best_bid * (1 - pct_range / 100), prices.best_bid)
    ask_volume = in_range(_asks(book), prices.best_ask, prices.best_ask * (1 + pct_range / 100))
    return VolumeStats(
        bid_volume=bid_volume,
        ask_volume=ask_volume,
        total_volume=bid_volume + ask_volume,
        volume_ratio=_div(bid_volume, ask_volume),
    )


def validate(book: OrderBook | None, now: int | None = None, stale_after_ms: float = STALE_AFTER_MS) -> ValidationResult:
    """
    Structural and sanity checks.

    Issues (book invalid): missing book, missing/invalid bid or ask maps,
    crossed book. Warnings: spread above 10%, empty side, stale data.
    """
    issues: list[str] = []
    warnings: list[str] = []

    if book is None:
        return ValidationResult(False, ["Order book is missing"], warnings, None)
    if not isinstance(book.bids, Mapping):
        issues.append("Missing or invalid bids")
    if not isinstance(book.asks, Mapping):
        issues.append("Missing or invalid asks")
    if issues:
        return ValidationResult(False, issues, warnings, None)

    prices = best_prices(book)
    if prices.best_bid > 0 and prices.best_ask > 0 and prices.best_bid >= prices.best_ask:
        issues.append("Crossed book detected: best bid >= best ask")

    if prices.spread_percent > LARGE_SPREAD_PERCENT:
        warnings.append(f"Large spread detected: {prices.spread_percent:.2f}%")

    if not _bids(book, 1):
        warnings.append("No bids available")
    if not _asks(book, 1):
        warnings.append("No asks available")

    now = now_ms() if now is None else now
    if book.last_update and now - book.last_update > stale_after_ms:
        warnings.append(f"Order book data appears stale (>{stale_after_ms / 1000:g} seconds old)")

    return ValidationResult(not issues, issues, warnings, prices)


# ===== CROSS-VENUE =====

def compare(books: Sequence[OrderBook]) -> Comparison:
    """
    Cross-venue comparison of books for the same instrument.

    Each book is tagged with its exchange (first source). Both directions of
    every pair are checked for arbitrage: buying at X's ask and selling at
    Y's bid is an opportunity when X.best_ask < Y.best_bid.
    """
    empty = Comparison([], None, [], None)
    if len(books) < 2:
        return empty

    quotes = []
    for book in books:
        prices = best_prices(book)
        if prices.best_bid > 0 and prices.best_ask > 0:
            quotes.append(ExchangeQuote(book.exchange, prices, quality_metrics(book)))
    if len(quotes) < 2:
        return empty

    arbitrage: list[ArbitrageOpportunity] = []
    for i, first in enumerate(quotes):
        for second in quotes[i + 1:]:
            for buy, sell in ((first, second), (second, first)):
                if buy.prices.best_ask < sell.prices.best_bid:
                    profit = sell.prices.best_bid - buy.prices.best_ask
                    arbitrage.append(ArbitrageOpportunity(
                        buy_exchange=buy.exchange,
                        sell_exchange=sell.exchange,
                        buy_price=buy.prices.best_ask,
                        sell_price=sell.prices.best_bid,
                        profit=profit,
                        profit_percent=_div(profit, buy.prices.best_ask) * 100,
                    ))
    arbitrage.sort(key=lambda opp: opp.profit_percent, reverse=True)

    best = quotes[0]
    for quote in quotes[1:]:
        if quote.quality.efficiency > best.quality.efficiency:
            best = quote

    spreads = np.array([q.prices.spread_percent for q in quotes])
    mids = np.array([q.prices.mid_price for q in quotes])
    summary = ComparisonSummary(
        average_spread=float(spreads.mean()),
        average_mid_price=float(mids.mean()),
        spread_range=(float(spreads.min()), float(spreads.max())),
        price_range=(float(mids.min()), float(mids.max())),
        exchanges=[q.exchange for q in quotes],
    )
    return Comparison(arbitrage, best.exchange, quotes, summary)


def summarize(book: OrderBook, now: int | None = None, stale_after_ms: float = STALE_AFTER_MS) -> BookSummary:
    """Best prices, total resting volume and level counts for one book."""
    bids = _bids(book)
    asks = _asks(book)
    return BookSummary(
        symbol=book.symbol,
        prices=best_prices(book),
        bid_volume=float(sum(lvl.quantity for lvl in bids)),
        ask_volume=float(sum(lvl.quantity for lvl in asks)),
        bid_count=len(bids),
        ask_count=len(asks),
        sources=book.sources,
        last_update=book.last_update,
        is_stale=book.is_stale(now, stale_after_ms),
    )
