"""
Data types for book_feed.

Notes:
- NamedTuple for immutable result values returned by the analytics engine
- All prices and quantities are floats; timestamps are epoch milliseconds
"""

from __future__ import annotations

import enum
from typing import NamedTuple


class ConnectionState(enum.Enum):
    """Lifecycle states of the streaming transport."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"


class Side(str, enum.Enum):
    """Side of a market order."""
    BUY = "buy"    # consumes asks, ascending
    SELL = "sell"  # consumes bids, descending


class PriceLevel(NamedTuple):
    """Single price level from the order book."""
    price: float
    quantity: float


class DepthLevel(NamedTuple):
    """Price level with running volume from the top of the book."""
    price: float
    quantity: float
    cumulative_volume: float
    total: float  # price * quantity


class BestPrices(NamedTuple):
    best_bid: float
    best_ask: float
    spread: float
    spread_percent: float
    mid_price: float


class Depth(NamedTuple):
    bids: list[DepthLevel]   # Descending by price
    asks: list[DepthLevel]   # Ascending by price
    total_bid_volume: float
    total_ask_volume: float
    imbalance: float         # In [-1, 1]


class Fill(NamedTuple):
    """Portion of a market order filled at one level."""
    price: float
    quantity: float
    cost: float


class VWAPResult(NamedTuple):
    vwap: float
    filled_volume: float
    remaining_volume: float
    total_cost: float
    price_impact: float      # Percent vs. best price on the consumed side
    reference_price: float
    fills: list[Fill]


class SlippageResult(NamedTuple):
    expected_price: float
    slippage_percent: float
    slippage_absolute: float
    can_fill_completely: bool
    fillable_volume: float
    remaining_volume: float


class SizingPoint(NamedTuple):
    size: float
    price: float
    slippage: float
    cost: float


class SizingResult(NamedTuple):
    max_size: float
    recommendations: list[SizingPoint]
    reference_price: float


class QualityMetrics(NamedTuple):
    spread: float
    spread_bps: float
    depth: float             # Bid + ask volume within 20 levels
    liquidity: float         # Volume per unit of mid price
    efficiency: float
    stability: float         # 1 - |imbalance|
    mid_price: float


class VolumeStats(NamedTuple):
    bid_volume: float
    ask_volume: float
    total_volume: float
    volume_ratio: float      # bid / ask, 0 when no asks in range


class ValidationResult(NamedTuple):
    """
    Outcome of structural checks on a book.

    Issues make the book invalid; warnings are informational. Neither stops
    the pipeline: the caller decides what to do with flagged data.
    """
    is_valid: bool
    issues: list[str]
    warnings: list[str]
    metrics: BestPrices | None


class ArbitrageOpportunity(NamedTuple):
    buy_exchange: str
    sell_exchange: str
    buy_price: float
    sell_price: float
    profit: float
    profit_percent: float


class ExchangeQuote(NamedTuple):
    """Per-venue prices and quality used by cross-venue comparison."""
    exchange: str
    prices: BestPrices
    quality: QualityMetrics


class ComparisonSummary(NamedTuple):
    average_spread: float
    average_mid_price: float
    spread_range: tuple[float, float]   # (min, max)
    price_range: tuple[float, float]    # (min, max)
    exchanges: list[str]


class Comparison(NamedTuple):
    arbitrage: list[ArbitrageOpportunity]   # Sorted by profit_percent descending
    best_exchange: str | None
    exchange_data: list[ExchangeQuote]
    summary: ComparisonSummary | None


class BookSummary(NamedTuple):
    """Compact per-symbol view used by the feed's market summary."""
    symbol: str
    prices: BestPrices
    bid_volume: float
    ask_volume: float
    bid_count: int
    ask_count: int
    sources: tuple[str, ...]
    last_update: int
    is_stale: bool
