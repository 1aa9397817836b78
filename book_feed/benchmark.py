#!/usr/bin/env python3
"""
Micro-benchmark for book_feed hot paths.

Tests:
1. Payload normalization + store apply throughput
2. VWAP / slippage on a deep book
3. Depth and quality metrics
4. Cross-venue comparison

Usage:
    python -m book_feed.benchmark
"""

from __future__ import annotations

import random
import time
from statistics import mean, stdev

from .datafeed.normalize import normalize_order_book
from .datafeed.orderbook import OrderBook, OrderBookStore
from .engine import analytics


def generate_mock_payload(
    symbol: str = "BTCUSDT",
    base_price: float = 60_000.0,
    levels: int = 1000,
    array_form: bool = False,
    exchange: str = "binance",
) -> dict:
    """Generate a mock order book payload in map or array form."""
    tick_size = 0.5

    bids = {}
    asks = {}
    for i in range(levels):
        bids[str(base_price - (i + 1) * tick_size)] = str(random.uniform(0.01, 5))
        asks[str(base_price + (i + 1) * tick_size)] = str(random.uniform(0.01, 5))

    if array_form:
        return {
            "Symbol": symbol,
            "Bids": [{"Price": p, "Quantity": q} for p, q in bids.items()],
            "Asks": [{"Price": p, "Quantity": q} for p, q in asks.items()],
            "Sources": [exchange],
        }
    return {"Symbol": symbol, "Bids": bids, "Asks": asks, "Sources": [exchange]}


def _report(name: str, times: list[float]) -> None:
    avg_time = mean(times) * 1000
    std_time = stdev(times) * 1000 if len(times) > 1 else 0.0
    print(f"  {name}")
    print(f"    Avg time: {avg_time:.3f}ms  Std dev: {std_time:.3f}ms")
    print(f"    Rate: {1000 / avg_time:,.0f} calls/sec")


def benchmark_ingest(iterations: int = 500) -> None:
    """Benchmark normalization + store apply."""
    print("\n=== Normalize + Apply Benchmark ===")

    store = OrderBookStore()
    for array_form in (False, True):
        payloads = [generate_mock_payload(levels=200, array_form=array_form) for _ in range(20)]

        start = time.perf_counter()
        for i in range(iterations):
            store.apply(normalize_order_book(payloads[i % len(payloads)]).book)
        elapsed = time.perf_counter() - start

        label = "array form" if array_form else "map form"
        print(f"  {label}: {iterations:,} books in {elapsed*1000:.1f}ms "
              f"({iterations / elapsed:,.0f} books/sec)")


def benchmark_vwap(iterations: int = 1000) -> None:
    """Benchmark VWAP and slippage on a 1000-level book."""
    print("\n=== VWAP / Slippage Benchmark ===")

    book = normalize_order_book(generate_mock_payload()).book

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        analytics.vwap(book, 250.0, "buy")
        times.append(time.perf_counter() - start)
    _report("vwap(250, buy)", times)

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        analytics.slippage(book, 250.0, "sell")
        times.append(time.perf_counter() - start)
    _report("slippage(250, sell)", times)


def benchmark_depth_quality(iterations: int = 1000) -> None:
    """Benchmark depth and quality metrics."""
    print("\n=== Depth / Quality Benchmark ===")

    book = normalize_order_book(generate_mock_payload()).book

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        analytics.depth(book, 20)
        times.append(time.perf_counter() - start)
    _report("depth(20)", times)

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        analytics.quality_metrics(book)
        times.append(time.perf_counter() - start)
    _report("quality_metrics", times)


def benchmark_compare(iterations: int = 200) -> None:
    """Benchmark cross-venue comparison of five books."""
    print("\n=== Cross-Venue Compare Benchmark ===")

    books: list[OrderBook] = [
        normalize_order_book(generate_mock_payload(
            base_price=60_000.0 + random.uniform(-20, 20),
            levels=200,
            exchange=name,
        )).book
        for name in ("binance", "okx", "bybit", "kraken", "mexc")
    ]

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        analytics.compare(books)
        times.append(time.perf_counter() - start)
    _report("compare(5 books)", times)


def main() -> None:
    """Run all benchmarks."""
    print("=" * 60)
    print("book_feed Performance Benchmark")
    print("=" * 60)

    benchmark_ingest()
    benchmark_vwap()
    benchmark_depth_quality()
    benchmark_compare()

    print("\n" + "=" * 60)
    print("Benchmark complete.")
    print("=" * 60)


if __name__ == "__main__":
    main()
