#!/usr/bin/env python3
"""
book_feed runner - streams order books and logs a periodic market summary.

Usage:
    python -m book_feed.main BTCUSDT ETHUSDT --ws-url ws://localhost:8080/ws

    Or with a config file:
    python -m book_feed.main --config feed.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

logger = structlog.get_logger(__name__)


async def main(config, summary_interval: float) -> None:
    """Run the feed until cancelled, logging a summary every interval."""

    # Import here to avoid slow startup for --help
    from .datafeed.market_feed import MarketFeed
    from .events import BookRejected, Closed, Opened

    feed = MarketFeed(config)
    feed.events.subscribe(Opened, lambda e: logger.info("stream_open", connection_id=e.connection_id))
    feed.events.subscribe(Closed, lambda e: logger.info(
        "stream_closed", code=e.code, will_reconnect=e.will_reconnect))
    feed.events.subscribe(BookRejected, lambda e: logger.warning("payload_rejected", error=str(e.error)))

    await feed.start()
    try:
        while True:
            await asyncio.sleep(summary_interval)
            for symbol, summary in feed.market_summary().items():
                logger.info(
                    "market_summary",
                    symbol=symbol,
                    best_bid=summary.prices.best_bid,
                    best_ask=summary.prices.best_ask,
                    spread_percent=round(summary.prices.spread_percent, 4),
                    bid_levels=summary.bid_count,
                    ask_levels=summary.ask_count,
                    stale=summary.is_stale,
                )
            logger.info("feed_stats", **{
                k: v for k, v in feed.get_stats().items()
                if k in ("total_messages", "total_updates", "total_reconnects", "average_latency", "is_connected")
            })
    finally:
        await feed.stop()


def build_config(args: argparse.Namespace):
    from .config import FeedConfig

    config = FeedConfig.from_yaml(args.config) if args.config else FeedConfig()
    if args.symbols:
        config.symbols = [s.upper() for s in args.symbols]
    if args.ws_url:
        config.connection.url = args.ws_url
    if args.api_url:
        config.rest.base_url = args.api_url
    if args.poll:
        config.enable_polling = True
    if args.no_websocket:
        config.enable_websocket = False
    return config


def cli() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="book_feed - live order books with streaming + REST fallback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m book_feed.main BTCUSDT
    python -m book_feed.main BTCUSDT ETHUSDT --poll --summary-interval 10
    python -m book_feed.main --config feed.yaml --no-websocket
        """
    )

    parser.add_argument("symbols", nargs="*", help="Symbols to subscribe (e.g. BTCUSDT)")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--ws-url", help="WebSocket URL (default: ws://localhost:8080/ws)")
    parser.add_argument("--api-url", help="REST base URL (default: http://localhost:8080)")
    parser.add_argument("--poll", action="store_true", help="Enable REST polling")
    parser.add_argument("--no-websocket", action="store_true", help="Disable streaming, poll only")
    parser.add_argument(
        "--summary-interval",
        type=float,
        default=5.0,
        help="Seconds between market summaries (default: 5)"
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")

    args = parser.parse_args()

    from .logging_config import configure_logging
    configure_logging(args.log_level, args.json_logs or None)

    try:
        config = build_config(args)
    except (OSError, ValueError) as exc:
        parser.error(str(exc))

    if not config.symbols:
        parser.error("no symbols given (pass them as arguments or in --config)")

    try:
        asyncio.run(main(config, args.summary_interval))
    except KeyboardInterrupt:
        logger.info("shutdown_requested")
        sys.exit(0)


if __name__ == "__main__":
    cli()
