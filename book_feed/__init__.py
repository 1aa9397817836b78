"""
book_feed - Live, self-healing order book state for crypto exchange feeds.

Architecture:
- datafeed/: WebSocket connection state machine, subscriptions, REST fallback,
  normalization and the per-symbol order book store
- engine/: Pure market analytics over order book snapshots
- events.py: Typed publish/subscribe events
"""

__version__ = "0.1.0"
