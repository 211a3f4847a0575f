"""
Live Candle Feed Module.

Maintains continuously updated per-symbol candle series for Hyperliquid
perpetuals: a historical snapshot seeds each series, and the WebSocket
candle and trades streams keep the current candle live.

Components:
- LiveCandleFeed: Top-level orchestration and consumer API
- ConnectionManager: WebSocket lifecycle, pings, reconnection with backoff
- SubscriptionRegistrar: Candle and trades subscriptions per symbol
- MessageRouter: Envelope decoding, channel classification, symbol filtering
- Handlers: CandleHandler, TradeHandler for parsing/normalizing

Usage:
    from livecandles.feed import FeedConfig, LiveCandleFeed

    config = FeedConfig(symbols=("BTC", "ETH"), interval="1m")
    feed = LiveCandleFeed(config)
    await feed.start()
    btc = feed.get_symbol_state("BTC")
"""

from livecandles.feed.config import BackoffPolicy, ConnectionConfig, FeedConfig, Network
from livecandles.feed.errors import (
    ConfigurationError,
    ConnectionError,
    HandlerError,
    LiveFeedError,
    MessageParseError,
    SnapshotError,
    SubscriptionError,
)
from livecandles.feed.manager import LiveCandleFeed
from livecandles.feed.types import (
    ConnectionHealth,
    ConnectionState,
    ManagerState,
    MessageChannel,
)

__all__ = [
    # Main entry point
    "LiveCandleFeed",
    "FeedConfig",
    "ConnectionConfig",
    "Network",
    "BackoffPolicy",
    # Types
    "ConnectionState",
    "ManagerState",
    "MessageChannel",
    "ConnectionHealth",
    # Errors
    "LiveFeedError",
    "ConnectionError",
    "SubscriptionError",
    "MessageParseError",
    "HandlerError",
    "ConfigurationError",
    "SnapshotError",
]
