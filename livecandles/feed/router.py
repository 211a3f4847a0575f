"""
Message Router for the live candle feed.

Decodes raw WebSocket frames and routes them to handlers by channel
(candle, trades). Acknowledgements are absorbed; undecodable, unknown or
foreign-symbol messages are counted and dropped without ever raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import orjson

from livecandles.feed.errors import MessageParseError
from livecandles.feed.types import MessageChannel, RoutedMessage

logger = logging.getLogger(__name__)

Handler = Callable[[RoutedMessage], Awaitable[None]]

# Channels that only acknowledge our own requests
ACK_CHANNELS = frozenset({MessageChannel.SUBSCRIPTION_RESPONSE, MessageChannel.PONG})


@dataclass
class RouterStats:
    """Statistics for message routing."""

    total_messages: int = 0
    routed_messages: int = 0
    acknowledged_messages: int = 0
    dropped_messages: int = 0
    filtered_messages: int = 0
    parse_errors: int = 0
    by_channel: dict[str, int] = field(default_factory=dict)


class MessageRouter:
    """
    Routes inbound WebSocket messages to handlers registered per channel.

    Hyperliquid envelope format:
    {
        "channel": "candle",
        "data": { ... channel payload ... }
    }

    Classification, in priority order:
    1. subscriptionResponse / pong -> acknowledged, not dispatched
    2. candle -> symbol from the candle record ("s"); payload may be an object,
       an array of objects, or {"candles": [...]}
    3. trades -> array of trades; the first trade's "coin" names the symbol
    4. anything else (including "error") -> dropped
    Messages for symbols outside the configured set are dropped.
    """

    def __init__(self, symbols: Optional[Iterable[str]] = None) -> None:
        """
        Initialize the message router.

        Args:
            symbols: Accepted symbols; None accepts every symbol
        """
        self._symbols: Optional[frozenset[str]] = frozenset(symbols) if symbols else None
        self._handlers: dict[MessageChannel, list[Handler]] = {}
        self._catch_all_handler: Optional[Handler] = None
        self._stats = RouterStats()

    @property
    def stats(self) -> RouterStats:
        """Get routing statistics."""
        return self._stats

    def register_handler(self, channel: MessageChannel, handler: Handler) -> None:
        """
        Register a handler for a channel.

        Multiple handlers can be registered for the same channel.
        They will be called in registration order.
        """
        self._handlers.setdefault(channel, []).append(handler)
        logger.debug(f"Registered handler for {channel.value}")

    def register_catch_all(self, handler: Handler) -> None:
        """Register a handler that receives every classified message (logging, debugging)."""
        self._catch_all_handler = handler

    async def route(self, raw: Union[str, bytes, dict[str, Any]], recv_ts: int) -> None:
        """
        Route a message to the handlers for its channel.

        Args:
            raw: Text frame from WebSocket (or an already-decoded envelope)
            recv_ts: Receive timestamp in milliseconds
        """
        self._stats.total_messages += 1

        try:
            envelope = self._decode(raw)
            routed_msg = self._classify_message(envelope, recv_ts)
        except MessageParseError as e:
            self._stats.parse_errors += 1
            logger.warning(f"Failed to classify message: {e}")
            if e.raw_data is not None:
                logger.debug(f"Unparsed frame: {e.raw_data!r:.200}")
            return

        channel_key = routed_msg.channel.value
        self._stats.by_channel[channel_key] = self._stats.by_channel.get(channel_key, 0) + 1

        if self._catch_all_handler:
            try:
                await self._catch_all_handler(routed_msg)
            except Exception as e:
                logger.error(f"Catch-all handler error: {e}")

        if routed_msg.channel in ACK_CHANNELS:
            self._stats.acknowledged_messages += 1
            return

        if routed_msg.channel == MessageChannel.ERROR:
            logger.warning(f"Server error message: {routed_msg.data}")
            self._stats.dropped_messages += 1
            return

        if routed_msg.channel == MessageChannel.UNKNOWN:
            logger.debug(f"Dropping message on unknown channel: {envelope.get('channel')!r}")
            self._stats.dropped_messages += 1
            return

        if routed_msg.symbol is None:
            logger.warning(f"No symbol in {channel_key} message, dropping")
            self._stats.dropped_messages += 1
            return

        if self._symbols is not None and routed_msg.symbol not in self._symbols:
            logger.debug(f"Dropping {channel_key} message for unsubscribed {routed_msg.symbol}")
            self._stats.filtered_messages += 1
            return

        handlers = self._handlers.get(routed_msg.channel, [])
        if not handlers:
            logger.debug(f"No handler for channel: {channel_key}")
            self._stats.dropped_messages += 1
            return

        # Dispatch to all registered handlers
        self._stats.routed_messages += 1
        for handler in handlers:
            try:
                await handler(routed_msg)
            except Exception as e:
                logger.error(f"Handler error for {channel_key}: {e}", exc_info=True)

    def _decode(self, raw: Union[str, bytes, dict[str, Any]]) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        try:
            envelope = orjson.loads(raw)
        except (orjson.JSONDecodeError, TypeError) as e:
            raise MessageParseError(
                f"Invalid JSON: {e}", raw_data=raw, expected_type="json"
            ) from e
        if not isinstance(envelope, dict):
            raise MessageParseError(
                f"Envelope must be an object, got {type(envelope).__name__}",
                raw_data=raw,
                expected_type="envelope",
            )
        return envelope

    def _classify_message(self, envelope: dict[str, Any], recv_ts: int) -> RoutedMessage:
        """Classify an envelope and create a RoutedMessage."""
        if "channel" not in envelope:
            raise MessageParseError(
                f"Missing channel; keys: {list(envelope.keys())[:5]}",
                raw_data=envelope,
                expected_type="envelope",
            )

        channel = MessageChannel.from_wire(envelope["channel"])
        data = envelope.get("data")
        return RoutedMessage(
            channel=channel,
            symbol=self._extract_symbol(channel, data),
            data=data,
            recv_ts=recv_ts,
        )

    def _extract_symbol(self, channel: MessageChannel, data: Any) -> Optional[str]:
        """Find the symbol a candle or trades payload belongs to."""
        if channel == MessageChannel.CANDLE:
            if isinstance(data, dict) and isinstance(data.get("candles"), list):
                data = data["candles"]
            if isinstance(data, list):
                data = data[0] if data else None
            if isinstance(data, dict) and isinstance(data.get("s"), str):
                return data["s"]
            return None

        if channel == MessageChannel.TRADES:
            if isinstance(data, list) and data and isinstance(data[0], dict):
                coin = data[0].get("coin")
                return coin if isinstance(coin, str) else None
            return None

        return None

    def get_handler_count(self, channel: MessageChannel) -> int:
        """Get number of registered handlers for a channel."""
        return len(self._handlers.get(channel, []))

    def clear_handlers(self) -> None:
        """Clear all registered handlers."""
        self._handlers.clear()
        self._catch_all_handler = None

    def reset_stats(self) -> None:
        """Reset routing statistics."""
        self._stats = RouterStats()
