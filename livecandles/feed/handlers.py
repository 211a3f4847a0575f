"""
Message Handlers for the live candle feed.

Handlers parse Hyperliquid JSON into normalized internal dataclasses:
- CandleHandler: candle channel -> CandleUpdate
- TradeHandler: trades channel -> TradeBatch

Bad records and bad ticks are skipped one at a time; they never abort the
rest of the message.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from livecandles.feed.errors import HandlerError, MessageParseError
from livecandles.feed.types import RoutedMessage
from livecandles.types.types import Candle, CandleUpdate, TradeBatch, TradeTick

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class HandlerStats:
    """Statistics for a message handler."""

    messages_received: int = 0
    messages_processed: int = 0
    messages_skipped: int = 0
    records_skipped: int = 0
    parse_errors: int = 0
    by_symbol: dict[str, int] = field(default_factory=dict)


class BaseHandler(ABC, Generic[T]):
    """
    Abstract base class for message handlers.

    Each handler:
    1. Receives RoutedMessage from the router
    2. Parses exchange-specific JSON into internal dataclass
    3. Calls registered callback with normalized data
    """

    def __init__(
        self,
        on_event: Callable[[T], Awaitable[None]],
        name: str = "handler",
    ) -> None:
        """
        Initialize the handler.

        Args:
            on_event: Async callback to receive parsed events
            name: Handler name for logging
        """
        self._on_event = on_event
        self._name = name
        self._stats = HandlerStats()

    @property
    def stats(self) -> HandlerStats:
        """Get handler statistics."""
        return self._stats

    async def handle(self, msg: RoutedMessage) -> None:
        """
        Handle an incoming message.

        Args:
            msg: Routed message from the router
        """
        self._stats.messages_received += 1

        try:
            event = self._parse(msg)
            if event is None:
                self._stats.messages_skipped += 1
                return

            self._stats.messages_processed += 1
            if msg.symbol:
                self._stats.by_symbol[msg.symbol] = self._stats.by_symbol.get(msg.symbol, 0) + 1

            await self._on_event(event)

        except (MessageParseError, HandlerError) as e:
            self._stats.parse_errors += 1
            logger.warning(f"[{self._name}] Parse error: {e}")
        except Exception as e:
            self._stats.parse_errors += 1
            logger.error(f"[{self._name}] Unexpected error: {e}", exc_info=True)

    @abstractmethod
    def _parse(self, msg: RoutedMessage) -> Optional[T]:
        """Parse the message into an event. Return None to skip."""
        ...

    def reset_stats(self) -> None:
        """Reset handler statistics."""
        self._stats = HandlerStats()


def _safe_float(value: Any, field_name: str) -> float:
    """Convert a number or decimal string to a finite float."""
    try:
        result = value if isinstance(value, float) else float(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid float value for {field_name}: {value}",
            raw_data=value,
            expected_type="float",
        ) from e
    if not math.isfinite(result):
        raise MessageParseError(
            f"Non-finite value for {field_name}: {value}",
            raw_data=value,
            expected_type="float",
        )
    return result


def _safe_int(value: Any, field_name: str) -> int:
    """Safely convert a value to int."""
    try:
        return int(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid integer value for {field_name}: {value}",
            raw_data=value,
            expected_type="int",
        ) from e


def normalize_candle_payload(data: Any) -> list[dict[str, Any]]:
    """
    Normalize the three candle payload shapes to one list of records.

    - single record:   {"t": ..., "o": ..., ...}
    - array:           [{"t": ...}, ...]
    - wrapped array:   {"candles": [{"t": ...}, ...]}

    Anything else yields an empty list. Non-object elements are dropped.
    """
    if isinstance(data, list):
        records = data
    elif isinstance(data, dict) and isinstance(data.get("candles"), list):
        records = data["candles"]
    elif isinstance(data, dict) and "t" in data:
        records = [data]
    else:
        return []
    return [r for r in records if isinstance(r, dict)]


def parse_candle_record(record: dict[str, Any]) -> Candle:
    """
    Parse one Hyperliquid candle record.

    Hyperliquid candle format:
    {
        "t": 1704067200000,  // Period start (ms)
        "T": 1704067259999,  // Period end (ms)
        "s": "BTC",          // Coin
        "i": "1m",           // Interval
        "o": "42000.0",      // Open
        "c": "42010.5",      // Close
        "h": "42020.0",      // High
        "l": "41990.0",      // Low
        "v": "12.345",       // Volume (base)
        "n": 321             // Number of trades
    }

    Raises:
        MessageParseError: On missing/non-numeric fields or broken OHLC bounds
    """
    try:
        candle = Candle(
            timestamp=_safe_int(record["t"], "t"),
            open=_safe_float(record["o"], "o"),
            high=_safe_float(record["h"], "h"),
            low=_safe_float(record["l"], "l"),
            close=_safe_float(record["c"], "c"),
            volume=_safe_float(record["v"], "v"),
            trades=_safe_int(record.get("n", 0), "n"),
        )
    except KeyError as e:
        raise MessageParseError(
            f"Missing required candle field: {e}",
            raw_data=record,
            expected_type="candle",
        ) from e

    if not candle.is_consistent:
        raise MessageParseError(
            f"Inconsistent OHLCV at t={candle.timestamp}",
            raw_data=record,
            expected_type="candle",
        )
    return candle


class CandleHandler(BaseHandler[CandleUpdate]):
    """Handler for candle-channel messages."""

    def __init__(self, on_event: Callable[[CandleUpdate], Awaitable[None]]) -> None:
        super().__init__(on_event, name="CandleHandler")

    def _parse(self, msg: RoutedMessage) -> Optional[CandleUpdate]:
        """Parse every record in the payload; skip the ones that fail."""
        if msg.symbol is None:
            raise HandlerError(
                "Candle message without symbol",
                handler_name=self._name,
                channel=msg.channel.value,
            )

        candles: list[Candle] = []
        interval: Optional[str] = None

        for record in normalize_candle_payload(msg.data):
            if record.get("s", msg.symbol) != msg.symbol:
                self._stats.records_skipped += 1
                continue
            try:
                candles.append(parse_candle_record(record))
            except MessageParseError as e:
                self._stats.records_skipped += 1
                logger.warning(f"[{self._name}] Skipping candle record for {msg.symbol}: {e}")
                logger.debug(f"[{self._name}] Skipped record: {e.raw_data}")
                continue
            if interval is None and isinstance(record.get("i"), str):
                interval = record["i"]

        if not candles:
            return None

        return CandleUpdate(
            symbol=msg.symbol,
            interval=interval,
            candles=tuple(candles),
            recv_ts=msg.recv_ts,
        )


class TradeHandler(BaseHandler[TradeBatch]):
    """
    Handler for trades-channel messages.

    Hyperliquid trades format (array, one symbol per message):
    [
        {
            "coin": "BTC",
            "side": "B",
            "px": "42005.0",     // Price
            "sz": "0.015",       // Size
            "time": 1704067201234,
            "hash": "0x...",
            "tid": 123456789
        }
    ]
    """

    def __init__(self, on_event: Callable[[TradeBatch], Awaitable[None]]) -> None:
        super().__init__(on_event, name="TradeHandler")

    def _parse(self, msg: RoutedMessage) -> Optional[TradeBatch]:
        """Parse trades in arrival order; a malformed trade skips only itself."""
        if msg.symbol is None or not isinstance(msg.data, list):
            raise HandlerError(
                "Trades message without symbol",
                handler_name=self._name,
                channel=msg.channel.value,
            )

        ticks: list[TradeTick] = []
        for trade in msg.data:
            if not isinstance(trade, dict):
                self._stats.records_skipped += 1
                continue
            try:
                tick = TradeTick(
                    price=_safe_float(trade.get("px"), "px"),
                    size=_safe_float(trade.get("sz"), "sz"),
                    ts=_safe_int(trade["time"], "time") if "time" in trade else None,
                )
            except MessageParseError as e:
                self._stats.records_skipped += 1
                logger.debug(f"[{self._name}] Skipping trade for {msg.symbol}: {e}")
                continue
            if tick.price <= 0 or tick.size < 0:
                self._stats.records_skipped += 1
                logger.debug(f"[{self._name}] Skipping out-of-range trade: {tick}")
                continue
            ticks.append(tick)

        if not ticks:
            return None

        return TradeBatch(symbol=msg.symbol, ticks=tuple(ticks), recv_ts=msg.recv_ts)
