from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

import polars as pl

from livecandles.types.aliases import Interval, Symbol, UnixMillis

# -------- Enums --------


class Channel(str, Enum):
    """Subscription channels the engine consumes."""

    CANDLE = "candle"
    TRADES = "trades"


# --- Candle ---


@dataclass(frozen=True, slots=True)
class Candle:
    timestamp: UnixMillis  # period start (UTC ms)
    open: float
    high: float
    low: float
    close: float
    volume: float
    trades: int = 0  # optional, 0 if unknown

    @property
    def is_consistent(self) -> bool:
        """Check low <= min(open, close) <= max(open, close) <= high and volume >= 0."""
        return (
            self.low <= min(self.open, self.close)
            and max(self.open, self.close) <= self.high
            and self.volume >= 0
        )


# --- Trades ---


@dataclass(frozen=True, slots=True)
class TradeTick:
    price: float
    size: float
    ts: Optional[UnixMillis] = None  # exchange trade time, if provided


# --- Normalized channel updates ---


@dataclass(frozen=True, slots=True)
class CandleUpdate:
    """All candle records carried by one candle-channel message."""

    symbol: Symbol
    interval: Optional[Interval]
    candles: tuple[Candle, ...]
    recv_ts: UnixMillis


@dataclass(frozen=True, slots=True)
class TradeBatch:
    """Trade ticks carried by one trades-channel message, in arrival order."""

    symbol: Symbol
    ticks: tuple[TradeTick, ...]
    recv_ts: UnixMillis


LiveUpdate = Union[CandleUpdate, TradeBatch]


# --- Subscriptions ---


@dataclass(frozen=True, slots=True)
class Subscription:
    symbol: Symbol
    channel: Channel
    interval: Optional[Interval] = None  # only for candle

    def __post_init__(self) -> None:
        if self.channel == Channel.CANDLE and not self.interval:
            raise ValueError("interval required for candle subscriptions")

    def to_wire(self, method: str = "subscribe") -> dict[str, object]:
        """Build the Hyperliquid subscribe/unsubscribe message."""
        subscription: dict[str, object] = {"type": self.channel.value, "coin": self.symbol}
        if self.channel == Channel.CANDLE:
            subscription["interval"] = self.interval
        return {"method": method, "subscription": subscription}


# --- Symbol state ---

CANDLE_SCHEMA: dict[str, pl.DataType] = {
    "timestamp": pl.Int64(),
    "open": pl.Float64(),
    "high": pl.Float64(),
    "low": pl.Float64(),
    "close": pl.Float64(),
    "volume": pl.Float64(),
    "trades": pl.Int64(),
}


@dataclass(frozen=True)
class SymbolState:
    """
    Read-only snapshot of one symbol's series.

    `current_candle` is the last element of `series`, or None while no data has arrived.
    """

    symbol: Symbol
    series: tuple[Candle, ...] = field(default_factory=tuple)
    current_candle: Optional[Candle] = None

    @property
    def price_change(self) -> float:
        """Absolute change from the first candle's open to the current close."""
        if len(self.series) < 2 or self.current_candle is None:
            return 0.0
        return self.current_candle.close - self.series[0].open

    @property
    def price_change_pct(self) -> float:
        """Percentage change from the first candle's open to the current close."""
        if len(self.series) < 2 or self.current_candle is None:
            return 0.0
        first_open = self.series[0].open
        if first_open == 0:
            return 0.0
        return (self.current_candle.close - first_open) / first_open * 100

    def to_frame(self) -> pl.DataFrame:
        """Series as a polars DataFrame, one row per candle, with a UTC datetime column."""
        df = pl.DataFrame(
            {
                "timestamp": [c.timestamp for c in self.series],
                "open": [c.open for c in self.series],
                "high": [c.high for c in self.series],
                "low": [c.low for c in self.series],
                "close": [c.close for c in self.series],
                "volume": [c.volume for c in self.series],
                "trades": [c.trades for c in self.series],
            },
            schema=CANDLE_SCHEMA,
        )
        return df.with_columns(
            pl.from_epoch("timestamp", time_unit="ms").dt.replace_time_zone("UTC").alias("datetime")
        )
