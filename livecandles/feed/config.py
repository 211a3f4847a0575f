"""
Configuration types for the live candle feed.

Provides immutable, validated configuration dataclasses for all feed components.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from livecandles.feed.errors import ConfigurationError


class Network(str, Enum):
    """Supported Hyperliquid networks."""

    MAINNET = "mainnet"
    TESTNET = "testnet"


class BackoffPolicy(str, Enum):
    """How the delay between reconnect attempts grows."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# Hyperliquid WebSocket endpoints
HYPERLIQUID_WS_ENDPOINTS: dict[Network, str] = {
    Network.MAINNET: "wss://api.hyperliquid.xyz/ws",
    Network.TESTNET: "wss://api.hyperliquid-testnet.xyz/ws",
}

# Hyperliquid info endpoints (candle snapshots)
HYPERLIQUID_INFO_ENDPOINTS: dict[Network, str] = {
    Network.MAINNET: "https://api.hyperliquid.xyz/info",
    Network.TESTNET: "https://api.hyperliquid-testnet.xyz/info",
}

SUPPORTED_INTERVALS: tuple[str, ...] = (
    "1m",
    "3m",
    "5m",
    "15m",
    "30m",
    "1h",
    "2h",
    "4h",
    "8h",
    "12h",
    "1d",
    "3d",
    "1w",
    "1M",
)


def validate_interval(interval: str, field_name: str = "interval") -> None:
    if interval not in SUPPORTED_INTERVALS:
        raise ConfigurationError(
            f"interval must be one of {', '.join(SUPPORTED_INTERVALS)}",
            field=field_name,
            value=interval,
        )


@dataclass(frozen=True)
class ConnectionConfig:
    """Configuration for the streaming WebSocket connection."""

    # WebSocket URL
    url: str = HYPERLIQUID_WS_ENDPOINTS[Network.MAINNET]

    # Connection behavior
    connect_timeout_s: float = 10.0
    ping_interval_s: float = 30.0  # App-level ping if no message (server drops idle after 60s)

    # Reconnection
    reconnect: bool = True
    max_reconnect_attempts: int = 10
    backoff: BackoffPolicy = BackoffPolicy.EXPONENTIAL
    base_reconnect_delay_s: float = 1.0
    max_reconnect_delay_s: float = 10.0
    reconnect_jitter: float = 0.2  # ±20% jitter

    def __post_init__(self) -> None:
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.ping_interval_s <= 0:
            raise ConfigurationError(
                "ping_interval_s must be positive",
                field="ping_interval_s",
                value=self.ping_interval_s,
            )
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                "max_reconnect_attempts must be non-negative",
                field="max_reconnect_attempts",
                value=self.max_reconnect_attempts,
            )
        if self.base_reconnect_delay_s < 0:
            raise ConfigurationError(
                "base_reconnect_delay_s must be non-negative",
                field="base_reconnect_delay_s",
                value=self.base_reconnect_delay_s,
            )
        if self.max_reconnect_delay_s < self.base_reconnect_delay_s:
            raise ConfigurationError(
                "max_reconnect_delay_s must be >= base_reconnect_delay_s",
                field="max_reconnect_delay_s",
                value=self.max_reconnect_delay_s,
            )
        if not (0 <= self.reconnect_jitter <= 1):
            raise ConfigurationError(
                "reconnect_jitter must be between 0 and 1",
                field="reconnect_jitter",
                value=self.reconnect_jitter,
            )


@dataclass(frozen=True)
class FeedConfig:
    """
    Immutable top-level configuration for the live candle feed.

    Example:
        config = FeedConfig(
            network=Network.MAINNET,
            symbols=("BTC", "ETH"),
            interval="1m",
        )
    """

    # Network selection
    network: Network = Network.MAINNET

    # Symbols (Hyperliquid coin names) to subscribe
    symbols: tuple[str, ...] = field(default_factory=tuple)

    # Candle interval for both the snapshot and the candle subscription
    interval: str = "1m"

    # Historical seeding
    seed_history: bool = True
    history_lookback_s: float = 24 * 3600
    info_url: str = ""  # Derived from network when empty
    snapshot_timeout_s: float = 10.0

    # Bounds
    max_candles: int = 5_000  # Per-symbol series length, oldest trimmed first
    max_queue_size: int = 10_000  # Inbound frames waiting for the consumer
    max_deferred_updates: int = 1_000  # Per-symbol updates held while seeding

    # Component configs
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)

    def __post_init__(self) -> None:
        if not self.symbols:
            raise ConfigurationError(
                "At least one symbol must be configured",
                field="symbols",
            )
        if len(set(self.symbols)) != len(self.symbols):
            raise ConfigurationError(
                "symbols must be unique",
                field="symbols",
                value=self.symbols,
            )
        validate_interval(self.interval)
        if self.history_lookback_s <= 0:
            raise ConfigurationError(
                "history_lookback_s must be positive",
                field="history_lookback_s",
                value=self.history_lookback_s,
            )
        for name in ("max_candles", "max_queue_size", "max_deferred_updates"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(
                    f"{name} must be positive",
                    field=name,
                    value=getattr(self, name),
                )

        # Need to use object.__setattr__ for frozen dataclass
        object.__setattr__(self, "symbols", tuple(self.symbols))
        if not self.info_url:
            object.__setattr__(self, "info_url", HYPERLIQUID_INFO_ENDPOINTS[self.network])

        # Point a default connection at the selected network
        if self.connection.url == HYPERLIQUID_WS_ENDPOINTS[Network.MAINNET]:
            object.__setattr__(
                self,
                "connection",
                replace(self.connection, url=HYPERLIQUID_WS_ENDPOINTS[self.network]),
            )

    @property
    def history_lookback_ms(self) -> int:
        return int(self.history_lookback_s * 1000)
