"""
Shared types, enums, and data structures for the live candle feed.

This module contains types that are used across multiple components
of the feed (connection, router, handlers, manager).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ManagerState(str, Enum):
    """State machine for LiveCandleFeed."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class ConnectionState(str, Enum):
    """State machine for the WebSocket connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class MessageChannel(str, Enum):
    """Channel tags found on inbound messages."""

    SUBSCRIPTION_RESPONSE = "subscriptionResponse"
    CANDLE = "candle"
    TRADES = "trades"
    PONG = "pong"
    ERROR = "error"
    UNKNOWN = "unknown"

    @classmethod
    def from_wire(cls, value: Any) -> MessageChannel:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class ConnectionHealth:
    """Health snapshot for the WebSocket connection."""

    state: ConnectionState
    url: str
    connected_since: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    reconnect_attempt: int = 0
    reconnect_count: int = 0
    message_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @property
    def uptime_s(self) -> Optional[float]:
        """Connection uptime in seconds, or None if not connected."""
        if self.connected_since is None or self.state != ConnectionState.OPEN:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.connected_since).total_seconds()

    @property
    def is_healthy(self) -> bool:
        """Check if connection is in a healthy state."""
        return self.state == ConnectionState.OPEN

    @property
    def seconds_since_message(self) -> Optional[float]:
        """Seconds since last message, or None if no messages yet."""
        if self.last_message_at is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.last_message_at).total_seconds()


@dataclass(frozen=True, slots=True)
class RoutedMessage:
    """Parsed inbound envelope, classified by channel."""

    channel: MessageChannel
    symbol: Optional[str]
    data: Any  # Raw "data" payload; shape depends on channel
    recv_ts: int  # Local receive timestamp (Unix ms)


@dataclass
class ConnectionMetrics:
    """Counters for the WebSocket connection."""

    messages_received: int = 0
    bytes_received: int = 0
    pings_sent: int = 0
    reconnections: int = 0
    errors: int = 0

    # Timing
    connected_at: Optional[float] = None  # monotonic time
    last_message_at: Optional[float] = None  # monotonic time
