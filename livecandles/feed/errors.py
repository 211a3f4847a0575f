"""
Custom exceptions for the live candle feed.

Exception hierarchy:
- LiveFeedError (base)
  - ConnectionError: WebSocket connection issues
  - SubscriptionError: Subscribe/unsubscribe failures
  - MessageParseError: Invalid/malformed messages or fields
  - HandlerError: Handler processing failures
  - ConfigurationError: Invalid configuration
  - SnapshotError: Historical snapshot fetch failures

Keyword context given to a subclass is kept as attributes and, when not
None, copied into `details` so it shows up in logged messages.
"""

from __future__ import annotations

from typing import Any, Optional


class LiveFeedError(Exception):
    """Base exception for all live feed errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        **context: Any,
    ) -> None:
        self.component = component
        self.details = dict(details or {})
        for key, value in context.items():
            setattr(self, key, value)
            if value is not None:
                self.details[key] = value
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class ConnectionError(LiveFeedError):
    """Raised when the WebSocket connection is unavailable or fails."""

    def __init__(self, message: str, *, url: Optional[str] = None, reconnect_attempt: int = 0, **kwargs: Any) -> None:
        super().__init__(message, url=url, reconnect_attempt=reconnect_attempt, **kwargs)


class SubscriptionError(LiveFeedError):
    """Raised when a subscribe or unsubscribe frame cannot be sent."""

    def __init__(
        self, message: str, *, channel: Optional[str] = None, symbol: Optional[str] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, channel=channel, symbol=symbol, **kwargs)


class MessageParseError(LiveFeedError):
    """
    Raised when a frame, a candle record or a trade field cannot be parsed.

    `raw_data` holds the offending frame, record or value. It is kept off
    `details` so warnings stay one line; the router and handlers log it at
    debug level.
    """

    def __init__(
        self, message: str, *, raw_data: Any = None, expected_type: Optional[str] = None, **kwargs: Any
    ) -> None:
        self.raw_data = raw_data
        super().__init__(message, expected_type=expected_type, **kwargs)


class HandlerError(LiveFeedError):
    """Raised when a channel handler rejects a whole message."""

    def __init__(
        self, message: str, *, handler_name: Optional[str] = None, channel: Optional[str] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, handler_name=handler_name, channel=channel, **kwargs)


class ConfigurationError(LiveFeedError):
    """Raised when configuration is invalid."""

    def __init__(
        self, message: str, *, field: Optional[str] = None, value: Optional[Any] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, field=field, value=None if value is None else str(value), **kwargs)
        self.value = value


class SnapshotError(LiveFeedError):
    """Raised inside the snapshot client; callers receive it as SnapshotResult.error."""

    def __init__(
        self, message: str, *, symbol: Optional[str] = None, status: Optional[int] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, symbol=symbol, status=status, **kwargs)
