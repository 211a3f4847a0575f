"""
Subscription Registrar for the live candle feed.

Declares one candle and one trades subscription per symbol every time the
connection opens (subscriptions are not assumed to survive a reconnect), and
moves the candle subscriptions over when the interval changes.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Protocol

from livecandles.feed.config import validate_interval
from livecandles.feed.errors import SubscriptionError
from livecandles.types.types import Channel, Subscription

logger = logging.getLogger(__name__)


class JsonSender(Protocol):
    @property
    def is_connected(self) -> bool: ...

    async def send_json(self, message: dict[str, Any]) -> None: ...


class SubscriptionRegistrar:
    """Builds and sends subscribe/unsubscribe messages for a symbol set."""

    def __init__(self, symbols: Iterable[str], interval: str) -> None:
        self._symbols: tuple[str, ...] = tuple(symbols)
        self._interval = interval
        self._registrations = 0

    @property
    def symbols(self) -> tuple[str, ...]:
        return self._symbols

    @property
    def interval(self) -> str:
        return self._interval

    @property
    def registrations(self) -> int:
        """Number of completed (re-)registrations."""
        return self._registrations

    def subscriptions(self, interval: str | None = None) -> list[Subscription]:
        """One candle and one trades subscription per symbol, in symbol order."""
        interval = interval or self._interval
        subs: list[Subscription] = []
        for symbol in self._symbols:
            subs.append(Subscription(symbol=symbol, channel=Channel.CANDLE, interval=interval))
            subs.append(Subscription(symbol=symbol, channel=Channel.TRADES))
        return subs

    async def register(self, sender: JsonSender) -> None:
        """Send every subscription. Used as the connection's on_open callback."""
        subs = self.subscriptions()
        for sub in subs:
            await self._send(sender, sub, "subscribe")
        self._registrations += 1
        logger.info(
            f"Registered {len(subs)} subscriptions for {len(self._symbols)} symbols "
            f"(interval={self._interval})"
        )

    async def change_interval(self, sender: JsonSender, interval: str) -> bool:
        """
        Switch the candle subscriptions to a new interval.

        When the connection is open the old candle subscriptions are removed and
        the new ones added; otherwise only the stored interval changes and the
        next register() picks it up. Returns True if the interval changed.
        """
        validate_interval(interval)
        if interval == self._interval:
            return False

        old_interval = self._interval
        self._interval = interval

        if not sender.is_connected:
            logger.info(f"Interval set to {interval}; will apply on next connect")
            return True

        for symbol in self._symbols:
            old = Subscription(symbol=symbol, channel=Channel.CANDLE, interval=old_interval)
            new = Subscription(symbol=symbol, channel=Channel.CANDLE, interval=interval)
            await self._send(sender, old, "unsubscribe")
            await self._send(sender, new, "subscribe")

        logger.info(f"Resubscribed candles from {old_interval} to {interval}")
        return True

    async def _send(self, sender: JsonSender, sub: Subscription, method: str) -> None:
        try:
            await sender.send_json(sub.to_wire(method))
        except Exception as e:
            raise SubscriptionError(
                f"Failed to {method}: {e}",
                channel=sub.channel.value,
                symbol=sub.symbol,
                component="SubscriptionRegistrar",
            ) from e
