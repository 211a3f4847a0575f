"""
Per-symbol candle state store.

One entry per configured symbol, created up front and kept for the life of the
store. `apply()` is the only write path; readers get immutable SymbolState
snapshots. Each entry also carries the ready gate: while a symbol is being
seeded from history its live updates are deferred here and handed back, in
arrival order, when the gate opens.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Deque, Iterable, Optional, TypeVar

from livecandles.types.types import Candle, LiveUpdate, SymbolState

logger = logging.getLogger(__name__)

R = TypeVar("R")


class _SymbolEntry:
    """Mutable per-symbol state. Never handed to readers."""

    __slots__ = ("symbol", "series", "ready", "deferred", "deferred_dropped")

    def __init__(self, symbol: str, ready: bool) -> None:
        self.symbol = symbol
        self.series: list[Candle] = []
        self.ready = ready
        self.deferred: Deque[LiveUpdate] = deque()
        self.deferred_dropped = 0

    @property
    def current(self) -> Optional[Candle]:
        return self.series[-1] if self.series else None


class SymbolStateStore:
    """
    Keyed store of per-symbol candle series.

    Writers (aggregator, reconciler) are serialized by the feed's single
    consumer task, so mutations are not locked.
    """

    def __init__(
        self,
        symbols: Iterable[str],
        *,
        max_candles: Optional[int] = None,
        max_deferred: int = 1_000,
        ready: bool = False,
    ) -> None:
        """
        Args:
            symbols: Symbols to hold state for
            max_candles: Trim each series to this many most recent candles (None = unbounded)
            max_deferred: Per-symbol bound on updates held while the gate is closed
            ready: Initial gate state (False until seeded)
        """
        self._entries: dict[str, _SymbolEntry] = {s: _SymbolEntry(s, ready) for s in symbols}
        self._max_candles = max_candles
        self._max_deferred = max_deferred

    @property
    def symbols(self) -> tuple[str, ...]:
        return tuple(self._entries)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._entries

    def _entry(self, symbol: str) -> _SymbolEntry:
        try:
            return self._entries[symbol]
        except KeyError:
            raise KeyError(f"Unknown symbol: {symbol}") from None

    # --- Reads ---

    def get(self, symbol: str) -> SymbolState:
        """Read-only snapshot of a symbol's series and current candle."""
        entry = self._entry(symbol)
        return SymbolState(
            symbol=symbol,
            series=tuple(entry.series),
            current_candle=entry.current,
        )

    def current(self, symbol: str) -> Optional[Candle]:
        """Current (last) candle without copying the series."""
        return self._entry(symbol).current

    def series_length(self, symbol: str) -> int:
        return len(self._entry(symbol).series)

    def snapshot(self) -> dict[str, SymbolState]:
        return {symbol: self.get(symbol) for symbol in self._entries}

    # --- Writes ---

    def apply(self, symbol: str, mutator: Callable[[list[Candle]], R]) -> R:
        """
        Run `mutator` against the symbol's series list; the only write path.

        The mutator must keep the series strictly increasing by timestamp.
        """
        entry = self._entry(symbol)
        result = mutator(entry.series)
        if self._max_candles is not None and len(entry.series) > self._max_candles:
            del entry.series[: -self._max_candles]
        return result

    # --- Ready gate ---

    def is_ready(self, symbol: str) -> bool:
        return self._entry(symbol).ready

    def close_gate(self, symbol: str) -> None:
        """Hold live updates for `symbol` until open_gate()."""
        entry = self._entry(symbol)
        if entry.ready:
            logger.debug(f"Gate closed for {symbol}")
        entry.ready = False

    def open_gate(self, symbol: str) -> list[LiveUpdate]:
        """Accept live updates again; returns the deferred ones in arrival order."""
        entry = self._entry(symbol)
        entry.ready = True
        pending = list(entry.deferred)
        entry.deferred.clear()
        if pending:
            logger.debug(f"Gate opened for {symbol}, replaying {len(pending)} deferred updates")
        return pending

    def defer(self, symbol: str, update: LiveUpdate) -> bool:
        """
        Hold an update while the gate is closed.

        Returns False when the buffer was full and the oldest update was dropped.
        """
        entry = self._entry(symbol)
        entry.deferred.append(update)
        if len(entry.deferred) > self._max_deferred:
            entry.deferred.popleft()
            entry.deferred_dropped += 1
            logger.warning(
                f"Deferred buffer full for {symbol} ({self._max_deferred}), dropped oldest update"
            )
            return False
        return True

    def deferred_count(self, symbol: str) -> int:
        return len(self._entry(symbol).deferred)

    def deferred_dropped(self, symbol: str) -> int:
        return self._entry(symbol).deferred_dropped
