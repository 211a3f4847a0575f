"""
Historical Reconciler - seeds per-symbol series from a historical snapshot.

Seeding replaces a symbol's whole series. The caller owns the symbol's ready
gate: close it before reconcile(), open it afterwards, so a live update can
never be overwritten by a late-arriving snapshot.
"""

from __future__ import annotations

import logging
import time
from typing import Iterable, Optional, Protocol

from livecandles.candles.store import SymbolStateStore
from livecandles.types.types import Candle

logger = logging.getLogger(__name__)


class SnapshotResultLike(Protocol):
    candles: tuple[Candle, ...]
    error: Optional[str]


class SnapshotFetcher(Protocol):
    async def fetch_window(
        self, symbol: str, interval: str, lookback_ms: int, now_ms: Optional[int] = None
    ) -> SnapshotResultLike: ...


def _ordered_unique(candles: Iterable[Candle]) -> list[Candle]:
    """Sort by timestamp; for duplicate timestamps the later record wins."""
    by_ts: dict[int, Candle] = {}
    for candle in candles:
        by_ts[candle.timestamp] = candle
    return [by_ts[ts] for ts in sorted(by_ts)]


class HistoricalReconciler:
    def __init__(self, store: SymbolStateStore, fetcher: Optional[SnapshotFetcher] = None) -> None:
        self._store = store
        self._fetcher = fetcher
        self._seed_count: dict[str, int] = {}
        self._cutoff_ms: dict[str, int] = {}

    def seed(self, symbol: str, candles: Iterable[Candle]) -> int:
        """Replace the symbol's series with `candles`. Returns the new series length."""
        ordered = _ordered_unique(candles)

        def replace_series(series: list[Candle]) -> int:
            series[:] = ordered
            return len(series)

        length = self._store.apply(symbol, replace_series)
        self._cutoff_ms.pop(symbol, None)
        self._seed_count[symbol] = self._seed_count.get(symbol, 0) + 1
        logger.info(f"Seeded {symbol} with {length} candles")
        return length

    async def reconcile(
        self,
        symbol: str,
        interval: str,
        lookback_ms: int,
        now_ms: Optional[int] = None,
    ) -> Optional[str]:
        """
        Fetch the trailing window for `symbol` and seed it.

        Returns None on success, or the error detail. A failed fetch leaves the
        existing series untouched. On success the window end is kept as the
        symbol's snapshot cutoff.
        """
        if self._fetcher is None:
            return "no snapshot fetcher configured"

        end_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        result = await self._fetcher.fetch_window(symbol, interval, lookback_ms, end_ms)
        if result.error is not None:
            logger.warning(f"No historical data for {symbol}: {result.error}")
            return result.error

        self.seed(symbol, result.candles)
        self._cutoff_ms[symbol] = end_ms
        return None

    def seed_count(self, symbol: str) -> int:
        return self._seed_count.get(symbol, 0)

    def snapshot_cutoff(self, symbol: str) -> Optional[int]:
        """End of the window behind the last successful reconcile, in ms."""
        return self._cutoff_ms.get(symbol)
