"""
Candle Aggregator - folds live updates into the per-symbol series.

Candle-channel records (the feed re-sends the forming candle until its period
closes) are merged by period-start timestamp:

    series empty          -> append
    t == last.timestamp   -> replace last (amendment)
    t >  last.timestamp   -> append (new period, becomes current)
    t <  last.timestamp   -> ignore (stale / out of order)

Trade ticks are folded into the current candle one by one in arrival order,
so close ends up as the last trade's price. Without a current candle there is
no period boundary to fold into, and trades are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from livecandles.candles.store import SymbolStateStore
from livecandles.types.types import Candle, TradeTick

logger = logging.getLogger(__name__)


@dataclass
class AggregatorStats:
    """Counters for merge outcomes."""

    appended: int = 0
    amended: int = 0
    stale_ignored: int = 0
    trades_applied: int = 0
    trades_without_candle: int = 0


def fold_trade(candle: Candle, price: float, size: float) -> Candle:
    """Apply one trade to a candle. Open and timestamp never change."""
    return replace(
        candle,
        high=max(candle.high, price),
        low=min(candle.low, price),
        close=price,
        volume=candle.volume + size,
        trades=candle.trades + 1,
    )


class CandleAggregator:
    """Merges candle records and trade ticks into a SymbolStateStore."""

    def __init__(self, store: SymbolStateStore) -> None:
        self._store = store
        self._stats = AggregatorStats()

    @property
    def stats(self) -> AggregatorStats:
        return self._stats

    def apply_candles(self, symbol: str, candles: Iterable[Candle]) -> int:
        """
        Merge candle records in order. Returns the number of records that changed the series.
        """

        def merge(series: list[Candle]) -> int:
            changed = 0
            for candle in candles:
                if not series or candle.timestamp > series[-1].timestamp:
                    series.append(candle)
                    self._stats.appended += 1
                    changed += 1
                elif candle.timestamp == series[-1].timestamp:
                    series[-1] = candle
                    self._stats.amended += 1
                    changed += 1
                else:
                    self._stats.stale_ignored += 1
                    logger.debug(
                        f"Ignoring stale candle for {symbol}: t={candle.timestamp} < "
                        f"last={series[-1].timestamp}"
                    )
            return changed

        return self._store.apply(symbol, merge)

    def apply_trades(self, symbol: str, ticks: Iterable[TradeTick]) -> Optional[Candle]:
        """
        Fold ticks into the current candle and write it back once.

        Returns the updated current candle, or None if the symbol has no candle yet.
        """

        def fold(series: list[Candle]) -> Optional[Candle]:
            if not series:
                self._stats.trades_without_candle += 1
                logger.debug(f"No current candle for {symbol}, ignoring trades")
                return None

            # TODO: decide whether ticks stamped before the period start should move high/low
            candle = series[-1]
            applied = 0
            for tick in ticks:
                candle = fold_trade(candle, tick.price, tick.size)
                applied += 1

            if applied:
                series[-1] = candle
                self._stats.trades_applied += applied
            return candle

        return self._store.apply(symbol, fold)
