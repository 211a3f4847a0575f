"""
Unit tests for CandleAggregator merge rules.
"""

import pytest

from livecandles.candles.aggregator import CandleAggregator, fold_trade
from livecandles.candles.store import SymbolStateStore
from livecandles.types.types import Candle, TradeTick


def _flat(ts: int, price: float = 100.0, volume: float = 0.0) -> Candle:
    return Candle(timestamp=ts, open=price, high=price, low=price, close=price, volume=volume)


@pytest.fixture
def store() -> SymbolStateStore:
    return SymbolStateStore(["BTC", "ETH"], ready=True)


@pytest.fixture
def aggregator(store: SymbolStateStore) -> CandleAggregator:
    return CandleAggregator(store)


class TestApplyCandles:
    """Candle-channel merge by period start."""

    def test_increasing_timestamps_append(self, aggregator: CandleAggregator, store: SymbolStateStore) -> None:
        """Strictly increasing candles give one element each, in order."""
        changed = aggregator.apply_candles("BTC", [_flat(1000), _flat(1060), _flat(1120)])

        assert changed == 3
        assert [c.timestamp for c in store.get("BTC").series] == [1000, 1060, 1120]
        assert aggregator.stats.appended == 3

    def test_same_timestamp_replaces_current(self, aggregator: CandleAggregator, store: SymbolStateStore) -> None:
        aggregator.apply_candles("BTC", [_flat(1000)])
        amended = Candle(timestamp=1000, open=100, high=102, low=99, close=101, volume=5)

        aggregator.apply_candles("BTC", [amended])

        state = store.get("BTC")
        assert state.series == (amended,)
        assert state.current_candle == amended
        assert aggregator.stats.amended == 1

    def test_older_timestamp_is_ignored(self, aggregator: CandleAggregator, store: SymbolStateStore) -> None:
        aggregator.apply_candles("BTC", [_flat(1000), _flat(1060)])
        before = store.get("BTC")

        changed = aggregator.apply_candles("BTC", [_flat(1000, price=50.0)])

        assert changed == 0
        assert store.get("BTC") == before
        assert aggregator.stats.stale_ignored == 1

    def test_repeated_updates_keep_one_element_per_timestamp(
        self, aggregator: CandleAggregator, store: SymbolStateStore
    ) -> None:
        for ts in (1000, 1000, 1060, 1060, 1060, 1120):
            aggregator.apply_candles("BTC", [_flat(ts)])

        timestamps = [c.timestamp for c in store.get("BTC").series]
        assert timestamps == [1000, 1060, 1120]

    def test_symbols_are_independent(self, aggregator: CandleAggregator, store: SymbolStateStore) -> None:
        aggregator.apply_candles("BTC", [_flat(1000)])
        assert store.get("ETH").series == ()


class TestApplyTrades:
    """Trade folding into the current candle."""

    def test_fold_sequence(self, aggregator: CandleAggregator, store: SymbolStateStore) -> None:
        """Ticks (105,2) (95,1) (102,3) on a flat 100 candle."""
        aggregator.apply_candles("BTC", [_flat(1000)])

        result = aggregator.apply_trades(
            "BTC",
            [TradeTick(price=105, size=2), TradeTick(price=95, size=1), TradeTick(price=102, size=3)],
        )

        assert result is not None
        assert (result.open, result.high, result.low, result.close, result.volume) == (100, 105, 95, 102, 6)
        assert result.timestamp == 1000
        assert store.get("BTC").current_candle == result
        assert aggregator.stats.trades_applied == 3

    def test_trades_without_candle_change_nothing(
        self, aggregator: CandleAggregator, store: SymbolStateStore
    ) -> None:
        result = aggregator.apply_trades("BTC", [TradeTick(price=105, size=2)])

        assert result is None
        assert store.get("BTC").series == ()
        assert aggregator.stats.trades_without_candle == 1

    def test_trades_only_touch_last_candle(self, aggregator: CandleAggregator, store: SymbolStateStore) -> None:
        aggregator.apply_candles("BTC", [_flat(1000), _flat(1060)])

        aggregator.apply_trades("BTC", [TradeTick(price=110, size=1)])

        series = store.get("BTC").series
        assert series[0] == _flat(1000)
        assert series[1].high == 110
        assert series[1].close == 110

    def test_fold_trade_keeps_open(self) -> None:
        candle = fold_trade(_flat(1000), price=90.0, size=0.5)
        assert candle.open == 100.0
        assert candle.low == 90.0
        assert candle.trades == 1
        assert candle.is_consistent
