"""
Unit tests for SymbolStateStore.
"""

import pytest

from livecandles.candles.store import SymbolStateStore
from livecandles.types.types import Candle, CandleUpdate, TradeBatch, TradeTick


def _candle(ts: int, close: float = 100.0) -> Candle:
    return Candle(timestamp=ts, open=100.0, high=max(100.0, close), low=min(100.0, close), close=close, volume=1.0)


class TestReads:
    """Tests for read-only snapshots."""

    @pytest.fixture
    def store(self) -> SymbolStateStore:
        return SymbolStateStore(["BTC", "ETH"])

    def test_initial_state_is_empty(self, store: SymbolStateStore) -> None:
        """Every configured symbol starts with an empty series and no current candle."""
        for symbol in ("BTC", "ETH"):
            state = store.get(symbol)
            assert state.symbol == symbol
            assert state.series == ()
            assert state.current_candle is None

    def test_unknown_symbol_raises(self, store: SymbolStateStore) -> None:
        with pytest.raises(KeyError, match="Unknown symbol"):
            store.get("DOGE")
        assert "DOGE" not in store
        assert "BTC" in store

    def test_current_candle_is_last_element(self, store: SymbolStateStore) -> None:
        store.apply("BTC", lambda series: series.extend([_candle(1000), _candle(1060, 101.0)]))

        state = store.get("BTC")
        assert state.current_candle == state.series[-1]
        assert state.current_candle.timestamp == 1060
        assert store.current("BTC") == state.current_candle

    def test_snapshot_is_isolated_from_later_writes(self, store: SymbolStateStore) -> None:
        """A SymbolState handed out earlier never changes."""
        store.apply("BTC", lambda series: series.append(_candle(1000)))
        before = store.get("BTC")

        store.apply("BTC", lambda series: series.append(_candle(1060)))

        assert len(before.series) == 1
        assert store.series_length("BTC") == 2

    def test_writes_are_per_symbol(self, store: SymbolStateStore) -> None:
        store.apply("BTC", lambda series: series.append(_candle(1000)))

        assert store.series_length("BTC") == 1
        assert store.series_length("ETH") == 0
        assert set(store.snapshot()) == {"BTC", "ETH"}


class TestBounds:
    """Tests for series trimming."""

    def test_trims_oldest_candles(self) -> None:
        store = SymbolStateStore(["BTC"], max_candles=3)

        store.apply("BTC", lambda series: series.extend(_candle(t) for t in range(0, 5000, 1000)))

        assert [c.timestamp for c in store.get("BTC").series] == [2000, 3000, 4000]

    def test_apply_returns_mutator_result(self) -> None:
        store = SymbolStateStore(["BTC"])
        assert store.apply("BTC", lambda series: "done") == "done"


class TestReadyGate:
    """Tests for deferral while a symbol is being seeded."""

    def test_gate_starts_in_configured_state(self) -> None:
        assert SymbolStateStore(["BTC"]).is_ready("BTC") is False
        assert SymbolStateStore(["BTC"], ready=True).is_ready("BTC") is True

    def test_open_gate_returns_deferred_in_arrival_order(self) -> None:
        store = SymbolStateStore(["BTC"])
        first = CandleUpdate(symbol="BTC", interval="1m", candles=(_candle(1000),), recv_ts=1)
        second = TradeBatch(symbol="BTC", ticks=(TradeTick(price=101.0, size=1.0),), recv_ts=2)

        store.defer("BTC", first)
        store.defer("BTC", second)
        assert store.deferred_count("BTC") == 2

        pending = store.open_gate("BTC")

        assert pending == [first, second]
        assert store.is_ready("BTC")
        assert store.deferred_count("BTC") == 0

    def test_defer_drops_oldest_when_full(self) -> None:
        store = SymbolStateStore(["BTC"], max_deferred=2)
        updates = [
            CandleUpdate(symbol="BTC", interval="1m", candles=(_candle(t),), recv_ts=t)
            for t in (1000, 2000, 3000)
        ]

        assert store.defer("BTC", updates[0]) is True
        assert store.defer("BTC", updates[1]) is True
        assert store.defer("BTC", updates[2]) is False

        assert store.deferred_dropped("BTC") == 1
        assert store.open_gate("BTC") == updates[1:]

    def test_close_gate(self) -> None:
        store = SymbolStateStore(["BTC"], ready=True)
        store.close_gate("BTC")
        assert store.is_ready("BTC") is False
