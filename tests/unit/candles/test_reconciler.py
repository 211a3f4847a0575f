"""
Unit tests for HistoricalReconciler.
"""

from unittest.mock import AsyncMock

import pytest

from livecandles.candles.reconciler import HistoricalReconciler
from livecandles.candles.store import SymbolStateStore
from livecandles.history.snapshot import SnapshotResult
from livecandles.types.types import Candle


def _candle(ts: int, close: float = 100.0) -> Candle:
    return Candle(timestamp=ts, open=close, high=close, low=close, close=close, volume=1.0)


@pytest.fixture
def store() -> SymbolStateStore:
    return SymbolStateStore(["BTC"])


class TestSeed:
    def test_seed_replaces_series(self, store: SymbolStateStore) -> None:
        """Seeding discards whatever the series held before."""
        reconciler = HistoricalReconciler(store)
        reconciler.seed("BTC", [_candle(1000), _candle(1060)])

        reconciler.seed("BTC", [_candle(5000)])

        assert [c.timestamp for c in store.get("BTC").series] == [5000]
        assert reconciler.seed_count("BTC") == 2

    def test_seed_orders_and_dedupes(self, store: SymbolStateStore) -> None:
        reconciler = HistoricalReconciler(store)

        length = reconciler.seed("BTC", [_candle(1060), _candle(1000), _candle(1060, close=105.0)])

        series = store.get("BTC").series
        assert length == 2
        assert [c.timestamp for c in series] == [1000, 1060]
        assert series[-1].close == 105.0

    def test_seed_with_empty_list_clears(self, store: SymbolStateStore) -> None:
        reconciler = HistoricalReconciler(store)
        reconciler.seed("BTC", [_candle(1000)])

        reconciler.seed("BTC", [])

        assert store.get("BTC").current_candle is None


class TestReconcile:
    @pytest.mark.asyncio
    async def test_successful_fetch_seeds(self, store: SymbolStateStore) -> None:
        fetcher = AsyncMock()
        fetcher.fetch_window.return_value = SnapshotResult(
            symbol="BTC", interval="1m", candles=(_candle(1000), _candle(1060))
        )
        reconciler = HistoricalReconciler(store, fetcher)

        error = await reconciler.reconcile("BTC", "1m", lookback_ms=3_600_000, now_ms=10_000)

        assert error is None
        assert store.series_length("BTC") == 2
        fetcher.fetch_window.assert_awaited_once_with("BTC", "1m", 3_600_000, 10_000)
        assert reconciler.snapshot_cutoff("BTC") == 10_000

    @pytest.mark.asyncio
    async def test_failed_fetch_leaves_series_untouched(self, store: SymbolStateStore) -> None:
        fetcher = AsyncMock()
        fetcher.fetch_window.return_value = SnapshotResult(
            symbol="BTC", interval="1m", error="Snapshot API error: HTTP 500: boom"
        )
        reconciler = HistoricalReconciler(store, fetcher)
        reconciler.seed("BTC", [_candle(1000)])

        error = await reconciler.reconcile("BTC", "1m", lookback_ms=60_000)

        assert error == "Snapshot API error: HTTP 500: boom"
        assert reconciler.snapshot_cutoff("BTC") is None
        assert [c.timestamp for c in store.get("BTC").series] == [1000]

    @pytest.mark.asyncio
    async def test_without_fetcher(self, store: SymbolStateStore) -> None:
        reconciler = HistoricalReconciler(store)
        assert await reconciler.reconcile("BTC", "1m", lookback_ms=60_000) is not None
        assert store.series_length("BTC") == 0

    @pytest.mark.asyncio
    async def test_window_end_defaults_to_now_and_plain_seed_clears_it(self, store: SymbolStateStore) -> None:
        fetcher = AsyncMock()
        fetcher.fetch_window.return_value = SnapshotResult(symbol="BTC", interval="1m", candles=(_candle(1000),))
        reconciler = HistoricalReconciler(store, fetcher)

        await reconciler.reconcile("BTC", "1m", lookback_ms=60_000)

        end_ms = fetcher.fetch_window.await_args.args[3]
        assert isinstance(end_ms, int)
        assert reconciler.snapshot_cutoff("BTC") == end_ms

        reconciler.seed("BTC", [])
        assert reconciler.snapshot_cutoff("BTC") is None
