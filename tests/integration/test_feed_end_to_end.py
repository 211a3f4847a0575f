"""
End-to-end: historical seed plus live frames over a scripted WebSocket.

Exercises the full path: snapshot client (_post patched) -> reconciler ->
connection (_establish_connection patched) -> queue -> router -> handlers ->
aggregator -> store.
"""

from unittest.mock import AsyncMock, patch

import orjson
import pytest

from livecandles.feed.config import ConnectionConfig, FeedConfig
from livecandles.feed.manager import LiveCandleFeed
from livecandles.history.snapshot import SnapshotClient, SnapshotConfig
from tests.fixtures.feed_fixtures import FakeWebSocket, candle_message, candle_record, settle, trades_message


@pytest.fixture
def config() -> FeedConfig:
    return FeedConfig(
        symbols=("BTC",),
        interval="1m",
        connection=ConnectionConfig(
            url="wss://example.invalid/ws",
            base_reconnect_delay_s=0.0,
            max_reconnect_delay_s=0.0,
            reconnect_jitter=0.0,
        ),
    )


async def _push(feed: LiveCandleFeed, ws: FakeWebSocket, payload: dict) -> None:
    ws.push_text(payload)
    await settle()
    await feed.drain()


@pytest.mark.asyncio
async def test_btc_seed_amend_append_trades(config: FeedConfig) -> None:
    """Seed t=1000, amend t=1000, append t=1060, then fold three trades into t=1060."""
    ws = FakeWebSocket()
    snapshot = SnapshotClient(SnapshotConfig(info_url="https://example.invalid/info"))
    history = orjson.dumps([candle_record(1000, 100, 101, 99, 100, 10)])
    feed = LiveCandleFeed(config, snapshot_client=snapshot)

    with (
        patch.object(snapshot, "_post", AsyncMock(return_value=(200, history))),
        patch.object(feed._connection, "_establish_connection", AsyncMock(return_value=ws)),
    ):
        await feed.start()
        assert feed.is_connected
        assert [c.timestamp for c in feed.get_symbol_state("BTC").series] == [1000]

        await _push(feed, ws, {"channel": "subscriptionResponse", "data": {"method": "subscribe"}})

        # Amended close for the seeded period
        await _push(feed, ws, candle_message(candle_record(1000, 100, 101, 99, 100.8, 12)))
        state = feed.get_symbol_state("BTC")
        assert len(state.series) == 1
        assert state.current_candle.close == 100.8

        # Next period opens
        await _push(feed, ws, candle_message(candle_record(1060, 100.8, 100.8, 100.8, 100.8, 0)))
        state = feed.get_symbol_state("BTC")
        assert len(state.series) == 2
        first = state.series[0]

        await _push(feed, ws, trades_message("BTC", (102.0, 1.0), (99.5, 0.5), (101.0, 2.0)))

        state = feed.get_symbol_state("BTC")
        assert state.series[0] == first
        current = state.current_candle
        assert current.timestamp == 1060
        assert current.open == 100.8
        assert current.high == 102.0
        assert current.low == 99.5
        assert current.close == 101.0
        assert current.volume == pytest.approx(3.5)
        assert state.price_change == pytest.approx(1.0)

        stats = feed.get_stats()
        assert stats["router"]["acknowledged_messages"] == 1
        assert stats["aggregator"]["amended"] == 1
        assert stats["aggregator"]["appended"] == 1
        assert stats["aggregator"]["trades_applied"] == 3

        await feed.stop()


@pytest.mark.asyncio
async def test_reconnect_resubscribes_and_keeps_state(config: FeedConfig) -> None:
    """A dropped socket is replaced; subscriptions are sent again and the series survives."""
    first, second = FakeWebSocket(), FakeWebSocket()
    feed = LiveCandleFeed(
        FeedConfig(symbols=config.symbols, seed_history=False, connection=config.connection)
    )

    with patch.object(feed._connection, "_establish_connection", AsyncMock(side_effect=[first, second])):
        await feed.start()
        await _push(feed, first, candle_message(candle_record(1000, 1, 1, 1, 1, 1)))

        first.push_close()
        await settle()
        task = feed._connection._reconnect_task
        if task is not None:
            await task

        assert feed.is_connected
        assert len(second.sent) == 2
        assert feed.get_symbol_state("BTC").series[0].timestamp == 1000

        await _push(feed, second, candle_message(candle_record(1060, 1, 1, 1, 1, 1)))
        assert len(feed.get_symbol_state("BTC").series) == 2

        await feed.stop()
