"""
Unit tests for ConnectionManager.

`_establish_connection` is patched to hand out FakeWebSocket instances.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from livecandles.feed.config import BackoffPolicy, ConnectionConfig
from livecandles.feed.connection import ConnectionManager
from livecandles.feed.errors import ConnectionError
from livecandles.feed.types import ConnectionState
from tests.fixtures.feed_fixtures import FakeWebSocket, settle


def _config(**overrides: object) -> ConnectionConfig:
    params: dict = {
        "url": "wss://example.invalid/ws",
        "base_reconnect_delay_s": 0.0,
        "max_reconnect_delay_s": 0.0,
        "reconnect_jitter": 0.0,
        "max_reconnect_attempts": 3,
    }
    params.update(overrides)
    return ConnectionConfig(**params)  # type: ignore[arg-type]


async def _drain_reconnects(conn: ConnectionManager) -> None:
    """Run scheduled reconnects until none is pending."""
    for _ in range(50):
        task = conn._reconnect_task
        if task is None or task.done():
            return
        await task


class TestLifecycle:
    """Open, receive, close."""

    @pytest.mark.asyncio
    async def test_open_delivers_text_frames(self, fake_ws: FakeWebSocket) -> None:
        received: list[str] = []

        async def on_message(raw: str, recv_ts: int) -> None:
            received.append(raw)

        on_open = AsyncMock()
        conn = ConnectionManager(url="wss://example.invalid/ws", config=_config(), on_message=on_message, on_open=on_open)

        with patch.object(conn, "_establish_connection", AsyncMock(return_value=fake_ws)):
            await conn.start()
            assert conn.is_connected
            on_open.assert_awaited_once_with(conn)

            fake_ws.push_text({"channel": "pong"})
            await settle()

            assert received == ['{"channel":"pong"}']
            assert conn.metrics.messages_received == 1

            await conn.stop()

        assert conn.state == ConnectionState.DISCONNECTED
        assert fake_ws.closed

    @pytest.mark.asyncio
    async def test_send_json(self, fake_ws: FakeWebSocket) -> None:
        conn = ConnectionManager(url="wss://x", config=_config(), on_message=AsyncMock())

        with patch.object(conn, "_establish_connection", AsyncMock(return_value=fake_ws)):
            await conn.start()
            await conn.send_json({"method": "subscribe"})
            await conn.stop()

        assert fake_ws.sent == [{"method": "subscribe"}]

    @pytest.mark.asyncio
    async def test_send_json_when_closed_raises(self) -> None:
        conn = ConnectionManager(url="wss://x", config=_config(), on_message=AsyncMock())
        with pytest.raises(ConnectionError):
            await conn.send_json({"method": "ping"})

    @pytest.mark.asyncio
    async def test_start_is_idempotent_when_open(self, fake_ws: FakeWebSocket) -> None:
        conn = ConnectionManager(url="wss://x", config=_config(), on_message=AsyncMock())
        establish = AsyncMock(return_value=fake_ws)

        with patch.object(conn, "_establish_connection", establish):
            await conn.start()
            await conn.start()
            await conn.stop()

        assert establish.await_count == 1


class TestReconnect:
    """Reconnect scheduling and bounds."""

    @pytest.mark.asyncio
    async def test_server_close_triggers_reconnect_and_reregister(self) -> None:
        first, second = FakeWebSocket(), FakeWebSocket()
        on_open = AsyncMock()
        on_close = AsyncMock()
        conn = ConnectionManager(
            url="wss://x", config=_config(), on_message=AsyncMock(), on_open=on_open, on_close=on_close
        )

        with patch.object(conn, "_establish_connection", AsyncMock(side_effect=[first, second])):
            await conn.start()
            first.push_close()
            await settle()
            await _drain_reconnects(conn)

            assert conn.is_connected
            assert on_open.await_count == 2
            on_close.assert_awaited_once()
            assert conn.metrics.reconnections == 1
            await conn.stop()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        """After N consecutive failures no further attempt is scheduled."""
        on_error = AsyncMock()
        conn = ConnectionManager(url="wss://x", config=_config(max_reconnect_attempts=3), on_message=AsyncMock(), on_error=on_error)
        establish = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with patch.object(conn, "_establish_connection", establish):
            await conn.start()
            await _drain_reconnects(conn)

            assert establish.await_count == 3
            assert conn.reconnect_attempt == 3
            assert not conn.reconnect_pending
            assert conn.state == ConnectionState.DISCONNECTED
            assert on_error.await_count == 3

            # Explicit start() begins a fresh round
            await conn.start()
            await _drain_reconnects(conn)
            assert establish.await_count == 6
            await conn.stop()

    @pytest.mark.asyncio
    async def test_recovery_resets_attempts(self, fake_ws: FakeWebSocket) -> None:
        conn = ConnectionManager(url="wss://x", config=_config(), on_message=AsyncMock())
        establish = AsyncMock(side_effect=[aiohttp.ClientConnectionError("refused"), fake_ws])

        with patch.object(conn, "_establish_connection", establish):
            await conn.start()
            assert conn.reconnect_attempt == 1
            await _drain_reconnects(conn)

            assert conn.is_connected
            assert conn.reconnect_attempt == 0
            await conn.stop()

    @pytest.mark.asyncio
    async def test_reconnect_disabled(self) -> None:
        conn = ConnectionManager(url="wss://x", config=_config(reconnect=False), on_message=AsyncMock())
        establish = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with patch.object(conn, "_establish_connection", establish):
            await conn.start()

        assert establish.await_count == 1
        assert not conn.reconnect_pending

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(self) -> None:
        """A stopped connection is never resurrected by an earlier timer."""
        conn = ConnectionManager(
            url="wss://x",
            config=_config(base_reconnect_delay_s=30.0, max_reconnect_delay_s=30.0),
            on_message=AsyncMock(),
        )
        establish = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with patch.object(conn, "_establish_connection", establish):
            await conn.start()
            assert conn.reconnect_pending
            await conn.stop()
            await asyncio.sleep(0)

        assert not conn.reconnect_pending
        assert establish.await_count == 1
        assert conn.state == ConnectionState.DISCONNECTED


class TestBackoff:
    def _conn(self, **overrides: object) -> ConnectionManager:
        return ConnectionManager(url="wss://x", config=_config(**overrides), on_message=AsyncMock())

    def test_exponential_growth_capped(self) -> None:
        conn = self._conn(base_reconnect_delay_s=1.0, max_reconnect_delay_s=10.0)
        delays = []
        for attempt in range(1, 7):
            conn._reconnect_attempt = attempt
            delays.append(conn._calculate_backoff_delay())
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_fixed(self) -> None:
        conn = self._conn(backoff=BackoffPolicy.FIXED, base_reconnect_delay_s=2.0, max_reconnect_delay_s=10.0)
        conn._reconnect_attempt = 5
        assert conn._calculate_backoff_delay() == 2.0

    def test_jitter_bounds(self) -> None:
        conn = self._conn(base_reconnect_delay_s=4.0, max_reconnect_delay_s=4.0, reconnect_jitter=0.5)
        conn._reconnect_attempt = 1
        for _ in range(50):
            assert 2.0 <= conn._calculate_backoff_delay() <= 6.0


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_snapshot(self, fake_ws: FakeWebSocket) -> None:
        conn = ConnectionManager(url="wss://x", config=_config(), on_message=AsyncMock())
        assert not conn.get_health().is_healthy

        with patch.object(conn, "_establish_connection", AsyncMock(return_value=fake_ws)):
            await conn.start()
            health = conn.get_health()
            assert health.is_healthy
            assert health.url == "wss://x"
            assert health.uptime_s is not None
            await conn.stop()
