"""
WebSocket Connection Manager for the live candle feed.

Handles WebSocket lifecycle including:
- Connection establishment with timeout
- Reconnection with fixed or exponential backoff (with jitter), bounded attempts
- Application-level ping keepalive
- Cancellable reconnect timer so a stopped connection is never resurrected
- Connection-level metrics and health tracking
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import orjson

from livecandles.feed.config import BackoffPolicy, ConnectionConfig
from livecandles.feed.errors import ConnectionError
from livecandles.feed.types import (
    ConnectionHealth,
    ConnectionMetrics,
    ConnectionState,
)

logger = logging.getLogger(__name__)

PING_MESSAGE: dict[str, Any] = {"method": "ping"}


class ConnectionManager:
    """
    Manages a single WebSocket connection with automatic reconnection.

    State machine:
        [DISCONNECTED] --start()--> [CONNECTING] --success--> [OPEN]
              ^                          |                       |
              +-------- failure ---------+---- close / error ----+
              (reconnect scheduled while attempts < max_reconnect_attempts)

        stop(): any state --> [CLOSING] --> [DISCONNECTED], no further reconnects

    The ConnectionManager does NOT parse messages - it delivers raw text frames
    to the registered callback. Decoding and routing is handled by MessageRouter.

    Usage:
        async def on_message(raw: str, recv_ts: int) -> None:
            ...

        conn = ConnectionManager(
            url="wss://api.hyperliquid.xyz/ws",
            config=ConnectionConfig(),
            on_message=on_message,
            on_open=registrar.register,
        )
        await conn.start()
        # ... later ...
        await conn.stop()
    """

    def __init__(
        self,
        url: str,
        config: ConnectionConfig,
        on_message: Callable[[str, int], Awaitable[None]],
        on_open: Optional[Callable[[ConnectionManager], Awaitable[None]]] = None,
        on_error: Optional[Callable[[Exception], Awaitable[None]]] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
        on_state_change: Optional[Callable[[ConnectionState], Awaitable[None]]] = None,
        name: str = "connection",
    ) -> None:
        """
        Initialize the connection manager.

        Args:
            url: WebSocket URL to connect to
            config: Connection configuration
            on_message: Async callback for received text frames (raw, recv_ts_ms)
            on_open: Callback after every successful open (used to (re-)subscribe)
            on_error: Optional callback for transport errors
            on_close: Optional callback when an open connection is lost
            on_state_change: Optional callback for state changes
            name: Name for logging purposes
        """
        self._url = url
        self._config = config
        self._on_message = on_message
        self._on_open = on_open
        self._on_error = on_error
        self._on_close = on_close
        self._on_state_change = on_state_change
        self._name = name

        # State
        self._state = ConnectionState.DISCONNECTED
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

        # Tasks
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._ping_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None

        # Reconnection state
        self._reconnect_attempt = 0
        self._stopping = False

        # Metrics
        self._metrics = ConnectionMetrics()
        self._connected_at: Optional[datetime] = None
        self._last_message_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_error_at: Optional[datetime] = None

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if currently open."""
        return self._state == ConnectionState.OPEN

    @property
    def url(self) -> str:
        """Connection URL."""
        return self._url

    @property
    def metrics(self) -> ConnectionMetrics:
        """Connection metrics."""
        return self._metrics

    @property
    def reconnect_attempt(self) -> int:
        """Consecutive failed attempts since the last successful open."""
        return self._reconnect_attempt

    @property
    def reconnect_pending(self) -> bool:
        """Whether a reconnect timer is currently scheduled or running."""
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def _set_state(self, new_state: ConnectionState) -> None:
        """Update state and notify listener."""
        old_state = self._state
        self._state = new_state

        if old_state != new_state:
            logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:
                    logger.warning(f"[{self._name}] State change callback error: {e}")

    async def start(self) -> None:
        """
        Establish the WebSocket connection.

        Failures never raise: they schedule a reconnect (while attempts remain)
        and leave the connection DISCONNECTED otherwise.
        """
        if self._state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
            logger.debug(f"[{self._name}] Already open or connecting")
            return

        self._stopping = False
        self._reconnect_attempt = 0
        await self._cancel_reconnect()
        await self._open_connection()

    async def _open_connection(self) -> None:
        """Run a single connection attempt."""
        if self._stopping:
            return

        await self._set_state(ConnectionState.CONNECTING)

        try:
            ws = await self._establish_connection()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._reconnect_attempt += 1
            self._record_error(e)
            logger.warning(
                f"[{self._name}] Connection failed (attempt {self._reconnect_attempt}/"
                f"{self._config.max_reconnect_attempts}): {e}"
            )
            await self._set_state(ConnectionState.DISCONNECTED)
            await self._notify_error(e)
            self._schedule_reconnect()
            return

        if self._stopping:
            # stop() was called while the handshake was in flight
            await ws.close()
            return

        self._ws = ws
        self._reconnect_attempt = 0
        self._connected_at = datetime.now(timezone.utc)
        self._metrics.connected_at = time.monotonic()
        await self._set_state(ConnectionState.OPEN)
        logger.info(f"[{self._name}] Connected to {self._url}")

        self._receive_task = asyncio.create_task(
            self._receive_loop(ws), name=f"{self._name}_receive"
        )
        self._ping_task = asyncio.create_task(self._ping_loop(ws), name=f"{self._name}_ping")

        if self._on_open:
            try:
                await self._on_open(self)
            except Exception as e:
                logger.error(f"[{self._name}] Open callback error: {e}", exc_info=True)

    async def _establish_connection(self) -> aiohttp.ClientWebSocketResponse:
        """Establish the actual WebSocket connection."""
        # Create session if needed
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.connect_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)

        logger.info(f"[{self._name}] Connecting to {self._url}")
        return await self._session.ws_connect(
            self._url,
            heartbeat=self._config.ping_interval_s,
        )

    def _schedule_reconnect(self) -> None:
        """Schedule the next attempt, unless stopped, disabled or exhausted."""
        if self._stopping or not self._config.reconnect:
            return

        if self._reconnect_attempt >= self._config.max_reconnect_attempts:
            logger.error(
                f"[{self._name}] Giving up after {self._reconnect_attempt} consecutive "
                f"failed attempts; call start() to retry"
            )
            return

        delay = self._calculate_backoff_delay()
        logger.info(f"[{self._name}] Reconnecting in {delay:.2f}s")
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name=f"{self._name}_reconnect"
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._stopping:
            return
        self._metrics.reconnections += 1
        await self._open_connection()

    def _calculate_backoff_delay(self) -> float:
        """Calculate the reconnect delay for the current attempt, with jitter."""
        base_delay = self._config.base_reconnect_delay_s

        if self._config.backoff == BackoffPolicy.FIXED:
            delay = base_delay
        else:
            # Exponential backoff: base * 2^(attempt - 1)
            attempt = max(self._reconnect_attempt, 1)
            delay = min(base_delay * (2 ** (attempt - 1)), self._config.max_reconnect_delay_s)

        # Add jitter: ±jitter%
        jitter_range = delay * self._config.reconnect_jitter
        delay += random.uniform(-jitter_range, jitter_range)

        return float(max(0.0, delay))

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Main loop for receiving WebSocket frames."""
        try:
            async for msg in ws:
                recv_ts = int(time.time() * 1000)
                self._last_message_at = datetime.now(timezone.utc)
                self._metrics.last_message_at = time.monotonic()
                self._metrics.messages_received += 1

                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._metrics.bytes_received += len(msg.data)
                    try:
                        await self._on_message(msg.data, recv_ts)
                    except Exception as e:
                        logger.error(f"[{self._name}] Message handling error: {e}")
                        self._metrics.errors += 1

                elif msg.type == aiohttp.WSMsgType.BINARY:
                    logger.debug(f"[{self._name}] Received binary message (ignored)")

                elif msg.type == aiohttp.WSMsgType.CLOSE:
                    logger.info(f"[{self._name}] Server closed connection")
                    break

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"[{self._name}] WebSocket error: {ws.exception()}")
                    self._metrics.errors += 1
                    break

        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Receive loop cancelled")
            raise
        except Exception as e:
            logger.error(f"[{self._name}] Receive loop error: {e}")
            self._record_error(e)
            await self._notify_error(e)

        await self._handle_connection_lost()

    async def _handle_connection_lost(self) -> None:
        """Tear down the dropped socket and schedule a reconnect."""
        if self._stopping:
            return

        logger.warning(f"[{self._name}] Connection lost")
        self._receive_task = None
        await self._cleanup_connection()
        await self._set_state(ConnectionState.DISCONNECTED)

        if self._on_close:
            try:
                await self._on_close()
            except Exception as e:
                logger.warning(f"[{self._name}] Close callback error: {e}")

        self._schedule_reconnect()

    async def _ping_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Send an application-level ping if no message arrived for ping_interval_s."""
        try:
            while not self._stopping:
                await asyncio.sleep(self._config.ping_interval_s)

                if ws.closed:
                    break

                if self._metrics.last_message_at is not None:
                    time_since_message = time.monotonic() - self._metrics.last_message_at
                    if time_since_message < self._config.ping_interval_s:
                        continue

                try:
                    await ws.send_str(orjson.dumps(PING_MESSAGE).decode())
                    self._metrics.pings_sent += 1
                    logger.debug(f"[{self._name}] Sent ping")
                except Exception as e:
                    logger.warning(f"[{self._name}] Ping failed: {e}")

        except asyncio.CancelledError:
            pass

    async def send_json(self, message: dict[str, Any]) -> None:
        """
        Serialize and send a message on the open socket.

        Raises:
            ConnectionError: If the connection is not open
        """
        if self._ws is None or self._state != ConnectionState.OPEN:
            raise ConnectionError(
                "Cannot send on a connection that is not open",
                url=self._url,
                reconnect_attempt=self._reconnect_attempt,
                component="ConnectionManager",
            )
        await self._ws.send_str(orjson.dumps(message).decode())

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _cleanup_connection(self) -> None:
        """Clean up current connection resources."""
        current = asyncio.current_task()
        for task in (self._receive_task, self._ping_task):
            if task and not task.done() and task is not current:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._receive_task = None
        self._ping_task = None

        # Close WebSocket
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None

    async def stop(self) -> None:
        """Close the connection and cancel any scheduled reconnect."""
        logger.info(f"[{self._name}] Closing connection")
        self._stopping = True
        await self._cancel_reconnect()

        await self._set_state(ConnectionState.CLOSING)
        await self._cleanup_connection()

        # Close session
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

        await self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"[{self._name}] Connection closed")

    def _record_error(self, error: Exception) -> None:
        self._metrics.errors += 1
        self._last_error = str(error)
        self._last_error_at = datetime.now(timezone.utc)

    async def _notify_error(self, error: Exception) -> None:
        if self._on_error:
            try:
                await self._on_error(error)
            except Exception as cb_err:
                logger.warning(f"[{self._name}] Error callback failed: {cb_err}")

    def get_health(self) -> ConnectionHealth:
        """Get current connection health snapshot."""
        return ConnectionHealth(
            state=self._state,
            url=self._url,
            connected_since=self._connected_at,
            last_message_at=self._last_message_at,
            reconnect_attempt=self._reconnect_attempt,
            reconnect_count=self._metrics.reconnections,
            message_count=self._metrics.messages_received,
            error_count=self._metrics.errors,
            last_error=self._last_error,
            last_error_at=self._last_error_at,
        )
