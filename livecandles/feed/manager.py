"""
Live Candle Feed - top-level orchestration.

Coordinates all feed components:
- SymbolStateStore holding one candle series per symbol
- HistoricalReconciler seeding each series from a snapshot
- ConnectionManager for WebSocket lifecycle
- SubscriptionRegistrar for (re-)subscribing on every open
- MessageRouter and handlers for decoding and normalization
- CandleAggregator folding live updates into the store
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from livecandles.candles.aggregator import CandleAggregator
from livecandles.candles.reconciler import HistoricalReconciler
from livecandles.candles.store import SymbolStateStore
from livecandles.feed.config import FeedConfig, validate_interval
from livecandles.feed.connection import ConnectionManager
from livecandles.feed.errors import LiveFeedError, SubscriptionError
from livecandles.feed.handlers import CandleHandler, TradeHandler
from livecandles.feed.router import MessageRouter
from livecandles.feed.subscriptions import SubscriptionRegistrar
from livecandles.feed.types import ConnectionHealth, ConnectionState, ManagerState, MessageChannel
from livecandles.history import snapshot as history
from livecandles.types.types import Candle, CandleUpdate, LiveUpdate, SymbolState, TradeBatch

logger = logging.getLogger(__name__)


class LiveCandleFeed:
    """
    Maintains live per-symbol candle series from a snapshot plus the WebSocket feed.

    Inbound frames are queued (bounded) and consumed by a single task, so every
    update is applied in arrival order. While a symbol is being seeded from
    history its live updates are deferred and replayed once the seed lands.

    State Machine:
        [STOPPED] --start()--> [STARTING] --success--> [RUNNING]
                                    |                       |
                                [FAILED]              [STOPPING] --> [STOPPED]

    Usage:
        feed = LiveCandleFeed(FeedConfig(symbols=("BTC", "ETH"), interval="1m"))

        await feed.start()
        state = feed.get_symbol_state("BTC")
        await feed.stop()
    """

    def __init__(
        self,
        config: FeedConfig,
        snapshot_client: Optional[history.SnapshotClient] = None,
        name: str = "live_candles",
    ) -> None:
        """
        Initialize the feed.

        Args:
            config: Feed configuration
            snapshot_client: Historical snapshot client (created from config if omitted)
            name: Name for logging purposes
        """
        self._config = config
        self._name = name

        # State
        self._state = ManagerState.STOPPED
        self._started_at: Optional[datetime] = None
        self._interval = config.interval

        # Snapshot client
        self._owns_snapshot_client = snapshot_client is None and config.seed_history
        if self._owns_snapshot_client:
            snapshot_client = history.SnapshotClient(
                history.SnapshotConfig(info_url=config.info_url, timeout_s=config.snapshot_timeout_s)
            )
        self._snapshot_client = snapshot_client

        # Candle state
        self._store = SymbolStateStore(
            config.symbols,
            max_candles=config.max_candles,
            max_deferred=config.max_deferred_updates,
            ready=not config.seed_history,
        )
        self._aggregator = CandleAggregator(self._store)
        self._reconciler = HistoricalReconciler(self._store, snapshot_client)

        # Streaming components
        self._registrar = SubscriptionRegistrar(config.symbols, config.interval)
        self._router = MessageRouter(config.symbols)
        self._candle_handler = CandleHandler(on_event=self._on_candle_update)
        self._trade_handler = TradeHandler(on_event=self._on_trade_batch)
        self._router.register_handler(MessageChannel.CANDLE, self._candle_handler.handle)
        self._router.register_handler(MessageChannel.TRADES, self._trade_handler.handle)

        self._connection = ConnectionManager(
            url=config.connection.url,
            config=config.connection,
            on_message=self._on_message,
            on_open=self._on_open,
            on_error=self._on_connection_error,
            on_close=self._on_connection_close,
            on_state_change=self._on_connection_state_change,
            name=f"{name}_ws",
        )

        # Inbound pipeline
        self._queue: asyncio.Queue[tuple[Union[str, bytes], int]] = asyncio.Queue(
            maxsize=config.max_queue_size
        )
        self._consumer_task: Optional[asyncio.Task[None]] = None
        self._seed_tasks: dict[str, asyncio.Task[Optional[str]]] = {}

        # Statistics
        self._errors_count = 0
        self._wrong_interval_dropped = 0
        self._snapshot_ticks_skipped = 0

    @property
    def state(self) -> ManagerState:
        """Current manager state."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ManagerState.RUNNING

    @property
    def is_connected(self) -> bool:
        """Whether the WebSocket is currently open."""
        return self._connection.is_connected

    @property
    def interval(self) -> str:
        return self._interval

    @property
    def symbols(self) -> tuple[str, ...]:
        return self._config.symbols

    @property
    def config(self) -> FeedConfig:
        return self._config

    # --- Lifecycle ---

    async def start(self) -> None:
        """
        Start consuming, seed history and open the connection.

        Connection failures do not raise; they are retried by the
        ConnectionManager and visible through `is_connected`.

        Raises:
            LiveFeedError: If startup fails before any I/O
        """
        if self._state not in (ManagerState.STOPPED, ManagerState.FAILED):
            logger.warning(f"[{self._name}] Cannot start from state: {self._state}")
            return

        logger.info(f"[{self._name}] Starting live candle feed...")
        self._state = ManagerState.STARTING

        try:
            self._consumer_task = asyncio.create_task(
                self._consume(), name=f"{self._name}_consumer"
            )
            if self._config.seed_history:
                await asyncio.gather(self.reseed(), self._connection.start())
            else:
                await self._connection.start()
        except Exception as e:
            self._state = ManagerState.FAILED
            logger.error(f"[{self._name}] Failed to start: {e}")
            await self._cleanup()
            raise LiveFeedError(
                f"Failed to start live feed: {e}",
                component="LiveCandleFeed",
            ) from e

        if self._state != ManagerState.STARTING:
            # stop() ran while startup was awaiting
            logger.info(f"[{self._name}] Start aborted: feed is {self._state}")
            return

        self._state = ManagerState.RUNNING
        self._started_at = datetime.now(timezone.utc)
        logger.info(
            f"[{self._name}] Live candle feed started: symbols={list(self.symbols)} "
            f"interval={self._interval} connected={self.is_connected}"
        )

    async def stop(self) -> None:
        """Stop the feed; no reconnect or seed survives this call."""
        if self._state in (ManagerState.STOPPED, ManagerState.STOPPING):
            return

        logger.info(f"[{self._name}] Stopping live candle feed...")
        self._state = ManagerState.STOPPING
        await self._cleanup()
        self._state = ManagerState.STOPPED
        logger.info(f"[{self._name}] Live candle feed stopped")

    async def _cleanup(self) -> None:
        """Clean up all resources."""
        for task in list(self._seed_tasks.values()):
            task.cancel()
        if self._seed_tasks:
            await asyncio.gather(*self._seed_tasks.values(), return_exceptions=True)
        self._seed_tasks.clear()

        try:
            await self._connection.stop()
        except Exception as e:
            logger.warning(f"[{self._name}] Error closing connection: {e}")

        if self._consumer_task is not None:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        if self._owns_snapshot_client and self._snapshot_client is not None:
            try:
                await self._snapshot_client.close()
            except Exception as e:
                logger.warning(f"[{self._name}] Error closing snapshot client: {e}")

    # --- History ---

    def seed(self, symbol: str, candles: Iterable[Candle]) -> None:
        """
        Replace a symbol's series with `candles` and accept live updates for it.

        Supersedes any snapshot fetch still in flight for the symbol.
        """
        task = self._seed_tasks.pop(symbol, None)
        if task is not None:
            task.cancel()
        self._reconciler.seed(symbol, candles)
        self._release(symbol)

    async def reseed(
        self,
        symbols: Optional[Iterable[str]] = None,
        lookback_s: Optional[float] = None,
    ) -> dict[str, Optional[str]]:
        """
        Re-fetch history for `symbols` (default: all) over a trailing window.

        Live updates for those symbols are held until their seed completes.
        Returns the error detail per symbol (None on success).
        """
        targets = tuple(symbols) if symbols is not None else self.symbols
        lookback_ms = (
            int(lookback_s * 1000) if lookback_s is not None else self._config.history_lookback_ms
        )

        tasks: dict[str, asyncio.Task[Optional[str]]] = {}
        for symbol in targets:
            previous = self._seed_tasks.pop(symbol, None)
            if previous is not None:
                previous.cancel()
            self._store.close_gate(symbol)
            tasks[symbol] = asyncio.create_task(
                self._reseed_symbol(symbol, lookback_ms), name=f"{self._name}_seed_{symbol}"
            )
        self._seed_tasks.update(tasks)

        results = await asyncio.gather(*tasks.values(), return_exceptions=True)

        errors: dict[str, Optional[str]] = {}
        for symbol, result in zip(tasks, results):
            if self._seed_tasks.get(symbol) is tasks[symbol]:
                del self._seed_tasks[symbol]
            if isinstance(result, asyncio.CancelledError):
                errors[symbol] = "superseded"
            elif isinstance(result, BaseException):
                errors[symbol] = str(result)
            else:
                errors[symbol] = result
        return errors

    async def _reseed_symbol(self, symbol: str, lookback_ms: int) -> Optional[str]:
        try:
            error = await self._reconciler.reconcile(symbol, self._interval, lookback_ms)
        except asyncio.CancelledError:
            # Superseded by a newer seed, which owns the gate now
            raise
        except Exception as e:
            logger.error(f"[{self._name}] Seeding {symbol} failed: {e}", exc_info=True)
            self._errors_count += 1
            error = str(e)

        cutoff_ms = self._reconciler.snapshot_cutoff(symbol) if error is None else None
        self._release(symbol, cutoff_ms)
        return error

    def _release(self, symbol: str, cutoff_ms: Optional[int] = None) -> None:
        """
        Open the symbol's gate and replay what arrived while it was closed.

        Deferred trades stamped before `cutoff_ms` are already counted in the
        snapshot's last candle and are not folded again.
        """
        for update in self._store.open_gate(symbol):
            if cutoff_ms is not None and isinstance(update, TradeBatch):
                ticks = tuple(t for t in update.ticks if t.ts is None or t.ts >= cutoff_ms)
                self._snapshot_ticks_skipped += len(update.ticks) - len(ticks)
                if not ticks:
                    continue
                update = replace(update, ticks=ticks)
            self._apply_update(update)

    async def set_interval(self, interval: str) -> None:
        """
        Switch every symbol to a new candle interval.

        Clears the series, moves the candle subscriptions, and re-seeds history
        for the new interval.
        """
        validate_interval(interval)
        if interval == self._interval:
            return

        logger.info(f"[{self._name}] Changing interval {self._interval} -> {interval}")
        self._interval = interval
        for symbol in self.symbols:
            self._store.close_gate(symbol)
            self._reconciler.seed(symbol, [])

        try:
            await self._registrar.change_interval(self._connection, interval)
        except SubscriptionError as e:
            # The next open re-registers with the new interval
            logger.warning(f"[{self._name}] Resubscribe failed: {e}")
            self._errors_count += 1

        if self._config.seed_history:
            await self.reseed()
        else:
            for symbol in self.symbols:
                self._release(symbol)

    # --- Inbound pipeline ---

    async def _on_message(self, raw: Union[str, bytes], recv_ts: int) -> None:
        """Queue a raw frame; waits when the queue is full."""
        await self._queue.put((raw, recv_ts))

    async def _consume(self) -> None:
        """Single consumer: routes queued frames strictly in arrival order."""
        while True:
            raw, recv_ts = await self._queue.get()
            try:
                await self.process_message(raw, recv_ts)
            except Exception as e:
                logger.error(f"[{self._name}] Failed to process message: {e}", exc_info=True)
                self._errors_count += 1
            finally:
                self._queue.task_done()

    async def process_message(self, raw: Union[str, bytes, dict[str, Any]], recv_ts: int) -> None:
        """Route one inbound message through the router, handlers and aggregator."""
        await self._router.route(raw, recv_ts)

    async def drain(self) -> None:
        """Wait until every queued frame has been processed."""
        await self._queue.join()

    async def _on_candle_update(self, update: CandleUpdate) -> None:
        if not self._store.is_ready(update.symbol):
            self._store.defer(update.symbol, update)
            return
        self._apply_update(update)

    async def _on_trade_batch(self, batch: TradeBatch) -> None:
        if not self._store.is_ready(batch.symbol):
            self._store.defer(batch.symbol, batch)
            return
        self._apply_update(batch)

    def _apply_update(self, update: LiveUpdate) -> None:
        if isinstance(update, CandleUpdate):
            if update.interval is not None and update.interval != self._interval:
                self._wrong_interval_dropped += 1
                logger.debug(
                    f"[{self._name}] Dropping {update.interval} candle for {update.symbol} "
                    f"(current interval {self._interval})"
                )
                return
            self._aggregator.apply_candles(update.symbol, update.candles)
        else:
            self._aggregator.apply_trades(update.symbol, update.ticks)

    # --- Connection callbacks ---

    async def _on_open(self, connection: ConnectionManager) -> None:
        await self._registrar.register(connection)

    async def _on_connection_state_change(self, state: ConnectionState) -> None:
        logger.info(f"[{self._name}] Connection state: {state.value}")

    async def _on_connection_error(self, error: Exception) -> None:
        logger.error(f"[{self._name}] Connection error: {error}")
        self._errors_count += 1

    async def _on_connection_close(self) -> None:
        logger.warning(f"[{self._name}] Connection lost, reconnect pending")

    # --- Public read API ---

    def get_symbol_state(self, symbol: str) -> SymbolState:
        """Read-only snapshot for `symbol`. Raises KeyError for unknown symbols."""
        return self._store.get(symbol)

    def get_all_states(self) -> dict[str, SymbolState]:
        return self._store.snapshot()

    def get_health(self) -> ConnectionHealth:
        return self._connection.get_health()

    def get_stats(self) -> dict[str, Any]:
        """Get statistics summary."""
        router_stats = self._router.stats
        aggregator_stats = self._aggregator.stats
        return {
            "state": self._state.value,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "interval": self._interval,
            "connected": self.is_connected,
            "errors_count": self._errors_count,
            "queue_depth": self._queue.qsize(),
            "router": {
                "total_messages": router_stats.total_messages,
                "routed_messages": router_stats.routed_messages,
                "acknowledged_messages": router_stats.acknowledged_messages,
                "dropped_messages": router_stats.dropped_messages,
                "filtered_messages": router_stats.filtered_messages,
                "parse_errors": router_stats.parse_errors,
                "by_channel": dict(router_stats.by_channel),
            },
            "candle_handler": {
                "processed": self._candle_handler.stats.messages_processed,
                "skipped": self._candle_handler.stats.messages_skipped,
                "records_skipped": self._candle_handler.stats.records_skipped,
                "errors": self._candle_handler.stats.parse_errors,
            },
            "trade_handler": {
                "processed": self._trade_handler.stats.messages_processed,
                "records_skipped": self._trade_handler.stats.records_skipped,
                "errors": self._trade_handler.stats.parse_errors,
            },
            "aggregator": {
                "appended": aggregator_stats.appended,
                "amended": aggregator_stats.amended,
                "stale_ignored": aggregator_stats.stale_ignored,
                "trades_applied": aggregator_stats.trades_applied,
                "trades_without_candle": aggregator_stats.trades_without_candle,
                "wrong_interval_dropped": self._wrong_interval_dropped,
                "snapshot_ticks_skipped": self._snapshot_ticks_skipped,
            },
            "symbols": {
                symbol: {
                    "candles": self._store.series_length(symbol),
                    "ready": self._store.is_ready(symbol),
                    "deferred": self._store.deferred_count(symbol),
                    "deferred_dropped": self._store.deferred_dropped(symbol),
                }
                for symbol in self.symbols
            },
        }
