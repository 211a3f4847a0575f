"""
Historical candle snapshot client (Hyperliquid info endpoint).

POSTs a `candleSnapshot` request and converts the response into Candles.
Price and volume fields arrive as decimal strings and are validated as
Decimals before conversion. Every failure mode (HTTP status, transport,
timeout, malformed body) is reported as an empty SnapshotResult carrying
an error detail; nothing is raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import aiohttp
import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from livecandles.feed.config import HYPERLIQUID_INFO_ENDPOINTS, Network
from livecandles.feed.errors import SnapshotError
from livecandles.types.types import Candle

logger = logging.getLogger(__name__)

# Keep error details short in logs/results
MAX_ERROR_BODY_CHARS = 300


class SnapshotConfig(BaseModel):
    info_url: str = HYPERLIQUID_INFO_ENDPOINTS[Network.MAINNET]
    timeout_s: float = Field(default=10.0, gt=0)


class SnapshotRecord(BaseModel):
    """One candle of a candleSnapshot response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    period_start: int = Field(alias="t")
    period_end: int = Field(alias="T")
    symbol: str = Field(alias="s")
    interval: str = Field(alias="i")
    open: Decimal = Field(alias="o")
    high: Decimal = Field(alias="h")
    low: Decimal = Field(alias="l")
    close: Decimal = Field(alias="c")
    volume: Decimal = Field(alias="v", ge=0)
    trade_count: int = Field(default=0, alias="n")

    def to_candle(self) -> Candle:
        return Candle(
            timestamp=self.period_start,
            open=float(self.open),
            high=float(self.high),
            low=float(self.low),
            close=float(self.close),
            volume=float(self.volume),
            trades=self.trade_count,
        )


@dataclass(frozen=True)
class SnapshotResult:
    symbol: str
    interval: str
    candles: tuple[Candle, ...] = field(default_factory=tuple)
    error: Optional[str] = None
    skipped: int = 0  # records dropped as malformed

    @property
    def ok(self) -> bool:
        return self.error is None


def build_snapshot_request(
    symbol: str,
    interval: str,
    start_ms: Optional[int] = None,
    end_ms: Optional[int] = None,
) -> dict[str, Any]:
    req: dict[str, Any] = {"coin": symbol, "interval": interval}
    if start_ms is not None:
        req["startTime"] = start_ms
    if end_ms is not None:
        req["endTime"] = end_ms
    return {"type": "candleSnapshot", "req": req}


def parse_snapshot_body(symbol: str, body: bytes) -> tuple[list[Candle], int]:
    """
    Parse a candleSnapshot response body into Candles ordered by timestamp.

    Returns:
        (candles, skipped) where skipped counts malformed records

    Raises:
        SnapshotError: If the body is not a JSON array
    """
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError as e:
        raise SnapshotError(f"Invalid JSON body: {e}", symbol=symbol) from e

    if not isinstance(payload, list):
        raise SnapshotError(
            f"Expected a JSON array, got {type(payload).__name__}",
            symbol=symbol,
        )

    candles: list[Candle] = []
    skipped = 0
    for raw in payload:
        try:
            candle = SnapshotRecord.model_validate(raw).to_candle()
        except ValidationError as e:
            skipped += 1
            logger.debug(f"Skipping malformed snapshot record for {symbol}: {e}")
            continue
        if not candle.is_consistent:
            skipped += 1
            logger.debug(f"Skipping inconsistent snapshot record for {symbol}: {candle}")
            continue
        candles.append(candle)

    candles.sort(key=lambda c: c.timestamp)
    return candles, skipped


class SnapshotClient:
    """
    Async client for historical candle snapshots.

    Usage:
        async with SnapshotClient(SnapshotConfig()) as client:
            result = await client.fetch_window("BTC", "1m", lookback_ms=24 * 3600 * 1000)
            if result.ok:
                ...
    """

    def __init__(
        self,
        config: Optional[SnapshotConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._config = config or SnapshotConfig()
        self._session = session
        self._owns_session = session is None

    @property
    def config(self) -> SnapshotConfig:
        return self._config

    async def __aenter__(self) -> SnapshotClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch(
        self,
        symbol: str,
        interval: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> SnapshotResult:
        """Fetch candles for [start_ms, end_ms]; errors degrade to an empty result."""
        body = build_snapshot_request(symbol, interval, start_ms, end_ms)

        try:
            status, raw = await self._post(body)
            if not 200 <= status < 300:
                detail = raw.decode("utf-8", errors="replace")[:MAX_ERROR_BODY_CHARS]
                raise SnapshotError(
                    f"Snapshot API error: HTTP {status}: {detail or 'No error details'}",
                    symbol=symbol,
                    status=status,
                )
            candles, skipped = parse_snapshot_body(symbol, raw)
        except SnapshotError as e:
            logger.warning(f"Snapshot fetch failed for {symbol} {interval}: {e}")
            return SnapshotResult(symbol=symbol, interval=interval, error=str(e))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Snapshot transport error for {symbol} {interval}: {e!r}")
            return SnapshotResult(
                symbol=symbol,
                interval=interval,
                error=f"Failed to fetch snapshot: {e!r}",
            )

        logger.info(
            f"Fetched {len(candles)} {interval} candles for {symbol}"
            + (f" ({skipped} malformed skipped)" if skipped else "")
        )
        return SnapshotResult(
            symbol=symbol,
            interval=interval,
            candles=tuple(candles),
            skipped=skipped,
        )

    async def fetch_window(
        self,
        symbol: str,
        interval: str,
        lookback_ms: int,
        now_ms: Optional[int] = None,
    ) -> SnapshotResult:
        """Fetch the trailing `lookback_ms` window ending now."""
        end_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return await self.fetch(symbol, interval, start_ms=end_ms - lookback_ms, end_ms=end_ms)

    async def _post(self, body: dict[str, Any]) -> tuple[int, bytes]:
        """POST the request body; returns (status, raw response body)."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

        async with self._session.post(
            self._config.info_url,
            data=orjson.dumps(body),
            headers={"Content-Type": "application/json"},
        ) as resp:
            return resp.status, await resp.read()
