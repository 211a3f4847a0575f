"""livecandles CLI entrypoint.

Subcommands:
    stream    run the live feed and log a per-symbol summary periodically
    snapshot  fetch one historical snapshot and print it as a DataFrame
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from livecandles.config.config_loader import load_feed_config, parse_overrides
from livecandles.feed.config import SUPPORTED_INTERVALS, FeedConfig
from livecandles.feed.errors import ConfigurationError
from livecandles.feed.manager import LiveCandleFeed
from livecandles.history.snapshot import SnapshotClient, SnapshotConfig
from livecandles.types.types import SymbolState

logger = logging.getLogger(__name__)

DEFAULT_SYMBOLS = ("BTC", "ETH", "SOL", "AVAX")


def build_parser() -> argparse.ArgumentParser:
    """
    Return the top-level CLI argument parser.
    """
    p = argparse.ArgumentParser(prog="livecandles")
    sub = p.add_subparsers(dest="command", required=True)

    def add_common(sp: argparse.ArgumentParser) -> None:
        """Add arguments shared across all subcommands."""
        sp.add_argument(
            "--symbol",
            dest="symbols",
            action="append",
            default=[],
            metavar="COIN",
            help="Symbol to track (may be repeated)",
        )
        sp.add_argument("--interval", choices=SUPPORTED_INTERVALS, help="Candle interval")
        sp.add_argument("--config", type=Path, required=False, help="Path to a TOML feed config")
        sp.add_argument(
            "--set",
            dest="config_overrides",
            action="append",
            default=[],
            metavar="KEY=VALUE",
            help="Override a config entry, e.g. feed.connection.max_reconnect_attempts=3",
        )
        sp.add_argument(
            "--log-level",
            default="INFO",
            choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        )

    stream = sub.add_parser("stream", help="Stream live candles")
    add_common(stream)
    stream.add_argument(
        "--report-every", type=float, default=10.0, help="Seconds between summaries"
    )
    stream.add_argument(
        "--duration", type=float, default=None, help="Stop after this many seconds"
    )

    snapshot = sub.add_parser("snapshot", help="Fetch a historical snapshot")
    add_common(snapshot)
    snapshot.add_argument(
        "--lookback-hours", type=float, default=None, help="History window (default from config)"
    )
    return p


def resolve_config(args: argparse.Namespace) -> FeedConfig:
    """File config, then --set overrides, then --symbol/--interval."""
    overrides: dict[str, Any] = parse_overrides(args.config_overrides)
    feed_overrides = overrides.setdefault("feed", {})
    if args.symbols:
        feed_overrides["symbols"] = list(args.symbols)
    elif args.config is None and "symbols" not in feed_overrides:
        feed_overrides["symbols"] = list(DEFAULT_SYMBOLS)
    if args.interval:
        feed_overrides["interval"] = args.interval
    return load_feed_config(args.config, overrides)


def format_summary(state: SymbolState) -> str:
    current = state.current_candle
    if current is None:
        return f"{state.symbol}: no data"
    return (
        f"{state.symbol}: close={current.close:.4f} "
        f"change={state.price_change:+.4f} ({state.price_change_pct:+.2f}%) "
        f"candles={len(state.series)}"
    )


async def run_stream(config: FeedConfig, report_every: float, duration: Optional[float]) -> int:
    feed = LiveCandleFeed(config, name="cli")
    await feed.start()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration if duration is not None else None
    try:
        while deadline is None or loop.time() < deadline:
            wait = report_every
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - loop.time()))
            await asyncio.sleep(wait)
            logger.info(f"connected={feed.is_connected} interval={feed.interval}")
            for symbol in feed.symbols:
                logger.info(format_summary(feed.get_symbol_state(symbol)))
    finally:
        await feed.stop()
    return 0


async def run_snapshot(config: FeedConfig, lookback_hours: Optional[float]) -> int:
    lookback_ms = (
        int(lookback_hours * 3600 * 1000) if lookback_hours is not None else config.history_lookback_ms
    )
    exit_code = 0
    async with SnapshotClient(
        SnapshotConfig(info_url=config.info_url, timeout_s=config.snapshot_timeout_s)
    ) as client:
        for symbol in config.symbols:
            result = await client.fetch_window(symbol, config.interval, lookback_ms)
            if not result.ok:
                print(f"{symbol}: {result.error}", file=sys.stderr)
                exit_code = 1
                continue
            state = SymbolState(
                symbol=symbol,
                series=result.candles,
                current_candle=result.candles[-1] if result.candles else None,
            )
            print(format_summary(state))
            print(state.to_frame())
    return exit_code


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = resolve_config(args)
    except (ConfigurationError, ValueError, FileNotFoundError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    try:
        if args.command == "stream":
            return asyncio.run(run_stream(config, args.report_every, args.duration))
        return asyncio.run(run_snapshot(config, args.lookback_hours))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
