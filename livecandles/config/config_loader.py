"""
Purpose:
    - Loads a feed config file (TOML)
    - Applies dotted `--set key=value` overrides
    - Builds the validated FeedConfig

Layout:
    [feed]
    network = "mainnet"
    symbols = ["BTC", "ETH"]
    interval = "1m"

    [feed.connection]
    max_reconnect_attempts = 10
    backoff = "exponential"
"""

import dataclasses
import tomllib
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from livecandles.feed.config import BackoffPolicy, ConnectionConfig, FeedConfig, Network
from livecandles.feed.errors import ConfigurationError


def insert_path(tree: Dict[str, Any], dotted_path: str, value: Any) -> None:
    """Populate ``tree`` with ``value`` located at ``dotted_path``."""

    segments = [segment.strip() for segment in dotted_path.split(".") if segment.strip()]
    if not segments:
        raise ValueError("Override keys must contain at least one non-empty segment")

    cursor: Dict[str, Any] = tree
    for segment in segments[:-1]:
        existing = cursor.get(segment)
        if existing is None:
            next_node: Dict[str, Any] = {}
            cursor[segment] = next_node
            cursor = next_node
        elif isinstance(existing, dict):
            cursor = existing
        else:
            raise ValueError(
                f"Cannot override nested path '{dotted_path}': segment '{segment}' is already a value"
            )

    leaf = segments[-1]
    if isinstance(cursor.get(leaf), dict):
        raise ValueError(f"Cannot assign value to '{dotted_path}': existing node at '{leaf}' is a mapping")
    cursor[leaf] = value


def parse_override_value(raw: str) -> Any:
    """Interpret an override as a TOML value; bare words stay strings."""
    try:
        return tomllib.loads(f"value = {raw}")["value"]
    except tomllib.TOMLDecodeError:
        return raw


def parse_overrides(pairs: Iterable[str]) -> dict[str, Any]:
    """Expand `key.path=value` pairs into a nested dict."""
    overrides: dict[str, Any] = {}
    for item in pairs:
        key, sep, value = item.partition("=")
        if sep == "":
            raise ValueError(f"--set requires KEY=VALUE format (got {item!r})")
        insert_path(overrides, key, parse_override_value(value.strip()))
    return overrides


def merge_tree(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge `overrides` onto `base`; override leaves win."""
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_tree(current, value)
        else:
            merged[key] = value
    return merged


def _check_keys(section: str, data: Mapping[str, Any], allowed: Iterable[str]) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in [{section}]: {', '.join(unknown)}",
            field=section,
            value=unknown,
        )


def _enum_value(enum_cls: Any, raw: Any, field_name: str) -> Any:
    try:
        return enum_cls(raw)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(
            f"{field_name} must be one of {choices}",
            field=field_name,
            value=raw,
        ) from None


def build_feed_config(data: Mapping[str, Any]) -> FeedConfig:
    """Build a FeedConfig from the contents of a `[feed]` table."""
    feed_data = dict(data)
    conn_data = dict(feed_data.pop("connection", {}) or {})

    feed_fields = {f.name for f in dataclasses.fields(FeedConfig)} - {"connection"}
    conn_fields = {f.name for f in dataclasses.fields(ConnectionConfig)}
    _check_keys("feed", feed_data, feed_fields)
    _check_keys("feed.connection", conn_data, conn_fields)

    if "network" in feed_data:
        feed_data["network"] = _enum_value(Network, feed_data["network"], "network")
    if "symbols" in feed_data:
        symbols = feed_data["symbols"]
        if isinstance(symbols, str):
            symbols = [s.strip() for s in symbols.split(",") if s.strip()]
        feed_data["symbols"] = tuple(symbols)
    if "backoff" in conn_data:
        conn_data["backoff"] = _enum_value(BackoffPolicy, conn_data["backoff"], "backoff")

    try:
        connection = ConnectionConfig(**conn_data)
        return FeedConfig(connection=connection, **feed_data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid feed configuration: {e}") from e


class ConfigLoader:
    """
    Config-loader; loading toml file.
    """

    def __init__(self, base_dir: str = ".") -> None:
        self._base_dir = base_dir

    def load(self, file_name: str | Path) -> dict[str, Any]:
        path = Path(file_name)
        if not path.is_absolute():
            path = Path(self._base_dir) / path

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("rb") as f:
            return tomllib.load(f)

    def load_feed_config(
        self,
        file_name: Optional[str | Path] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> FeedConfig:
        """
        Resolve defaults < file < overrides into a FeedConfig.

        Overrides are rooted like the file, e.g. {"feed": {"interval": "5m"}}.
        """
        data: dict[str, Any] = self.load(file_name) if file_name is not None else {}
        if overrides:
            data = merge_tree(data, overrides)
        return build_feed_config(data.get("feed", {}))


def load_feed_config(
    path: Optional[str | Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> FeedConfig:
    return ConfigLoader().load_feed_config(path, overrides)
