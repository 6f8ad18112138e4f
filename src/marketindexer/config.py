"""
Indexer configuration loaded from a YAML document.

Keys are hyphenated, e.g.:

    elastic-hosts:
      - http://localhost:9200
    elastic-index: gdax-market
    gdax-markets:
      - BTC-USD
      - ETH-USD
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from marketindexer.connectors.coinbase.types import FeedConfig
from marketindexer.indexer.bootstrap import DEFAULT_TEMPLATE_PATH
from marketindexer.indexer.bulk import BulkIndexerConfig
from marketindexer.indexer.client import IndexStoreConfig

PASSWORD_ENV_VAR = "ELASTIC_PASSWORD"
DEFAULT_FEED_URL = "wss://ws-feed.exchange.coinbase.com"

_MARKET_PATTERN = re.compile(r"^[A-Z0-9]+-[A-Z0-9]+$")
_LOG_LEVELS = frozenset({"info", "debug"})
_LOG_FORMATS = frozenset({"json", "text"})


class ConfigError(ValueError):
    """Raised when the configuration document is missing, malformed or invalid."""


@dataclass
class IndexerConfig:
    """
    Validated indexer configuration.

    Field names mirror the YAML keys with hyphens replaced by underscores.
    """

    elastic_hosts: list[str] = field(default_factory=list)
    elastic_user: str = ""
    elastic_password: str = ""
    elastic_sniff_discovery: bool = False
    elastic_client_batch_size: int = 1000
    elastic_client_workers: int = 1
    elastic_client_flush_interval: int = 5
    elastic_client_stats_enabled: bool = False
    elastic_index: str = ""
    elastic_template: str = DEFAULT_TEMPLATE_PATH
    elastic_mapping_types: bool = False
    elastic_request_timeout: float = 30.0
    gdax_markets: list[str] = field(default_factory=list)
    gdax_feed_url: str = DEFAULT_FEED_URL
    stream_read_timeout: float = 60.0
    stream_restart_backoff: float = 10.0
    shutdown_timeout: float = 30.0
    metrics_port: int = 0
    log_level: str = "info"
    log_format: str = "text"

    def __post_init__(self) -> None:
        if not self.elastic_hosts:
            raise ConfigError("elastic-hosts: at least one host is required")
        for host in self.elastic_hosts:
            if not isinstance(host, str) or not host.startswith(("http://", "https://")):
                raise ConfigError(f"elastic-hosts: invalid host {host!r}")
        if not self.elastic_index:
            raise ConfigError("elastic-index: required")
        if self.elastic_index != self.elastic_index.lower():
            raise ConfigError(f"elastic-index: must be lowercase, got {self.elastic_index!r}")
        if not self.gdax_markets:
            raise ConfigError("gdax-markets: at least one market is required")
        for market in self.gdax_markets:
            if not isinstance(market, str) or not _MARKET_PATTERN.match(market):
                raise ConfigError(f"gdax-markets: invalid market {market!r}, expected BASE-QUOTE")
        if len(set(self.gdax_markets)) != len(self.gdax_markets):
            raise ConfigError("gdax-markets: duplicate markets")

        if self.elastic_client_batch_size < 1:
            raise ConfigError(
                f"elastic-client-batch-size: must be >= 1, got {self.elastic_client_batch_size}"
            )
        if self.elastic_client_workers < 1:
            raise ConfigError(
                f"elastic-client-workers: must be >= 1, got {self.elastic_client_workers}"
            )
        if self.elastic_client_flush_interval < 1:
            raise ConfigError(
                f"elastic-client-flush-interval: must be >= 1, got {self.elastic_client_flush_interval}"
            )
        if self.elastic_request_timeout <= 0:
            raise ConfigError(
                f"elastic-request-timeout: must be > 0, got {self.elastic_request_timeout}"
            )
        if not self.gdax_feed_url.startswith(("ws://", "wss://")):
            raise ConfigError(f"gdax-feed-url: not a WebSocket URL: {self.gdax_feed_url!r}")
        if self.stream_read_timeout <= 0:
            raise ConfigError(f"stream-read-timeout: must be > 0, got {self.stream_read_timeout}")
        if self.stream_restart_backoff < 0:
            raise ConfigError(
                f"stream-restart-backoff: must be >= 0, got {self.stream_restart_backoff}"
            )
        if self.shutdown_timeout < 0:
            raise ConfigError(f"shutdown-timeout: must be >= 0, got {self.shutdown_timeout}")
        if not 0 <= self.metrics_port <= 65535:
            raise ConfigError(f"metrics-port: must be in 0..65535, got {self.metrics_port}")
        if self.log_level not in _LOG_LEVELS:
            raise ConfigError(f"log-level: must be one of {sorted(_LOG_LEVELS)}, got {self.log_level!r}")
        if self.log_format not in _LOG_FORMATS:
            raise ConfigError(
                f"log-format: must be one of {sorted(_LOG_FORMATS)}, got {self.log_format!r}"
            )

    def index_store_config(self) -> IndexStoreConfig:
        return IndexStoreConfig(
            hosts=list(self.elastic_hosts),
            username=self.elastic_user,
            password=self.elastic_password,
            sniff=self.elastic_sniff_discovery,
            mapping_types=self.elastic_mapping_types,
            request_timeout_s=self.elastic_request_timeout,
        )

    def bulk_config(self) -> BulkIndexerConfig:
        return BulkIndexerConfig(
            workers=self.elastic_client_workers,
            bulk_actions=self.elastic_client_batch_size,
            flush_interval_s=float(self.elastic_client_flush_interval),
            stats_enabled=self.elastic_client_stats_enabled,
        )

    def feed_config(self) -> FeedConfig:
        return FeedConfig(
            ws_url=self.gdax_feed_url,
            read_timeout_s=self.stream_read_timeout,
        )


# YAML key -> expected Python type(s)
_FIELD_TYPES: dict[str, tuple[type, ...]] = {
    "elastic_hosts": (list,),
    "elastic_user": (str,),
    "elastic_password": (str,),
    "elastic_sniff_discovery": (bool,),
    "elastic_client_batch_size": (int,),
    "elastic_client_workers": (int,),
    "elastic_client_flush_interval": (int,),
    "elastic_client_stats_enabled": (bool,),
    "elastic_index": (str,),
    "elastic_template": (str,),
    "elastic_mapping_types": (bool,),
    "elastic_request_timeout": (int, float),
    "gdax_markets": (list,),
    "gdax_feed_url": (str,),
    "stream_read_timeout": (int, float),
    "stream_restart_backoff": (int, float),
    "shutdown_timeout": (int, float),
    "metrics_port": (int,),
    "log_level": (str,),
    "log_format": (str,),
}


def _yaml_key(name: str) -> str:
    return name.replace("_", "-")


def config_from_dict(data: dict[str, Any], *, env: dict[str, str] | None = None) -> IndexerConfig:
    """
    Build an IndexerConfig from a parsed YAML mapping.

    Args:
        data: Mapping with hyphenated keys.
        env: Environment for the password fallback (default: os.environ).

    Raises:
        ConfigError: On unknown keys, wrong types or invalid values.
    """
    env = dict(os.environ) if env is None else env
    known = {f.name for f in fields(IndexerConfig)}

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        name = str(key).replace("-", "_")
        if name not in known:
            raise ConfigError(f"Unknown configuration key: {key!r}")
        if value is None:
            continue
        expected = _FIELD_TYPES[name]
        # bool is an int subclass; only accept it where a bool is expected
        if isinstance(value, bool) and bool not in expected:
            raise ConfigError(f"{_yaml_key(name)}: expected {expected[0].__name__}, got bool")
        if not isinstance(value, expected):
            raise ConfigError(
                f"{_yaml_key(name)}: expected {expected[0].__name__}, got {type(value).__name__}"
            )
        if name in ("log_level", "log_format"):
            value = value.lower()
        kwargs[name] = value

    if kwargs.get("elastic_user") and not kwargs.get("elastic_password"):
        kwargs["elastic_password"] = env.get(PASSWORD_ENV_VAR, "")

    return IndexerConfig(**kwargs)


def load_config(path: str | Path) -> IndexerConfig:
    """
    Load and validate a YAML configuration file.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated.
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Unable to read configuration {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Unable to parse configuration {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must be a mapping, got {type(data).__name__}")
    return config_from_dict(data)
