"""
Config loading and validation tests.

Covers key mapping (hyphenated YAML keys), defaults, type checks,
the password environment fallback and file loading errors.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from marketindexer.config import (
    DEFAULT_FEED_URL,
    PASSWORD_ENV_VAR,
    ConfigError,
    IndexerConfig,
    config_from_dict,
    load_config,
)


def minimal(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "elastic-hosts": ["http://localhost:9200"],
        "elastic-index": "gdax-market",
        "gdax-markets": ["BTC-USD", "ETH-USD"],
    }
    data.update(overrides)
    return data


class TestDefaults:
    """Optional keys fall back to documented defaults."""

    def test_minimal_config(self) -> None:
        config = config_from_dict(minimal(), env={})
        assert config.elastic_hosts == ["http://localhost:9200"]
        assert config.elastic_index == "gdax-market"
        assert config.gdax_markets == ["BTC-USD", "ETH-USD"]
        assert config.elastic_client_batch_size == 1000
        assert config.elastic_client_workers == 1
        assert config.elastic_client_flush_interval == 5
        assert config.elastic_client_stats_enabled is False
        assert config.elastic_sniff_discovery is False
        assert config.elastic_template == "elastic-template.json"
        assert config.gdax_feed_url == DEFAULT_FEED_URL
        assert config.metrics_port == 0
        assert config.log_level == "info"
        assert config.log_format == "text"

    def test_null_values_use_defaults(self) -> None:
        config = config_from_dict(minimal(**{"elastic-client-workers": None}), env={})
        assert config.elastic_client_workers == 1

    def test_derived_component_configs(self) -> None:
        config = config_from_dict(
            minimal(
                **{
                    "elastic-user": "elastic",
                    "elastic-password": "changeme",
                    "elastic-client-batch-size": 50,
                    "elastic-client-workers": 4,
                    "elastic-client-flush-interval": 2,
                    "elastic-mapping-types": True,
                    "stream-read-timeout": 15,
                }
            ),
            env={},
        )

        store = config.index_store_config()
        assert store.username == "elastic"
        assert store.password == "changeme"
        assert store.mapping_types is True

        bulk = config.bulk_config()
        assert bulk.bulk_actions == 50
        assert bulk.workers == 4
        assert bulk.flush_interval_s == 2.0

        feed = config.feed_config()
        assert feed.ws_url == DEFAULT_FEED_URL
        assert feed.read_timeout_s == 15


class TestValidation:
    """Invalid documents raise ConfigError naming the offending key."""

    def test_unknown_key(self) -> None:
        with pytest.raises(ConfigError, match="Unknown configuration key"):
            config_from_dict(minimal(**{"elastic-shards": 3}), env={})

    def test_missing_hosts(self) -> None:
        data = minimal()
        del data["elastic-hosts"]
        with pytest.raises(ConfigError, match="elastic-hosts"):
            config_from_dict(data, env={})

    def test_invalid_host_scheme(self) -> None:
        with pytest.raises(ConfigError, match="elastic-hosts"):
            config_from_dict(minimal(**{"elastic-hosts": ["localhost:9200"]}), env={})

    def test_missing_index(self) -> None:
        data = minimal()
        del data["elastic-index"]
        with pytest.raises(ConfigError, match="elastic-index"):
            config_from_dict(data, env={})

    def test_uppercase_index(self) -> None:
        with pytest.raises(ConfigError, match="lowercase"):
            config_from_dict(minimal(**{"elastic-index": "GDAX"}), env={})

    def test_empty_markets(self) -> None:
        with pytest.raises(ConfigError, match="gdax-markets"):
            config_from_dict(minimal(**{"gdax-markets": []}), env={})

    @pytest.mark.parametrize("market", ["btc-usd", "BTCUSD", "BTC_USD", "BTC-USD-X"])
    def test_invalid_market_format(self, market: str) -> None:
        with pytest.raises(ConfigError, match="invalid market"):
            config_from_dict(minimal(**{"gdax-markets": [market]}), env={})

    def test_duplicate_markets(self) -> None:
        with pytest.raises(ConfigError, match="duplicate"):
            config_from_dict(minimal(**{"gdax-markets": ["BTC-USD", "BTC-USD"]}), env={})

    def test_wrong_type(self) -> None:
        with pytest.raises(ConfigError, match="elastic-client-batch-size"):
            config_from_dict(minimal(**{"elastic-client-batch-size": "100"}), env={})

    def test_bool_rejected_for_int(self) -> None:
        with pytest.raises(ConfigError, match="elastic-client-workers"):
            config_from_dict(minimal(**{"elastic-client-workers": True}), env={})

    def test_zero_batch_size(self) -> None:
        with pytest.raises(ConfigError, match="elastic-client-batch-size"):
            config_from_dict(minimal(**{"elastic-client-batch-size": 0}), env={})

    def test_zero_flush_interval(self) -> None:
        with pytest.raises(ConfigError, match="elastic-client-flush-interval"):
            config_from_dict(minimal(**{"elastic-client-flush-interval": 0}), env={})

    def test_non_websocket_feed_url(self) -> None:
        with pytest.raises(ConfigError, match="gdax-feed-url"):
            config_from_dict(minimal(**{"gdax-feed-url": "https://example.com"}), env={})

    def test_metrics_port_range(self) -> None:
        with pytest.raises(ConfigError, match="metrics-port"):
            config_from_dict(minimal(**{"metrics-port": 70000}), env={})

    def test_log_level_case_insensitive(self) -> None:
        config = config_from_dict(minimal(**{"log-level": "DEBUG"}), env={})
        assert config.log_level == "debug"

    def test_unknown_log_level(self) -> None:
        with pytest.raises(ConfigError, match="log-level"):
            config_from_dict(minimal(**{"log-level": "trace"}), env={})

    def test_config_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            IndexerConfig()


class TestPasswordFallback:
    """The password can come from the environment."""

    def test_env_password_used_when_missing(self) -> None:
        config = config_from_dict(
            minimal(**{"elastic-user": "elastic"}), env={PASSWORD_ENV_VAR: "from-env"}
        )
        assert config.elastic_password == "from-env"

    def test_explicit_password_wins(self) -> None:
        config = config_from_dict(
            minimal(**{"elastic-user": "elastic", "elastic-password": "from-file"}),
            env={PASSWORD_ENV_VAR: "from-env"},
        )
        assert config.elastic_password == "from-file"

    def test_env_ignored_without_user(self) -> None:
        config = config_from_dict(minimal(), env={PASSWORD_ENV_VAR: "from-env"})
        assert config.elastic_password == ""


class TestLoadConfig:
    """Loading from YAML files."""

    def test_load_yaml_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yml"
        path.write_text(
            "elastic-hosts:\n"
            "  - http://es-1:9200\n"
            "  - http://es-2:9200\n"
            "elastic-index: gdax-market\n"
            "elastic-client-batch-size: 250\n"
            "gdax-markets:\n"
            "  - BTC-USD\n"
        )
        config = load_config(path)
        assert config.elastic_hosts == ["http://es-1:9200", "http://es-2:9200"]
        assert config.elastic_client_batch_size == 250
        assert config.gdax_markets == ["BTC-USD"]

    def test_shipped_sample_config_is_valid(self) -> None:
        config = load_config(Path(__file__).resolve().parents[1] / "config.yml")
        assert config.gdax_markets

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Unable to read"):
            load_config(tmp_path / "missing.yml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yml"
        path.write_text("elastic-hosts: [unterminated\n")
        with pytest.raises(ConfigError, match="Unable to parse"):
            load_config(path)

    def test_non_mapping_document(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_empty_file_is_invalid(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yml"
        path.write_text("")
        with pytest.raises(ConfigError, match="elastic-hosts"):
            load_config(path)
