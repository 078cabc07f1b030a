"""Tests for bithedge_oracle.core.config."""

import os
from datetime import time

import pytest
from pydantic import ValidationError

from bithedge_oracle.core.config import (
    DEFAULT_SOURCES,
    AggregationConfig,
    OracleConfig,
    ReliabilityConfig,
    SchedulerConfig,
    SourceConfig,
    StorageConfig,
    VolatilityConfig,
    _auto_cast,
    _merge_env_vars,
    load_config,
)
from bithedge_oracle.core.exceptions import ConfigError
from bithedge_oracle.core.models import Capability, Methodology


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("BITHEDGE_ORACLE_"):
            monkeypatch.delenv(key, raising=False)
    # No stray ./bithedge-oracle.yml
    monkeypatch.chdir(tmp_path)


class TestSourceConfig:
    def test_strips_trailing_slash(self):
        s = SourceConfig(provider_id="x", base_url="https://x.test/", spot_path="/p")
        assert s.base_url == "https://x.test"

    def test_requires_http_url(self):
        with pytest.raises(ValidationError, match="http"):
            SourceConfig(provider_id="x", base_url="ftp://x.test", spot_path="/p")

    def test_weight_must_be_positive(self):
        with pytest.raises(ValidationError, match="weight_prior"):
            SourceConfig(provider_id="x", base_url="https://x.test", spot_path="/p", weight_prior=0)

    def test_historical_capability_needs_path(self):
        with pytest.raises(ValidationError, match="historical_path"):
            SourceConfig(
                provider_id="x",
                base_url="https://x.test",
                spot_path="/p",
                capabilities=[Capability.HISTORICAL],
            )

    def test_parser_name_defaults_to_provider(self):
        s = SourceConfig(provider_id="kraken", base_url="https://x.test", spot_path="/p")
        assert s.parser_name == "kraken"
        s = SourceConfig(provider_id="k2", base_url="https://x.test", spot_path="/p", parser="kraken")
        assert s.parser_name == "kraken"


class TestSectionConfigs:
    def test_volatility_windows_sorted(self):
        c = VolatilityConfig(windows=[90, 30, 60])
        assert c.windows == [30, 60, 90]
        assert Methodology.EWMA in c.methodologies

    def test_volatility_decay_bounds(self):
        with pytest.raises(ValidationError):
            VolatilityConfig(ewma_decay=1.5)

    def test_reliability_floor_below_ceiling(self):
        with pytest.raises(ValidationError):
            ReliabilityConfig(weight_floor=0.5, weight_ceiling=0.1)

    def test_scheduler_interval_ordering(self):
        with pytest.raises(ValidationError, match="min_spot_interval_seconds"):
            SchedulerConfig(min_spot_interval_seconds=100, spot_interval_seconds=60)

    def test_scheduler_ratio_ordering(self):
        with pytest.raises(ValidationError, match="calm_ratio"):
            SchedulerConfig(calm_ratio=1.2)

    def test_scheduler_defaults(self):
        c = SchedulerConfig()
        assert c.daily_close_time == time(0, 5)
        assert c.backfill_days == 361

    def test_retention_covers_longest_window(self):
        with pytest.raises(ValidationError, match="retention_days"):
            StorageConfig(retention_days=100)


class TestOracleConfig:
    def test_defaults(self):
        c = OracleConfig()
        assert len(c.sources) == len(DEFAULT_SOURCES)
        assert c.premium.risk_free_rate == 0.02
        assert c.volatility.windows == [30, 60, 90, 180, 360]

    def test_default_spot_weights(self):
        c = OracleConfig()
        weights = {s.provider_id: s.weight_prior for s in c.sources_for(Capability.SPOT)}
        assert weights["coingecko"] == 0.2
        assert weights["gemini"] == 0.05
        assert "cryptocompare" not in weights

    def test_historical_order_follows_priority(self):
        c = OracleConfig(historical_priority=["cryptocompare", "coingecko"])
        assert [s.provider_id for s in c.sources_for(Capability.HISTORICAL)] == [
            "cryptocompare",
            "coingecko",
        ]

    def test_unknown_priority_name_rejected(self):
        with pytest.raises(ValidationError, match="unknown source"):
            OracleConfig(spot_priority=["nope"])

    def test_duplicate_ids_rejected(self):
        s = SourceConfig(provider_id="a", base_url="https://a.test", spot_path="/p")
        with pytest.raises(ValidationError, match="unique"):
            OracleConfig(sources=[s, s])

    def test_min_sources_cannot_exceed_spot_sources(self):
        s = SourceConfig(provider_id="a", base_url="https://a.test", spot_path="/p")
        with pytest.raises(ValidationError, match="min_sources"):
            OracleConfig(sources=[s], aggregation=AggregationConfig(min_sources=2))

    def test_disabled_sources_excluded(self):
        a = SourceConfig(provider_id="a", base_url="https://a.test", spot_path="/p")
        b = SourceConfig(provider_id="b", base_url="https://b.test", spot_path="/p", enabled=False)
        c = SourceConfig(provider_id="c", base_url="https://c.test", spot_path="/p")
        config = OracleConfig(sources=[a, b, c])
        assert [s.provider_id for s in config.sources_for(Capability.SPOT)] == ["a", "c"]

    def test_source_lookup(self):
        c = OracleConfig()
        assert c.source("kraken").base_url == "https://api.kraken.com"
        with pytest.raises(KeyError):
            c.source("nope")


class TestLoadConfig:
    def test_defaults_without_file(self):
        config = load_config()
        assert config.aggregation.staleness_seconds == 120

    def test_yaml_loading(self, tmp_path):
        yaml_file = tmp_path / "oracle.yml"
        yaml_file.write_text("premium:\n  risk_free_rate: 0.05\nvolatility:\n  windows: [30, 90]\n")
        config = load_config(config_path=str(yaml_file))
        assert config.premium.risk_free_rate == 0.05
        assert config.volatility.windows == [30, 90]

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        yaml_file = tmp_path / "oracle.yml"
        yaml_file.write_text("premium:\n  risk_free_rate: 0.05\n")
        monkeypatch.setenv("BITHEDGE_ORACLE_PREMIUM__RISK_FREE_RATE", "0.03")
        config = load_config(config_path=str(yaml_file))
        assert config.premium.risk_free_rate == 0.03

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        yaml_file = tmp_path / "elsewhere.yml"
        yaml_file.write_text("storage:\n  asset: BTC\n  sqlite_path: /tmp/x.db\n")
        monkeypatch.setenv("BITHEDGE_ORACLE_CONFIG", str(yaml_file))
        assert load_config().storage.sqlite_path == "/tmp/x.db"

    def test_default_file_in_cwd(self, tmp_path):
        (tmp_path / "bithedge-oracle.yml").write_text("api:\n  port: 9100\n")
        assert load_config().api.port == 9100

    def test_missing_file_raises(self):
        with pytest.raises(ConfigError, match="not found"):
            load_config(config_path="/nonexistent/oracle.yml")

    def test_invalid_values_wrapped(self, tmp_path):
        yaml_file = tmp_path / "bad.yml"
        yaml_file.write_text("storage:\n  retention_days: 10\n")
        with pytest.raises(ConfigError):
            load_config(config_path=str(yaml_file))

    def test_non_mapping_yaml(self, tmp_path):
        yaml_file = tmp_path / "list.yml"
        yaml_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(config_path=str(yaml_file))

    def test_malformed_yaml(self, tmp_path):
        yaml_file = tmp_path / "broken.yml"
        yaml_file.write_text("premium: [unclosed\n")
        with pytest.raises(ConfigError, match="parse"):
            load_config(config_path=str(yaml_file))


class TestEnvHelpers:
    def test_auto_cast(self):
        assert _auto_cast("true") is True
        assert _auto_cast("False") is False
        assert _auto_cast("42") == 42
        assert _auto_cast("0.94") == 0.94
        assert _auto_cast("kraken") == "kraken"

    def test_merge_nested(self, monkeypatch):
        monkeypatch.setenv("BITHEDGE_ORACLE_AGGREGATION__MIN_SOURCES", "3")
        merged = _merge_env_vars({"aggregation": {"staleness_seconds": 60}}, "BITHEDGE_ORACLE_")
        assert merged["aggregation"] == {"staleness_seconds": 60, "min_sources": 3}

    def test_merge_comma_list(self, monkeypatch):
        monkeypatch.setenv("BITHEDGE_ORACLE_VOLATILITY__WINDOWS", "30,90")
        merged = _merge_env_vars({}, "BITHEDGE_ORACLE_")
        assert merged["volatility"]["windows"] == [30, 90]

    def test_config_path_variable_skipped(self, monkeypatch):
        monkeypatch.setenv("BITHEDGE_ORACLE_CONFIG", "/some/file.yml")
        assert _merge_env_vars({}, "BITHEDGE_ORACLE_") == {}
