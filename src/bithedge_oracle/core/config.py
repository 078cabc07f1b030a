"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from datetime import time
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from bithedge_oracle.core.exceptions import ConfigError
from bithedge_oracle.core.models import Capability, Methodology

ENV_PREFIX = "BITHEDGE_ORACLE_"


class SourceConfig(BaseModel):
    """One market-data provider endpoint."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    base_url: str
    spot_path: str
    historical_path: str | None = None
    weight_prior: float = 0.1
    response_schema_version: int = 1
    parser: str | None = None
    capabilities: list[Capability] = [Capability.SPOT]
    requests_per_second: float = 5.0
    timeout_seconds: float = 10.0
    rate_limit_cooldown_seconds: float | None = None
    api_key: str | None = None
    enabled: bool = True

    @field_validator("base_url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("base_url must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("weight_prior")
    @classmethod
    def weight_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("weight_prior must be > 0")
        return v

    @field_validator("requests_per_second", "timeout_seconds")
    @classmethod
    def rate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @model_validator(mode="after")
    def historical_needs_path(self) -> SourceConfig:
        if Capability.HISTORICAL in self.capabilities and not self.historical_path:
            raise ValueError(
                f"source {self.provider_id!r} declares historical capability "
                "without a historical_path"
            )
        return self

    @property
    def parser_name(self) -> str:
        return self.parser or self.provider_id


def _spot(provider_id: str, base_url: str, spot_path: str, weight: float) -> SourceConfig:
    return SourceConfig(
        provider_id=provider_id,
        base_url=base_url,
        spot_path=spot_path,
        weight_prior=weight,
    )


DEFAULT_SOURCES: list[SourceConfig] = [
    SourceConfig(
        provider_id="coingecko",
        base_url="https://api.coingecko.com",
        spot_path="/api/v3/simple/price?ids=bitcoin&vs_currencies=usd",
        historical_path=(
            "/api/v3/coins/bitcoin/market_chart?vs_currency=usd&days={days}&interval=daily"
        ),
        weight_prior=0.2,
        capabilities=[Capability.SPOT, Capability.HISTORICAL],
        requests_per_second=0.5,
    ),
    _spot("binance", "https://api.binance.us", "/api/v3/ticker/24hr?symbol=BTCUSD", 0.15),
    _spot("kraken", "https://api.kraken.com", "/0/public/Ticker?pair=XBTUSD", 0.15),
    _spot("coinbase", "https://api.coinbase.com", "/v2/prices/BTC-USD/spot", 0.15),
    _spot("bitstamp", "https://www.bitstamp.net", "/api/v2/ticker/btcusd", 0.10),
    _spot("gemini", "https://api.gemini.com", "/v1/pubticker/btcusd", 0.05),
    _spot("huobi", "https://api.huobi.pro", "/market/detail/merged?symbol=btcusdt", 0.05),
    _spot("bitfinex", "https://api-pub.bitfinex.com", "/v2/ticker/tBTCUSD", 0.10),
    SourceConfig(
        provider_id="cryptocompare",
        base_url="https://min-api.cryptocompare.com",
        spot_path="/data/price?fsym=BTC&tsyms=USD",
        historical_path="/data/v2/histoday?fsym=BTC&tsym=USD&limit={limit}&toTs={to_ts}",
        weight_prior=0.2,
        capabilities=[Capability.HISTORICAL],
    ),
]


class AggregationConfig(BaseModel):
    """Consensus computation settings."""

    model_config = ConfigDict(frozen=True)

    staleness_seconds: float = 120.0
    outlier_deviation_multiple: float = 3.0
    outlier_min_deviation_pct: float = 0.005
    rolling_window: int = 30
    min_history: int = 5
    min_sources: int = 2

    @field_validator("staleness_seconds", "outlier_deviation_multiple")
    @classmethod
    def strictly_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("min_sources")
    @classmethod
    def min_sources_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("min_sources must be >= 1")
        return v


class ReliabilityConfig(BaseModel):
    """Source weighting settings."""

    model_config = ConfigDict(frozen=True)

    window: int = 20
    smoothing: float = 0.3
    latency_percentile: float = 90.0
    latency_target_seconds: float = 1.0
    deviation_scale: float = 0.01
    weight_floor: float = 0.01
    weight_ceiling: float = 1.0

    @field_validator("smoothing")
    @classmethod
    def smoothing_in_unit_interval(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("smoothing must be in (0, 1]")
        return v

    @model_validator(mode="after")
    def floor_below_ceiling(self) -> ReliabilityConfig:
        if not 0 < self.weight_floor <= self.weight_ceiling:
            raise ValueError("require 0 < weight_floor <= weight_ceiling")
        return self


class CircuitBreakerConfig(BaseModel):
    """Failure thresholds and cooldowns."""

    model_config = ConfigDict(frozen=True)

    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    max_cooldown_seconds: float = 960.0
    rate_limit_cooldown_seconds: float = 300.0

    @field_validator("failure_threshold")
    @classmethod
    def threshold_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("failure_threshold must be >= 1")
        return v

    @model_validator(mode="after")
    def cooldown_below_ceiling(self) -> CircuitBreakerConfig:
        if not 0 < self.cooldown_seconds <= self.max_cooldown_seconds:
            raise ValueError("require 0 < cooldown_seconds <= max_cooldown_seconds")
        return self


class VolatilityConfig(BaseModel):
    """Volatility windows and estimators."""

    model_config = ConfigDict(frozen=True)

    windows: list[int] = [30, 60, 90, 180, 360]
    methodologies: list[Methodology] = [
        Methodology.LOG_RETURNS,
        Methodology.PARKINSON,
        Methodology.EWMA,
    ]
    ewma_decay: float = 0.94
    trading_days_per_year: int = 252
    min_coverage: float = 1.0

    @field_validator("windows")
    @classmethod
    def windows_valid(cls, v: list[int]) -> list[int]:
        if not v or any(w < 2 for w in v):
            raise ValueError("windows must be non-empty and each >= 2 days")
        return sorted(set(v))

    @field_validator("ewma_decay")
    @classmethod
    def decay_in_unit_interval(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("ewma_decay must be in (0, 1)")
        return v

    @field_validator("min_coverage")
    @classmethod
    def coverage_in_unit_interval(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("min_coverage must be in (0, 1]")
        return v


class PremiumConfig(BaseModel):
    """Option pricing inputs not derived from market data."""

    model_config = ConfigDict(frozen=True)

    risk_free_rate: float = 0.02
    days_per_year: int = 365
    scenario_range: float = 0.5
    scenario_steps: int = 10


class SchedulerConfig(BaseModel):
    """Polling cadence and adaptive bounds."""

    model_config = ConfigDict(frozen=True)

    spot_interval_seconds: float = 60.0
    min_spot_interval_seconds: float = 15.0
    max_spot_interval_seconds: float = 300.0
    turbulence_ratio: float = 1.5
    calm_ratio: float = 0.8
    speedup_factor: float = 0.5
    relax_factor: float = 1.5
    trailing_samples: int = 10
    daily_close_time: time = time(0, 5)
    daily_lookback_days: int = 3
    backfill_days: int = 361

    @model_validator(mode="after")
    def interval_bounds_ordered(self) -> SchedulerConfig:
        lo, base, hi = (
            self.min_spot_interval_seconds,
            self.spot_interval_seconds,
            self.max_spot_interval_seconds,
        )
        if not 0 < lo <= base <= hi:
            raise ValueError(
                "require 0 < min_spot_interval_seconds <= spot_interval_seconds "
                "<= max_spot_interval_seconds"
            )
        if not self.calm_ratio < 1 < self.turbulence_ratio:
            raise ValueError("require calm_ratio < 1 < turbulence_ratio")
        return self


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    model_config = ConfigDict(frozen=True)

    sqlite_path: str = "./data/bithedge_oracle.db"
    asset: str = "BTC"
    full_fidelity_days: int = 7
    daily_granularity_days: int = 90
    retention_days: int = 400

    @model_validator(mode="after")
    def tiers_ordered(self) -> StorageConfig:
        if not 0 < self.full_fidelity_days <= self.daily_granularity_days:
            raise ValueError("require 0 < full_fidelity_days <= daily_granularity_days")
        if self.retention_days < 360:
            raise ValueError("retention_days must be >= 360 (volatility lookback)")
        return self


class APIConfig(BaseModel):
    """FastAPI server configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str | None = None
    run_scheduler: bool = True


class OracleConfig(BaseModel):
    """Root configuration for the entire bithedge-oracle system."""

    model_config = ConfigDict(frozen=True)

    sources: list[SourceConfig] = DEFAULT_SOURCES
    spot_priority: list[str] = []
    historical_priority: list[str] = []
    aggregation: AggregationConfig = AggregationConfig()
    reliability: ReliabilityConfig = ReliabilityConfig()
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig()
    volatility: VolatilityConfig = VolatilityConfig()
    premium: PremiumConfig = PremiumConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    storage: StorageConfig = StorageConfig()
    api: APIConfig = APIConfig()

    @model_validator(mode="after")
    def sources_consistent(self) -> OracleConfig:
        ids = [s.provider_id for s in self.sources]
        if len(ids) != len(set(ids)):
            raise ValueError("provider_id values must be unique")
        for name in (*self.spot_priority, *self.historical_priority):
            if name not in ids:
                raise ValueError(f"priority list names unknown source {name!r}")
        spot_count = len(self.sources_for(Capability.SPOT))
        if spot_count == 0:
            raise ValueError("at least one enabled spot source is required")
        if self.aggregation.min_sources > spot_count:
            raise ValueError(
                f"aggregation.min_sources ({self.aggregation.min_sources}) exceeds "
                f"the number of enabled spot sources ({spot_count})"
            )
        return self

    def source(self, provider_id: str) -> SourceConfig:
        for s in self.sources:
            if s.provider_id == provider_id:
                return s
        raise KeyError(provider_id)

    def sources_for(self, capability: Capability) -> list[SourceConfig]:
        """Enabled sources for a capability, in fallback order.

        Sources named in the capability's priority list come first, in that
        order; the rest follow in configuration order.
        """
        priority = (
            self.spot_priority if capability == Capability.SPOT else self.historical_priority
        )
        eligible = [s for s in self.sources if s.enabled and capability in s.capabilities]
        rank = {name: i for i, name in enumerate(priority)}
        return sorted(eligible, key=lambda s: rank.get(s.provider_id, len(rank)))


def load_config(
    config_path: str | None = None,
    env_prefix: str = ENV_PREFIX,
) -> OracleConfig:
    """Load configuration from environment + YAML file + defaults.

    Resolution order (highest priority first):
    1. Environment variables (BITHEDGE_ORACLE_AGGREGATION__MIN_SOURCES, etc.)
    2. YAML file at config_path
    3. Built-in defaults

    Nested keys use double-underscore in env vars:
        BITHEDGE_ORACLE_PREMIUM__RISK_FREE_RATE=0.04  ->  premium.risk_free_rate = 0.04
    """
    try:
        yaml_path = _resolve_config_path(config_path, env_prefix)
        base: dict = {}
        if yaml_path is not None:
            base = _load_yaml(yaml_path)

        merged = _merge_env_vars(base, env_prefix)
        return OracleConfig.model_validate(merged)
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(str(e), context={"source": "load_config"}) from e


def _resolve_config_path(explicit: str | None, env_prefix: str) -> Path | None:
    """Determine config file path."""
    if explicit is not None:
        p = Path(explicit)
        if not p.exists():
            raise ConfigError(
                f"Config file not found: {explicit}",
                context={"field": "config_path", "value": explicit},
            )
        return p

    env_var = f"{env_prefix}CONFIG"
    env_path = os.environ.get(env_var)
    if env_path:
        p = Path(env_path)
        if not p.exists():
            raise ConfigError(
                f"Config file from {env_var} not found: {env_path}",
                context={"field": env_var, "value": env_path},
            )
        return p

    default = Path("bithedge-oracle.yml")
    if default.exists():
        return default

    return None


def _load_yaml(path: Path) -> dict:
    """Load and parse YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"YAML config must be a mapping, got {type(data).__name__}",
                context={"field": "config_file", "value": str(path)},
            )
        return data
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse YAML config: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e


def _merge_env_vars(base: dict, prefix: str) -> dict:
    """Overlay environment variables onto base config dict.

    Double-underscore separates nesting levels. Comma-separated values
    become lists (``..._VOLATILITY__WINDOWS=30,90``).
    """
    result = dict(base)

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        remainder = key[len(prefix) :]
        parts = [p.lower() for p in remainder.split("__")]

        # The config-path variable is not a setting
        if parts == ["config"]:
            continue

        if "," in value:
            cast_value: object = [_auto_cast(v.strip()) for v in value.split(",") if v.strip()]
        else:
            cast_value = _auto_cast(value)

        target = result
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = cast_value

    return result


def _auto_cast(value: str) -> str | int | float | bool:
    """Auto-cast string values from environment variables."""
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value
