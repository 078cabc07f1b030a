"""bithedge_oracle.core — Foundation types, config, clock, and exceptions."""

from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.config import (
    AggregationConfig,
    APIConfig,
    CircuitBreakerConfig,
    OracleConfig,
    PremiumConfig,
    ReliabilityConfig,
    SchedulerConfig,
    SourceConfig,
    StorageConfig,
    VolatilityConfig,
    load_config,
)
from bithedge_oracle.core.exceptions import (
    ConfigError,
    DataIntegrityError,
    InsufficientConsensusError,
    InsufficientDataError,
    InvalidInputError,
    OracleError,
    SourceError,
    StorageError,
)
from bithedge_oracle.core.models import (
    AppendOutcome,
    Asset,
    Capability,
    CircuitState,
    CloseAuditEntry,
    ConsensusPrice,
    HistoricalClose,
    IntradayPrice,
    Methodology,
    OptionType,
    PremiumQuote,
    PriceRange,
    PricePoint,
    PriceScenario,
    SourceHealth,
    SourceId,
    VolatilityEstimate,
)

__all__ = [
    # Type aliases
    "SourceId",
    "Asset",
    # Enums
    "Capability",
    "CircuitState",
    "Methodology",
    "OptionType",
    "AppendOutcome",
    # Price models
    "PricePoint",
    "ConsensusPrice",
    "SourceHealth",
    "HistoricalClose",
    "CloseAuditEntry",
    "IntradayPrice",
    # Analytics models
    "VolatilityEstimate",
    "PriceScenario",
    "PremiumQuote",
    "PriceRange",
    # Clock
    "Clock",
    "SystemClock",
    # Config
    "OracleConfig",
    "SourceConfig",
    "AggregationConfig",
    "ReliabilityConfig",
    "CircuitBreakerConfig",
    "VolatilityConfig",
    "PremiumConfig",
    "SchedulerConfig",
    "StorageConfig",
    "APIConfig",
    "load_config",
    # Exceptions
    "OracleError",
    "ConfigError",
    "SourceError",
    "InsufficientConsensusError",
    "InsufficientDataError",
    "InvalidInputError",
    "DataIntegrityError",
    "StorageError",
]
