"""Pydantic data models — the system's type contracts."""

from __future__ import annotations

import math
from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# --- Type Aliases ---

SourceId = str
Asset = str

# --- Enumerations ---


class Capability(StrEnum):
    """What a source can be asked for."""

    SPOT = "spot"
    HISTORICAL = "historical"


class CircuitState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Methodology(StrEnum):
    """Volatility estimator methodologies."""

    LOG_RETURNS = "log_returns"
    PARKINSON = "parkinson"
    EWMA = "ewma"


class OptionType(StrEnum):
    """Option contract types."""

    CALL = "call"
    PUT = "put"


class AppendOutcome(StrEnum):
    """Result of offering a HistoricalClose to the store."""

    ACCEPTED = "accepted"
    SUPERSEDED = "superseded"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


# --- Price Models ---


class PricePoint(BaseModel):
    """One spot observation from one source."""

    model_config = ConfigDict(frozen=True)

    source_id: SourceId
    price: float
    observed_at: datetime
    fetch_latency: float = 0.0

    @field_validator("price")
    @classmethod
    def price_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"price must be finite, got {v}")
        return v

    @field_validator("fetch_latency")
    @classmethod
    def latency_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("fetch_latency must be >= 0")
        return v


class ConsensusPrice(BaseModel):
    """Weighted-median consensus over the freshest point per source."""

    model_config = ConfigDict(frozen=True)

    price: float
    confidence: float = Field(ge=0.0, le=1.0)
    contributing_sources: frozenset[SourceId]
    outliers: frozenset[SourceId] = frozenset()
    deviations: dict[SourceId, float] = Field(default_factory=dict)
    computed_at: datetime


class SourceHealth(BaseModel):
    """Point-in-time health snapshot of one configured source."""

    model_config = ConfigDict(frozen=True)

    source_id: SourceId
    weight: float
    consecutive_failures: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    cooldown_seconds: float | None = None
    opened_at: datetime | None = None
    last_success_at: datetime | None = None
    last_deviation: float | None = None


class HistoricalClose(BaseModel):
    """One daily close. High/low are present only when the source has them."""

    model_config = ConfigDict(frozen=True)

    date: date
    price: float
    source_id: SourceId
    stored_at: datetime
    asset: Asset = "BTC"
    open: float | None = None
    high: float | None = None
    low: float | None = None

    @model_validator(mode="after")
    def high_gte_low(self) -> HistoricalClose:
        if self.high is not None and self.low is not None and self.high < self.low:
            raise ValueError(f"high ({self.high}) must be >= low ({self.low})")
        return self

    @property
    def has_range(self) -> bool:
        return self.high is not None and self.low is not None


class CloseAuditEntry(BaseModel):
    """Every close ever offered to the store, with what happened to it."""

    model_config = ConfigDict(frozen=True)

    close: HistoricalClose
    outcome: AppendOutcome
    reason: str
    recorded_at: datetime


class IntradayPrice(BaseModel):
    """A persisted consensus snapshot (or a daily rollup of them)."""

    model_config = ConfigDict(frozen=True)

    observed_at: datetime
    price: float
    confidence: float
    asset: Asset = "BTC"
    high: float | None = None
    low: float | None = None
    sample_count: int = 1


# --- Analytics Models ---


class VolatilityEstimate(BaseModel):
    """Annualized volatility over one window with one methodology.

    ``value`` is None exactly when ``insufficient_data`` is set.
    ``effective_methodology`` differs from ``methodology`` when Parkinson
    fell back to close-only returns.
    """

    model_config = ConfigDict(frozen=True)

    window_days: int
    methodology: Methodology
    value: float | None
    computed_at: datetime
    sample_count: int
    insufficient_data: bool = False
    effective_methodology: Methodology | None = None
    as_of: date | None = None

    @model_validator(mode="after")
    def value_matches_status(self) -> VolatilityEstimate:
        if self.insufficient_data and self.value is not None:
            raise ValueError("insufficient_data estimates carry no value")
        if not self.insufficient_data and self.value is None:
            raise ValueError("value is required unless insufficient_data")
        return self


class PriceScenario(BaseModel):
    """Protection payoff at one hypothetical expiry price."""

    model_config = ConfigDict(frozen=True)

    price: float
    protection_value: float
    net_value: float


class PremiumQuote(BaseModel):
    """Derived premium with the inputs that produced it. Never authoritative."""

    model_config = ConfigDict(frozen=True)

    underlying_price: float
    strike: float
    time_to_expiry_years: float
    risk_free_rate: float
    volatility_used: VolatilityEstimate
    option_type: OptionType
    premium: float = Field(ge=0.0)
    computed_at: datetime
    amount: float = 1.0
    unit_premium: float | None = None
    intrinsic_value: float | None = None
    time_value: float | None = None
    break_even_price: float | None = None
    premium_percentage: float | None = None
    annualized_premium_percentage: float | None = None
    scenarios: list[PriceScenario] = Field(default_factory=list)


class PriceRange(BaseModel):
    """High/low of the intraday consensus over a trailing period."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    high: float
    low: float
    sample_count: int

    @property
    def spread(self) -> float:
        return self.high - self.low
