"""API-specific response schemas (Pydantic v2)."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel

from bithedge_oracle.core.models import (
    CircuitState,
    ConsensusPrice,
    Methodology,
    OptionType,
    PremiumQuote,
    PriceRange,
    SourceHealth,
    VolatilityEstimate,
)


# -- Error --


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    error: str
    detail: str | None = None


# -- Price --


class ConsensusResponse(BaseModel):
    """Current consensus price with its confidence score."""

    price: float
    confidence: float
    contributing_sources: list[str]
    outliers: list[str]
    computed_at: datetime

    @classmethod
    def from_model(cls, consensus: ConsensusPrice) -> ConsensusResponse:
        return cls(
            price=consensus.price,
            confidence=consensus.confidence,
            contributing_sources=sorted(consensus.contributing_sources),
            outliers=sorted(consensus.outliers),
            computed_at=consensus.computed_at,
        )


class RangeResponse(BaseModel):
    """High/low of recorded consensus over a trailing period."""

    start: datetime
    end: datetime
    high: float
    low: float
    range: float
    sample_count: int

    @classmethod
    def from_model(cls, price_range: PriceRange) -> RangeResponse:
        return cls(
            start=price_range.start,
            end=price_range.end,
            high=price_range.high,
            low=price_range.low,
            range=price_range.spread,
            sample_count=price_range.sample_count,
        )


# -- Volatility --


class VolatilityResponse(BaseModel):
    """Annualized volatility for one window and methodology."""

    window_days: int
    methodology: Methodology
    effective_methodology: Methodology | None
    value: float
    sample_count: int
    as_of: date | None
    computed_at: datetime

    @classmethod
    def from_model(cls, estimate: VolatilityEstimate) -> VolatilityResponse:
        return cls(
            window_days=estimate.window_days,
            methodology=estimate.methodology,
            effective_methodology=estimate.effective_methodology,
            value=estimate.value,
            sample_count=estimate.sample_count,
            as_of=estimate.as_of,
            computed_at=estimate.computed_at,
        )


# -- Premium --


class ScenarioResponse(BaseModel):
    price: float
    protection_value: float
    net_value: float


class PremiumResponse(BaseModel):
    """Derived option premium and the inputs behind it."""

    option_type: OptionType
    premium: float
    unit_premium: float | None
    amount: float
    underlying_price: float
    strike: float
    time_to_expiry_years: float
    risk_free_rate: float
    volatility: VolatilityResponse
    intrinsic_value: float | None
    time_value: float | None
    break_even_price: float | None
    premium_percentage: float | None
    annualized_premium_percentage: float | None
    scenarios: list[ScenarioResponse]
    computed_at: datetime

    @classmethod
    def from_model(cls, quote: PremiumQuote) -> PremiumResponse:
        return cls(
            option_type=quote.option_type,
            premium=quote.premium,
            unit_premium=quote.unit_premium,
            amount=quote.amount,
            underlying_price=quote.underlying_price,
            strike=quote.strike,
            time_to_expiry_years=quote.time_to_expiry_years,
            risk_free_rate=quote.risk_free_rate,
            volatility=VolatilityResponse.from_model(quote.volatility_used),
            intrinsic_value=quote.intrinsic_value,
            time_value=quote.time_value,
            break_even_price=quote.break_even_price,
            premium_percentage=quote.premium_percentage,
            annualized_premium_percentage=quote.annualized_premium_percentage,
            scenarios=[ScenarioResponse(**s.model_dump()) for s in quote.scenarios],
            computed_at=quote.computed_at,
        )


# -- Sources --


class SourceHealthResponse(BaseModel):
    """Circuit and weight state of one source."""

    source_id: str
    weight: float
    circuit_state: CircuitState
    consecutive_failures: int
    cooldown_seconds: float | None = None
    opened_at: datetime | None = None
    last_success_at: datetime | None = None
    last_deviation: float | None = None

    @classmethod
    def from_model(cls, health: SourceHealth) -> SourceHealthResponse:
        return cls(**health.model_dump())


# -- Health --


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    status: str = "ok"
    version: str
    storage_ok: bool
    total_closes: int
    latest_close: date | None
    sources_open: int
    sources_total: int
    scheduler_running: bool = False
    poll_interval_seconds: float | None = None
