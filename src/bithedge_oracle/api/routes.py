"""FastAPI route definitions for the BitHedge Oracle read API.

Every route is read-only: nothing here fetches from a source or writes to
the store. Insufficiency errors surface as 503 so callers can retry
shortly; malformed parameters surface as 422.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query

import bithedge_oracle
from bithedge_oracle.api.deps import AppState, get_app_state, get_service
from bithedge_oracle.api.schemas import (
    ConsensusResponse,
    HealthResponse,
    PremiumResponse,
    RangeResponse,
    SourceHealthResponse,
    VolatilityResponse,
)
from bithedge_oracle.core.exceptions import InvalidInputError
from bithedge_oracle.core.models import CircuitState, Methodology, OptionType, SourceHealth
from bithedge_oracle.pipeline.service import OracleService

router = APIRouter()


async def _source_health(state: AppState) -> list[SourceHealth]:
    # Without a local scheduler the in-memory breakers never move.
    if state.scheduler is not None:
        return state.service.health()
    return await state.service.stored_health()


# -- Health --


@router.get("/health", response_model=HealthResponse)
async def health_check(state: AppState = Depends(get_app_state)):
    """System health, basic statistics and the current polling cadence."""
    service = state.service
    storage_ok = await service.store.health_check()
    stats = await service.store.get_statistics() if storage_ok else {}
    sources = await _source_health(state) if storage_ok else service.health()
    open_count = sum(1 for s in sources if s.circuit_state == CircuitState.OPEN)
    return HealthResponse(
        status="ok" if storage_ok else "degraded",
        version=bithedge_oracle.__version__,
        storage_ok=storage_ok,
        total_closes=stats.get("total_closes", 0),
        latest_close=stats.get("latest_close"),
        sources_open=open_count,
        sources_total=len(sources),
        scheduler_running=state.scheduler is not None,
        poll_interval_seconds=state.scheduler.interval if state.scheduler else None,
    )


# -- Price --


@router.get("/price", response_model=ConsensusResponse)
async def get_price(service: OracleService = Depends(get_service)):
    """Current consensus price, or 503 when none is fresh enough."""
    return ConsensusResponse.from_model(await service.get_consensus_price())


@router.get("/range", response_model=RangeResponse)
async def get_range(
    hours: int = Query(24, ge=1, le=24 * 7),
    service: OracleService = Depends(get_service),
):
    """High/low of the recorded consensus over the trailing period."""
    return RangeResponse.from_model(await service.price_range(hours))


# -- Volatility --


@router.get("/volatility", response_model=VolatilityResponse)
async def get_volatility(
    window_days: int = Query(30, ge=2, le=730),
    methodology: Methodology = Query(Methodology.LOG_RETURNS),
    service: OracleService = Depends(get_service),
):
    """Annualized volatility for one window, or 503 when the window is short of data."""
    estimate = await service.get_volatility(window_days, methodology)
    return VolatilityResponse.from_model(estimate)


# -- Premium --


@router.get("/premium", response_model=PremiumResponse)
async def get_premium(
    strike: float = Query(..., description="Strike price in USD"),
    option_type: OptionType = Query(OptionType.PUT),
    expiry: datetime | None = Query(None, description="ISO-8601 expiry (UTC if naive)"),
    expiry_days: float | None = Query(None, description="Days until expiry"),
    amount: float = Query(1.0, description="Units of BTC covered"),
    methodology: Methodology = Query(Methodology.LOG_RETURNS),
    scenarios: bool = Query(False),
    service: OracleService = Depends(get_service),
):
    """Black-Scholes premium on the current consensus price.

    Exactly one of ``expiry`` and ``expiry_days`` must be given.
    """
    if (expiry is None) == (expiry_days is None):
        raise InvalidInputError(
            "Give exactly one of expiry and expiry_days",
            context={"field": "expiry", "value": None},
        )
    if expiry is None:
        if expiry_days <= 0:
            raise InvalidInputError(
                "expiry_days must be > 0",
                context={"field": "expiry_days", "value": expiry_days},
            )
        expiry = service.clock.now() + timedelta(days=expiry_days)
    quote = await service.get_premium(
        option_type,
        strike,
        expiry,
        amount=amount,
        methodology=methodology,
        include_scenarios=scenarios,
    )
    return PremiumResponse.from_model(quote)


@router.get("/protection", response_model=PremiumResponse)
async def get_protection(
    protected_value_pct: float = Query(100.0, description="Strike as % of spot"),
    expiration_days: float = Query(30.0),
    amount: float = Query(1.0),
    option_type: OptionType = Query(OptionType.PUT),
    methodology: Methodology = Query(Methodology.LOG_RETURNS),
    service: OracleService = Depends(get_service),
):
    """Protection quote struck at a percentage of the current consensus."""
    quote = await service.get_protection_quote(
        protected_value_pct,
        expiration_days,
        amount=amount,
        option_type=option_type,
        methodology=methodology,
    )
    return PremiumResponse.from_model(quote)


# -- Sources --


@router.get("/sources", response_model=list[SourceHealthResponse])
async def list_sources(state: AppState = Depends(get_app_state)):
    """Circuit state and reliability weight of every configured source."""
    return [SourceHealthResponse.from_model(h) for h in await _source_health(state)]
