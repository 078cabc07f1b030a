"""Black-Scholes option premiums and the quote breakdown built on them."""

from __future__ import annotations

import logging
import math

from scipy.stats import norm

from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.config import PremiumConfig
from bithedge_oracle.core.exceptions import InvalidInputError
from bithedge_oracle.core.models import (
    OptionType,
    PremiumQuote,
    PriceScenario,
    VolatilityEstimate,
)

logger = logging.getLogger(__name__)


def _require(condition: bool, field: str, value: object, message: str) -> None:
    if not condition:
        raise InvalidInputError(message, context={"field": field, "value": value})


def _finite(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def d1_d2(
    spot: float, strike: float, time_to_expiry_years: float, rate: float, volatility: float
) -> tuple[float, float]:
    sqrt_t = math.sqrt(time_to_expiry_years)
    d1 = (
        math.log(spot / strike) + (rate + 0.5 * volatility**2) * time_to_expiry_years
    ) / (volatility * sqrt_t)
    return d1, d1 - volatility * sqrt_t


class PremiumEngine:
    """Closed-form European option pricing.

    ``price`` is the bare formula with input validation; ``quote`` wraps it
    with the inputs and a per-position breakdown. Nothing here is persisted.
    """

    def __init__(self, config: PremiumConfig, clock: Clock | None = None) -> None:
        self._config = config
        self._clock = clock or SystemClock()

    @property
    def default_rate(self) -> float:
        return self._config.risk_free_rate

    def years(self, days: float) -> float:
        return days / self._config.days_per_year

    def price(
        self,
        option_type: OptionType | str,
        spot: float,
        strike: float,
        time_to_expiry_years: float,
        risk_free_rate: float,
        volatility: float,
    ) -> float:
        """Premium per unit of underlying.

        Raises
        ------
        InvalidInputError
            For an unknown option type, non-positive spot/strike/volatility,
            ``time_to_expiry_years <= 0``, or any non-finite input.
        """
        try:
            option_type = OptionType(option_type)
        except ValueError:
            raise InvalidInputError(
                f"Unknown option type {option_type!r}",
                context={"field": "option_type", "value": option_type},
            ) from None
        _require(_finite(spot) and spot > 0, "spot", spot, "spot must be a positive number")
        _require(_finite(strike) and strike > 0, "strike", strike, "strike must be a positive number")
        _require(
            _finite(time_to_expiry_years) and time_to_expiry_years > 0,
            "time_to_expiry_years",
            time_to_expiry_years,
            "time to expiry must be > 0; expired options settle elsewhere",
        )
        _require(
            _finite(volatility) and volatility > 0,
            "volatility",
            volatility,
            "volatility must be > 0",
        )
        _require(_finite(risk_free_rate), "risk_free_rate", risk_free_rate, "rate must be finite")

        d1, d2 = d1_d2(spot, strike, time_to_expiry_years, risk_free_rate, volatility)
        discount = math.exp(-risk_free_rate * time_to_expiry_years)
        if option_type == OptionType.CALL:
            premium = spot * norm.cdf(d1) - strike * discount * norm.cdf(d2)
        else:
            premium = strike * discount * norm.cdf(-d2) - spot * norm.cdf(-d1)
        # Cancellation in deep out-of-the-money tails can dip a hair below zero
        return max(float(premium), 0.0)

    def quote(
        self,
        option_type: OptionType | str,
        spot: float,
        strike: float,
        time_to_expiry_years: float,
        volatility: VolatilityEstimate,
        risk_free_rate: float | None = None,
        amount: float = 1.0,
        include_scenarios: bool = False,
    ) -> PremiumQuote:
        """Premium for ``amount`` units plus intrinsic/time value and break-even."""
        if volatility.insufficient_data or volatility.value is None:
            raise InvalidInputError(
                "Volatility estimate has insufficient data",
                context={"field": "volatility", "value": volatility.window_days},
            )
        _require(_finite(amount) and amount > 0, "amount", amount, "amount must be > 0")
        rate = self._config.risk_free_rate if risk_free_rate is None else risk_free_rate

        unit = self.price(option_type, spot, strike, time_to_expiry_years, rate, volatility.value)
        option_type = OptionType(option_type)
        premium = unit * amount
        if option_type == OptionType.CALL:
            intrinsic = max(spot - strike, 0.0) * amount
            break_even = strike + unit
        else:
            intrinsic = max(strike - spot, 0.0) * amount
            break_even = strike - unit
        premium_pct = premium / (spot * amount) * 100.0

        return PremiumQuote(
            underlying_price=spot,
            strike=strike,
            time_to_expiry_years=time_to_expiry_years,
            risk_free_rate=rate,
            volatility_used=volatility,
            option_type=option_type,
            premium=premium,
            computed_at=self._clock.now(),
            amount=amount,
            unit_premium=unit,
            intrinsic_value=intrinsic,
            time_value=premium - intrinsic,
            break_even_price=round(break_even, 2),
            premium_percentage=premium_pct,
            annualized_premium_percentage=premium_pct / time_to_expiry_years,
            scenarios=(
                self.scenarios(option_type, spot, strike, premium, amount)
                if include_scenarios
                else []
            ),
        )

    def protection_quote(
        self,
        spot: float,
        protected_value_pct: float,
        expiration_days: float,
        volatility: VolatilityEstimate,
        amount: float = 1.0,
        option_type: OptionType | str = OptionType.PUT,
        include_scenarios: bool = True,
    ) -> PremiumQuote:
        """Quote protection struck at ``protected_value_pct`` percent of spot."""
        _require(
            _finite(protected_value_pct) and protected_value_pct > 0,
            "protected_value_pct",
            protected_value_pct,
            "protected_value_pct must be > 0",
        )
        _require(
            _finite(expiration_days) and expiration_days > 0,
            "expiration_days",
            expiration_days,
            "expiration_days must be > 0",
        )
        strike = spot * protected_value_pct / 100.0
        return self.quote(
            option_type,
            spot,
            strike,
            self.years(expiration_days),
            volatility,
            amount=amount,
            include_scenarios=include_scenarios,
        )

    def scenarios(
        self,
        option_type: OptionType,
        spot: float,
        strike: float,
        premium: float,
        amount: float,
    ) -> list[PriceScenario]:
        """Payoff at expiry for spot moves across ``±scenario_range``, in cents."""
        steps = self._config.scenario_steps
        out = []
        for i in range(-steps, steps + 1):
            price = spot * (1 + i * self._config.scenario_range / steps)
            if option_type == OptionType.CALL:
                protection = max(0.0, (price - strike) * amount)
            else:
                protection = max(0.0, (strike - price) * amount)
            out.append(
                PriceScenario(
                    price=round(price, 2),
                    protection_value=round(protection, 2),
                    net_value=round(protection - premium, 2),
                )
            )
        return out
