"""bithedge_oracle.analytics — Volatility estimation and option premiums."""

from bithedge_oracle.analytics.premium import PremiumEngine, d1_d2
from bithedge_oracle.analytics.volatility import (
    VolatilityEngine,
    close_to_close,
    ewma,
    log_returns,
    parkinson,
)

__all__ = [
    "PremiumEngine",
    "VolatilityEngine",
    "d1_d2",
    "close_to_close",
    "ewma",
    "log_returns",
    "parkinson",
]
