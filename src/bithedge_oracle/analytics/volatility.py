"""Historical volatility estimators over daily closes."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence
from datetime import date, timedelta

import numpy as np
import pandas as pd

from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.config import VolatilityConfig
from bithedge_oracle.core.exceptions import DataIntegrityError, InsufficientDataError
from bithedge_oracle.core.models import HistoricalClose, Methodology, VolatilityEstimate
from bithedge_oracle.storage.store import HistoricalStore

logger = logging.getLogger(__name__)

_FOUR_LN_2 = 4.0 * math.log(2.0)


def log_returns(prices: Sequence[float]) -> np.ndarray:
    """``ln(p_t / p_{t-1})`` for each consecutive pair.

    Raises
    ------
    DataIntegrityError
        If any price is zero or negative.
    """
    arr = np.asarray(prices, dtype=float)
    if np.any(arr <= 0) or not np.all(np.isfinite(arr)):
        raise DataIntegrityError(
            "Non-positive price in volatility series",
            context={"reason": "non-positive price"},
        )
    return np.diff(np.log(arr))


def close_to_close(prices: Sequence[float], periods_per_year: int) -> float | None:
    """Annualized sample standard deviation of log returns.

    Needs at least two returns; returns None otherwise.
    """
    r = log_returns(prices)
    if len(r) < 2:
        return None
    return float(np.std(r, ddof=1) * math.sqrt(periods_per_year))


def parkinson(highs: Sequence[float], lows: Sequence[float], periods_per_year: int) -> float | None:
    """Parkinson high/low range estimator, annualized.

    sigma^2 = mean(ln(H/L)^2) / (4 ln 2)
    """
    h = np.asarray(highs, dtype=float)
    lo = np.asarray(lows, dtype=float)
    if len(h) == 0:
        return None
    if np.any(lo <= 0) or np.any(h < lo):
        raise DataIntegrityError(
            "Invalid high/low range in volatility series",
            context={"reason": "non-positive low or high < low"},
        )
    variance = float(np.mean(np.log(h / lo) ** 2)) / _FOUR_LN_2
    return math.sqrt(variance) * math.sqrt(periods_per_year)


def ewma(prices: Sequence[float], decay: float, periods_per_year: int) -> float | None:
    """RiskMetrics-style EWMA of squared log returns, annualized.

    The newest return carries weight ``(1 - decay)``, the one before
    ``(1 - decay) * decay``, and so on, normalized over the window.
    """
    r = log_returns(prices)
    if len(r) < 1:
        return None
    variance = pd.Series(r**2).ewm(alpha=1.0 - decay, adjust=True).mean().iloc[-1]
    return math.sqrt(float(variance)) * math.sqrt(periods_per_year)


class VolatilityEngine:
    """Computes VolatilityEstimates from the HistoricalStore.

    A window of ``N`` days covers closes dated ``(as_of - N, as_of]``. The
    window needs at least ``ceil(N * min_coverage)`` closes (and never fewer
    than two) or the estimate is marked ``insufficient_data`` with no value.

    Parameters
    ----------
    config : VolatilityConfig
        Windows, methodologies, EWMA decay and annualization factor.
    store : HistoricalStore | None
        Source of closes for ``compute``; not needed for ``estimate``.
    clock : Clock | None
        Supplies ``computed_at`` and the default ``as_of``.
    """

    def __init__(
        self,
        config: VolatilityConfig,
        store: HistoricalStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._clock = clock or SystemClock()

    @property
    def windows(self) -> list[int]:
        return list(self._config.windows)

    def required_samples(self, window_days: int) -> int:
        return max(2, math.ceil(window_days * self._config.min_coverage))

    def estimate(
        self,
        closes: Sequence[HistoricalClose],
        window_days: int,
        methodology: Methodology,
        as_of: date | None = None,
    ) -> VolatilityEstimate:
        """Pure estimate over already-loaded closes."""
        as_of = as_of or self._default_as_of()
        start = as_of - timedelta(days=window_days)
        window = sorted((c for c in closes if start < c.date <= as_of), key=lambda c: c.date)
        sample_count = len(window)

        effective = methodology
        value: float | None = None
        if sample_count >= self.required_samples(window_days):
            prices = [c.price for c in window]
            periods = self._config.trading_days_per_year
            if methodology == Methodology.LOG_RETURNS:
                value = close_to_close(prices, periods)
            elif methodology == Methodology.EWMA:
                value = ewma(prices, self._config.ewma_decay, periods)
            elif all(c.has_range for c in window):
                value = parkinson([c.high for c in window], [c.low for c in window], periods)
            else:
                effective = Methodology.LOG_RETURNS
                value = close_to_close(prices, periods)

        if value is None:
            logger.debug(
                "Insufficient data for %dd %s: %d closes",
                window_days, methodology, sample_count,
            )
        return VolatilityEstimate(
            window_days=window_days,
            methodology=methodology,
            value=value,
            computed_at=self._clock.now(),
            sample_count=sample_count,
            insufficient_data=value is None,
            effective_methodology=effective if value is not None else None,
            as_of=as_of,
        )

    async def compute(
        self,
        window_days: int,
        methodology: Methodology,
        as_of: date | None = None,
    ) -> VolatilityEstimate:
        """Estimate from stored closes. Does not persist the result."""
        if self._store is None:
            raise RuntimeError("VolatilityEngine.compute requires a store")
        as_of = as_of or self._default_as_of()
        closes = await self._store.range(as_of - timedelta(days=window_days - 1), as_of)
        return self.estimate(closes, window_days, methodology, as_of)

    async def recompute_all(self, as_of: date | None = None) -> list[VolatilityEstimate]:
        """Compute and persist every configured (window, methodology) pair.

        Each pair is independent and produces a new record, so they run
        concurrently.
        """
        if self._store is None:
            raise RuntimeError("VolatilityEngine.recompute_all requires a store")
        as_of = as_of or self._default_as_of()
        pairs = [(w, m) for w in self._config.windows for m in self._config.methodologies]
        estimates = await asyncio.gather(*(self.compute(w, m, as_of) for w, m in pairs))
        for estimate in estimates:
            await self._store.save_volatility(estimate)
        logger.info(
            "Recomputed %d volatility estimates (%d insufficient)",
            len(estimates), sum(e.insufficient_data for e in estimates),
        )
        return list(estimates)

    def windows_by_closeness(self, days: float) -> list[int]:
        """Configured windows ordered by distance from ``days``; ties prefer the longer."""
        return sorted(self._config.windows, key=lambda w: (abs(w - days), -w))

    async def for_duration(
        self,
        days: float,
        methodology: Methodology = Methodology.LOG_RETURNS,
        as_of: date | None = None,
    ) -> VolatilityEstimate:
        """Estimate from the window nearest an option's days to expiry.

        Falls back to the next-nearest window while the nearer one is
        insufficient.

        Raises
        ------
        InsufficientDataError
            When no configured window has enough data.
        """
        last: VolatilityEstimate | None = None
        for window in self.windows_by_closeness(days):
            last = await self.compute(window, methodology, as_of)
            if not last.insufficient_data:
                return last
        raise InsufficientDataError(
            f"No volatility window has enough data for a {days:g}-day horizon",
            context={
                "window_days": last.window_days if last else None,
                "methodology": str(methodology),
                "sample_count": last.sample_count if last else 0,
            },
        )

    def _default_as_of(self) -> date:
        # Today's close does not exist yet
        return self._clock.now().date() - timedelta(days=1)
