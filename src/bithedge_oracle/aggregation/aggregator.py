"""Weighted-median consensus with outlier rejection."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta

import numpy as np

from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.config import AggregationConfig
from bithedge_oracle.core.exceptions import InsufficientConsensusError
from bithedge_oracle.core.models import ConsensusPrice, PricePoint

logger = logging.getLogger(__name__)

# Scales a median absolute deviation to a normal-consistent std estimate
_MAD_TO_STD = 1.4826


def weighted_median(values: np.ndarray, weights: np.ndarray) -> float:
    """Weighted median of ``values``.

    When the cumulative weight lands exactly on half the total, the two
    straddling values are averaged, so equal weights reproduce the ordinary
    median.
    """
    if len(values) == 0:
        raise ValueError("weighted_median of empty input")
    order = np.argsort(values, kind="stable")
    v = np.asarray(values, dtype=float)[order]
    w = np.asarray(weights, dtype=float)[order]
    cum = np.cumsum(w)
    half = cum[-1] / 2.0
    idx = int(np.searchsorted(cum, half - 1e-12 * cum[-1]))
    if idx + 1 < len(v) and np.isclose(cum[idx], half, rtol=1e-12, atol=0.0):
        return float((v[idx] + v[idx + 1]) / 2.0)
    return float(v[idx])


class Aggregator:
    """Combines the freshest PricePoint per source into a ConsensusPrice.

    Algorithm
    ---------
    1. Keep the latest point per source; drop points older than
       ``staleness_seconds``.
    2. Weighted median of the survivors using reliability weights.
    3. Flag as outliers points farther from that median than
       ``outlier_deviation_multiple`` times the deviation scale, then take
       the weighted median again without them. The scale is the rolling
       std of recent consensus prices once ``min_history`` of them exist,
       otherwise a MAD-based std of the current points; either way it is
       floored at ``outlier_min_deviation_pct`` of the median.
    4. Confidence is the non-outlier weight over the total weight of every
       configured source.

    Fails closed with ``InsufficientConsensusError`` when fewer than
    ``min_sources`` remain after staleness filtering or after outlier removal.
    """

    def __init__(self, config: AggregationConfig, clock: Clock | None = None) -> None:
        self._config = config
        self._clock = clock or SystemClock()
        self._history: deque[float] = deque(maxlen=config.rolling_window)

    @property
    def history(self) -> list[float]:
        return list(self._history)

    def seed_history(self, prices: Iterable[float]) -> None:
        """Prime the rolling window, e.g. from persisted consensus snapshots."""
        for price in prices:
            self._history.append(float(price))

    def fresh_points(
        self, points: Iterable[PricePoint], as_of: datetime | None = None
    ) -> list[PricePoint]:
        """Latest point per source that was not stale at ``as_of`` (default now)."""
        cutoff = (as_of or self._clock.now()) - timedelta(seconds=self._config.staleness_seconds)
        latest: dict[str, PricePoint] = {}
        for p in points:
            current = latest.get(p.source_id)
            if current is None or p.observed_at > current.observed_at:
                latest[p.source_id] = p
        fresh = [p for p in latest.values() if p.observed_at >= cutoff]
        dropped = len(latest) - len(fresh)
        if dropped:
            logger.info("Discarded %d stale price point(s)", dropped)
        return fresh

    def aggregate(
        self,
        points: Iterable[PricePoint],
        weights: Mapping[str, float],
        as_of: datetime | None = None,
    ) -> ConsensusPrice:
        """Compute consensus.

        Parameters
        ----------
        points : Iterable[PricePoint]
            Candidate observations, possibly several per source.
        weights : Mapping[str, float]
            Weight for every *configured* source. Its sum is the confidence
            denominator. Points from sources absent here are ignored.
        as_of : datetime | None
            Instant staleness is judged against. A collection cycle passes
            its start time so waiting on a slow source never ages the
            points that arrived promptly. Defaults to now.
        """
        min_sources = self._config.min_sources
        fresh = [p for p in self.fresh_points(points, as_of) if weights.get(p.source_id, 0.0) > 0]
        if len(fresh) < min_sources:
            raise InsufficientConsensusError(
                f"Only {len(fresh)} fresh source(s), need {min_sources}",
                context={"contributing": len(fresh), "required": min_sources, "stage": "staleness"},
            )

        sources = [p.source_id for p in fresh]
        prices = np.array([p.price for p in fresh], dtype=float)
        w = np.array([weights[s] for s in sources], dtype=float)

        center = weighted_median(prices, w)
        threshold = self._config.outlier_deviation_multiple * self._deviation_scale(prices, w, center)
        is_outlier = np.abs(prices - center) > threshold
        outliers = frozenset(s for s, flag in zip(sources, is_outlier) if flag)
        if outliers:
            logger.warning(
                "Outliers excluded from consensus: %s (median %.2f, threshold %.2f)",
                sorted(outliers), center, threshold,
            )

        kept = ~is_outlier
        if int(kept.sum()) < min_sources:
            raise InsufficientConsensusError(
                f"Only {int(kept.sum())} non-outlier source(s), need {min_sources}",
                context={"contributing": int(kept.sum()), "required": min_sources, "stage": "outliers"},
            )

        price = weighted_median(prices[kept], w[kept])
        total_weight = float(sum(weights.values()))
        confidence = min(float(w[kept].sum()) / total_weight, 1.0)
        deviations = {s: abs(p - price) / price for s, p in zip(sources, prices)}

        self._history.append(price)
        return ConsensusPrice(
            price=price,
            confidence=confidence,
            contributing_sources=frozenset(s for s, k in zip(sources, kept) if k),
            outliers=outliers,
            deviations=deviations,
            computed_at=self._clock.now(),
        )

    def _deviation_scale(self, prices: np.ndarray, weights: np.ndarray, center: float) -> float:
        floor = self._config.outlier_min_deviation_pct * center
        if len(self._history) >= max(self._config.min_history, 2):
            scale = float(np.std(np.asarray(self._history), ddof=1))
        else:
            scale = _MAD_TO_STD * weighted_median(np.abs(prices - center), weights)
        return max(scale, floor)
