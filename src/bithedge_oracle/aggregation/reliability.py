"""Per-source reliability weights.

Each source's weight is ``weight_prior * score`` clamped to
``[weight_floor, weight_ceiling]``. The score is an exponentially smoothed
product of three factors in ``[0, 1]``:

- success ratio over the last ``window`` fetch attempts
- latency factor: ``min(1, target / pXX latency)``
- deviation factor: ``exp(-last_deviation / deviation_scale)``

Weights only change influence in the Aggregator. Whether a source is
called at all is decided by its circuit breaker.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

import numpy as np

from bithedge_oracle.core.config import ReliabilityConfig

logger = logging.getLogger(__name__)


@dataclass
class _SourceStats:
    prior: float
    window: int
    outcomes: deque[bool] = field(init=False)
    latencies: deque[float] = field(init=False)
    score: float = 1.0
    last_deviation: float | None = None
    last_success_at: datetime | None = None

    def __post_init__(self) -> None:
        self.outcomes = deque(maxlen=self.window)
        self.latencies = deque(maxlen=self.window)


class ReliabilityTracker:
    """Maintains a moving weight per source.

    All mutators are synchronous so, under asyncio, updates to one source
    never interleave.
    """

    def __init__(self, config: ReliabilityConfig, priors: dict[str, float]) -> None:
        self._config = config
        self._stats: dict[str, _SourceStats] = {
            source_id: _SourceStats(prior=prior, window=config.window)
            for source_id, prior in priors.items()
        }

    @property
    def source_ids(self) -> list[str]:
        return list(self._stats)

    def record_success(self, source_id: str, latency: float, at: datetime) -> None:
        stats = self._get(source_id)
        stats.outcomes.append(True)
        stats.latencies.append(latency)
        stats.last_success_at = at

    def record_failure(self, source_id: str) -> None:
        self._get(source_id).outcomes.append(False)

    def record_deviations(self, deviations: dict[str, float]) -> None:
        """Store each contributor's relative distance from the consensus."""
        for source_id, deviation in deviations.items():
            if source_id in self._stats:
                self._stats[source_id].last_deviation = deviation

    def success_ratio(self, source_id: str) -> float:
        outcomes = self._get(source_id).outcomes
        if not outcomes:
            return 1.0
        return sum(outcomes) / len(outcomes)

    def latency_factor(self, source_id: str) -> float:
        latencies = self._get(source_id).latencies
        if not latencies:
            return 1.0
        pct = float(np.percentile(np.asarray(latencies), self._config.latency_percentile))
        if pct <= self._config.latency_target_seconds:
            return 1.0
        return self._config.latency_target_seconds / pct

    def deviation_factor(self, source_id: str) -> float:
        deviation = self._get(source_id).last_deviation
        if deviation is None:
            return 1.0
        return math.exp(-deviation / self._config.deviation_scale)

    def recompute(self) -> dict[str, float]:
        """Fold the latest observations into every score. Call once per cycle."""
        alpha = self._config.smoothing
        for source_id, stats in self._stats.items():
            raw = (
                self.success_ratio(source_id)
                * self.latency_factor(source_id)
                * self.deviation_factor(source_id)
            )
            stats.score = alpha * raw + (1 - alpha) * stats.score
        weights = self.weights()
        logger.debug("Recomputed source weights: %s", weights)
        return weights

    def weight(self, source_id: str) -> float:
        stats = self._get(source_id)
        return min(
            max(stats.prior * stats.score, self._config.weight_floor),
            self._config.weight_ceiling,
        )

    def weights(self) -> dict[str, float]:
        return {source_id: self.weight(source_id) for source_id in self._stats}

    def last_deviation(self, source_id: str) -> float | None:
        return self._get(source_id).last_deviation

    def last_success_at(self, source_id: str) -> datetime | None:
        return self._get(source_id).last_success_at

    def restore(
        self,
        source_id: str,
        weight: float,
        last_deviation: float | None,
        last_success_at: datetime | None,
    ) -> None:
        """Seed a source from a persisted SourceHealth snapshot."""
        if source_id not in self._stats:
            logger.info("Ignoring persisted health for unconfigured source %s", source_id)
            return
        stats = self._stats[source_id]
        stats.score = min(max(weight / stats.prior, 0.0), 1.0)
        stats.last_deviation = last_deviation
        stats.last_success_at = last_success_at

    def _get(self, source_id: str) -> _SourceStats:
        try:
            return self._stats[source_id]
        except KeyError:
            raise KeyError(f"Unknown source {source_id!r}") from None
