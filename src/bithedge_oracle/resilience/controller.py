"""Guards every source call with a circuit breaker and orders fallbacks.

Adapter errors stop here: callers get a value, a still-fresh last-known
value, or ``None``. Nothing is retried inside a call; a failing source is
tried again only when its breaker lets a call through on a later cycle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import date, timedelta
from typing import TypeVar

from bithedge_oracle.aggregation.reliability import ReliabilityTracker
from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.config import OracleConfig
from bithedge_oracle.core.exceptions import SourceError
from bithedge_oracle.core.models import Capability, HistoricalClose, PricePoint, SourceHealth
from bithedge_oracle.resilience.breaker import CircuitBreaker
from bithedge_oracle.sources.base import SourceAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResilienceController:
    """Circuit breakers, last-known-good cache and fallback chains.

    Parameters
    ----------
    adapters : Mapping[str, SourceAdapter]
        Adapters keyed by source id.
    breakers : Mapping[str, CircuitBreaker]
        One breaker per adapter.
    priorities : Mapping[Capability, list[str]]
        Fallback order per capability.
    max_wait_seconds : float
        Upper bound on any single call. Doubles as the staleness limit
        for reusing a last-known spot price.
    tracker : ReliabilityTracker | None
        Receives success/failure/latency observations.
    clock : Clock | None
        Time source. Defaults to wall clock.
    """

    def __init__(
        self,
        adapters: Mapping[str, SourceAdapter],
        breakers: Mapping[str, CircuitBreaker],
        priorities: Mapping[Capability, list[str]],
        max_wait_seconds: float,
        tracker: ReliabilityTracker | None = None,
        clock: Clock | None = None,
    ) -> None:
        missing = set(adapters) - set(breakers)
        if missing:
            raise ValueError(f"No circuit breaker for sources: {sorted(missing)}")
        self._adapters = dict(adapters)
        self._breakers = dict(breakers)
        self._priorities = {cap: list(ids) for cap, ids in priorities.items()}
        self._max_wait = max_wait_seconds
        self._tracker = tracker
        self._clock = clock or SystemClock()
        self._last_known: dict[str, PricePoint] = {}
        self._spot_in_flight: set[str] = set()

    @classmethod
    def from_config(
        cls,
        config: OracleConfig,
        adapters: Mapping[str, SourceAdapter],
        tracker: ReliabilityTracker | None = None,
        clock: Clock | None = None,
    ) -> ResilienceController:
        clock = clock or SystemClock()
        cb = config.circuit_breaker
        breakers = {}
        for source_id in adapters:
            source = config.source(source_id)
            breakers[source_id] = CircuitBreaker(
                source_id=source_id,
                failure_threshold=cb.failure_threshold,
                cooldown_seconds=cb.cooldown_seconds,
                max_cooldown_seconds=cb.max_cooldown_seconds,
                rate_limit_cooldown_seconds=(
                    source.rate_limit_cooldown_seconds or cb.rate_limit_cooldown_seconds
                ),
                clock=clock,
            )
        priorities = {
            cap: [s.provider_id for s in config.sources_for(cap) if s.provider_id in adapters]
            for cap in Capability
        }
        return cls(
            adapters,
            breakers,
            priorities,
            max_wait_seconds=config.aggregation.staleness_seconds,
            tracker=tracker,
            clock=clock,
        )

    def breaker(self, source_id: str) -> CircuitBreaker:
        return self._breakers[source_id]

    def sources_for(self, capability: Capability) -> list[str]:
        return list(self._priorities.get(capability, []))

    def last_known(self, source_id: str) -> PricePoint | None:
        """Cached spot point for a source, if still within the staleness bound."""
        point = self._last_known.get(source_id)
        if point is None:
            return None
        if self._clock.now() - point.observed_at > timedelta(seconds=self._max_wait):
            return None
        return point

    # --- Spot ---

    async def fetch_spot(self, source_id: str) -> PricePoint | None:
        """One guarded spot call. Never raises SourceError.

        While an earlier call to the same source is still pending (an
        overlapping cycle), no second call is made and the last-known point
        stands in.
        """
        if source_id in self._spot_in_flight:
            logger.debug("Spot call to %s still pending, using last-known point", source_id)
            return self.last_known(source_id)
        self._spot_in_flight.add(source_id)
        try:
            point = await self._guarded(source_id, lambda adapter: adapter.fetch_spot())
        finally:
            self._spot_in_flight.discard(source_id)
        if point is None:
            return self.last_known(source_id)
        self._last_known[source_id] = point
        return point

    async def collect_spot(self) -> list[PricePoint]:
        """Fetch every spot source concurrently.

        Each call is bounded by ``max_wait_seconds``, so the whole cycle is
        too. A source that is slow, failing or short-circuited contributes
        its last-known point when that is still fresh, otherwise nothing.
        """
        source_ids = self.sources_for(Capability.SPOT)
        results = await asyncio.gather(*(self.fetch_spot(sid) for sid in source_ids))
        points = [p for p in results if p is not None]
        logger.debug("Collected %d/%d spot points", len(points), len(source_ids))
        return points

    async def fetch_spot_with_fallback(self) -> PricePoint | None:
        """First available spot price, walking the spot priority list."""
        result = await self.first_available(Capability.SPOT, lambda adapter: adapter.fetch_spot())
        if result is None:
            return None
        source_id, point = result
        self._last_known[source_id] = point
        return point

    # --- Historical ---

    async def fetch_historical(
        self, start: date, end: date
    ) -> tuple[str, list[HistoricalClose]] | None:
        """Daily closes from the highest-priority historical source that answers."""
        return await self.first_available(
            Capability.HISTORICAL,
            lambda adapter: adapter.fetch_historical(start, end),
        )

    # --- Fallback chain ---

    async def first_available(
        self,
        capability: Capability,
        operation: Callable[[SourceAdapter], Awaitable[T]],
    ) -> tuple[str, T] | None:
        """Run ``operation`` against sources in priority order until one succeeds.

        Open circuits are skipped without a call. Returns ``None`` once
        every source has been skipped or has failed.
        """
        for source_id in self.sources_for(capability):
            result = await self._guarded(source_id, operation)
            if result is not None:
                return source_id, result
        logger.warning("No %s source available", capability.value)
        return None

    # --- Health ---

    def health(self, source_id: str) -> SourceHealth:
        breaker = self._breakers[source_id]
        tracker = self._tracker
        return SourceHealth(
            source_id=source_id,
            weight=tracker.weight(source_id) if tracker else 1.0,
            consecutive_failures=breaker.consecutive_failures,
            circuit_state=breaker.state,
            cooldown_seconds=breaker.current_cooldown,
            opened_at=breaker.opened_at,
            last_success_at=tracker.last_success_at(source_id) if tracker else None,
            last_deviation=tracker.last_deviation(source_id) if tracker else None,
        )

    def health_snapshot(self) -> list[SourceHealth]:
        return [self.health(source_id) for source_id in self._adapters]

    def restore(self, snapshots: list[SourceHealth]) -> None:
        """Reload breaker and weight state persisted by a previous process."""
        for health in snapshots:
            breaker = self._breakers.get(health.source_id)
            if breaker is None:
                continue
            breaker.restore(
                health.circuit_state,
                health.consecutive_failures,
                health.cooldown_seconds,
                health.opened_at,
            )
            if self._tracker is not None:
                self._tracker.restore(
                    health.source_id,
                    health.weight,
                    health.last_deviation,
                    health.last_success_at,
                )

    # --- Internals ---

    async def _guarded(
        self,
        source_id: str,
        operation: Callable[[SourceAdapter], Awaitable[T]],
    ) -> T | None:
        breaker = self._breakers[source_id]
        if not breaker.allow_request():
            logger.debug("Circuit %s for %s, short-circuiting", breaker.state.value, source_id)
            return None

        started = self._clock.now()
        try:
            result = await asyncio.wait_for(operation(self._adapters[source_id]), self._max_wait)
        except SourceError as e:
            self._on_failure(source_id, e)
            return None
        except TimeoutError:
            self._on_failure(
                source_id,
                SourceError(
                    f"{source_id} exceeded {self._max_wait:.0f}s",
                    kind=SourceError.TIMEOUT,
                    provider=source_id,
                ),
            )
            return None
        except asyncio.CancelledError:
            # Abandoned on shutdown: no outcome is recorded
            breaker.abandon_trial()
            raise

        breaker.record_success()
        if self._tracker is not None:
            latency = getattr(result, "fetch_latency", None)
            if latency is None:
                latency = (self._clock.now() - started).total_seconds()
            self._tracker.record_success(source_id, latency, self._clock.now())
        return result

    def _on_failure(self, source_id: str, error: SourceError) -> None:
        logger.warning("Source %s failed (%s): %s", source_id, error.kind, error)
        self._breakers[source_id].record_failure(
            rate_limited=error.kind == SourceError.RATE_LIMITED
        )
        if self._tracker is not None:
            self._tracker.record_failure(source_id)
