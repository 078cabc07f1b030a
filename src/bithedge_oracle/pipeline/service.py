"""OracleService: wires sources, aggregation, storage and analytics together.

Write-side jobs (``run_spot_cycle``, ``run_daily_close``, ``backfill``,
``compact``) are driven by the Scheduler or the CLI. The read side
(``get_consensus_price``, ``get_volatility``, ``get_premium``,
``get_protection_quote``, ``health``, ``price_range``) never fetches or
writes anything.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import UTC, date, datetime, time, timedelta

import httpx

from bithedge_oracle.aggregation.aggregator import Aggregator
from bithedge_oracle.aggregation.reliability import ReliabilityTracker
from bithedge_oracle.analytics.premium import PremiumEngine
from bithedge_oracle.analytics.volatility import VolatilityEngine
from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.config import OracleConfig
from bithedge_oracle.core.exceptions import (
    DataIntegrityError,
    InsufficientConsensusError,
    InsufficientDataError,
    InvalidInputError,
)
from bithedge_oracle.core.models import (
    AppendOutcome,
    Capability,
    ConsensusPrice,
    HistoricalClose,
    Methodology,
    OptionType,
    PremiumQuote,
    PriceRange,
    SourceHealth,
    VolatilityEstimate,
)
from bithedge_oracle.resilience.controller import ResilienceController
from bithedge_oracle.sources.base import SourceAdapter
from bithedge_oracle.sources.registry import build_adapters
from bithedge_oracle.storage.store import CONSENSUS_SOURCE_ID, SqliteStore, create_store

logger = logging.getLogger(__name__)


class OracleService:
    """One oracle pipeline over one store.

    Parameters
    ----------
    config : OracleConfig
        Full configuration.
    store : SqliteStore
        Initialized store.
    adapters : Mapping[str, SourceAdapter]
        Source adapters keyed by provider id.
    clock : Clock | None
        Time source shared by every component.
    client : httpx.AsyncClient | None
        HTTP client to close with the service, when the service owns it.
    """

    def __init__(
        self,
        config: OracleConfig,
        store: SqliteStore,
        adapters: Mapping[str, SourceAdapter],
        clock: Clock | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock or SystemClock()
        self._client = client

        priors = {sid: config.source(sid).weight_prior for sid in adapters}
        self.tracker = ReliabilityTracker(config.reliability, priors)
        self.controller = ResilienceController.from_config(
            config, adapters, tracker=self.tracker, clock=self.clock
        )
        self.aggregator = Aggregator(config.aggregation, clock=self.clock)
        self.volatility = VolatilityEngine(config.volatility, store=store, clock=self.clock)
        self.premium = PremiumEngine(config.premium, clock=self.clock)

    @classmethod
    async def create(
        cls,
        config: OracleConfig,
        client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> OracleService:
        """Build adapters and store from config, then restore persisted state."""
        owned = client is None
        if owned:
            client = httpx.AsyncClient(follow_redirects=True)
        adapters = build_adapters(config, client, clock=clock)
        historical = [s.provider_id for s in config.sources_for(Capability.HISTORICAL)]
        store = await create_store(config.storage, source_priority=historical, clock=clock)
        service = cls(config, store, adapters, clock=clock, client=client if owned else None)
        await service.start()
        return service

    async def start(self) -> None:
        """Reload SourceHealth and prime the aggregator's rolling window."""
        snapshots = await self.store.load_health()
        if snapshots:
            self.controller.restore(snapshots)
            logger.info("Restored health for %d sources", len(snapshots))

        now = self.clock.now()
        recent = await self.store.intraday(now - timedelta(days=1), now)
        window = self.config.aggregation.rolling_window
        self.aggregator.seed_history(p.price for p in recent[-window:])

    async def close(self) -> None:
        await self.store.close()
        if self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> OracleService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # --- Write side ---

    async def run_spot_cycle(self) -> ConsensusPrice | None:
        """Collect, aggregate and persist one consensus.

        Returns None when consensus could not be formed; the reason is
        logged and the next cycle tries again.
        """
        cycle_started = self.clock.now()
        points = await self.controller.collect_spot()
        # Historical-only sources never quote spot and must not dilute confidence
        spot_ids = self.controller.sources_for(Capability.SPOT)
        weights = {sid: w for sid, w in self.tracker.weights().items() if sid in spot_ids}
        consensus: ConsensusPrice | None = None
        try:
            consensus = self.aggregator.aggregate(points, weights, as_of=cycle_started)
        except InsufficientConsensusError as e:
            logger.warning("No consensus this cycle: %s (%s)", e, e.context)
        else:
            self.tracker.record_deviations(consensus.deviations)
            await self.store.record_consensus(consensus)
            logger.info(
                "Consensus %.2f from %d sources (confidence %.2f, %d outliers)",
                consensus.price,
                len(consensus.contributing_sources),
                consensus.confidence,
                len(consensus.outliers),
            )

        self.tracker.recompute()
        await self.store.save_health(self.controller.health_snapshot())
        return consensus

    async def run_daily_close(self) -> dict[str, int]:
        """Record recent daily closes, then refresh volatility and compact.

        Re-fetches ``daily_lookback_days`` so a missed run heals itself.
        When no historical source answers for yesterday, yesterday's last
        intraday consensus is recorded instead at the lowest priority.
        """
        now = self.clock.now()
        yesterday = now.astimezone(UTC).date() - timedelta(days=1)
        start = yesterday - timedelta(days=self.config.scheduler.daily_lookback_days - 1)

        closes = await self._fetch_closes(start, yesterday)
        if not any(c.date == yesterday for c in closes):
            fallback = await self._consensus_close(yesterday)
            if fallback is not None:
                logger.warning(
                    "No historical source for %s; using intraday consensus close", yesterday
                )
                closes.append(fallback)

        counts = await self._append_all(closes)
        if counts[AppendOutcome.ACCEPTED]:
            await self.volatility.recompute_all(as_of=yesterday)
        await self.store.compact(now)
        return {str(k): v for k, v in counts.items()}

    async def backfill(self, days: int | None = None) -> dict[str, int]:
        """Fill the store with up to ``days`` of closes ending yesterday."""
        if days is None:
            days = self.config.scheduler.backfill_days
        if days < 1:
            raise InvalidInputError(
                "backfill days must be >= 1", context={"field": "days", "value": days}
            )
        yesterday = self.clock.now().astimezone(UTC).date() - timedelta(days=1)
        closes = await self._fetch_closes(yesterday - timedelta(days=days - 1), yesterday)
        counts = await self._append_all(closes)
        if counts[AppendOutcome.ACCEPTED]:
            await self.volatility.recompute_all(as_of=yesterday)
        logger.info("Backfill of %d days: %s", days, dict(counts))
        return {str(k): v for k, v in counts.items()}

    async def compact(self) -> dict[str, int]:
        return await self.store.compact(self.clock.now())

    # --- Read side ---

    async def get_consensus_price(self) -> ConsensusPrice:
        """Latest consensus, if still within the staleness threshold.

        Raises
        ------
        InsufficientConsensusError
            When no consensus has been recorded recently. A stale price is
            never returned in its place.
        """
        consensus = await self.store.latest_consensus()
        max_age = self.config.aggregation.staleness_seconds
        if consensus is None:
            raise InsufficientConsensusError(
                "No consensus price has been recorded",
                context={"contributing": 0, "required": self.config.aggregation.min_sources},
            )
        age = (self.clock.now() - consensus.computed_at).total_seconds()
        if age > max_age:
            raise InsufficientConsensusError(
                f"Latest consensus is {age:.0f}s old (limit {max_age:.0f}s)",
                context={
                    "contributing": len(consensus.contributing_sources),
                    "required": self.config.aggregation.min_sources,
                    "age_seconds": age,
                },
            )
        return consensus

    async def get_volatility(
        self,
        window_days: int,
        methodology: Methodology | str = Methodology.LOG_RETURNS,
    ) -> VolatilityEstimate:
        """Latest estimate for one window and methodology.

        Uses the persisted estimate when it is as of yesterday, otherwise
        computes it from stored closes without persisting.

        Raises
        ------
        InvalidInputError
            For a window under 2 days or an unknown methodology.
        InsufficientDataError
            When the window does not have enough closes.
        """
        methodology = _methodology(methodology)
        if window_days < 2:
            raise InvalidInputError(
                "window_days must be >= 2",
                context={"field": "window_days", "value": window_days},
            )
        estimate = await self.store.latest_volatility(window_days, methodology)
        yesterday = self.clock.now().astimezone(UTC).date() - timedelta(days=1)
        if estimate is None or estimate.as_of is None or estimate.as_of < yesterday:
            estimate = await self.volatility.compute(window_days, methodology)
        if estimate.insufficient_data:
            raise InsufficientDataError(
                f"{window_days}-day {methodology} window has {estimate.sample_count} closes",
                context={
                    "window_days": window_days,
                    "methodology": str(methodology),
                    "sample_count": estimate.sample_count,
                },
            )
        return estimate

    async def get_premium(
        self,
        option_type: OptionType | str,
        strike: float,
        expiry: datetime | date,
        amount: float = 1.0,
        methodology: Methodology | str = Methodology.LOG_RETURNS,
        include_scenarios: bool = False,
    ) -> PremiumQuote:
        """Price an option on the current consensus.

        A bare ``date`` expiry means 00:00 UTC on that day.

        Raises
        ------
        InvalidInputError
            For an expired option or malformed parameters.
        InsufficientConsensusError
            When there is no fresh consensus price.
        InsufficientDataError
            When no volatility window has enough data.
        """
        methodology = _methodology(methodology)
        if not isinstance(expiry, datetime):
            expiry = datetime.combine(expiry, time(0), UTC)
        elif expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=UTC)
        days = (expiry - self.clock.now()).total_seconds() / 86400.0
        if days <= 0:
            raise InvalidInputError(
                "Option has already expired",
                context={"field": "expiry", "value": expiry.isoformat()},
            )
        spot = await self.get_consensus_price()
        volatility = await self.volatility.for_duration(days, methodology)
        return self.premium.quote(
            option_type,
            spot.price,
            strike,
            self.premium.years(days),
            volatility,
            amount=amount,
            include_scenarios=include_scenarios,
        )

    async def get_protection_quote(
        self,
        protected_value_pct: float,
        expiration_days: float,
        amount: float = 1.0,
        option_type: OptionType | str = OptionType.PUT,
        methodology: Methodology | str = Methodology.LOG_RETURNS,
    ) -> PremiumQuote:
        """Protection struck at a percentage of the current consensus price."""
        methodology = _methodology(methodology)
        if expiration_days <= 0:
            raise InvalidInputError(
                "expiration_days must be > 0",
                context={"field": "expiration_days", "value": expiration_days},
            )
        spot = await self.get_consensus_price()
        volatility = await self.volatility.for_duration(expiration_days, methodology)
        return self.premium.protection_quote(
            spot.price,
            protected_value_pct,
            expiration_days,
            volatility,
            amount=amount,
            option_type=option_type,
        )

    def health(self) -> list[SourceHealth]:
        return self.controller.health_snapshot()

    async def stored_health(self) -> list[SourceHealth]:
        """Health as last persisted by whichever process runs the cycles.

        Sources with no stored snapshot fall back to this process's view.
        """
        stored = {h.source_id: h for h in await self.store.load_health()}
        return [stored.get(h.source_id, h) for h in self.controller.health_snapshot()]

    async def price_range(self, hours: int = 24) -> PriceRange:
        """High and low of the recorded consensus over the trailing ``hours``.

        Raises
        ------
        InsufficientConsensusError
            When nothing was recorded in that period.
        """
        end = self.clock.now()
        start = end - timedelta(hours=hours)
        rows = await self.store.intraday(start, end)
        if not rows:
            raise InsufficientConsensusError(
                f"No consensus recorded in the last {hours}h",
                context={"contributing": 0, "required": 1},
            )
        return PriceRange(
            start=start,
            end=end,
            high=max(r.high if r.high is not None else r.price for r in rows),
            low=min(r.low if r.low is not None else r.price for r in rows),
            sample_count=sum(r.sample_count for r in rows),
        )

    async def volatility_trend(self, samples: int) -> tuple[float | None, list[float]]:
        """Latest shortest-window log-return estimate and the ones before it."""
        window = min(self.config.volatility.windows)
        history = await self.store.volatility_history(
            window, Methodology.LOG_RETURNS, samples + 1
        )
        values = [e.value for e in history if e.value is not None]
        if not values:
            return None, []
        return values[0], values[1:]

    # --- Internals ---

    async def _fetch_closes(self, start: date, end: date) -> list[HistoricalClose]:
        result = await self.controller.fetch_historical(start, end)
        if result is None:
            return []
        source_id, closes = result
        logger.info("Fetched %d closes from %s (%s..%s)", len(closes), source_id, start, end)
        return list(closes)

    async def _consensus_close(self, day: date) -> HistoricalClose | None:
        start = datetime.combine(day, time(0), UTC)
        ticks = await self.store.intraday(start, start + timedelta(days=1) - timedelta(microseconds=1))
        if not ticks:
            return None
        return HistoricalClose(
            date=day,
            price=ticks[-1].price,
            source_id=CONSENSUS_SOURCE_ID,
            stored_at=self.clock.now(),
            asset=self.config.storage.asset,
            open=ticks[0].price,
            high=max(t.high if t.high is not None else t.price for t in ticks),
            low=min(t.low if t.low is not None else t.price for t in ticks),
        )

    async def _append_all(self, closes: Sequence[HistoricalClose]) -> Counter:
        counts: Counter = Counter()
        for close in closes:
            try:
                outcome = await self.store.append_close(close)
            except DataIntegrityError as e:
                logger.error("Dropped close for %s from %s: %s", close.date, close.source_id, e)
                counts["dropped"] += 1
                continue
            counts[outcome] += 1
        return counts


def _methodology(value: Methodology | str) -> Methodology:
    try:
        return Methodology(value)
    except ValueError:
        raise InvalidInputError(
            f"Unknown methodology {value!r}",
            context={"field": "methodology", "value": value},
        ) from None
