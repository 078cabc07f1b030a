"""Shared pytest fixtures for bithedge-oracle."""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import httpx
import pytest
import respx

from bithedge_oracle.core.config import (
    AggregationConfig,
    APIConfig,
    OracleConfig,
    SourceConfig,
    StorageConfig,
)
from bithedge_oracle.core.exceptions import SourceError
from bithedge_oracle.core.models import Capability, HistoricalClose, PricePoint
from bithedge_oracle.storage.store import SqliteStore


class FakeClock:
    """Hand-driven clock."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0.0, **kwargs: float) -> datetime:
        self._now += timedelta(seconds=seconds, **kwargs)
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when


class FakeAdapter:
    """In-process SourceAdapter with scripted responses.

    ``spot`` is a price, an exception instance, or a list of either
    consumed one call at a time (the last entry repeats).
    """

    def __init__(
        self,
        source_id: str,
        clock: FakeClock,
        spot: object = None,
        closes: object = None,
        capabilities: frozenset[Capability] = frozenset({Capability.SPOT}),
        delay: float = 0.0,
        latency: float = 0.1,
    ) -> None:
        self._source_id = source_id
        self._clock = clock
        self._spot = list(spot) if isinstance(spot, list) else [spot]
        self.closes = closes
        self._capabilities = capabilities
        self.delay = delay
        self.latency = latency
        self.spot_calls = 0
        self.historical_calls: list[tuple[date, date]] = []

    @property
    def source_id(self) -> str:
        return self._source_id

    @property
    def capabilities(self) -> frozenset[Capability]:
        return self._capabilities

    def set_spot(self, spot: object) -> None:
        self._spot = list(spot) if isinstance(spot, list) else [spot]

    async def fetch_spot(self) -> PricePoint:
        self.spot_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        value = self._spot.pop(0) if len(self._spot) > 1 else self._spot[0]
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise SourceError("no price scripted", kind=SourceError.NETWORK, provider=self._source_id)
        return PricePoint(
            source_id=self._source_id,
            price=value,
            observed_at=self._clock.now(),
            fetch_latency=self.latency,
        )

    async def fetch_historical(self, start: date, end: date) -> list[HistoricalClose]:
        self.historical_calls.append((start, end))
        if isinstance(self.closes, Exception):
            raise self.closes
        return [c for c in (self.closes or []) if start <= c.date <= end]


def network_error(source_id: str) -> SourceError:
    return SourceError("connection refused", kind=SourceError.NETWORK, provider=source_id)


def rate_limited(source_id: str) -> SourceError:
    return SourceError("429", kind=SourceError.RATE_LIMITED, provider=source_id)


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def spot_sources() -> list[SourceConfig]:
    return [
        SourceConfig(
            provider_id=sid,
            base_url=f"https://{sid}.test",
            spot_path="/ticker",
            parser="bitstamp",
            weight_prior=0.25,
        )
        for sid in ("alpha", "bravo", "charlie", "delta")
    ]


@pytest.fixture
def oracle_config(tmp_path, spot_sources) -> OracleConfig:
    """Four equal-prior spot sources plus one historical source."""
    historical = SourceConfig(
        provider_id="history",
        base_url="https://history.test",
        spot_path="/price",
        historical_path="/histoday?limit={limit}&toTs={to_ts}",
        parser="cryptocompare",
        capabilities=[Capability.HISTORICAL],
        weight_prior=0.2,
    )
    return OracleConfig(
        sources=[*spot_sources, historical],
        aggregation=AggregationConfig(min_sources=2),
        storage=StorageConfig(sqlite_path=":memory:"),
        api=APIConfig(run_scheduler=False),
    )


@pytest.fixture
def storage_config() -> StorageConfig:
    return StorageConfig(sqlite_path=":memory:")


@pytest.fixture
async def store(storage_config: StorageConfig, clock) -> SqliteStore:
    """An in-memory SqliteStore ranking cryptocompare over coingecko."""
    s = SqliteStore(storage_config, source_priority=["cryptocompare", "coingecko"], clock=clock)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def make_close():
    """Factory for HistoricalClose with overridable defaults."""

    def _make(day: date, price: float = 60000.0, **overrides) -> HistoricalClose:
        defaults = dict(
            date=day,
            price=price,
            source_id="cryptocompare",
            stored_at=datetime.combine(day + timedelta(days=1), datetime.min.time(), UTC),
        )
        defaults.update(overrides)
        return HistoricalClose(**defaults)

    return _make


@pytest.fixture
def make_adapter(clock: FakeClock):
    def _make(source_id: str, spot: object = None, **kwargs) -> FakeAdapter:
        return FakeAdapter(source_id, clock, spot=spot, **kwargs)

    return _make


# --- Integration: real HTTP adapters and SQLite files, mocked network ---

SPOT_PRICES = {"s1": 60000, "s2": 60050, "s3": 60100, "s4": 59950, "s5": 80000}


def histoday(days: int, end: date = date(2026, 3, 14)) -> dict:
    """A CryptoCompare histoday payload alternating between two closes."""
    rows = []
    for i in reversed(range(days)):
        day = end - timedelta(days=i)
        close = 60000.0 if i % 2 else 61000.0
        rows.append(
            {
                "time": int(datetime.combine(day, datetime.min.time(), UTC).timestamp()),
                "open": close,
                "high": close * 1.01,
                "low": close * 0.99,
                "close": close,
            }
        )
    return {"Response": "Success", "Data": {"Data": rows}}


@pytest.fixture
def integration_config(tmp_path: Path) -> OracleConfig:
    """Five equal-prior spot exchanges and one daily-history provider."""
    spot = [
        SourceConfig(
            provider_id=sid,
            base_url=f"https://{sid}.test",
            spot_path="/ticker",
            parser="bitstamp",
            weight_prior=0.2,
        )
        for sid in SPOT_PRICES
    ]
    history = SourceConfig(
        provider_id="history",
        base_url="https://history.test",
        spot_path="/price",
        historical_path="/histoday?limit={limit}&toTs={to_ts}",
        parser="cryptocompare",
        capabilities=[Capability.HISTORICAL],
        weight_prior=0.2,
    )
    return OracleConfig(
        sources=[*spot, history],
        aggregation=AggregationConfig(min_sources=3),
        storage=StorageConfig(sqlite_path=str(tmp_path / "oracle.db")),
        api=APIConfig(run_scheduler=False),
    )


@pytest.fixture
def exchanges():
    """Mock every configured endpoint. Yields routes keyed by source id."""
    with respx.mock(assert_all_called=False) as router:
        routes = {
            sid: router.get(f"https://{sid}.test/ticker").mock(
                return_value=httpx.Response(200, json={"last": str(price)})
            )
            for sid, price in SPOT_PRICES.items()
        }
        routes["history"] = router.get("https://history.test/histoday").mock(
            return_value=httpx.Response(200, json=histoday(60))
        )
        yield routes
