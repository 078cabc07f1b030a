"""HTTP source adapter — one configured provider over httpx.

Each adapter owns an ``aiolimiter.AsyncLimiter`` token bucket sized from
``requests_per_second`` and shares the process-wide ``httpx.AsyncClient``.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import UTC, date, datetime, timedelta
from datetime import time as dt_time
from typing import Any

import httpx
from aiolimiter import AsyncLimiter

from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.config import SourceConfig
from bithedge_oracle.core.exceptions import SourceError
from bithedge_oracle.core.models import Capability, HistoricalClose, PricePoint
from bithedge_oracle.sources.parsers import HistoricalParser, SpotParser

logger = logging.getLogger(__name__)

_USER_AGENT = "bithedge-oracle/0.1"
_PARSE_ERRORS = (KeyError, IndexError, TypeError, ValueError)

# CoinGecko's public market_chart endpoint serves at most one year of dailies
_MAX_HISTORY_DAYS = 365


class HttpSourceAdapter:
    """Fetches and normalizes prices from one provider.

    Parameters
    ----------
    config : SourceConfig
        Endpoint, paths, rate and timeout for this provider.
    client : httpx.AsyncClient
        Shared HTTP client. The adapter never closes it.
    spot_parser : SpotParser
        Extracts the spot price from the spot response.
    historical_parser : HistoricalParser | None
        Required when the source has the historical capability.
    clock : Clock | None
        Time source for ``observed_at`` and "today". Defaults to wall clock.
    asset : str
        Asset code written into historical closes.
    """

    def __init__(
        self,
        config: SourceConfig,
        client: httpx.AsyncClient,
        spot_parser: SpotParser,
        historical_parser: HistoricalParser | None = None,
        clock: Clock | None = None,
        asset: str = "BTC",
    ) -> None:
        self._config = config
        self._client = client
        self._spot_parser = spot_parser
        self._historical_parser = historical_parser
        self._clock = clock or SystemClock()
        self._asset = asset
        self._limiter = AsyncLimiter(max_rate=config.requests_per_second, time_period=1.0)

    @property
    def source_id(self) -> str:
        return self._config.provider_id

    @property
    def capabilities(self) -> frozenset[Capability]:
        return frozenset(self._config.capabilities)

    @property
    def config(self) -> SourceConfig:
        return self._config

    async def fetch_spot(self) -> PricePoint:
        started = time.monotonic()
        payload = await self._get_json(self._config.base_url + self._config.spot_path)
        latency = time.monotonic() - started

        try:
            price = self._spot_parser.parse(payload)
        except _PARSE_ERRORS as e:
            raise self._parse_error(f"unexpected spot response: {e}") from e
        if not (math.isfinite(price) and price > 0):
            raise self._parse_error(f"invalid spot price {price}")

        return PricePoint(
            source_id=self.source_id,
            price=price,
            observed_at=self._clock.now(),
            fetch_latency=latency,
        )

    async def fetch_historical(self, start: date, end: date) -> list[HistoricalClose]:
        """Fetch completed daily closes in ``[start, end]``.

        Today's (unfinished) candle is never returned. Bars with a
        non-positive close are rejected here, with a warning, so they never
        reach the store.
        """
        if self._historical_parser is None or not self._config.historical_path:
            raise SourceError(
                f"{self.source_id} has no historical endpoint",
                kind=SourceError.PARSE,
                provider=self.source_id,
            )
        now = self._clock.now()
        today = now.date()
        end = min(end, today - timedelta(days=1))
        if end < start:
            return []

        path = self._config.historical_path.format(
            days=min((today - start).days + 1, _MAX_HISTORY_DAYS),
            limit=(end - start).days,
            to_ts=int(datetime.combine(end, dt_time(23, 59, 59), UTC).timestamp()),
        )
        params = {"api_key": self._config.api_key} if self._config.api_key else None
        payload = await self._get_json(self._config.base_url + path, params=params)

        try:
            bars = self._historical_parser.parse(payload)
        except _PARSE_ERRORS as e:
            raise self._parse_error(f"unexpected historical response: {e}") from e

        closes: list[HistoricalClose] = []
        for bar in bars:
            if not start <= bar.day <= end:
                continue
            if not bar.close > 0:
                logger.warning(
                    "Rejecting non-positive close %s from %s for %s",
                    bar.close, self.source_id, bar.day,
                )
                continue
            has_range = bar.high is not None and bar.low is not None and bar.high >= bar.low > 0
            closes.append(
                HistoricalClose(
                    date=bar.day,
                    price=bar.close,
                    source_id=self.source_id,
                    stored_at=now,
                    asset=self._asset,
                    open=bar.open if bar.open and bar.open > 0 else None,
                    high=bar.high if has_range else None,
                    low=bar.low if has_range else None,
                )
            )
        return sorted(closes, key=lambda c: c.date)

    async def _get_json(self, url: str, params: dict[str, str] | None = None) -> Any:
        """Single GET with no retry. Every failure becomes a SourceError."""
        async with self._limiter:
            try:
                response = await self._client.get(
                    url,
                    params=params,
                    headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
                    timeout=self._config.timeout_seconds,
                )
            except httpx.TimeoutException as e:
                raise SourceError(
                    f"Timeout fetching {url}",
                    kind=SourceError.TIMEOUT,
                    provider=self.source_id,
                    context={"url": url},
                ) from e
            except httpx.RequestError as e:
                raise SourceError(
                    f"Request to {url} failed: {e}",
                    kind=SourceError.NETWORK,
                    provider=self.source_id,
                    context={"url": url},
                ) from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise SourceError(
                f"Rate limited by {self.source_id}",
                kind=SourceError.RATE_LIMITED,
                provider=self.source_id,
                context={
                    "url": url,
                    "status_code": 429,
                    "retry_after": int(retry_after) if retry_after and retry_after.isdigit() else None,
                },
            )
        if response.status_code != 200:
            raise SourceError(
                f"HTTP {response.status_code} from {url}",
                kind=SourceError.NETWORK,
                provider=self.source_id,
                context={"url": url, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise self._parse_error(f"invalid JSON from {url}") from e

    def _parse_error(self, message: str) -> SourceError:
        return SourceError(message, kind=SourceError.PARSE, provider=self.source_id)
