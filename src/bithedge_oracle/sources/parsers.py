"""Response parsers for the supported market-data providers.

A parser turns one provider's decoded JSON into numbers. Parsers read only
the fields they need, so additive schema changes are tolerated, and raise
``KeyError``/``IndexError``/``TypeError``/``ValueError`` when a required
field is missing or malformed. The adapter converts those into
``SourceError(kind="parse")``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any, Protocol, runtime_checkable


PathKey = str | int


@dataclass(frozen=True)
class DailyBar:
    """A parsed daily candle before it becomes a HistoricalClose."""

    day: date
    close: float
    open: float | None = None
    high: float | None = None
    low: float | None = None


@runtime_checkable
class SpotParser(Protocol):
    schema_versions: frozenset[int]

    def parse(self, payload: Any) -> float: ...


@runtime_checkable
class HistoricalParser(Protocol):
    schema_versions: frozenset[int]

    def parse(self, payload: Any) -> list[DailyBar]: ...


def _dig(payload: Any, path: tuple[PathKey, ...]) -> Any:
    node = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, list):
                raise TypeError(f"expected list at {key!r}, got {type(node).__name__}")
            node = node[key]
        else:
            if not isinstance(node, dict):
                raise TypeError(f"expected object at {key!r}, got {type(node).__name__}")
            node = node[key]
    return node


def _to_float(value: Any) -> float:
    # Exchanges send prices as both JSON numbers and strings
    if isinstance(value, bool) or value is None:
        raise ValueError(f"not a price: {value!r}")
    return float(value)


class FieldPathParser:
    """Extracts a price found at a fixed path of keys/indexes."""

    def __init__(self, *path: PathKey, schema_versions: frozenset[int] = frozenset({1})):
        self.path = path
        self.schema_versions = schema_versions

    def parse(self, payload: Any) -> float:
        return _to_float(_dig(payload, self.path))


class KrakenParser(FieldPathParser):
    """Kraken reports API errors in-band with HTTP 200."""

    def __init__(self) -> None:
        super().__init__("result", "XXBTZUSD", "c", 0)

    def parse(self, payload: Any) -> float:
        errors = payload.get("error") if isinstance(payload, dict) else None
        if errors:
            raise ValueError(f"kraken error: {errors}")
        return super().parse(payload)


class HuobiParser(FieldPathParser):
    def __init__(self) -> None:
        super().__init__("tick", "close")

    def parse(self, payload: Any) -> float:
        if isinstance(payload, dict) and payload.get("status") not in (None, "ok"):
            raise ValueError(f"huobi status {payload.get('status')!r}")
        return super().parse(payload)


class CryptoCompareHistodayParser:
    """``/data/v2/histoday`` — full OHLC, timestamps in seconds."""

    schema_versions = frozenset({1})

    def parse(self, payload: Any) -> list[DailyBar]:
        if isinstance(payload, dict) and payload.get("Response") == "Error":
            raise ValueError(f"cryptocompare error: {payload.get('Message')}")
        rows = _dig(payload, ("Data", "Data"))
        if not isinstance(rows, list):
            raise TypeError("Data.Data must be a list")
        bars = []
        for row in rows:
            bars.append(
                DailyBar(
                    day=datetime.fromtimestamp(int(row["time"]), UTC).date(),
                    close=_to_float(row["close"]),
                    open=_to_float(row["open"]),
                    high=_to_float(row["high"]),
                    low=_to_float(row["low"]),
                )
            )
        return bars


class CoinGeckoMarketChartParser:
    """``/coins/bitcoin/market_chart`` — close only, timestamps in ms.

    Several points can land on the same UTC day; the last one wins.
    """

    schema_versions = frozenset({1})

    def parse(self, payload: Any) -> list[DailyBar]:
        points = payload["prices"]
        if not isinstance(points, list):
            raise TypeError("prices must be a list")
        by_day: dict[date, float] = {}
        for ts_ms, price in points:
            day = datetime.fromtimestamp(int(ts_ms) / 1000, UTC).date()
            by_day[day] = _to_float(price)
        return [DailyBar(day=d, close=p) for d, p in sorted(by_day.items())]


SPOT_PARSERS: dict[str, SpotParser] = {
    "coingecko": FieldPathParser("bitcoin", "usd"),
    "binance": FieldPathParser("lastPrice"),
    "kraken": KrakenParser(),
    "coinbase": FieldPathParser("data", "amount"),
    "bitstamp": FieldPathParser("last"),
    "gemini": FieldPathParser("last"),
    "huobi": HuobiParser(),
    "bitfinex": FieldPathParser(6),
    "cryptocompare": FieldPathParser("USD"),
}

HISTORICAL_PARSERS: dict[str, HistoricalParser] = {
    "cryptocompare": CryptoCompareHistodayParser(),
    "coingecko": CoinGeckoMarketChartParser(),
}
