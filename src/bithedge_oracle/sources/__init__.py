"""bithedge_oracle.sources — Market-data adapters and response parsers."""

from bithedge_oracle.sources.base import SourceAdapter
from bithedge_oracle.sources.http import HttpSourceAdapter
from bithedge_oracle.sources.parsers import (
    HISTORICAL_PARSERS,
    SPOT_PARSERS,
    CoinGeckoMarketChartParser,
    CryptoCompareHistodayParser,
    DailyBar,
    FieldPathParser,
)
from bithedge_oracle.sources.registry import build_adapters

__all__ = [
    "SourceAdapter",
    "HttpSourceAdapter",
    "build_adapters",
    "DailyBar",
    "FieldPathParser",
    "CryptoCompareHistodayParser",
    "CoinGeckoMarketChartParser",
    "SPOT_PARSERS",
    "HISTORICAL_PARSERS",
]
