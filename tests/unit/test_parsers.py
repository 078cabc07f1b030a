"""Tests for bithedge_oracle.sources.parsers."""

from datetime import date

import pytest

from bithedge_oracle.sources.parsers import (
    HISTORICAL_PARSERS,
    SPOT_PARSERS,
    CoinGeckoMarketChartParser,
    CryptoCompareHistodayParser,
    FieldPathParser,
)


class TestSpotParsers:
    @pytest.mark.parametrize(
        "name, payload",
        [
            ("coingecko", {"bitcoin": {"usd": 60123.5}}),
            ("binance", {"symbol": "BTCUSD", "lastPrice": "60123.50"}),
            ("kraken", {"error": [], "result": {"XXBTZUSD": {"c": ["60123.5", "0.01"]}}}),
            ("coinbase", {"data": {"base": "BTC", "currency": "USD", "amount": "60123.5"}}),
            ("bitstamp", {"last": "60123.5"}),
            ("gemini", {"last": "60123.5", "bid": "60120"}),
            ("huobi", {"status": "ok", "tick": {"close": 60123.5}}),
            ("bitfinex", [60120, 1.2, 60125, 2.1, -50, -0.01, 60123.5, 1000, 61000, 59000]),
            ("cryptocompare", {"USD": 60123.5}),
        ],
    )
    def test_extracts_price(self, name, payload):
        assert SPOT_PARSERS[name].parse(payload) == pytest.approx(60123.5)

    def test_kraken_in_band_error(self):
        with pytest.raises(ValueError, match="kraken"):
            SPOT_PARSERS["kraken"].parse({"error": ["EGeneral:Too many requests"], "result": {}})

    def test_huobi_error_status(self):
        with pytest.raises(ValueError, match="huobi"):
            SPOT_PARSERS["huobi"].parse({"status": "error", "err-msg": "invalid symbol"})

    def test_missing_key(self):
        with pytest.raises(KeyError):
            FieldPathParser("data", "amount").parse({"data": {}})

    def test_null_price(self):
        with pytest.raises(ValueError):
            FieldPathParser("last").parse({"last": None})

    def test_schema_versions(self):
        assert 1 in SPOT_PARSERS["kraken"].schema_versions


class TestCryptoCompareHistoday:
    def test_parses_ohlc(self):
        payload = {
            "Response": "Success",
            "Data": {
                "Data": [
                    {"time": 1773446400, "open": 59000, "high": 61000, "low": 58500, "close": 60500},
                    {"time": 1773532800, "open": 60500, "high": 62000, "low": 60000, "close": 61500},
                ]
            },
        }
        bars = CryptoCompareHistodayParser().parse(payload)
        assert [b.day for b in bars] == [date(2026, 3, 14), date(2026, 3, 15)]
        assert bars[0].high == 61000
        assert bars[1].close == 61500

    def test_error_response(self):
        with pytest.raises(ValueError, match="rate limit"):
            CryptoCompareHistodayParser().parse({"Response": "Error", "Message": "rate limit"})

    def test_data_not_list(self):
        with pytest.raises(TypeError):
            CryptoCompareHistodayParser().parse({"Data": {"Data": None}})


class TestCoinGeckoMarketChart:
    def test_last_point_per_day_wins(self):
        payload = {
            "prices": [
                [1773446400000, 60000.0],
                [1773489600000, 60400.0],
                [1773532800000, 61000.0],
            ]
        }
        bars = CoinGeckoMarketChartParser().parse(payload)
        assert [(b.day, b.close) for b in bars] == [
            (date(2026, 3, 14), 60400.0),
            (date(2026, 3, 15), 61000.0),
        ]
        assert bars[0].high is None

    def test_registry(self):
        assert set(HISTORICAL_PARSERS) == {"cryptocompare", "coingecko"}
