"""Tests for bithedge_oracle.aggregation.aggregator."""

from __future__ import annotations

from datetime import timedelta

import numpy as np
import pytest

from bithedge_oracle.aggregation.aggregator import Aggregator, weighted_median
from bithedge_oracle.core.config import AggregationConfig
from bithedge_oracle.core.exceptions import InsufficientConsensusError
from bithedge_oracle.core.models import PricePoint

SOURCES = ["a", "b", "c", "d", "e"]


@pytest.fixture
def aggregator(clock) -> Aggregator:
    return Aggregator(AggregationConfig(min_sources=3), clock=clock)


def _points(clock, prices, ids=SOURCES, age=0.0):
    observed = clock.now() - timedelta(seconds=age)
    return [
        PricePoint(source_id=sid, price=p, observed_at=observed, fetch_latency=0.1)
        for sid, p in zip(ids, prices)
    ]


def _equal(ids=SOURCES):
    return {sid: 1.0 / len(ids) for sid in ids}


class TestWeightedMedian:
    def test_odd_count(self):
        assert weighted_median(np.array([3.0, 1.0, 2.0]), np.ones(3)) == 2.0

    def test_even_count_equal_weights_averages(self):
        assert weighted_median(np.array([1.0, 2.0, 3.0, 4.0]), np.ones(4)) == 2.5

    def test_heavy_weight_dominates(self):
        values = np.array([100.0, 200.0, 300.0])
        assert weighted_median(values, np.array([0.1, 0.1, 0.8])) == 300.0

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            weighted_median(np.array([]), np.array([]))


class TestAggregate:
    def test_five_sources_one_outlier(self, aggregator, clock):
        points = _points(clock, [60000, 60050, 60100, 59950, 80000])
        result = aggregator.aggregate(points, _equal())
        assert result.outliers == {"e"}
        assert result.contributing_sources == {"a", "b", "c", "d"}
        assert result.price == pytest.approx(60050, rel=1e-3)
        assert result.confidence == pytest.approx(0.8)
        assert result.computed_at == clock.now()

    def test_deviations_reported_for_every_point(self, aggregator, clock):
        points = _points(clock, [60000, 60050, 60100, 59950, 80000])
        result = aggregator.aggregate(points, _equal())
        assert set(result.deviations) == set(SOURCES)
        assert result.deviations["e"] > 0.3

    def test_tenfold_outlier_does_not_move_consensus(self, clock):
        honest = [60000, 60050, 60100, 59950]
        clean = Aggregator(AggregationConfig(min_sources=3), clock=clock).aggregate(
            _points(clock, honest, ids=SOURCES[:4]), _equal(SOURCES[:4])
        )
        for rogue in range(5):
            prices = list(honest)
            prices.insert(rogue, 10 * clean.price)
            ids = SOURCES[:rogue] + ["rogue"] + SOURCES[rogue:4]
            dirty = Aggregator(AggregationConfig(min_sources=3), clock=clock).aggregate(
                _points(clock, prices, ids=ids), _equal(ids)
            )
            assert dirty.outliers == {"rogue"}
            assert dirty.price == pytest.approx(clean.price, rel=1e-12)

    def test_unweighted_sources_ignored(self, aggregator, clock):
        points = _points(clock, [60000, 60050, 60100, 1])
        weights = {"a": 0.3, "b": 0.3, "c": 0.3}
        result = aggregator.aggregate(points, weights)
        assert "d" not in result.contributing_sources | result.outliers

    def test_latest_point_per_source_used(self, aggregator, clock):
        old = _points(clock, [50000, 50000, 50000], ids=["a", "b", "c"], age=30)
        new = _points(clock, [60000, 60010, 60020], ids=["a", "b", "c"])
        result = aggregator.aggregate(old + new, _equal(["a", "b", "c"]))
        assert result.price == 60010

    def test_confidence_counts_missing_sources(self, aggregator, clock):
        points = _points(clock, [60000, 60050, 60100], ids=["a", "b", "c"])
        result = aggregator.aggregate(points, _equal())
        assert result.confidence == pytest.approx(0.6)

    def test_history_appended(self, aggregator, clock):
        aggregator.aggregate(_points(clock, [60000, 60050, 60100], ids=["a", "b", "c"]), _equal())
        assert aggregator.history == [60050]


class TestFailClosed:
    def test_too_few_sources(self, aggregator, clock):
        with pytest.raises(InsufficientConsensusError) as exc_info:
            aggregator.aggregate(_points(clock, [60000, 60050], ids=["a", "b"]), _equal())
        assert exc_info.value.context["contributing"] == 2
        assert exc_info.value.context["required"] == 3

    def test_stale_points_dropped(self, aggregator, clock):
        points = _points(clock, [60000, 60050, 60100], ids=["a", "b", "c"], age=121)
        with pytest.raises(InsufficientConsensusError) as exc_info:
            aggregator.aggregate(points, _equal())
        assert exc_info.value.context["stage"] == "staleness"

    def test_staleness_judged_at_cycle_start(self, aggregator, clock):
        cycle_started = clock.now()
        points = _points(clock, [60000, 60050, 60100], ids=["a", "b", "c"])
        # the cycle then waited on a slow source well past the threshold
        clock.advance(150)
        result = aggregator.aggregate(points, _equal(), as_of=cycle_started)
        assert result.contributing_sources == {"a", "b", "c"}
        with pytest.raises(InsufficientConsensusError):
            aggregator.aggregate(points, _equal())

    def test_too_few_after_outliers(self, clock):
        agg = Aggregator(AggregationConfig(min_sources=4), clock=clock)
        agg.seed_history([60000.0] * 5)
        points = _points(clock, [60000, 60010, 60020, 61000, 61010])
        with pytest.raises(InsufficientConsensusError) as exc_info:
            agg.aggregate(points, _equal())
        assert exc_info.value.context["stage"] == "outliers"
        assert len(agg.history) == 5


class TestRollingScale:
    def test_volatile_history_widens_band(self, clock):
        agg = Aggregator(AggregationConfig(min_sources=3, min_history=5), clock=clock)
        agg.seed_history([55000, 65000, 55000, 65000, 55000])
        # std of history is ~5500, so 3x that tolerates a 10% deviation
        result = agg.aggregate(_points(clock, [60000, 60050, 60100, 66000]), _equal(SOURCES[:4]))
        assert result.outliers == frozenset()

    def test_calm_history_floor_applies(self, clock):
        agg = Aggregator(AggregationConfig(min_sources=3, min_history=5), clock=clock)
        agg.seed_history([60000.0] * 5)
        # zero std falls back to the 0.5% floor, 3x = 1.5%
        result = agg.aggregate(_points(clock, [60000, 60050, 60100, 61500]), _equal(SOURCES[:4]))
        assert result.outliers == {"d"}
