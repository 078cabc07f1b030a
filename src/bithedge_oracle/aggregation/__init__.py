"""bithedge_oracle.aggregation — Consensus pricing and source weighting."""

from bithedge_oracle.aggregation.aggregator import Aggregator, weighted_median
from bithedge_oracle.aggregation.reliability import ReliabilityTracker

__all__ = ["Aggregator", "ReliabilityTracker", "weighted_median"]
