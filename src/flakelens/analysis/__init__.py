"""Analysis module for flake classification and aggregate queries."""

from flakelens.analysis.aggregates import IdentityAggregate, RollingAggregates, Rollup
from flakelens.analysis.classifier import FlakeClassifier, classify_window
from flakelens.analysis.models import (
    FlakeRateReport,
    SlowTest,
    TrendDelta,
    TrendDirection,
    TrendMetric,
)
from flakelens.analysis.query import AggregationQueryService

__all__ = [
    "AggregationQueryService",
    "FlakeClassifier",
    "FlakeRateReport",
    "IdentityAggregate",
    "RollingAggregates",
    "Rollup",
    "SlowTest",
    "TrendDelta",
    "TrendDirection",
    "TrendMetric",
    "classify_window",
]
