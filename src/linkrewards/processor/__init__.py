"""
linkrewards/processor/

Telemetry aggregation for private links and public internet paths.
"""

from .stats import percentile, percentile_label, percentiles, dedup_samples, filter_window
from .telemetry import (
    StatsSource,
    AggregatedLinkStats,
    LinkStatsMap,
    HistoryProvider,
    TelemetryAggregator,
    aggregate_link,
    class_default_stats,
    lookback_coverage,
    source_counts,
)
from .internet import InternetTelemetryAggregator, stats_by_location_pair

__all__ = [
    "percentile",
    "percentile_label",
    "percentiles",
    "dedup_samples",
    "filter_window",
    "StatsSource",
    "AggregatedLinkStats",
    "LinkStatsMap",
    "HistoryProvider",
    "TelemetryAggregator",
    "aggregate_link",
    "class_default_stats",
    "lookback_coverage",
    "source_counts",
    "InternetTelemetryAggregator",
    "stats_by_location_pair",
]
