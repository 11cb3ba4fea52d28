"""
linkrewards/processor/telemetry.py

Per-link aggregation of raw telemetry samples.

For every link the aggregator produces exactly one AggregatedLinkStats,
including links that were expected (from topology) but have no samples
in the window. Policy, in order:

1. Samples outside the window are ignored and bursts inside the dedup
   window are collapsed to their first sample.
2. Uptime is the fraction of samples with loss below loss_threshold.
3. Uptime 0 means a dead link: fixed penalty values, no percentiles over
   lossy samples (or the class default when the penalty is disabled).
4. Otherwise rtt/jitter percentiles are computed over the "up" samples.
5. Links with no samples reuse a prior epoch's measured stats when the
   lookback rules allow it, else the class default.

Usage:
    aggregator = TelemetryAggregator(settings.private, history=cache.history("link_stats"))
    stats = aggregator.aggregate(samples, topology.expected_private_keys(), (start, end), epoch)
"""

import logging
from collections import defaultdict
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..config import AggregationSettings
from ..errors import AggregationError
from ..ingestor.types import LinkKey, RawSample
from .stats import dedup_samples, filter_window, mean, percentiles, percentile_label

logger = logging.getLogger("linkrewards.processor.telemetry")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

class StatsSource(Enum):
    """Where a link's numbers came from."""
    MEASURED = "measured"
    PENALTY = "penalty"
    LOOKBACK = "lookback"
    CLASS_DEFAULT = "class_default"


@dataclass(frozen=True)
class AggregatedLinkStats:
    """
    Summary of one link over one epoch window.

    uptime_percentage is a fraction in [0, 1]. Percentile dicts are keyed
    by label ("p50", "p95", ...). rtt/jitter means and extremes are taken
    over the same samples as the percentiles.
    """
    link_key: LinkKey
    sample_count: int
    uptime_percentage: float
    rtt_percentiles: Dict[str, float]
    jitter_percentiles: Dict[str, float]
    rtt_mean_us: float = 0.0
    rtt_min_us: float = 0.0
    rtt_max_us: float = 0.0
    jitter_mean_us: float = 0.0
    loss_rate: float = 0.0
    success_count: int = 0
    loss_count: int = 0
    penalty_applied: bool = False
    source: StatsSource = StatsSource.MEASURED
    source_epoch: Optional[int] = None

    @property
    def rtt_p50(self) -> float:
        return self.rtt_percentiles["p50"]

    @property
    def rtt_p95(self) -> float:
        return self.rtt_percentiles["p95"]

    @property
    def rtt_p99(self) -> float:
        return self.rtt_percentiles["p99"]

    @property
    def jitter_p95(self) -> float:
        return self.jitter_percentiles["p95"]

    @property
    def is_measured(self) -> bool:
        return self.source == StatsSource.MEASURED

    def to_dict(self) -> dict:
        return {
            "link_key": self.link_key.to_dict(),
            "sample_count": self.sample_count,
            "uptime_percentage": self.uptime_percentage,
            "rtt_percentiles": dict(self.rtt_percentiles),
            "jitter_percentiles": dict(self.jitter_percentiles),
            "rtt_mean_us": self.rtt_mean_us,
            "rtt_min_us": self.rtt_min_us,
            "rtt_max_us": self.rtt_max_us,
            "jitter_mean_us": self.jitter_mean_us,
            "loss_rate": self.loss_rate,
            "success_count": self.success_count,
            "loss_count": self.loss_count,
            "penalty_applied": self.penalty_applied,
            "source": self.source.value,
            "source_epoch": self.source_epoch,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AggregatedLinkStats":
        return cls(
            link_key=LinkKey.from_dict(data["link_key"]),
            sample_count=data["sample_count"],
            uptime_percentage=data["uptime_percentage"],
            rtt_percentiles=dict(data["rtt_percentiles"]),
            jitter_percentiles=dict(data["jitter_percentiles"]),
            rtt_mean_us=data.get("rtt_mean_us", 0.0),
            rtt_min_us=data.get("rtt_min_us", 0.0),
            rtt_max_us=data.get("rtt_max_us", 0.0),
            jitter_mean_us=data.get("jitter_mean_us", 0.0),
            loss_rate=data.get("loss_rate", 0.0),
            success_count=data.get("success_count", 0),
            loss_count=data.get("loss_count", 0),
            penalty_applied=data.get("penalty_applied", False),
            source=StatsSource(data.get("source", StatsSource.MEASURED.value)),
            source_epoch=data.get("source_epoch"),
        )


LinkStatsMap = Dict[LinkKey, AggregatedLinkStats]

# epoch -> that epoch's stats, or None when nothing usable is cached
HistoryProvider = Callable[[int], Optional[LinkStatsMap]]


def lookback_coverage(prior: LinkStatsMap, expected_keys: Iterable[LinkKey], min_samples: int) -> float:
    """Fraction of expected links that were measured with at least min_samples."""
    expected = list(expected_keys)
    if not expected:
        return 0.0
    covered = 0
    for key in expected:
        stats = prior.get(key)
        if stats is not None and stats.is_measured and stats.sample_count >= min_samples:
            covered += 1
    return covered / len(expected)


# ============================================================================
# PER-LINK COMPUTATION
# ============================================================================

def _uniform(bins: List[float], value: float) -> Dict[str, float]:
    return {percentile_label(q): value for q in sorted(bins)}


def class_default_stats(key: LinkKey, settings: AggregationSettings, sample_count: int = 0) -> AggregatedLinkStats:
    """Stats for a link with no usable data."""
    default = settings.class_default
    return AggregatedLinkStats(
        link_key=key,
        sample_count=sample_count,
        uptime_percentage=default.uptime,
        rtt_percentiles=_uniform(settings.percentile_bins, default.rtt_us),
        jitter_percentiles=_uniform(settings.percentile_bins, default.jitter_us),
        rtt_mean_us=default.rtt_us,
        rtt_min_us=default.rtt_us,
        rtt_max_us=default.rtt_us,
        jitter_mean_us=default.jitter_us,
        loss_rate=1.0 if sample_count else 0.0,
        loss_count=sample_count,
        source=StatsSource.CLASS_DEFAULT,
    )


def aggregate_link(key: LinkKey, samples: List[RawSample], settings: AggregationSettings) -> AggregatedLinkStats:
    """
    Aggregate one link's (already windowed and deduplicated) samples.

    Must be called with at least one sample; missing links are handled
    by the aggregator's lookback policy.
    """
    if not samples:
        raise AggregationError(f"aggregate_link called without samples for {key}")

    up = [s for s in samples if s.loss < settings.loss_threshold]
    count = len(samples)
    uptime = len(up) / count
    loss_rate = mean([s.loss for s in samples])

    if not up:
        if not settings.apply_dead_link_penalty:
            return class_default_stats(key, settings, sample_count=count)
        return AggregatedLinkStats(
            link_key=key,
            sample_count=count,
            uptime_percentage=0.0,
            rtt_percentiles=_uniform(settings.percentile_bins, settings.penalty_rtt_us),
            jitter_percentiles=_uniform(settings.percentile_bins, settings.penalty_jitter_us),
            rtt_mean_us=settings.penalty_rtt_us,
            rtt_min_us=settings.penalty_rtt_us,
            rtt_max_us=settings.penalty_rtt_us,
            jitter_mean_us=settings.penalty_jitter_us,
            loss_rate=loss_rate,
            success_count=0,
            loss_count=count,
            penalty_applied=True,
            source=StatsSource.PENALTY,
        )

    rtts = [s.rtt_us for s in up]
    jitters = [s.jitter_us for s in up]
    return AggregatedLinkStats(
        link_key=key,
        sample_count=count,
        uptime_percentage=uptime,
        rtt_percentiles=percentiles(rtts, settings.percentile_bins),
        jitter_percentiles=percentiles(jitters, settings.percentile_bins),
        rtt_mean_us=mean(rtts),
        rtt_min_us=min(rtts),
        rtt_max_us=max(rtts),
        jitter_mean_us=mean(jitters),
        loss_rate=loss_rate,
        success_count=len(up),
        loss_count=count - len(up),
    )


def _aggregate_task(task: Tuple[LinkKey, List[RawSample], AggregationSettings]) -> AggregatedLinkStats:
    # Module level so ProcessPoolExecutor can pickle it
    key, samples, settings = task
    return aggregate_link(key, samples, settings)


# ============================================================================
# AGGREGATOR
# ============================================================================

class TelemetryAggregator:
    """
    Aggregates private (device-to-device) link telemetry.

    history, when given, is consulted for links with no samples in the
    current window. max_workers > 0 spreads per-link work over a process
    pool; output is identical either way.
    """

    kind = "private"

    def __init__(
        self,
        settings: Optional[AggregationSettings] = None,
        history: Optional[HistoryProvider] = None,
        max_workers: int = 0,
    ):
        self.settings = settings or self.default_settings()
        self.history = history
        self.max_workers = max_workers

    @staticmethod
    def default_settings() -> AggregationSettings:
        return AggregationSettings.private()

    def _validate_input(self, samples: List[RawSample], window: Tuple[int, int]) -> None:
        start_us, end_us = window
        if start_us < 0 or end_us <= start_us:
            raise AggregationError(f"invalid {self.kind} window: start={start_us}us end={end_us}us")
        for sample in samples:
            if sample.rtt_us < 0 or sample.jitter_us < 0 or not 0.0 <= sample.loss <= 1.0:
                raise AggregationError(f"malformed {self.kind} sample on {sample.link_key}: {sample}")

    def group(self, samples: Iterable[RawSample], window: Tuple[int, int]) -> Dict[LinkKey, List[RawSample]]:
        """Window-filter, partition by link and deduplicate."""
        start_us, end_us = window
        grouped: Dict[LinkKey, List[RawSample]] = defaultdict(list)
        for sample in filter_window(samples, start_us, end_us):
            grouped[sample.link_key].append(sample)
        window_us = self.settings.dedup_window_us
        return {key: dedup_samples(grouped[key], window_us) for key in sorted(grouped)}

    def _compute(self, grouped: Dict[LinkKey, List[RawSample]]) -> LinkStatsMap:
        tasks = [(key, samples, self.settings) for key, samples in grouped.items()]
        if self.max_workers and len(tasks) > 1:
            with ProcessPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(_aggregate_task, tasks, chunksize=max(1, len(tasks) // (self.max_workers * 4))))
        else:
            results = [_aggregate_task(task) for task in tasks]
        return {stats.link_key: stats for stats in results}

    def _lookback(self, key: LinkKey, epoch: int, expected: List[LinkKey], coverage_cache: Dict[int, float]) -> Optional[AggregatedLinkStats]:
        lookback = self.settings.lookback
        if not lookback.enabled or self.history is None:
            return None
        for distance in range(1, lookback.max_epochs_lookback + 1):
            prior_epoch = epoch - distance
            if prior_epoch < 0:
                break
            prior = self.history(prior_epoch)
            if not prior:
                continue
            if prior_epoch not in coverage_cache:
                coverage_cache[prior_epoch] = lookback_coverage(prior, expected, lookback.min_samples_per_link)
                logger.debug(
                    f"{self.kind} lookback epoch {prior_epoch} coverage "
                    f"{coverage_cache[prior_epoch]:.1%} (min {lookback.min_coverage_threshold:.0%})"
                )
            if coverage_cache[prior_epoch] < lookback.min_coverage_threshold:
                continue
            stats = prior.get(key)
            if stats is None or not stats.is_measured or stats.sample_count < lookback.min_samples_per_link:
                continue
            return replace(stats, source=StatsSource.LOOKBACK, source_epoch=prior_epoch)
        return None

    def aggregate(
        self,
        samples: List[RawSample],
        expected_keys: Iterable[LinkKey],
        window: Tuple[int, int],
        epoch: int,
    ) -> LinkStatsMap:
        """
        Stats for every expected link plus every observed link, sorted by key.

        Raises AggregationError only for malformed input.
        """
        self._validate_input(samples, window)
        expected = sorted(set(expected_keys))
        grouped = self.group(samples, window)
        computed = self._compute(grouped)

        coverage_cache: Dict[int, float] = {}
        missing = 0
        reused = 0
        for key in expected:
            if key in computed:
                continue
            missing += 1
            stats = self._lookback(key, epoch, expected, coverage_cache)
            if stats is None:
                stats = class_default_stats(key, self.settings)
            else:
                reused += 1
            computed[key] = stats

        result = {key: computed[key] for key in sorted(computed)}
        penalized = sum(1 for s in result.values() if s.penalty_applied)
        logger.info(
            f"Aggregated {len(result)} {self.kind} links for epoch {epoch}: "
            f"{len(grouped)} measured, {penalized} penalized, "
            f"{missing} missing ({reused} from lookback, {missing - reused} class default)"
        )
        return result


def source_counts(stats: LinkStatsMap) -> Dict[str, int]:
    """Number of links per StatsSource."""
    counts = {source.value: 0 for source in StatsSource}
    for s in stats.values():
        counts[s.source.value] += 1
    return counts
