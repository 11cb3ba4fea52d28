"""
linkrewards/worker/replay.py

Replay and audit of a cached epoch.

Loads a snapshot strictly (any cache error propagates to the operator),
recomputes link stats and reward inputs from the raw samples it holds,
and reports every difference from the cached values. Nothing is
reconstructed from partial data and nothing is written back.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import Settings
from ..calculator.inputs import ShapleyInputs, build_reward_inputs
from ..processor.internet import InternetTelemetryAggregator
from ..processor.telemetry import LinkStatsMap, TelemetryAggregator
from ..store.cache import CacheManager, EpochOrPath
from ..store.data_store import CachedSnapshot

logger = logging.getLogger("linkrewards.worker.replay")


@dataclass
class ReplayResult:
    snapshot: CachedSnapshot
    link_stats: LinkStatsMap
    internet_stats: LinkStatsMap
    inputs: ShapleyInputs
    mismatches: List[str] = field(default_factory=list)

    @property
    def epoch(self) -> int:
        return self.snapshot.epoch

    @property
    def matches(self) -> bool:
        return not self.mismatches


def _diff_stats(name: str, cached: LinkStatsMap, recomputed: LinkStatsMap) -> List[str]:
    problems = []
    for key in sorted(set(cached) | set(recomputed)):
        if key not in cached:
            problems.append(f"{name}: {key} recomputed but not cached")
        elif key not in recomputed:
            problems.append(f"{name}: {key} cached but not recomputed")
        elif cached[key] != recomputed[key]:
            problems.append(f"{name}: {key} differs")
    return problems


def replay_epoch(
    epoch_or_path: EpochOrPath,
    settings: Optional[Settings] = None,
    cache: Optional[CacheManager] = None,
) -> ReplayResult:
    """
    Recompute an epoch from its cached snapshot.

    Raises CacheNotFoundError / CacheCorruptError / CacheIoError as-is.
    Lookback for links without samples uses the other cached epochs, the
    same way the scheduler does.
    """
    settings = settings or Settings()
    cache = cache or CacheManager(settings.cache_dir)
    snapshot = cache.load_snapshot(epoch_or_path)
    store = snapshot.store

    private = TelemetryAggregator(settings.private, history=cache.history("link_stats"))
    internet = InternetTelemetryAggregator(settings.internet, history=cache.history("internet_stats"))
    link_stats = private.aggregate(
        store.telemetry_samples, store.topology.expected_private_keys(), store.window, store.epoch
    )
    internet_stats = internet.aggregate(
        store.internet_samples, internet.expected_keys(store.epoch), store.window, store.epoch
    )
    inputs = build_reward_inputs(
        store.topology, link_stats, internet_stats, settings.shapley, settings.demand
    )

    mismatches = _diff_stats("link_stats", store.link_stats, link_stats)
    mismatches += _diff_stats("internet_stats", store.internet_stats, internet_stats)
    if snapshot.shapley_inputs is None:
        mismatches.append("shapley_inputs: not cached")
    elif snapshot.shapley_inputs.to_json() != inputs.to_json():
        mismatches.append("shapley_inputs: differs")

    result = ReplayResult(
        snapshot=snapshot,
        link_stats=link_stats,
        internet_stats=internet_stats,
        inputs=inputs,
        mismatches=mismatches,
    )
    if result.matches:
        logger.info(f"Replay of epoch {result.epoch} matches the cached snapshot")
    else:
        logger.warning(f"Replay of epoch {result.epoch} found {len(mismatches)} differences")
        for problem in mismatches:
            logger.warning(f"  {problem}")
    return result
