"""
linkrewards

Telemetry aggregation and reward input pipeline for network contributor
rewards.

Raw per-link latency, jitter and loss samples recorded on the ledger are
aggregated per epoch into link statistics, turned into private link and
demand tables for the allocation engine, cached per epoch, and driven on
an interval by a scheduler with a bounded failure ceiling.

Usage:
    import trio
    from linkrewards import Settings, Scheduler, DirectoryFetcher

    settings = Settings.from_file("linkrewards.json").validate()
    scheduler = Scheduler(settings, DirectoryFetcher(settings.fetcher))
    trio.run(scheduler.run)
"""

from .config import Settings
from .errors import (
    RewardsError,
    FetchError,
    AggregationError,
    CacheError,
    SolverError,
    SchedulerError,
    SchedulerHaltedError,
)
from .ingestor import LinkKey, RawSample, Topology, RawFetchResult, Fetcher, DirectoryFetcher
from .processor import AggregatedLinkStats, TelemetryAggregator, InternetTelemetryAggregator
from .calculator import (
    PrivateLink,
    Demand,
    ShapleyInputs,
    AllocationEngine,
    Allocation,
    build_private_links,
    build_demands,
    build_reward_inputs,
)
from .store import DataStore, CachedSnapshot, CacheManager
from .worker import Scheduler, SchedulerState, RunStage, replay_epoch
from .metrics import PipelineMetrics

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "RewardsError",
    "FetchError",
    "AggregationError",
    "CacheError",
    "SolverError",
    "SchedulerError",
    "SchedulerHaltedError",
    "LinkKey",
    "RawSample",
    "Topology",
    "RawFetchResult",
    "Fetcher",
    "DirectoryFetcher",
    "AggregatedLinkStats",
    "TelemetryAggregator",
    "InternetTelemetryAggregator",
    "PrivateLink",
    "Demand",
    "ShapleyInputs",
    "AllocationEngine",
    "Allocation",
    "build_private_links",
    "build_demands",
    "build_reward_inputs",
    "DataStore",
    "CachedSnapshot",
    "CacheManager",
    "Scheduler",
    "SchedulerState",
    "RunStage",
    "replay_epoch",
    "PipelineMetrics",
]
