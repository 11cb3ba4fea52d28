"""
linkrewards/store/data_store.py

Epoch-scoped snapshot of everything one run touches.

DataStore owns the topology, the raw samples and the derived link stats
for a single epoch. CachedSnapshot wraps it with the optional derived
sections (ProcessedMetrics, ShapleyInputs, Allocation) and is the unit
written to and read from the cache.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..config import CACHE_SCHEMA_VERSION
from ..ingestor.types import RawFetchResult, RawSample, Topology
from ..calculator.engine import Allocation
from ..calculator.inputs import ShapleyInputs
from ..processor.telemetry import AggregatedLinkStats, LinkStatsMap, StatsSource, source_counts


def _stats_to_list(stats: LinkStatsMap) -> List[dict]:
    return [stats[key].to_dict() for key in sorted(stats)]


def _stats_from_list(items: List[dict]) -> LinkStatsMap:
    result = {}
    for item in items:
        s = AggregatedLinkStats.from_dict(item)
        result[s.link_key] = s
    return {key: result[key] for key in sorted(result)}


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass
class DataStore:
    """Topology, samples and aggregated stats for one epoch."""
    epoch: int
    start_us: int
    end_us: int
    topology: Topology
    telemetry_samples: List[RawSample] = field(default_factory=list)
    internet_samples: List[RawSample] = field(default_factory=list)
    link_stats: LinkStatsMap = field(default_factory=dict)
    internet_stats: LinkStatsMap = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_fetch(cls, result: RawFetchResult) -> "DataStore":
        return cls(
            epoch=result.epoch,
            start_us=result.start_us,
            end_us=result.end_us,
            topology=result.topology,
            telemetry_samples=list(result.telemetry_samples),
            internet_samples=list(result.internet_samples),
            fetched_at=result.fetched_at,
        )

    @property
    def window(self):
        return self.start_us, self.end_us

    def counts(self) -> Dict[str, int]:
        """Operational counts, logged on every cache load and save."""
        return {
            "devices": len(self.topology.devices),
            "locations": len(self.topology.locations),
            "links": len(self.topology.links),
            "validators": len(self.topology.validators),
            "telemetry_samples": len(self.telemetry_samples),
            "internet_samples": len(self.internet_samples),
            "link_stats": len(self.link_stats),
            "internet_stats": len(self.internet_stats),
        }

    def to_dict(self) -> dict:
        return {
            "epoch": self.epoch,
            "start_us": self.start_us,
            "end_us": self.end_us,
            "fetched_at": self.fetched_at.isoformat(),
            "topology": self.topology.to_dict(),
            "telemetry_samples": [s.to_dict() for s in self.telemetry_samples],
            "internet_samples": [s.to_dict() for s in self.internet_samples],
            "link_stats": _stats_to_list(self.link_stats),
            "internet_stats": _stats_to_list(self.internet_stats),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DataStore":
        return cls(
            epoch=data["epoch"],
            start_us=data["start_us"],
            end_us=data["end_us"],
            fetched_at=_parse_time(data["fetched_at"]),
            topology=Topology.from_dict(data["topology"]),
            telemetry_samples=[RawSample.from_dict(s) for s in data["telemetry_samples"]],
            internet_samples=[RawSample.from_dict(s) for s in data["internet_samples"]],
            link_stats=_stats_from_list(data["link_stats"]),
            internet_stats=_stats_from_list(data["internet_stats"]),
        )


@dataclass
class ProcessedMetrics:
    """Summary numbers derived from one run, stored beside the snapshot."""
    private_links: int = 0
    public_links: int = 0
    demands: int = 0
    link_stats: int = 0
    internet_stats: int = 0
    private_sources: Dict[str, int] = field(default_factory=dict)
    internet_sources: Dict[str, int] = field(default_factory=dict)
    private_coverage: float = 0.0   # expected private links measured this epoch

    @classmethod
    def compute(cls, store: DataStore, inputs: Optional[ShapleyInputs] = None) -> "ProcessedMetrics":
        expected = store.topology.expected_private_keys()
        measured = sum(
            1 for key in expected
            if key in store.link_stats and store.link_stats[key].source in (StatsSource.MEASURED, StatsSource.PENALTY)
        )
        return cls(
            private_links=len(inputs.private_links) if inputs else 0,
            public_links=len(inputs.public_links) if inputs else 0,
            demands=len(inputs.demands) if inputs else 0,
            link_stats=len(store.link_stats),
            internet_stats=len(store.internet_stats),
            private_sources=source_counts(store.link_stats),
            internet_sources=source_counts(store.internet_stats),
            private_coverage=measured / len(expected) if expected else 0.0,
        )

    def to_dict(self) -> dict:
        return {
            "private_links": self.private_links,
            "public_links": self.public_links,
            "demands": self.demands,
            "link_stats": self.link_stats,
            "internet_stats": self.internet_stats,
            "private_sources": dict(self.private_sources),
            "internet_sources": dict(self.internet_sources),
            "private_coverage": self.private_coverage,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessedMetrics":
        return cls(**data)


@dataclass
class CachedSnapshot:
    """A DataStore plus creation time and optional derived sections."""
    store: DataStore
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed_metrics: Optional[ProcessedMetrics] = None
    shapley_inputs: Optional[ShapleyInputs] = None
    allocation: Optional[Allocation] = None
    committed: bool = False
    schema_version: int = CACHE_SCHEMA_VERSION

    @property
    def epoch(self) -> int:
        return self.store.epoch

    @property
    def is_committed(self) -> bool:
        return self.committed or self.allocation is not None

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "epoch": self.store.epoch,
            "created_at": self.created_at.isoformat(),
            "committed": self.committed,
            "data_store": self.store.to_dict(),
            "processed_metrics": self.processed_metrics.to_dict() if self.processed_metrics else None,
            "shapley_inputs": self.shapley_inputs.to_dict() if self.shapley_inputs else None,
            "allocation": self.allocation.to_dict() if self.allocation else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CachedSnapshot":
        metrics = data.get("processed_metrics")
        inputs = data.get("shapley_inputs")
        allocation = data.get("allocation")
        return cls(
            schema_version=data["schema_version"],
            created_at=_parse_time(data["created_at"]),
            committed=data.get("committed", False),
            store=DataStore.from_dict(data["data_store"]),
            processed_metrics=ProcessedMetrics.from_dict(metrics) if metrics else None,
            shapley_inputs=ShapleyInputs.from_dict(inputs) if inputs else None,
            allocation=Allocation.from_dict(allocation) if allocation else None,
        )
