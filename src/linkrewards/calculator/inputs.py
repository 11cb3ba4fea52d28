"""
linkrewards/calculator/inputs.py

Reward input construction for the allocation engine.

Turns a topology snapshot plus aggregated link statistics into the
structures the engine consumes:
- devices       one row per located device, with a solver id like "NYC01"
- private links one row per activated topology link
- public links  mean internet latency per city pair
- demands       city-to-city traffic rows weighted by validator stake

Everything here is pure and deterministic: every list is sorted by a
stable key before it is returned, so identical inputs serialize to
identical bytes.

Usage:
    inputs = build_reward_inputs(topology, link_stats, internet_stats,
                                 settings.shapley, settings.demand)
"""

import json
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Set, Tuple

from ..config import (
    BPS_TO_GBPS,
    DEFAULT_EDGE_BANDWIDTH_GBPS,
    ContiguityPolicy,
    DemandSettings,
    ShapleySettings,
)
from ..ingestor.types import Link, Topology
from ..processor.internet import stats_by_location_pair
from ..processor.telemetry import AggregatedLinkStats, LinkStatsMap, StatsSource

logger = logging.getLogger("linkrewards.calculator.inputs")

US_TO_MS = 1000.0


# ============================================================================
# DATA STRUCTURES
# ============================================================================

class DemandType(IntEnum):
    """Demand classes understood by the engine. Only one exists today."""
    DEFAULT = 1


@dataclass(frozen=True)
class SolverDevice:
    device: str          # solver id, e.g. "NYC01"
    edge: float          # edge bandwidth, Gbps
    operator: str

    def to_dict(self) -> dict:
        return {"device": self.device, "edge": self.edge, "operator": self.operator}

    @classmethod
    def from_dict(cls, data: dict) -> "SolverDevice":
        return cls(device=data["device"], edge=data["edge"], operator=data["operator"])


@dataclass(frozen=True)
class PrivateLink:
    """One activated topology link as seen by the allocation engine."""
    link_id: str
    link_code: str
    device1: str
    device2: str
    operator: str
    latency_ms: float
    bandwidth_gbps: float
    uptime: float
    performance_score: float
    contiguous: bool = False
    penalty_applied: bool = False

    def to_dict(self) -> dict:
        return {
            "link_id": self.link_id,
            "link_code": self.link_code,
            "device1": self.device1,
            "device2": self.device2,
            "operator": self.operator,
            "latency_ms": self.latency_ms,
            "bandwidth_gbps": self.bandwidth_gbps,
            "uptime": self.uptime,
            "performance_score": self.performance_score,
            "contiguous": self.contiguous,
            "penalty_applied": self.penalty_applied,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PrivateLink":
        return cls(**data)


@dataclass(frozen=True)
class PublicLink:
    city1: str
    city2: str
    latency_ms: float

    def to_dict(self) -> dict:
        return {"city1": self.city1, "city2": self.city2, "latency_ms": self.latency_ms}

    @classmethod
    def from_dict(cls, data: dict) -> "PublicLink":
        return cls(**data)


@dataclass(frozen=True)
class Demand:
    """One row of the demand matrix."""
    start: str
    end: str
    receivers: int
    traffic: float
    priority: float
    kind: int = DemandType.DEFAULT.value
    multicast: bool = False

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "end": self.end,
            "receivers": self.receivers,
            "traffic": self.traffic,
            "priority": self.priority,
            "kind": self.kind,
            "multicast": self.multicast,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Demand":
        return cls(**data)


@dataclass(frozen=True)
class CityStat:
    validator_count: int
    total_stake_proxy: int

    def to_dict(self) -> dict:
        return {"validator_count": self.validator_count, "total_stake_proxy": self.total_stake_proxy}


@dataclass(frozen=True)
class DemandOverride:
    """Per (start, end) replacement for the default traffic or demand class."""
    traffic: Optional[float] = None
    kind: Optional[int] = None


@dataclass
class ShapleyInputs:
    """Everything handed to the allocation engine for one epoch."""
    devices: List[SolverDevice] = field(default_factory=list)
    private_links: List[PrivateLink] = field(default_factory=list)
    public_links: List[PublicLink] = field(default_factory=list)
    demands: List[Demand] = field(default_factory=list)
    city_stats: Dict[str, CityStat] = field(default_factory=dict)

    def counts(self) -> Dict[str, int]:
        return {
            "devices": len(self.devices),
            "private_links": len(self.private_links),
            "public_links": len(self.public_links),
            "demands": len(self.demands),
            "cities": len(self.city_stats),
        }

    def to_dict(self) -> dict:
        return {
            "devices": [d.to_dict() for d in self.devices],
            "private_links": [l.to_dict() for l in self.private_links],
            "public_links": [l.to_dict() for l in self.public_links],
            "demands": [d.to_dict() for d in self.demands],
            "city_stats": {k: self.city_stats[k].to_dict() for k in sorted(self.city_stats)},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ShapleyInputs":
        return cls(
            devices=[SolverDevice.from_dict(d) for d in data.get("devices", [])],
            private_links=[PrivateLink.from_dict(l) for l in data.get("private_links", [])],
            public_links=[PublicLink.from_dict(l) for l in data.get("public_links", [])],
            demands=[Demand.from_dict(d) for d in data.get("demands", [])],
            city_stats={k: CityStat(**v) for k, v in data.get("city_stats", {}).items()},
        )

    def to_json(self) -> str:
        """Canonical serialization, stable across runs."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


# ============================================================================
# DEVICES
# ============================================================================

def city_code(topology: Topology, endpoint: str) -> Optional[str]:
    """
    Upper-cased city code for a location id or a device id.

    None when the endpoint has no known location.
    """
    location = topology.locations.get(endpoint)
    if location is None:
        location = topology.device_location(endpoint)
    if location is None:
        return None
    return location.code.upper()


def build_devices(topology: Topology) -> Tuple[List[SolverDevice], Dict[str, str]]:
    """
    Solver devices plus a device_id -> solver id map.

    Devices are numbered per city in (operator, device_id) order, so the
    ids only change when the device set does. Devices without a location
    are left out.
    """
    ordered = sorted(topology.devices.values(), key=lambda d: (d.operator, d.device_id))
    city_counts: Dict[str, int] = {}
    devices: List[SolverDevice] = []
    device_ids: Dict[str, str] = {}

    for device in ordered:
        city = city_code(topology, device.device_id)
        if city is None:
            logger.debug(f"Device {device.code} has no location, not offered to the solver")
            continue
        city_counts[city] = city_counts.get(city, 0) + 1
        solver_id = f"{city}{city_counts[city]:02d}"
        device_ids[device.device_id] = solver_id
        devices.append(SolverDevice(device=solver_id, edge=float(DEFAULT_EDGE_BANDWIDTH_GBPS), operator=device.operator))

    devices.sort(key=lambda d: d.device)
    return devices, device_ids


# ============================================================================
# PRIVATE LINKS
# ============================================================================

def link_bandwidth_gbps(link: Link) -> float:
    if link.bandwidth_bps:
        return link.bandwidth_bps / BPS_TO_GBPS
    return float(DEFAULT_EDGE_BANDWIDTH_GBPS)


def _directions(link: Link, stats: LinkStatsMap) -> List[AggregatedLinkStats]:
    key = link.forward_key
    return [s for s in (stats.get(key), stats.get(key.reversed())) if s is not None]


def _is_healthy(directions: List[AggregatedLinkStats], operator_uptime: float) -> bool:
    if not directions:
        return False
    return all(
        s.source == StatsSource.MEASURED and not s.penalty_applied and s.uptime_percentage >= operator_uptime
        for s in directions
    )


def contiguous_links(
    topology: Topology,
    healthy_link_ids: Set[str],
    policy: ContiguityPolicy,
) -> Set[str]:
    """
    Healthy links that belong to a large enough connected segment.

    Healthy links are joined into connected components over devices. A
    link qualifies when its component spans at least
    policy.min_segment_devices devices. With same_operator_only, links
    between devices of different operators never join a segment.
    """
    parent: Dict[str, str] = {}

    def find(x: str) -> str:
        while parent.setdefault(x, x) != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    members = []
    for link_id in sorted(healthy_link_ids):
        link = topology.links[link_id]
        a, z = topology.link_devices(link)
        if policy.same_operator_only and (a is None or z is None or a.operator != z.operator):
            continue
        members.append(link)
        root_a, root_z = find(link.side_a), find(link.side_z)
        if root_a != root_z:
            parent[max(root_a, root_z)] = min(root_a, root_z)

    sizes: Dict[str, int] = {}
    for device in list(parent):
        root = find(device)
        sizes[root] = sizes.get(root, 0) + 1

    return {
        link.link_id for link in members
        if sizes[find(link.side_a)] >= policy.min_segment_devices
    }


def build_private_links(
    topology: Topology,
    link_stats: LinkStatsMap,
    settings: ShapleySettings,
    device_ids: Optional[Dict[str, str]] = None,
) -> List[PrivateLink]:
    """
    One PrivateLink per activated link, sorted by (device1, device2, link_id).

    Each direction of a link is aggregated separately; the link takes the
    worse of the two (higher p95 latency, lower uptime). The performance
    score is uptime relative to the operator_uptime floor, capped at 1,
    plus contiguity_bonus for links in a contiguous healthy segment.
    """
    if device_ids is None:
        _devices, device_ids = build_devices(topology)

    candidates = []
    healthy: Set[str] = set()
    for link in topology.activated_links():
        directions = _directions(link, link_stats)
        if not directions:
            logger.warning(f"No stats for activated link {link.code}, skipping")
            continue
        from_id = device_ids.get(link.side_a)
        to_id = device_ids.get(link.side_z)
        if from_id is None or to_id is None:
            logger.debug(f"Link {link.code} has an endpoint without a solver id, skipping")
            continue
        if _is_healthy(directions, settings.operator_uptime):
            healthy.add(link.link_id)
        candidates.append((link, directions, from_id, to_id))

    contiguous = contiguous_links(topology, healthy, settings.contiguity)

    links = []
    for link, directions, from_id, to_id in candidates:
        latency_us = max(s.rtt_p95 for s in directions)
        uptime = min(s.uptime_percentage for s in directions)
        if settings.operator_uptime > 0:
            score = min(1.0, uptime / settings.operator_uptime)
        else:
            score = 1.0
        is_contiguous = link.link_id in contiguous
        if is_contiguous:
            score += settings.contiguity_bonus
        operator = topology.devices[link.side_a].operator
        links.append(PrivateLink(
            link_id=link.link_id,
            link_code=link.code,
            device1=from_id,
            device2=to_id,
            operator=operator,
            latency_ms=latency_us / US_TO_MS,
            bandwidth_gbps=link_bandwidth_gbps(link),
            uptime=uptime,
            performance_score=score,
            contiguous=is_contiguous,
            penalty_applied=any(s.penalty_applied for s in directions),
        ))

    links.sort(key=lambda l: (l.device1, l.device2, l.link_id))
    logger.info(
        f"Built {len(links)} private links ({len(healthy)} healthy, {len(contiguous)} contiguous)"
    )
    return links


# ============================================================================
# PUBLIC LINKS
# ============================================================================

def build_public_links(topology: Topology, internet_stats: LinkStatsMap) -> List[PublicLink]:
    """Mean p95 internet latency (ms) per alphabetically ordered city pair."""
    by_city: Dict[Tuple[str, str], List[float]] = {}
    for (origin, target), latencies in stats_by_location_pair(internet_stats).items():
        city1, city2 = city_code(topology, origin), city_code(topology, target)
        if city1 is None or city2 is None:
            logger.debug(f"No location mapping for internet path {origin} <-> {target}")
            continue
        if city1 == city2:
            continue
        pair = (min(city1, city2), max(city1, city2))
        by_city.setdefault(pair, []).extend(latencies)

    links = [
        PublicLink(city1=c1, city2=c2, latency_ms=(sum(values) / len(values)) / US_TO_MS)
        for (c1, c2), values in sorted(by_city.items())
    ]
    logger.info(f"Built {len(links)} public links")
    return links


# ============================================================================
# DEMANDS
# ============================================================================

def build_city_stats(topology: Topology) -> Dict[str, CityStat]:
    """Validator count and total stake proxy per city."""
    counts: Dict[str, List[int]] = {}
    for placement in topology.validators:
        city = city_code(topology, placement.device_id)
        if city is None:
            logger.debug(f"Validator {placement.validator_id} is on a device without a location")
            continue
        entry = counts.setdefault(city, [0, 0])
        entry[0] += 1
        entry[1] += placement.stake_proxy
    return {city: CityStat(*counts[city]) for city in sorted(counts)}


def build_demands(
    topology: Topology,
    settings: ShapleySettings,
    demand_settings: Optional[DemandSettings] = None,
    overrides: Optional[Dict[Tuple[str, str], DemandOverride]] = None,
    city_stats: Optional[Dict[str, CityStat]] = None,
) -> List[Demand]:
    """
    City-to-city demand rows, sorted by (start, end).

    priority = (1 / slots_in_epoch) * (destination stake / destination
    validators); receivers is the destination validator count. Self pairs
    are skipped. demand_multiplier scales every row's traffic.
    """
    demand_settings = demand_settings or DemandSettings()
    overrides = overrides or {}
    if city_stats is None:
        city_stats = build_city_stats(topology)

    cities = [c for c in sorted(city_stats) if city_stats[c].validator_count > 0]
    if not cities:
        logger.warning("No cities with validators, demand matrix is empty")
        return []

    demands = []
    for start in cities:
        for end in cities:
            if start == end:
                continue
            dest = city_stats[end]
            override = overrides.get((start, end), DemandOverride())
            traffic = override.traffic if override.traffic is not None else demand_settings.default_traffic
            kind = override.kind if override.kind is not None else demand_settings.default_type
            demands.append(Demand(
                start=start,
                end=end,
                receivers=dest.validator_count,
                traffic=traffic * settings.demand_multiplier,
                priority=(1.0 / demand_settings.slots_in_epoch) * (dest.total_stake_proxy / dest.validator_count),
                kind=int(kind),
                multicast=demand_settings.multicast,
            ))

    demands.sort(key=lambda d: (d.start, d.end))
    logger.info(f"Built {len(demands)} demands across {len(cities)} cities")
    return demands


# ============================================================================
# ALL INPUTS
# ============================================================================

def build_reward_inputs(
    topology: Topology,
    link_stats: LinkStatsMap,
    internet_stats: Optional[LinkStatsMap] = None,
    settings: Optional[ShapleySettings] = None,
    demand_settings: Optional[DemandSettings] = None,
    overrides: Optional[Dict[Tuple[str, str], DemandOverride]] = None,
) -> ShapleyInputs:
    """Build the complete engine input for one epoch."""
    settings = settings or ShapleySettings()
    devices, device_ids = build_devices(topology)
    city_stats = build_city_stats(topology)
    return ShapleyInputs(
        devices=devices,
        private_links=build_private_links(topology, link_stats, settings, device_ids),
        public_links=build_public_links(topology, internet_stats or {}),
        demands=build_demands(topology, settings, demand_settings, overrides, city_stats),
        city_stats=city_stats,
    )
