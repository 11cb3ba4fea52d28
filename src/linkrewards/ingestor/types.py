"""
linkrewards/ingestor/types.py

Data model for ledger-sourced topology and telemetry.

Everything here is immutable once fetched. Optional fields are real
optionals: a device without a location has location_id None, never a
sentinel string.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from ..errors import AggregationError

ACTIVATED = "activated"


# ============================================================================
# TELEMETRY
# ============================================================================

@dataclass(frozen=True, order=True)
class LinkKey:
    """
    Identity of a measured path.

    Direction-aware: (A, B, c) and (B, A, c) are different keys. The
    circuit is the link id for device links and the data provider for
    internet paths.
    """
    origin: str
    target: str
    circuit: str

    def reversed(self) -> "LinkKey":
        return LinkKey(self.target, self.origin, self.circuit)

    def __str__(self) -> str:
        return f"{self.origin} -> {self.target} [{self.circuit}]"

    def to_dict(self) -> dict:
        return {"origin": self.origin, "target": self.target, "circuit": self.circuit}

    @classmethod
    def from_dict(cls, data: dict) -> "LinkKey":
        return cls(origin=data["origin"], target=data["target"], circuit=data["circuit"])


@dataclass(frozen=True)
class RawSample:
    """One latency measurement between two endpoints."""
    origin: str
    target: str
    circuit: str
    timestamp_us: int
    rtt_us: float
    jitter_us: float
    loss: float            # packet loss fraction in [0, 1]

    @property
    def link_key(self) -> LinkKey:
        return LinkKey(self.origin, self.target, self.circuit)

    def to_dict(self) -> dict:
        return {
            "origin": self.origin,
            "target": self.target,
            "circuit": self.circuit,
            "timestamp_us": self.timestamp_us,
            "rtt_us": self.rtt_us,
            "jitter_us": self.jitter_us,
            "loss": self.loss,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RawSample":
        return cls(
            origin=data["origin"],
            target=data["target"],
            circuit=data["circuit"],
            timestamp_us=int(data["timestamp_us"]),
            rtt_us=float(data["rtt_us"]),
            jitter_us=float(data["jitter_us"]),
            loss=float(data["loss"]),
        )


@dataclass(frozen=True)
class TelemetryAccount:
    """
    A raw ledger telemetry account.

    data holds the account header bytes: byte 0 is the discriminator and
    bytes 1..9 the epoch as a little-endian u64. samples are the already
    decoded measurements the account carries.
    """
    address: str
    data: bytes
    samples: Tuple[RawSample, ...] = ()
    kind: str = "device"   # "device" or "internet"


# ============================================================================
# TOPOLOGY
# ============================================================================

@dataclass(frozen=True)
class Location:
    location_id: str
    code: str
    name: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "location_id": self.location_id,
            "code": self.code,
            "name": self.name,
            "lat": self.lat,
            "lng": self.lng,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Location":
        return cls(
            location_id=data["location_id"],
            code=data["code"],
            name=data.get("name", ""),
            lat=data.get("lat"),
            lng=data.get("lng"),
        )


@dataclass(frozen=True)
class Device:
    device_id: str
    code: str
    operator: str
    location_id: Optional[str] = None
    status: str = ACTIVATED

    @property
    def is_activated(self) -> bool:
        return self.status == ACTIVATED

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "code": self.code,
            "operator": self.operator,
            "location_id": self.location_id,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Device":
        return cls(
            device_id=data["device_id"],
            code=data["code"],
            operator=data["operator"],
            location_id=data.get("location_id"),
            status=data.get("status", ACTIVATED),
        )


@dataclass(frozen=True)
class Link:
    link_id: str
    code: str
    side_a: str
    side_z: str
    bandwidth_bps: Optional[int] = None   # None when the ledger does not declare one
    status: str = ACTIVATED

    @property
    def is_activated(self) -> bool:
        return self.status == ACTIVATED

    @property
    def forward_key(self) -> LinkKey:
        return LinkKey(self.side_a, self.side_z, self.link_id)

    def to_dict(self) -> dict:
        return {
            "link_id": self.link_id,
            "code": self.code,
            "side_a": self.side_a,
            "side_z": self.side_z,
            "bandwidth_bps": self.bandwidth_bps,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Link":
        return cls(
            link_id=data["link_id"],
            code=data["code"],
            side_a=data["side_a"],
            side_z=data["side_z"],
            bandwidth_bps=data.get("bandwidth_bps"),
            status=data.get("status", ACTIVATED),
        )


@dataclass(frozen=True)
class ValidatorPlacement:
    """A validator connected through a device, with its stake proxy."""
    validator_id: str
    device_id: str
    stake_proxy: int   # leader slots in the epoch

    def to_dict(self) -> dict:
        return {
            "validator_id": self.validator_id,
            "device_id": self.device_id,
            "stake_proxy": self.stake_proxy,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValidatorPlacement":
        return cls(
            validator_id=data["validator_id"],
            device_id=data["device_id"],
            stake_proxy=int(data["stake_proxy"]),
        )


@dataclass
class Topology:
    """Network topology snapshot: devices, locations, links, validators."""
    devices: Dict[str, Device] = field(default_factory=dict)
    locations: Dict[str, Location] = field(default_factory=dict)
    links: Dict[str, Link] = field(default_factory=dict)
    validators: List[ValidatorPlacement] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        devices: List[Device] = (),
        locations: List[Location] = (),
        links: List[Link] = (),
        validators: List[ValidatorPlacement] = (),
    ) -> "Topology":
        return cls(
            devices={d.device_id: d for d in devices},
            locations={l.location_id: l for l in locations},
            links={l.link_id: l for l in links},
            validators=list(validators),
        )

    def device_location(self, device_id: str) -> Optional[Location]:
        device = self.devices.get(device_id)
        if device is None or device.location_id is None:
            return None
        return self.locations.get(device.location_id)

    def link_devices(self, link: Link) -> Tuple[Optional[Device], Optional[Device]]:
        return self.devices.get(link.side_a), self.devices.get(link.side_z)

    def activated_links(self) -> Iterator[Link]:
        """Activated links whose two devices are activated, in link_id order."""
        for link_id in sorted(self.links):
            link = self.links[link_id]
            if not link.is_activated:
                continue
            a, z = self.link_devices(link)
            if a is not None and z is not None and a.is_activated and z.is_activated:
                yield link

    def expected_private_keys(self) -> List[LinkKey]:
        """One key per activated link, in declared side_a -> side_z orientation."""
        return [link.forward_key for link in self.activated_links()]

    def validate_references(self) -> None:
        """Raise AggregationError if any link or device points at nothing."""
        problems = []
        for link in self.links.values():
            for side in (link.side_a, link.side_z):
                if side not in self.devices:
                    problems.append(f"link {link.code} references unknown device {side}")
        for device in self.devices.values():
            if device.location_id is not None and device.location_id not in self.locations:
                problems.append(f"device {device.code} references unknown location {device.location_id}")
        if problems:
            raise AggregationError("inconsistent topology: " + "; ".join(sorted(problems)))

    def to_dict(self) -> dict:
        return {
            "devices": [self.devices[k].to_dict() for k in sorted(self.devices)],
            "locations": [self.locations[k].to_dict() for k in sorted(self.locations)],
            "links": [self.links[k].to_dict() for k in sorted(self.links)],
            "validators": [v.to_dict() for v in self.validators],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Topology":
        return cls.build(
            devices=[Device.from_dict(d) for d in data.get("devices", [])],
            locations=[Location.from_dict(l) for l in data.get("locations", [])],
            links=[Link.from_dict(l) for l in data.get("links", [])],
            validators=[ValidatorPlacement.from_dict(v) for v in data.get("validators", [])],
        )


# ============================================================================
# FETCH RESULT
# ============================================================================

@dataclass
class RawFetchResult:
    """Everything fetched for one epoch."""
    epoch: int
    topology: Topology
    telemetry_samples: List[RawSample]
    internet_samples: List[RawSample]
    start_us: int
    end_us: int
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def window(self) -> Tuple[int, int]:
        return self.start_us, self.end_us
