"""
linkrewards/ingestor/fetcher.py

Fetcher boundary: topology and telemetry for one epoch.

The ledger RPC itself lives behind the abstract Fetcher. The base class
owns everything the pipeline relies on regardless of transport:
- resolving "no epoch" to the last closed epoch (current - 1)
- fetching topology, telemetry and the epoch window concurrently,
  failing the whole fetch if any side fails
- validating each telemetry account's embedded epoch

Usage:
    fetcher = DirectoryFetcher(settings.fetcher)
    result = await fetcher.fetch()          # last closed epoch
    result = await fetcher.fetch(epoch=42)
"""

import json
import logging
import struct
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import trio

from ..config import FetcherSettings
from ..errors import (
    DeserializationError,
    InvalidEpochError,
    NoAccountsFoundError,
    CoverageError,
    RpcError,
)
from .types import RawFetchResult, RawSample, TelemetryAccount, Topology

logger = logging.getLogger("linkrewards.ingestor.fetcher")


# ============================================================================
# ACCOUNT LAYOUT
# ============================================================================

# byte 0: discriminator, bytes 1..9: epoch (u64 little-endian)
ACCOUNT_HEADER = struct.Struct("<BQ")
DEVICE_TELEMETRY_DISCRIMINATOR = 3
INTERNET_TELEMETRY_DISCRIMINATOR = 4


def encode_account_header(epoch: int, discriminator: int = DEVICE_TELEMETRY_DISCRIMINATOR) -> bytes:
    """Build the header bytes for a telemetry account."""
    return ACCOUNT_HEADER.pack(discriminator, epoch)


def decode_account_epoch(data: bytes) -> int:
    """Read the epoch stored after the discriminator byte."""
    if len(data) < ACCOUNT_HEADER.size:
        raise DeserializationError(
            f"account data too short: {len(data)} bytes, need {ACCOUNT_HEADER.size}"
        )
    _discriminator, epoch = ACCOUNT_HEADER.unpack_from(data, 0)
    return epoch


def validate_accounts(
    accounts: List[TelemetryAccount],
    epoch: int,
    min_coverage: float = 0.0,
) -> List[TelemetryAccount]:
    """
    Keep only accounts whose decoded epoch matches the requested one.

    Mismatched or undecodable accounts are logged and dropped. The fetch
    fails only when nothing is left or the kept fraction falls below
    min_coverage.
    """
    if not accounts:
        raise NoAccountsFoundError(f"no telemetry accounts found for epoch {epoch}")

    kept = []
    for account in accounts:
        try:
            account_epoch = decode_account_epoch(account.data)
        except DeserializationError as e:
            logger.warning(f"Excluding account {account.address}: {e}")
            continue
        if account_epoch != epoch:
            logger.warning(
                f"Excluding account {account.address}: epoch mismatch, "
                f"expected {epoch}, got {account_epoch}"
            )
            continue
        kept.append(account)

    if not kept:
        raise NoAccountsFoundError(
            f"all {len(accounts)} telemetry accounts for epoch {epoch} were excluded"
        )

    coverage = len(kept) / len(accounts)
    if coverage < min_coverage:
        raise CoverageError(
            f"only {len(kept)}/{len(accounts)} accounts matched epoch {epoch} "
            f"({coverage:.1%} < {min_coverage:.1%})"
        )
    if len(kept) < len(accounts):
        logger.info(f"Kept {len(kept)}/{len(accounts)} telemetry accounts for epoch {epoch}")
    return kept


# ============================================================================
# FETCHER
# ============================================================================

class Fetcher(ABC):
    """
    Abstract ledger fetcher.

    Subclasses provide the four transport calls; fetch() composes them.
    """

    def __init__(self, settings: Optional[FetcherSettings] = None):
        self.settings = settings or FetcherSettings()

    @abstractmethod
    async def current_epoch(self) -> int:
        """The ledger's current (still open) epoch."""

    @abstractmethod
    async def fetch_topology(self, epoch: int) -> Topology:
        """Devices, locations, links and validators for the epoch."""

    @abstractmethod
    async def fetch_telemetry_accounts(self, epoch: int) -> List[TelemetryAccount]:
        """Raw telemetry accounts (device and internet) for the epoch."""

    @abstractmethod
    async def epoch_window(self, epoch: int) -> Tuple[int, int]:
        """Half-open [start_us, end_us) bounds of the epoch on the ledger clock."""

    async def resolve_epoch(self, epoch: Optional[int] = None) -> int:
        if epoch is not None:
            return epoch
        current = await self.current_epoch()
        logger.info(f"Current epoch: {current}")
        if current == 0:
            raise InvalidEpochError("current epoch is 0, there is no closed epoch to fetch")
        return current - 1

    async def fetch_telemetry(self, epoch: int) -> Tuple[List[RawSample], List[RawSample]]:
        """Validated (device samples, internet samples) for the epoch."""
        accounts = await self.fetch_telemetry_accounts(epoch)
        accounts = validate_accounts(accounts, epoch, self.settings.min_account_coverage)
        device_samples: List[RawSample] = []
        internet_samples: List[RawSample] = []
        for account in accounts:
            if account.kind == "internet":
                internet_samples.extend(account.samples)
            else:
                device_samples.extend(account.samples)
        return device_samples, internet_samples

    async def fetch(self, epoch: Optional[int] = None) -> RawFetchResult:
        """
        Fetch topology, telemetry and window concurrently for one epoch.

        If any side fails the others are cancelled and the first error
        is raised; there is no partial result.
        """
        epoch = await self.resolve_epoch(epoch)
        logger.info(f"Fetching data for epoch {epoch}")

        results: Dict[str, object] = {}
        errors: List[Exception] = []

        async with trio.open_nursery() as nursery:

            async def run(name, fn):
                try:
                    results[name] = await fn(epoch)
                except Exception as e:
                    errors.append(e)
                    nursery.cancel_scope.cancel()

            nursery.start_soon(run, "topology", self.fetch_topology)
            nursery.start_soon(run, "telemetry", self.fetch_telemetry)
            nursery.start_soon(run, "window", self.epoch_window)

        if errors:
            raise errors[0]

        topology: Topology = results["topology"]
        device_samples, internet_samples = results["telemetry"]
        start_us, end_us = results["window"]
        if start_us < 0 or end_us <= start_us:
            raise InvalidEpochError(f"epoch {epoch} has an empty window: {start_us}..{end_us}us")
        all_samples = device_samples + internet_samples
        if not all_samples:
            raise NoAccountsFoundError(f"telemetry accounts for epoch {epoch} carry no samples")

        outside = sum(1 for s in all_samples if not start_us <= s.timestamp_us < end_us)
        if outside:
            logger.warning(f"{outside} samples for epoch {epoch} fall outside its window and will be ignored")
        logger.info(
            f"Epoch {epoch} fetched: {len(topology.devices)} devices, "
            f"{len(topology.links)} links, {len(device_samples)} device samples, "
            f"{len(internet_samples)} internet samples, window {start_us}..{end_us}us"
        )
        return RawFetchResult(
            epoch=epoch,
            topology=topology,
            telemetry_samples=device_samples,
            internet_samples=internet_samples,
            start_us=start_us,
            end_us=end_us,
        )


class DirectoryFetcher(Fetcher):
    """
    Fetcher backed by one JSON document per epoch.

    Layout:
        <data_dir>/epoch_<N>.json     {"start_us": ..., "end_us": ...,
                                       "topology": {...}, "accounts": [...]}
        <data_dir>/current_epoch      optional, plain integer

    Without a current_epoch file the current epoch is one past the
    newest epoch document.
    """

    def __init__(self, settings: Optional[FetcherSettings] = None, data_dir=None):
        super().__init__(settings)
        self.data_dir = Path(data_dir or self.settings.data_dir)

    def _epoch_path(self, epoch: int) -> Path:
        return self.data_dir / f"epoch_{epoch}.json"

    def _read_epoch(self, epoch: int) -> dict:
        path = self._epoch_path(epoch)
        if not path.exists():
            raise NoAccountsFoundError(f"no data for epoch {epoch} at {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DeserializationError(f"failed to decode {path}: {e}")
        except OSError as e:
            raise RpcError(f"failed to read {path}: {e}")

    async def current_epoch(self) -> int:
        marker = self.data_dir / "current_epoch"
        if marker.exists():
            try:
                return int(marker.read_text().strip())
            except ValueError as e:
                raise DeserializationError(f"invalid current_epoch marker: {e}")
        epochs = []
        for path in self.data_dir.glob("epoch_*.json"):
            try:
                epochs.append(int(path.stem.split("_", 1)[1]))
            except ValueError:
                continue
        if not epochs:
            raise NoAccountsFoundError(f"no epoch documents in {self.data_dir}")
        return max(epochs) + 1

    async def fetch_topology(self, epoch: int) -> Topology:
        data = self._read_epoch(epoch)
        try:
            return Topology.from_dict(data["topology"])
        except (KeyError, TypeError, ValueError) as e:
            raise DeserializationError(f"invalid topology for epoch {epoch}: {e}")

    async def epoch_window(self, epoch: int) -> Tuple[int, int]:
        data = self._read_epoch(epoch)
        try:
            return int(data["start_us"]), int(data["end_us"])
        except (KeyError, TypeError, ValueError) as e:
            raise DeserializationError(f"invalid window for epoch {epoch}: {type(e).__name__}: {e}")

    async def fetch_telemetry_accounts(self, epoch: int) -> List[TelemetryAccount]:
        data = self._read_epoch(epoch)
        accounts = []
        try:
            for raw in data.get("accounts", []):
                accounts.append(TelemetryAccount(
                    address=raw["address"],
                    data=bytes.fromhex(raw["data"]),
                    samples=tuple(RawSample.from_dict(s) for s in raw.get("samples", [])),
                    kind=raw.get("kind", "device"),
                ))
        except (KeyError, TypeError, ValueError) as e:
            raise DeserializationError(f"invalid telemetry accounts for epoch {epoch}: {e}")
        return accounts


__all__ = [
    "Fetcher",
    "DirectoryFetcher",
    "decode_account_epoch",
    "encode_account_header",
    "validate_accounts",
]
