"""
linkrewards/store/cache.py

Durable per-epoch snapshot cache.

One JSON document per epoch under cache_dir. Saves always write the
complete snapshot to a temporary file and rename it into place, so a
reader sees either the old document or the new one. Loads never return
a partially hydrated store: an unreadable document, a schema mismatch
or an epoch mismatch raises CacheCorruptError.

Usage:
    cache = CacheManager("./cache")
    path = cache.save(store, processed_metrics=metrics, shapley_inputs=inputs)
    store = cache.load(42)
    snapshot = cache.load_snapshot("./cache/epoch_42.json")
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from ..config import CACHE_SCHEMA_VERSION
from ..errors import CacheCorruptError, CacheError, CacheIoError, CacheNotFoundError
from ..calculator.engine import Allocation
from ..calculator.inputs import ShapleyInputs
from ..processor.telemetry import HistoryProvider, LinkStatsMap
from .data_store import CachedSnapshot, DataStore, ProcessedMetrics

logger = logging.getLogger("linkrewards.store.cache")

EpochOrPath = Union[int, str, Path]


def _format_counts(counts: Dict[str, int]) -> str:
    return ", ".join(f"{name}={value}" for name, value in counts.items())


class CacheManager:
    """Reads and writes CachedSnapshot documents keyed by epoch."""

    def __init__(self, cache_dir: Union[str, Path] = "./cache"):
        self.cache_dir = Path(cache_dir)

    def path_for(self, epoch: int) -> Path:
        return self.cache_dir / f"epoch_{epoch}.json"

    def exists(self, epoch: int) -> bool:
        return self.path_for(epoch).exists()

    def list_epochs(self) -> List[int]:
        if not self.cache_dir.exists():
            return []
        epochs = []
        for path in self.cache_dir.glob("epoch_*.json"):
            try:
                epochs.append(int(path.stem.split("_", 1)[1]))
            except ValueError:
                continue
        return sorted(epochs)

    # ------------------------------------------------------------------ save

    def save(
        self,
        store: DataStore,
        processed_metrics: Optional[ProcessedMetrics] = None,
        shapley_inputs: Optional[ShapleyInputs] = None,
        allocation: Optional[Allocation] = None,
        committed: bool = False,
    ) -> Path:
        """Write a complete snapshot for store.epoch, replacing any previous one."""
        snapshot = CachedSnapshot(
            store=store,
            processed_metrics=processed_metrics,
            shapley_inputs=shapley_inputs,
            allocation=allocation,
            committed=committed,
        )
        return self.save_snapshot(snapshot)

    def save_snapshot(self, snapshot: CachedSnapshot) -> Path:
        path = self.path_for(snapshot.epoch)
        tmp_name = None
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=self.cache_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CacheIoError(f"failed to write cache {path}: {e}")

        logger.info(f"Saved epoch {snapshot.epoch} to cache {path}: {_format_counts(snapshot.store.counts())}")
        return path

    # ------------------------------------------------------------------ load

    def _resolve(self, epoch_or_path: EpochOrPath) -> Tuple[Path, Optional[int]]:
        if isinstance(epoch_or_path, int):
            return self.path_for(epoch_or_path), epoch_or_path
        return Path(epoch_or_path), None

    def load_snapshot(
        self,
        epoch_or_path: EpochOrPath,
        window: Optional[Tuple[int, int]] = None,
    ) -> CachedSnapshot:
        """
        Load a full snapshot.

        When an epoch is given the embedded epoch must match it exactly;
        when window is given the embedded time range must match too.
        """
        path, expected_epoch = self._resolve(epoch_or_path)
        if not path.exists():
            raise CacheNotFoundError(f"no cache at {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CacheCorruptError(f"cache {path} is not valid JSON: {e}")
        except OSError as e:
            raise CacheIoError(f"failed to read cache {path}: {e}")

        if not isinstance(data, dict):
            raise CacheCorruptError(f"cache {path} is not a snapshot document")
        version = data.get("schema_version")
        if version != CACHE_SCHEMA_VERSION:
            raise CacheCorruptError(
                f"cache {path} has schema version {version}, expected {CACHE_SCHEMA_VERSION}"
            )
        try:
            snapshot = CachedSnapshot.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise CacheCorruptError(f"cache {path} could not be decoded: {type(e).__name__}: {e}")

        if expected_epoch is not None and snapshot.epoch != expected_epoch:
            raise CacheCorruptError(
                f"cache {path} holds epoch {snapshot.epoch}, expected {expected_epoch}"
            )
        if window is not None and tuple(window) != snapshot.store.window:
            raise CacheCorruptError(
                f"cache {path} covers {snapshot.store.window}, expected {tuple(window)}"
            )

        logger.info(f"Loaded epoch {snapshot.epoch} from cache {path}: {_format_counts(snapshot.store.counts())}")
        return snapshot

    def load(self, epoch_or_path: EpochOrPath) -> DataStore:
        return self.load_snapshot(epoch_or_path).store

    # --------------------------------------------------------------- history

    def history(self, kind: str = "link_stats") -> HistoryProvider:
        """
        Lookback provider over cached epochs.

        Returns epoch -> stats map (link_stats or internet_stats), or None
        when the epoch is not cached or its snapshot is unusable.
        """
        if kind not in ("link_stats", "internet_stats"):
            raise ValueError(f"unknown stats kind {kind!r}")
        loaded: Dict[int, Optional[LinkStatsMap]] = {}

        def provider(epoch: int) -> Optional[LinkStatsMap]:
            if epoch not in loaded:
                try:
                    store = self.load(epoch)
                    loaded[epoch] = getattr(store, kind)
                except CacheNotFoundError:
                    loaded[epoch] = None
                except CacheError as e:
                    logger.warning(f"Ignoring cached epoch {epoch} for lookback: {e}")
                    loaded[epoch] = None
            return loaded[epoch]

        return provider
