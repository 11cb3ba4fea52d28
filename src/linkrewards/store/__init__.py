"""
linkrewards/store/

Epoch snapshots and the on-disk cache.
"""

from .data_store import DataStore, ProcessedMetrics, CachedSnapshot
from .cache import CacheManager

__all__ = [
    "DataStore",
    "ProcessedMetrics",
    "CachedSnapshot",
    "CacheManager",
]
