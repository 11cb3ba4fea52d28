"""
linkrewards/errors.py

Error taxonomy for the rewards pipeline.

Fetch, aggregation, cache and solver failures abort a single run. The
scheduler catches them at its boundary and wraps them in SchedulerError
with the target epoch and stage attached. Only SchedulerHaltedError is
fatal to the process.
"""

from typing import Optional


class RewardsError(Exception):
    """Base class for all linkrewards errors."""


# ============================================================================
# FETCH
# ============================================================================

class FetchError(RewardsError):
    """Failure at the ledger fetcher boundary."""


class RpcError(FetchError):
    """Transport or RPC failure talking to the ledger."""


class DeserializationError(FetchError):
    """An account or document could not be decoded."""


class NoAccountsFoundError(FetchError):
    """No telemetry accounts were found for the requested epoch."""


class InvalidEpochError(FetchError):
    """The requested epoch is not valid (e.g. predecessor of epoch 0)."""


class ConfigurationError(FetchError):
    """Settings are missing or out of range."""


class CoverageError(FetchError):
    """Excluding mismatched accounts dropped coverage below the minimum."""


# ============================================================================
# AGGREGATION / SOLVER
# ============================================================================

class AggregationError(RewardsError):
    """Malformed aggregation input (bad window, dangling topology reference)."""


class SolverError(RewardsError):
    """The allocation engine rejected its input or failed."""


# ============================================================================
# CACHE
# ============================================================================

class CacheError(RewardsError):
    """Failure reading or writing the snapshot cache."""


class CacheNotFoundError(CacheError):
    """No snapshot exists for the requested epoch or path."""


class CacheCorruptError(CacheError):
    """A snapshot exists but cannot be decoded, or belongs to another epoch."""


class CacheIoError(CacheError):
    """The filesystem refused a read or write."""


# ============================================================================
# SCHEDULER
# ============================================================================

class SchedulerError(RewardsError):
    """A run failed; carries the epoch and stage it failed in."""

    def __init__(self, epoch: Optional[int], stage: str, cause: BaseException):
        self.epoch = epoch
        self.stage = stage
        self.cause = cause
        super().__init__(
            f"epoch {epoch} failed during {stage}: {type(cause).__name__}: {cause}"
        )


class SchedulerHaltedError(RewardsError):
    """Consecutive failures reached the ceiling; operator intervention needed."""

    def __init__(self, consecutive_failures: int, max_failures: int):
        self.consecutive_failures = consecutive_failures
        self.max_failures = max_failures
        super().__init__(
            f"scheduler halted after {consecutive_failures} consecutive failures "
            f"(ceiling {max_failures})"
        )
