"""
linkrewards/config.py

Configuration constants and data classes for linkrewards.

Settings are plain nested dataclasses with defaults. They can be built
from a dict, a JSON file, or overridden from LINKREWARDS_* environment
variables.
"""

import json
import os
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, get_type_hints

from .errors import ConfigurationError

logger = logging.getLogger("linkrewards.config")


# ============================================================================
# CONSTANTS
# ============================================================================

# Dead link penalty values (100% packet loss)
PENALTY_RTT_US = 1_000_000.0     # 1000ms
PENALTY_JITTER_US = 100_000.0    # 100ms

# Percentile bins computed for every link
DEFAULT_PERCENTILE_BINS: Tuple[float, ...] = (0.50, 0.75, 0.90, 0.95, 0.99)
REQUIRED_PERCENTILE_BINS: Tuple[float, ...] = (0.50, 0.95, 0.99)

# Samples closer than this (same link) are treated as duplicates
DEFAULT_DEDUP_WINDOW_US = 10_000_000

# Bandwidth
BPS_TO_GBPS = 1_000_000_000
DEFAULT_EDGE_BANDWIDTH_GBPS = 10

# Demand defaults
DEFAULT_TRAFFIC = 0.05
DEFAULT_DEMAND_TYPE = 1
SLOTS_IN_EPOCH = 432_000.0

# Scheduler defaults
DEFAULT_INTERVAL_SECONDS = 300.0
DEFAULT_MAX_CONSECUTIVE_FAILURES = 10

# Bump when the cache document layout changes
CACHE_SCHEMA_VERSION = 1

# Upper bound on historical lookback
MAX_LOOKBACK_EPOCHS = 10

VALID_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

ENV_PREFIX = "LINKREWARDS_"


# ============================================================================
# SETTINGS
# ============================================================================

@dataclass
class LookbackSettings:
    """Historical lookback used when a link has no samples this epoch."""
    enabled: bool = True
    max_epochs_lookback: int = 5
    min_coverage_threshold: float = 0.8   # prior epoch must cover 80% of links
    min_samples_per_link: int = 20        # prior stats need this many samples


@dataclass
class ClassDefaultStats:
    """Stats assigned to a link with no usable data, per link class."""
    rtt_us: float = 1_000_000.0
    jitter_us: float = 100_000.0
    uptime: float = 0.0


@dataclass
class AggregationSettings:
    """Statistical policy for one link class (private or internet)."""
    loss_threshold: float = 0.5           # sample counts as up when loss < this
    percentile_bins: List[float] = field(default_factory=lambda: list(DEFAULT_PERCENTILE_BINS))
    apply_dead_link_penalty: bool = True
    penalty_rtt_us: float = PENALTY_RTT_US
    penalty_jitter_us: float = PENALTY_JITTER_US
    dedup_window_us: int = DEFAULT_DEDUP_WINDOW_US
    lookback: LookbackSettings = field(default_factory=LookbackSettings)
    class_default: ClassDefaultStats = field(default_factory=ClassDefaultStats)

    @classmethod
    def private(cls) -> "AggregationSettings":
        """Defaults for private (device-to-device) links."""
        return cls()

    @classmethod
    def internet(cls) -> "AggregationSettings":
        """
        Defaults for public internet paths.

        Public paths carry baseline loss, so a sample only counts as down
        on total loss and dead paths fall back to the class default rather
        than the private-link penalty.
        """
        return cls(
            loss_threshold=1.0,
            apply_dead_link_penalty=False,
            class_default=ClassDefaultStats(rtt_us=250_000.0, jitter_us=25_000.0, uptime=0.0),
        )

    def validate(self, name: str) -> None:
        if not 0.0 < self.loss_threshold <= 1.0:
            raise ConfigurationError(f"{name}.loss_threshold must be in (0, 1], got {self.loss_threshold}")
        for q in self.percentile_bins:
            if not 0.0 < q < 1.0:
                raise ConfigurationError(f"{name}.percentile_bins values must be in (0, 1), got {q}")
        for q in REQUIRED_PERCENTILE_BINS:
            if q not in self.percentile_bins:
                raise ConfigurationError(f"{name}.percentile_bins must include {q}")
        if self.penalty_rtt_us <= 0 or self.penalty_jitter_us < 0:
            raise ConfigurationError(f"{name} penalty values must be positive")
        if self.dedup_window_us < 0:
            raise ConfigurationError(f"{name}.dedup_window_us must be >= 0")
        lb = self.lookback
        if not 0.0 <= lb.min_coverage_threshold <= 1.0:
            raise ConfigurationError(
                f"{name}.lookback.min_coverage_threshold must be between 0.0 and 1.0, "
                f"got {lb.min_coverage_threshold}"
            )
        if not 1 <= lb.max_epochs_lookback <= MAX_LOOKBACK_EPOCHS:
            raise ConfigurationError(
                f"{name}.lookback.max_epochs_lookback must be in 1..{MAX_LOOKBACK_EPOCHS}, "
                f"got {lb.max_epochs_lookback}"
            )
        if lb.min_samples_per_link <= 0:
            raise ConfigurationError(f"{name}.lookback.min_samples_per_link must be greater than 0")
        if self.class_default.rtt_us <= 0:
            raise ConfigurationError(f"{name}.class_default.rtt_us must be greater than 0")


@dataclass
class ContiguityPolicy:
    """Which links earn the contiguity bonus."""
    min_segment_devices: int = 3      # connected healthy segment must span this many devices
    same_operator_only: bool = False  # segment restricted to a single operator


@dataclass
class ShapleySettings:
    """Knobs applied while building allocation engine inputs."""
    operator_uptime: float = 0.98
    contiguity_bonus: float = 5.0
    demand_multiplier: float = 1.2
    contiguity: ContiguityPolicy = field(default_factory=ContiguityPolicy)


@dataclass
class DemandSettings:
    """Defaults for demand matrix rows."""
    default_traffic: float = DEFAULT_TRAFFIC
    default_type: int = DEFAULT_DEMAND_TYPE
    multicast: bool = False
    slots_in_epoch: float = SLOTS_IN_EPOCH


@dataclass
class FetcherSettings:
    """Fetcher boundary settings."""
    data_dir: str = "./epochs"
    min_account_coverage: float = 0.9   # fraction of accounts that must match the epoch


@dataclass
class SchedulerSettings:
    """Interval loop and failure ceiling."""
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    dry_run: bool = False
    state_file: str = "./scheduler.state"
    fetch_timeout: float = 120.0
    aggregation_timeout: float = 120.0
    allocation_timeout: float = 600.0
    engine: Optional[str] = None       # "module:attribute" of the allocation engine
    aggregation_workers: int = 0       # 0 = aggregate in-process


@dataclass
class Settings:
    """
    Complete configuration for a rewards pipeline.

    Usage:
        settings = Settings.from_file("linkrewards.json")
        settings = Settings.from_env(settings)
        settings.validate()
    """
    log_level: str = "info"
    cache_dir: str = "./cache"
    private: AggregationSettings = field(default_factory=AggregationSettings.private)
    internet: AggregationSettings = field(default_factory=AggregationSettings.internet)
    shapley: ShapleySettings = field(default_factory=ShapleySettings)
    demand: DemandSettings = field(default_factory=DemandSettings)
    fetcher: FetcherSettings = field(default_factory=FetcherSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    def validate(self) -> "Settings":
        """Raise ConfigurationError for out-of-range values."""
        if self.log_level.lower() not in VALID_LOG_LEVELS:
            raise ConfigurationError(
                f"Invalid log level '{self.log_level}'. Valid options are: {list(VALID_LOG_LEVELS)}"
            )
        self.private.validate("private")
        self.internet.validate("internet")

        shapley = self.shapley
        if not 0.0 <= shapley.operator_uptime <= 1.0:
            raise ConfigurationError(
                f"shapley.operator_uptime must be between 0.0 and 1.0, got {shapley.operator_uptime}"
            )
        if shapley.contiguity_bonus < 0.0:
            raise ConfigurationError(
                f"shapley.contiguity_bonus must be non-negative, got {shapley.contiguity_bonus}"
            )
        if shapley.demand_multiplier <= 0.0:
            raise ConfigurationError(
                f"shapley.demand_multiplier must be positive, got {shapley.demand_multiplier}"
            )
        if shapley.contiguity.min_segment_devices < 0:
            raise ConfigurationError("shapley.contiguity.min_segment_devices must be >= 0")

        if self.demand.default_traffic <= 0 or self.demand.slots_in_epoch <= 0:
            raise ConfigurationError("demand traffic and slots_in_epoch must be positive")
        if not 0.0 <= self.fetcher.min_account_coverage <= 1.0:
            raise ConfigurationError("fetcher.min_account_coverage must be between 0.0 and 1.0")

        sched = self.scheduler
        if sched.interval_seconds <= 0:
            raise ConfigurationError("scheduler.interval_seconds must be positive")
        if sched.max_consecutive_failures <= 0:
            raise ConfigurationError("scheduler.max_consecutive_failures must be greater than 0")
        for name in ("fetch_timeout", "aggregation_timeout", "allocation_timeout"):
            if getattr(sched, name) <= 0:
                raise ConfigurationError(f"scheduler.{name} must be positive")
        if sched.aggregation_workers < 0:
            raise ConfigurationError("scheduler.aggregation_workers must be >= 0")
        return self

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Build settings from a (possibly partial) nested dict."""
        return cls(
            log_level=data.get("log_level", "info"),
            cache_dir=data.get("cache_dir", "./cache"),
            private=_aggregation_from_dict(data.get("private"), AggregationSettings.private()),
            internet=_aggregation_from_dict(data.get("internet"), AggregationSettings.internet()),
            shapley=_shapley_from_dict(data.get("shapley") or {}),
            demand=DemandSettings(**(data.get("demand") or {})),
            fetcher=FetcherSettings(**(data.get("fetcher") or {})),
            scheduler=SchedulerSettings(**(data.get("scheduler") or {})),
        )

    @classmethod
    def from_file(cls, path) -> "Settings":
        """Load settings from a JSON document."""
        path = Path(path)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {path}")
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read config {path}: {e}")
        try:
            return cls.from_dict(data)
        except TypeError as e:
            raise ConfigurationError(f"Unknown setting in {path}: {e}")

    @classmethod
    def from_env(cls, base: Optional["Settings"] = None, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """
        Override scalar settings from LINKREWARDS_* environment variables.

        Nested fields use a double underscore, e.g.
        LINKREWARDS_SCHEDULER__INTERVAL_SECONDS=60.
        """
        settings = base or cls()
        environ = os.environ if environ is None else environ
        for key, raw in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            parts = key[len(ENV_PREFIX):].lower().split("__")
            target = settings
            for part in parts[:-1]:
                target = getattr(target, part, None)
                if target is None:
                    break
            if target is None or not hasattr(target, parts[-1]):
                logger.warning(f"Ignoring unknown environment setting {key}")
                continue
            current = getattr(target, parts[-1])
            annotated = get_type_hints(type(target)).get(parts[-1])
            setattr(target, parts[-1], _coerce(raw, current, key, annotated))
        return settings


# ============================================================================
# HELPERS
# ============================================================================

def _coerce(raw: str, current: Any, key: str, annotated: Any = None) -> Any:
    """Parse an environment string into the field's declared type."""
    kind = annotated if isinstance(annotated, type) else type(current)
    try:
        if kind is bool:
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if kind is int:
            return int(raw)
        if kind is float:
            return float(raw)
        if isinstance(current, list):
            return [float(p) for p in raw.split(",") if p.strip()]
    except ValueError:
        raise ConfigurationError(f"Invalid value for {key}: {raw!r}")
    return raw


def _aggregation_from_dict(data: Optional[dict], default: AggregationSettings) -> AggregationSettings:
    if not data:
        return default
    data = dict(data)
    lookback = data.pop("lookback", None)
    class_default = data.pop("class_default", None)
    merged = {**asdict(default), **data}
    merged["lookback"] = LookbackSettings(**{**asdict(default.lookback), **(lookback or {})})
    merged["class_default"] = ClassDefaultStats(
        **{**asdict(default.class_default), **(class_default or {})}
    )
    return AggregationSettings(**merged)


def _shapley_from_dict(data: dict) -> ShapleySettings:
    data = dict(data)
    contiguity = ContiguityPolicy(**(data.pop("contiguity", None) or {}))
    return ShapleySettings(contiguity=contiguity, **data)
