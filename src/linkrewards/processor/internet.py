"""
linkrewards/processor/internet.py

Aggregation of public internet path telemetry.

Public paths are a comparison baseline for private links. They run
through the same per-link machinery as TelemetryAggregator but with
their own AggregationSettings instance: a sample only counts as down on
total loss, and a dead path falls back to the internet class default
instead of the private-link penalty.
"""

import logging
from typing import Dict, List, Tuple

from ..config import AggregationSettings
from ..ingestor.types import LinkKey
from .telemetry import LinkStatsMap, StatsSource, TelemetryAggregator

logger = logging.getLogger("linkrewards.processor.internet")


class InternetTelemetryAggregator(TelemetryAggregator):
    """Aggregator for device-to-exchange and exchange-to-exchange paths."""

    kind = "internet"

    @staticmethod
    def default_settings() -> AggregationSettings:
        return AggregationSettings.internet()

    def expected_keys(self, epoch: int) -> List[LinkKey]:
        """
        Paths expected this epoch, taken from the nearest cached prior epoch.

        Internet paths have no topology record, so a path counts as
        expected when the last cached epoch carried real numbers for it
        (measured or reused). Without lookback or history nothing is
        expected and only observed paths are reported.
        """
        lookback = self.settings.lookback
        if not lookback.enabled or self.history is None:
            return []
        for distance in range(1, lookback.max_epochs_lookback + 1):
            prior_epoch = epoch - distance
            if prior_epoch < 0:
                break
            prior = self.history(prior_epoch)
            if not prior:
                continue
            keys = sorted(key for key, s in prior.items() if s.source != StatsSource.CLASS_DEFAULT)
            logger.debug(f"Expecting {len(keys)} internet paths for epoch {epoch} from epoch {prior_epoch}")
            return keys
        return []


def stats_by_location_pair(stats: LinkStatsMap) -> Dict[Tuple[str, str], List[float]]:
    """
    p95 rtt values per alphabetically ordered (origin, target) pair.

    Internet paths are identified by exchange or location codes, so the
    two directions of a path collapse onto one pair here. Class-default
    paths carry no measurement and are left out.
    """
    pairs: Dict[Tuple[str, str], List[float]] = {}
    for key, s in stats.items():
        if not s.is_measured:
            continue
        pair = tuple(sorted((key.origin, key.target)))
        pairs.setdefault(pair, []).append(s.rtt_p95)
    return {pair: pairs[pair] for pair in sorted(pairs)}
