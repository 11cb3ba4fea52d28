"""
linkrewards/export.py

Operator-facing renderings of a cached epoch.

Each table (link stats, internet stats, private links, demands, public
links) can be rendered as CSV, compact JSON or pretty JSON. These are
presentational only; the cache document stays the source of truth.

Usage:
    text = export_table(snapshot, "private-links", "csv")
"""

import json
import logging
from typing import Dict, List

import pandas as pd

from .processor.telemetry import LinkStatsMap
from .store.data_store import CachedSnapshot

logger = logging.getLogger("linkrewards.export")

FORMATS = ("csv", "json", "json-pretty")
TABLES = ("link-stats", "internet-stats", "private-links", "demands", "public-links")


def link_stats_rows(stats: LinkStatsMap) -> List[Dict]:
    """One flat row per link; percentile dicts become rtt_p50, jitter_p95, ... columns."""
    rows = []
    for key in sorted(stats):
        s = stats[key]
        row = {
            "origin": key.origin,
            "target": key.target,
            "circuit": key.circuit,
            "sample_count": s.sample_count,
            "uptime_percentage": s.uptime_percentage,
        }
        for label, value in s.rtt_percentiles.items():
            row[f"rtt_{label}_us"] = value
        for label, value in s.jitter_percentiles.items():
            row[f"jitter_{label}_us"] = value
        row.update({
            "rtt_mean_us": s.rtt_mean_us,
            "rtt_min_us": s.rtt_min_us,
            "rtt_max_us": s.rtt_max_us,
            "jitter_mean_us": s.jitter_mean_us,
            "loss_rate": s.loss_rate,
            "penalty_applied": s.penalty_applied,
            "source": s.source.value,
            "source_epoch": s.source_epoch,
        })
        rows.append(row)
    return rows


def table_rows(snapshot: CachedSnapshot, table: str) -> List[Dict]:
    if table == "link-stats":
        return link_stats_rows(snapshot.store.link_stats)
    if table == "internet-stats":
        return link_stats_rows(snapshot.store.internet_stats)

    inputs = snapshot.shapley_inputs
    if inputs is None:
        raise ValueError(f"epoch {snapshot.epoch} has no reward inputs cached")
    if table == "private-links":
        return [l.to_dict() for l in inputs.private_links]
    if table == "demands":
        return [d.to_dict() for d in inputs.demands]
    if table == "public-links":
        return [l.to_dict() for l in inputs.public_links]
    raise ValueError(f"unknown table {table!r}, expected one of {TABLES}")


def render(rows: List[Dict], fmt: str) -> str:
    if fmt == "csv":
        return pd.DataFrame(rows).to_csv(index=False)
    if fmt == "json":
        return json.dumps(rows, separators=(",", ":"))
    if fmt == "json-pretty":
        return json.dumps(rows, indent=2)
    raise ValueError(f"unknown format {fmt!r}, expected one of {FORMATS}")


def export_table(snapshot: CachedSnapshot, table: str, fmt: str = "csv") -> str:
    rows = table_rows(snapshot, table)
    logger.debug(f"Exporting {len(rows)} {table} rows for epoch {snapshot.epoch} as {fmt}")
    return render(rows, fmt)
