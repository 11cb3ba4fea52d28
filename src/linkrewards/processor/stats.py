"""
linkrewards/processor/stats.py

Deterministic statistics helpers shared by both aggregators.

Percentiles use linear interpolation between closest ranks (the same rule
as numpy's default): for n sorted values and quantile q the position is
h = (n - 1) * q, and the result is x[floor(h)] + (h - floor(h)) *
(x[floor(h) + 1] - x[floor(h)]). The same input always produces the same
float, independent of input order.
"""

import math
from typing import Dict, Iterable, List, Sequence

from ..ingestor.types import RawSample


def percentile(sorted_values: Sequence[float], q: float) -> float:
    """Linear-interpolated percentile of an already sorted sequence."""
    if not sorted_values:
        raise ValueError("percentile of empty sequence")
    if not 0.0 <= q <= 1.0:
        raise ValueError(f"quantile must be in [0, 1], got {q}")
    n = len(sorted_values)
    if n == 1:
        return float(sorted_values[0])
    h = (n - 1) * q
    lo = math.floor(h)
    hi = min(lo + 1, n - 1)
    frac = h - lo
    return float(sorted_values[lo] + frac * (sorted_values[hi] - sorted_values[lo]))


def percentile_label(q: float) -> str:
    """0.5 -> "p50", 0.999 -> "p99.9"."""
    value = round(q * 100, 6)
    if value == int(value):
        return f"p{int(value)}"
    return f"p{value:g}"


def percentiles(values: Iterable[float], bins: Sequence[float]) -> Dict[str, float]:
    """Labelled percentiles for every bin, computed over one sorted copy."""
    ordered = sorted(values)
    return {percentile_label(q): percentile(ordered, q) for q in sorted(bins)}


def mean(values: Sequence[float]) -> float:
    return math.fsum(values) / len(values) if values else 0.0


def filter_window(samples: Iterable[RawSample], start_us: int, end_us: int) -> List[RawSample]:
    """Samples with start_us <= timestamp < end_us."""
    return [s for s in samples if start_us <= s.timestamp_us < end_us]


def dedup_samples(samples: Iterable[RawSample], window_us: int) -> List[RawSample]:
    """
    Drop bursty over-sampling for a single link.

    Samples are ordered by timestamp; the first sample opens a window of
    window_us and every later sample inside it is discarded. The next
    kept sample opens the next window. A window of 0 keeps everything.
    """
    ordered = sorted(samples, key=lambda s: (s.timestamp_us, s.rtt_us, s.jitter_us, s.loss))
    if window_us <= 0:
        return ordered
    kept: List[RawSample] = []
    window_start = None
    for sample in ordered:
        if window_start is not None and sample.timestamp_us - window_start < window_us:
            continue
        kept.append(sample)
        window_start = sample.timestamp_us
    return kept
