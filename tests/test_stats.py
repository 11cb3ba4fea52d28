"""
Tests for linkrewards/processor/stats.py

Percentile interpolation, labels, window filtering and deduplication.
"""

import pytest

from linkrewards.processor.stats import (
    dedup_samples,
    filter_window,
    mean,
    percentile,
    percentile_label,
    percentiles,
)

from factories import BASE_US, KEY_AB, create_test_sample


# ============================================================================
# PERCENTILES
# ============================================================================

class TestPercentile:
    """Tests for linear-interpolated percentiles."""

    def test_median_of_odd_count(self):
        """Test the median of an odd-sized set is the middle value."""
        assert percentile([9, 10, 11, 12, 13], 0.5) == 11.0

    def test_median_interpolates(self):
        """Test the median of an even-sized set interpolates."""
        assert percentile([1, 2, 3, 4], 0.5) == 2.5

    def test_p95_interpolates(self):
        """Test p95 between closest ranks."""
        assert percentile([1, 2, 3, 4], 0.95) == pytest.approx(3.85)

    def test_extremes(self):
        """Test q=0 and q=1 return min and max."""
        values = [1.0, 5.0, 7.0]
        assert percentile(values, 0.0) == 1.0
        assert percentile(values, 1.0) == 7.0

    def test_single_value(self):
        """Test a single value is returned for every quantile."""
        assert percentile([42], 0.99) == 42.0

    def test_empty_raises(self):
        """Test empty input is rejected."""
        with pytest.raises(ValueError):
            percentile([], 0.5)

    def test_quantile_out_of_range(self):
        """Test quantiles outside [0, 1] are rejected."""
        with pytest.raises(ValueError):
            percentile([1, 2], 1.5)

    def test_percentiles_ignore_input_order(self):
        """Test labelled percentiles do not depend on input order."""
        bins = [0.5, 0.95, 0.99]
        a = percentiles([13, 9, 11, 10, 12], bins)
        b = percentiles([9, 10, 11, 12, 13], bins)
        assert a == b
        assert list(a) == ["p50", "p95", "p99"]

    def test_percentiles_monotonic(self):
        """Test p50 <= p95 <= p99."""
        result = percentiles([5, 100, 3, 8, 2000, 7, 6, 9, 11], [0.5, 0.95, 0.99])
        assert result["p50"] <= result["p95"] <= result["p99"]


class TestPercentileLabel:
    """Tests for percentile labels."""

    def test_whole_labels(self):
        """Test whole-number labels."""
        assert percentile_label(0.5) == "p50"
        assert percentile_label(0.95) == "p95"
        assert percentile_label(0.99) == "p99"

    def test_fractional_label(self):
        """Test fractional labels keep their decimals."""
        assert percentile_label(0.999) == "p99.9"


def test_mean_of_empty_is_zero():
    """Test mean of nothing is 0."""
    assert mean([]) == 0.0
    assert mean([1.0, 2.0, 3.0]) == 2.0


# ============================================================================
# WINDOW / DEDUP
# ============================================================================

class TestFilterWindow:
    """Tests for window filtering."""

    def test_half_open_window(self):
        """Test start is inclusive and end exclusive."""
        samples = [create_test_sample(timestamp_us=t) for t in (99, 100, 150, 200)]
        kept = filter_window(samples, 100, 200)
        assert [s.timestamp_us for s in kept] == [100, 150]


class TestDedupSamples:
    """Tests for dedup window handling."""

    def test_keeps_first_sample_per_window(self):
        """Test bursts inside the window collapse to their first sample."""
        offsets = [0, 5, 10, 12, 25]
        samples = [create_test_sample(timestamp_us=BASE_US + o * 1_000_000) for o in offsets]
        kept = dedup_samples(samples, 10_000_000)
        assert [(s.timestamp_us - BASE_US) // 1_000_000 for s in kept] == [0, 10, 25]

    def test_unsorted_input(self):
        """Test samples are ordered by timestamp before dedup."""
        samples = [
            create_test_sample(timestamp_us=BASE_US + 3_000_000, rtt_us=3),
            create_test_sample(timestamp_us=BASE_US, rtt_us=1),
        ]
        kept = dedup_samples(samples, 10_000_000)
        assert len(kept) == 1
        assert kept[0].rtt_us == 1

    def test_zero_window_keeps_everything(self):
        """Test a zero window disables dedup."""
        samples = [create_test_sample(KEY_AB, BASE_US + i) for i in range(5)]
        assert len(dedup_samples(samples, 0)) == 5
