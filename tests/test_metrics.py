"""
Tests for linkrewards/metrics.py
"""

from linkrewards.metrics import PipelineMetrics


class TestPipelineMetrics:
    """Tests for the Prometheus collector."""

    def test_counters(self):
        """Test success, failure and skip counters."""
        metrics = PipelineMetrics()
        metrics.record_success(10, 2.0)
        metrics.record_failure("fetching", 1, 0.5)
        metrics.record_failure("fetching", 2, 0.5)
        metrics.record_skip()
        stats = metrics.get_stats()
        assert stats["runs_success"] == 1
        assert stats["runs_failure"] == 2
        assert stats["runs_skipped"] == 1
        assert stats["stage_failures"] == {"fetching": 2}
        assert stats["consecutive_failures"] == 2

    def test_success_resets_failure_gauge(self):
        """Test a success clears the consecutive failures gauge."""
        metrics = PipelineMetrics()
        metrics.record_failure("aggregating", 3, 1.0)
        metrics.record_success(11, 1.0)
        assert metrics.get_stats()["consecutive_failures"] == 0

    def test_collect_format(self):
        """Test exposition lines, labels and single HELP per metric."""
        metrics = PipelineMetrics()
        metrics.record_failure("fetching", 1, 0.5)
        metrics.record_failure("aggregating", 2, 0.5)
        metrics.record_inputs({"private_links": 3, "demands": 2})
        output = metrics.collect()
        assert 'linkrewards_stage_failures_total{stage="aggregating"} 1' in output
        assert 'linkrewards_stage_failures_total{stage="fetching"} 1' in output
        assert 'linkrewards_shapley_inputs{kind="private_links"} 3' in output
        assert output.count("# HELP linkrewards_stage_failures_total") == 1
        assert "linkrewards_last_processed_epoch" not in output

    def test_histogram_cumulative(self):
        """Test duration buckets are cumulative."""
        metrics = PipelineMetrics()
        metrics.record_success(1, 3.0)
        metrics.record_success(2, 100.0)
        output = metrics.collect()
        assert 'linkrewards_run_duration_seconds_bucket{le="5.0"} 1' in output
        assert 'linkrewards_run_duration_seconds_bucket{le="120.0"} 2' in output
        assert 'linkrewards_run_duration_seconds_bucket{le="+Inf"} 2' in output
        assert "linkrewards_run_duration_seconds_count 2" in output

    def test_reset(self):
        """Test reset clears counters."""
        metrics = PipelineMetrics()
        metrics.record_success(1, 1.0)
        metrics.reset_counters()
        assert metrics.get_stats()["runs_success"] == 0
        assert "linkrewards_run_duration_seconds_count" not in metrics.collect()
