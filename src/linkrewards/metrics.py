"""
linkrewards/metrics.py

Prometheus metrics for the rewards pipeline.

Tracks scheduler runs (successes, failures per stage, durations) and
the size of the last reward inputs, and renders them in Prometheus text
exposition format.
"""

import time
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("linkrewards.metrics")


class PipelineMetrics:
    """
    Prometheus metrics collector for the scheduler.

    Usage:
        metrics = PipelineMetrics()
        scheduler = Scheduler(settings, fetcher, cache, metrics=metrics)

        # Get metrics in Prometheus format
        prometheus_output = metrics.collect()
    """

    # Metric definitions
    METRICS = {
        "linkrewards_runs_success_total": {
            "type": "counter",
            "help": "Total number of successful pipeline runs",
        },
        "linkrewards_runs_failure_total": {
            "type": "counter",
            "help": "Total number of failed pipeline runs",
        },
        "linkrewards_stage_failures_total": {
            "type": "counter",
            "help": "Failed runs by the stage they failed in",
        },
        "linkrewards_runs_skipped_total": {
            "type": "counter",
            "help": "Ticks that found nothing to process",
        },
        "linkrewards_last_processed_epoch": {
            "type": "gauge",
            "help": "Last epoch committed by the scheduler",
        },
        "linkrewards_consecutive_failures": {
            "type": "gauge",
            "help": "Consecutive failed runs since the last success",
        },
        "linkrewards_shapley_inputs": {
            "type": "gauge",
            "help": "Rows in the last reward inputs, by kind",
        },
        "linkrewards_run_duration_seconds": {
            "type": "histogram",
            "help": "Wall time of a pipeline run in seconds",
        },
        "linkrewards_uptime_seconds": {
            "type": "counter",
            "help": "Process uptime in seconds",
        },
    }

    def __init__(self):
        self._start_time = time.time()

        # Counters (persist across collections)
        self._success = 0
        self._failure = 0
        self._skipped = 0
        self._stage_failures: Dict[str, int] = {}

        # Gauges
        self._last_processed_epoch: Optional[int] = None
        self._consecutive_failures = 0
        self._input_counts: Dict[str, int] = {}

        # Histogram buckets for run duration
        self._duration_buckets = [1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0]
        self._duration_counts = {b: 0 for b in self._duration_buckets}
        self._duration_counts[float('inf')] = 0
        self._duration_sum = 0.0
        self._duration_count = 0

    def record_success(self, epoch: int, duration_seconds: float) -> None:
        self._success += 1
        self._last_processed_epoch = epoch
        self._consecutive_failures = 0
        self._record_duration(duration_seconds)

    def record_failure(self, stage: str, consecutive_failures: int, duration_seconds: float) -> None:
        self._failure += 1
        self._stage_failures[stage] = self._stage_failures.get(stage, 0) + 1
        self._consecutive_failures = consecutive_failures
        self._record_duration(duration_seconds)

    def record_skip(self) -> None:
        self._skipped += 1

    def record_inputs(self, counts: Dict[str, int]) -> None:
        """Record row counts of the last built reward inputs."""
        self._input_counts = dict(counts)

    def _record_duration(self, seconds: float) -> None:
        self._duration_sum += seconds
        self._duration_count += 1
        for bucket in self._duration_buckets:
            if seconds <= bucket:
                self._duration_counts[bucket] += 1
        self._duration_counts[float('inf')] += 1

    def collect(self) -> str:
        """
        Collect all metrics and return in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []
        emitted = set()

        def add_metric(name: str, value: float, labels: Dict[str, str] = None):
            metric_def = self.METRICS.get(name, {})
            if name not in emitted:
                lines.append(f"# HELP {name} {metric_def.get('help', '')}")
                lines.append(f"# TYPE {name} {metric_def.get('type', 'gauge')}")
                emitted.add(name)

            if labels:
                label_str = ",".join(f'{k}="{v}"' for k, v in labels.items())
                lines.append(f"{name}{{{label_str}}} {value}")
            else:
                lines.append(f"{name} {value}")

        add_metric("linkrewards_runs_success_total", self._success)
        add_metric("linkrewards_runs_failure_total", self._failure)
        for stage in sorted(self._stage_failures):
            add_metric("linkrewards_stage_failures_total", self._stage_failures[stage], {"stage": stage})
        add_metric("linkrewards_runs_skipped_total", self._skipped)
        if self._last_processed_epoch is not None:
            add_metric("linkrewards_last_processed_epoch", self._last_processed_epoch)
        add_metric("linkrewards_consecutive_failures", self._consecutive_failures)
        for kind in sorted(self._input_counts):
            add_metric("linkrewards_shapley_inputs", self._input_counts[kind], {"kind": kind})
        add_metric("linkrewards_uptime_seconds", time.time() - self._start_time)

        # Run duration histogram
        if self._duration_count > 0:
            name = "linkrewards_run_duration_seconds"
            lines.append(f"# HELP {name} {self.METRICS[name]['help']}")
            lines.append(f"# TYPE {name} histogram")

            # bucket counts are already cumulative
            for bucket in self._duration_buckets:
                lines.append(f'{name}_bucket{{le="{bucket}"}} {self._duration_counts[bucket]}')
            lines.append(f'{name}_bucket{{le="+Inf"}} {self._duration_counts[float("inf")]}')
            lines.append(f"{name}_sum {self._duration_sum}")
            lines.append(f"{name}_count {self._duration_count}")

        return "\n".join(lines) + "\n"

    def get_stats(self) -> Dict[str, Any]:
        """
        Get metrics as a dictionary (for JSON output).

        Returns:
            Dictionary of metric values
        """
        return {
            "runs_success": self._success,
            "runs_failure": self._failure,
            "runs_skipped": self._skipped,
            "stage_failures": dict(self._stage_failures),
            "last_processed_epoch": self._last_processed_epoch,
            "consecutive_failures": self._consecutive_failures,
            "shapley_inputs": dict(self._input_counts),
            "uptime_seconds": time.time() - self._start_time,
        }

    def reset_counters(self) -> None:
        """Reset all counters (useful for testing)."""
        self._success = 0
        self._failure = 0
        self._skipped = 0
        self._stage_failures = {}
        self._duration_counts = {b: 0 for b in self._duration_buckets}
        self._duration_counts[float('inf')] = 0
        self._duration_sum = 0.0
        self._duration_count = 0
