"""
Tests for linkrewards/worker/state.py
"""

import json
from datetime import datetime, timezone

import pytest

from linkrewards.worker.state import SchedulerState

NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class TestTransitions:
    """Tests for state transitions."""

    def test_default(self):
        """Test a fresh state processes any epoch."""
        state = SchedulerState()
        assert state.last_processed_epoch is None
        assert state.consecutive_failures == 0
        assert state.should_process_epoch(0)

    def test_success_resets_failures(self):
        """Test a success records the epoch and clears failures."""
        state = SchedulerState(consecutive_failures=4).record_success(100, NOW)
        assert state.last_processed_epoch == 100
        assert state.consecutive_failures == 0
        assert state.last_success_time == NOW

    def test_failure_increments(self):
        """Test failures accumulate without touching the epoch."""
        state = SchedulerState(last_processed_epoch=7).record_failure().record_failure()
        assert state.consecutive_failures == 2
        assert state.last_processed_epoch == 7

    def test_transitions_return_new_states(self):
        """Test the original state is never mutated."""
        state = SchedulerState()
        state.record_failure()
        state.record_check(NOW)
        assert state == SchedulerState()

    def test_should_process_epoch(self):
        """Test only epochs after the last processed one qualify."""
        state = SchedulerState(last_processed_epoch=100)
        assert not state.should_process_epoch(99)
        assert not state.should_process_epoch(100)
        assert state.should_process_epoch(101)

    def test_failure_ceiling(self):
        """Test the failure state starts at the ceiling."""
        assert not SchedulerState(consecutive_failures=9).is_in_failure_state(10)
        assert SchedulerState(consecutive_failures=10).is_in_failure_state(10)


class TestPersistence:
    """Tests for loading and saving state files."""

    def test_round_trip(self, tmp_path):
        """Test save then load preserves every field."""
        path = tmp_path / "scheduler.state"
        state = SchedulerState(12, 1, NOW, NOW)
        state.save(path)
        assert SchedulerState.load_or_default(path) == state
        assert not (tmp_path / "scheduler.state.tmp").exists()

    def test_missing_file(self, tmp_path):
        """Test a missing file yields a default state."""
        assert SchedulerState.load_or_default(tmp_path / "none") == SchedulerState()

    def test_corrupt_file_backed_up(self, tmp_path):
        """Test a corrupt file is backed up and replaced by a default state."""
        path = tmp_path / "scheduler.state"
        path.write_text("{not json")
        assert SchedulerState.load_or_default(path) == SchedulerState()
        assert (tmp_path / "scheduler.state.backup").read_text() == "{not json"

    @pytest.mark.parametrize("data", [
        {"last_processed_epoch": -1},
        {"last_processed_epoch": "ten"},
        {"consecutive_failures": -2},
        {"last_check_time": "yesterday"},
    ])
    def test_invalid_values_treated_as_corrupt(self, tmp_path, data):
        """Test out-of-range values fall back to a default state."""
        path = tmp_path / "scheduler.state"
        path.write_text(json.dumps(data))
        assert SchedulerState.load_or_default(path) == SchedulerState()

    def test_save_creates_parent(self, tmp_path):
        """Test save creates missing directories."""
        path = tmp_path / "nested" / "dir" / "scheduler.state"
        SchedulerState(last_processed_epoch=1).save(path)
        assert json.loads(path.read_text())["last_processed_epoch"] == 1
