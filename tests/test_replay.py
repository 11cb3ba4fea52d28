"""
Tests for linkrewards/worker/replay.py
"""

from dataclasses import replace

import pytest

from linkrewards.calculator.inputs import build_reward_inputs
from linkrewards.config import Settings
from linkrewards.errors import CacheCorruptError, CacheNotFoundError
from linkrewards.store.cache import CacheManager
from linkrewards.worker.replay import replay_epoch

from factories import KEY_AB, create_test_store


@pytest.fixture
def settings(tmp_path):
    return Settings(cache_dir=str(tmp_path / "cache"))


@pytest.fixture
def cache(settings):
    return CacheManager(settings.cache_dir)


def save_epoch(cache, settings, store=None, with_inputs=True):
    store = store or create_test_store(epoch=10)
    inputs = None
    if with_inputs:
        inputs = build_reward_inputs(
            store.topology, store.link_stats, store.internet_stats, settings.shapley, settings.demand
        )
    return cache.save(store, shapley_inputs=inputs)


class TestReplay:
    """Tests for recomputing a cached epoch."""

    def test_matches(self, cache, settings):
        """Test an untouched snapshot replays identically."""
        save_epoch(cache, settings)
        result = replay_epoch(10, settings, cache)
        assert result.matches
        assert result.epoch == 10
        assert len(result.link_stats) == 3

    def test_by_path(self, cache, settings):
        """Test replay accepts a snapshot path."""
        path = save_epoch(cache, settings)
        assert replay_epoch(str(path), settings, cache).matches

    def test_tampered_stats(self, cache, settings):
        """Test a modified cached stat is reported."""
        store = create_test_store(epoch=10)
        inputs = build_reward_inputs(store.topology, store.link_stats, store.internet_stats, settings.shapley, settings.demand)
        store.link_stats[KEY_AB] = replace(store.link_stats[KEY_AB], rtt_mean_us=1.0)
        cache.save(store, shapley_inputs=inputs)

        result = replay_epoch(10, settings, cache)
        assert not result.matches
        assert result.mismatches == [f"link_stats: {KEY_AB} differs"]

    def test_changed_policy_changes_inputs(self, cache, settings):
        """Test replaying under different settings reports input differences."""
        save_epoch(cache, settings)
        settings.shapley.contiguity_bonus = 0.0
        result = replay_epoch(10, settings, cache)
        assert result.mismatches == ["shapley_inputs: differs"]

    def test_inputs_not_cached(self, cache, settings):
        """Test a snapshot without inputs is reported, not reconstructed."""
        save_epoch(cache, settings, with_inputs=False)
        assert replay_epoch(10, settings, cache).mismatches == ["shapley_inputs: not cached"]

    def test_missing_epoch(self, cache, settings):
        """Test a missing snapshot propagates."""
        with pytest.raises(CacheNotFoundError):
            replay_epoch(10, settings, cache)

    def test_corrupt_epoch(self, cache, settings):
        """Test a corrupt snapshot propagates."""
        cache.cache_dir.mkdir(parents=True)
        cache.path_for(10).write_text("[]")
        with pytest.raises(CacheCorruptError):
            replay_epoch(10, settings, cache)

    def test_does_not_write(self, cache, settings):
        """Test replay leaves the cache document untouched."""
        path = save_epoch(cache, settings)
        before = path.read_bytes()
        replay_epoch(10, settings, cache)
        assert path.read_bytes() == before
