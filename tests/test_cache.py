"""
Tests for linkrewards/store/cache.py

Snapshot persistence, integrity checks and the lookback history provider.
"""

import json
import logging

import pytest

from linkrewards.calculator.engine import Allocation, OperatorShare
from linkrewards.calculator.inputs import build_reward_inputs
from linkrewards.errors import CacheCorruptError, CacheIoError, CacheNotFoundError
from linkrewards.store.cache import CacheManager
from linkrewards.store.data_store import CachedSnapshot, ProcessedMetrics

from factories import KEY_AB, create_test_store, healthy_samples


@pytest.fixture
def cache(tmp_path):
    return CacheManager(tmp_path / "cache")


@pytest.fixture
def store():
    return create_test_store(epoch=10)


# ============================================================================
# ROUND TRIP
# ============================================================================

class TestSaveLoad:
    """Tests for snapshot save and load."""

    def test_store_round_trip(self, cache, store):
        """Test a saved store loads back identical."""
        cache.save(store)
        assert cache.load(10) == store

    def test_full_snapshot_round_trip(self, cache, store):
        """Test every optional section survives the round trip."""
        inputs = build_reward_inputs(store.topology, store.link_stats)
        metrics = ProcessedMetrics.compute(store, inputs)
        allocation = Allocation(shares=[OperatorShare("op-1", 1.0, 0.7), OperatorShare("op-2", 0.5, 0.3)], engine="x")
        cache.save(store, metrics, inputs, allocation, committed=True)

        snapshot = cache.load_snapshot(10)
        assert snapshot.store == store
        assert snapshot.processed_metrics == metrics
        assert snapshot.shapley_inputs.to_json() == inputs.to_json()
        assert snapshot.allocation == allocation
        assert snapshot.is_committed

    def test_stats_keyed_in_sorted_order(self, cache, store):
        """Test link stats reload in key order."""
        cache.save(store)
        loaded = cache.load(10)
        assert list(loaded.link_stats) == sorted(loaded.link_stats)

    def test_load_by_path(self, cache, store):
        """Test loading a snapshot by file path."""
        path = cache.save(store)
        assert cache.load(str(path)).epoch == 10

    def test_overwrite_replaces(self, cache, store):
        """Test a second save replaces the document rather than merging."""
        cache.save(store, allocation=Allocation(shares=[OperatorShare("op-1", 1.0, 1.0)]))
        cache.save(store)
        snapshot = cache.load_snapshot(10)
        assert snapshot.allocation is None
        assert snapshot.is_committed is False

    def test_no_temp_files_left(self, cache, store):
        """Test only the final document remains after a save."""
        cache.save(store)
        assert [p.name for p in cache.cache_dir.iterdir()] == ["epoch_10.json"]

    def test_list_epochs(self, cache):
        """Test cached epochs list in order."""
        for epoch in (12, 3, 7):
            cache.save(create_test_store(epoch=epoch))
        assert cache.list_epochs() == [3, 7, 12]
        assert cache.exists(7)
        assert not cache.exists(8)

    def test_counts_logged(self, cache, store, caplog):
        """Test load and save log the operational counts."""
        with caplog.at_level(logging.INFO, logger="linkrewards.store.cache"):
            cache.save(store)
            cache.load(10)
        messages = [r.getMessage() for r in caplog.records]
        assert any("Saved epoch 10" in m and "devices=3" in m for m in messages)
        assert any("Loaded epoch 10" in m and "link_stats=3" in m for m in messages)


# ============================================================================
# INTEGRITY
# ============================================================================

class TestIntegrity:
    """Tests for corrupt and mismatched snapshots."""

    def test_missing(self, cache):
        """Test a missing epoch raises CacheNotFoundError."""
        with pytest.raises(CacheNotFoundError):
            cache.load(99)

    def test_invalid_json(self, cache):
        """Test a truncated document is corrupt."""
        cache.cache_dir.mkdir(parents=True)
        cache.path_for(10).write_text('{"schema_version": 1, "epoch"')
        with pytest.raises(CacheCorruptError):
            cache.load(10)

    def test_non_utf8_bytes(self, cache):
        """Test a document that is not UTF-8 text is corrupt."""
        cache.cache_dir.mkdir(parents=True)
        cache.path_for(10).write_bytes(b"\xff\xfe\x00garbage")
        with pytest.raises(CacheCorruptError):
            cache.load(10)

    def test_wrong_section_shape(self, cache, store):
        """Test a section of the wrong JSON type is corrupt."""
        path = cache.save(store)
        data = json.loads(path.read_text())
        data["data_store"]["topology"] = []
        path.write_text(json.dumps(data))
        with pytest.raises(CacheCorruptError):
            cache.load(10)

    def test_schema_mismatch(self, cache, store):
        """Test an unknown schema version is corrupt."""
        path = cache.save(store)
        data = json.loads(path.read_text())
        data["schema_version"] = 999
        path.write_text(json.dumps(data))
        with pytest.raises(CacheCorruptError, match="schema version"):
            cache.load(10)

    def test_missing_section(self, cache, store):
        """Test a document missing a required section is corrupt."""
        path = cache.save(store)
        data = json.loads(path.read_text())
        del data["data_store"]["topology"]
        path.write_text(json.dumps(data))
        with pytest.raises(CacheCorruptError):
            cache.load(10)

    def test_epoch_mismatch(self, cache, store):
        """Test a document filed under the wrong epoch is corrupt."""
        path = cache.save(store)
        path.rename(cache.path_for(11))
        with pytest.raises(CacheCorruptError, match="expected 11"):
            cache.load(11)

    def test_window_mismatch(self, cache, store):
        """Test a window other than the stored one is rejected."""
        cache.save(store)
        assert cache.load_snapshot(10, window=store.window).epoch == 10
        with pytest.raises(CacheCorruptError):
            cache.load_snapshot(10, window=(store.start_us, store.end_us + 1))

    def test_unwritable_directory(self, tmp_path, store):
        """Test write failures surface as CacheIoError."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        with pytest.raises(CacheIoError):
            CacheManager(blocker).save(store)


# ============================================================================
# HISTORY
# ============================================================================

class TestHistory:
    """Tests for the lookback history provider."""

    def test_returns_cached_stats(self, cache, store):
        """Test the provider returns a cached epoch's link stats."""
        cache.save(store)
        provider = cache.history()
        assert provider(10)[KEY_AB] == store.link_stats[KEY_AB]
        assert provider(9) is None

    def test_internet_kind(self, cache, store):
        """Test the internet provider returns internet stats."""
        cache.save(store)
        assert cache.history("internet_stats")(10) == {}

    def test_unknown_kind(self, cache):
        """Test an unknown stats kind is rejected."""
        with pytest.raises(ValueError):
            cache.history("nope")

    def test_corrupt_epoch_is_skipped(self, cache):
        """Test corrupt snapshots yield None instead of raising."""
        cache.cache_dir.mkdir(parents=True)
        cache.path_for(10).write_text("garbage")
        assert cache.history()(10) is None

    def test_undecodable_epoch_is_skipped(self, cache):
        """Test a snapshot that is not UTF-8 text yields None."""
        cache.cache_dir.mkdir(parents=True)
        cache.path_for(10).write_bytes(b"\xff\xfe\x00garbage")
        assert cache.history()(10) is None


def test_snapshot_dict_keys(store):
    """Test the document carries every top-level section."""
    data = CachedSnapshot(store=store).to_dict()
    assert set(data) == {
        "schema_version", "epoch", "created_at", "committed",
        "data_store", "processed_metrics", "shapley_inputs", "allocation",
    }


def test_processed_metrics_coverage():
    """Test coverage counts measured and penalized expected links."""
    samples = [s for s in healthy_samples() if s.circuit != "link-ca"]
    store = create_test_store(samples=samples)
    metrics = ProcessedMetrics.compute(store)
    assert metrics.private_coverage == pytest.approx(2 / 3)
    assert metrics.private_sources["class_default"] == 1
