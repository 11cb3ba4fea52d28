"""
Tests for linkrewards/calculator/inputs.py

Devices, private links, contiguity, public links and demands.
"""

from dataclasses import replace

import pytest

from linkrewards.config import ContiguityPolicy, DemandSettings, ShapleySettings
from linkrewards.ingestor.types import Device, LinkKey, Location, Topology
from linkrewards.calculator.inputs import (
    DemandOverride,
    ShapleyInputs,
    build_city_stats,
    build_demands,
    build_devices,
    build_private_links,
    build_public_links,
    build_reward_inputs,
    contiguous_links,
)
from linkrewards.processor.telemetry import StatsSource, TelemetryAggregator

from factories import (
    KEY_AB,
    KEY_BC,
    KEY_CA,
    create_test_stats,
    create_test_topology,
    healthy_samples,
    samples_window,
    stats_map,
)


def measured_stats():
    samples = healthy_samples()
    topology = create_test_topology()
    return TelemetryAggregator().aggregate(
        samples, topology.expected_private_keys(), samples_window(samples), 10
    )


def penalized(key):
    return replace(create_test_stats(key, uptime=0.0), penalty_applied=True, source=StatsSource.PENALTY)


# ============================================================================
# DEVICES
# ============================================================================

class TestBuildDevices:
    """Tests for solver device ids."""

    def test_city_ids(self):
        """Test ids are upper-cased city codes with a two-digit counter."""
        devices, ids = build_devices(create_test_topology())
        assert ids == {"dev-a": "NYC01", "dev-b": "LON01", "dev-c": "FRA01"}
        assert [d.device for d in devices] == ["FRA01", "LON01", "NYC01"]
        assert all(d.edge == 10.0 for d in devices)

    def test_numbering_follows_operator_order(self):
        """Test devices in one city are numbered by operator then device id."""
        topology = Topology.build(
            devices=[
                Device("dev-x", "x", "op-2", "loc-nyc"),
                Device("dev-y", "y", "op-1", "loc-nyc"),
                Device("dev-z", "z", "op-1", None),
            ],
            locations=[Location("loc-nyc", "nyc")],
        )
        _devices, ids = build_devices(topology)
        assert ids == {"dev-y": "NYC01", "dev-x": "NYC02"}


# ============================================================================
# PRIVATE LINKS
# ============================================================================

class TestBuildPrivateLinks:
    """Tests for private link construction."""

    def test_one_row_per_activated_link(self):
        """Test every activated link appears, sorted by device ids."""
        links = build_private_links(create_test_topology(), measured_stats(), ShapleySettings())
        assert [(l.device1, l.device2) for l in links] == [
            ("FRA01", "NYC01"),
            ("LON01", "FRA01"),
            ("NYC01", "LON01"),
        ]

    def test_bandwidth(self):
        """Test declared bandwidth converts to Gbps and missing bandwidth defaults."""
        links = {l.link_id: l for l in build_private_links(create_test_topology(), measured_stats(), ShapleySettings())}
        assert links["link-ab"].bandwidth_gbps == 100.0
        assert links["link-bc"].bandwidth_gbps == 10.0

    def test_latency_from_p95(self):
        """Test latency is the p95 rtt in milliseconds."""
        stats = measured_stats()
        links = {l.link_id: l for l in build_private_links(create_test_topology(), stats, ShapleySettings())}
        assert links["link-ab"].latency_ms == pytest.approx(stats[KEY_AB].rtt_p95 / 1000.0)

    def test_worse_direction_wins(self):
        """Test a link takes the higher latency and lower uptime of its two directions."""
        stats = stats_map(
            create_test_stats(KEY_AB, rtt_us=2000.0, uptime=1.0),
            create_test_stats(KEY_AB.reversed(), rtt_us=8000.0, uptime=0.99),
            create_test_stats(KEY_BC),
            create_test_stats(KEY_CA),
        )
        links = {l.link_id: l for l in build_private_links(create_test_topology(), stats, ShapleySettings())}
        assert links["link-ab"].latency_ms == pytest.approx(8.0)
        assert links["link-ab"].uptime == 0.99

    def test_performance_score_and_bonus(self):
        """Test healthy contiguous links get the capped uptime score plus the bonus."""
        links = build_private_links(create_test_topology(), measured_stats(), ShapleySettings())
        for link in links:
            assert link.contiguous is True
            assert link.performance_score == pytest.approx(6.0)

    def test_low_uptime_scales_score(self):
        """Test uptime below the operator floor lowers the score."""
        stats = stats_map(
            create_test_stats(KEY_AB, uptime=0.49),
            create_test_stats(KEY_BC),
            create_test_stats(KEY_CA),
        )
        links = {l.link_id: l for l in build_private_links(create_test_topology(), stats, ShapleySettings())}
        assert links["link-ab"].performance_score == pytest.approx(0.5)
        assert links["link-ab"].contiguous is False

    def test_penalized_link_flagged(self):
        """Test a dead link is flagged and never contiguous."""
        stats = stats_map(create_test_stats(KEY_AB), create_test_stats(KEY_BC), penalized(KEY_CA))
        links = {l.link_id: l for l in build_private_links(create_test_topology(), stats, ShapleySettings())}
        assert links["link-ca"].penalty_applied is True
        assert links["link-ca"].contiguous is False
        assert links["link-ab"].contiguous is True
        assert links["link-bc"].contiguous is True

    def test_inactive_link_skipped(self):
        """Test links that are not activated are left out."""
        topology = create_test_topology()
        topology.links["link-ca"] = replace(topology.links["link-ca"], status="suspended")
        links = build_private_links(topology, measured_stats(), ShapleySettings())
        assert "link-ca" not in {l.link_id for l in links}


class TestContiguity:
    """Tests for the contiguity rule."""

    def test_segment_too_small(self):
        """Test a single healthy link does not span enough devices."""
        topology = create_test_topology()
        assert contiguous_links(topology, {"link-ab"}, ContiguityPolicy(min_segment_devices=3)) == set()
        assert contiguous_links(topology, {"link-ab"}, ContiguityPolicy(min_segment_devices=2)) == {"link-ab"}

    def test_chain_qualifies(self):
        """Test two connected links span three devices."""
        topology = create_test_topology()
        result = contiguous_links(topology, {"link-ab", "link-bc"}, ContiguityPolicy(min_segment_devices=3))
        assert result == {"link-ab", "link-bc"}

    def test_same_operator_only(self):
        """Test cross-operator links never join a segment."""
        topology = create_test_topology()
        policy = ContiguityPolicy(min_segment_devices=2, same_operator_only=True)
        result = contiguous_links(topology, {"link-ab", "link-bc", "link-ca"}, policy)
        assert result == {"link-ab"}


# ============================================================================
# PUBLIC LINKS
# ============================================================================

class TestBuildPublicLinks:
    """Tests for public link construction."""

    def test_mean_latency_per_city_pair(self):
        """Test latencies of both directions average onto one city pair."""
        stats = stats_map(
            create_test_stats(LinkKey("loc-nyc", "loc-lon", "p1"), rtt_us=80_000.0),
            create_test_stats(LinkKey("loc-lon", "loc-nyc", "p2"), rtt_us=100_000.0),
            create_test_stats(LinkKey("loc-nyc", "loc-unknown", "p1"), rtt_us=1.0),
        )
        links = build_public_links(create_test_topology(), stats)
        assert len(links) == 1
        assert (links[0].city1, links[0].city2) == ("LON", "NYC")
        assert links[0].latency_ms == pytest.approx(90.0)


# ============================================================================
# DEMANDS
# ============================================================================

class TestBuildDemands:
    """Tests for the demand matrix."""

    def test_city_stats(self):
        """Test validators aggregate per city."""
        stats = build_city_stats(create_test_topology())
        assert stats["NYC"].validator_count == 2
        assert stats["NYC"].total_stake_proxy == 400
        assert stats["LON"].validator_count == 1
        assert "FRA" not in stats

    def test_rows(self):
        """Test priority, receivers and ordering, with no self pairs."""
        demands = build_demands(create_test_topology(), ShapleySettings(demand_multiplier=1.0))
        assert [(d.start, d.end) for d in demands] == [("LON", "NYC"), ("NYC", "LON")]
        lon_nyc, nyc_lon = demands
        assert lon_nyc.receivers == 2
        assert lon_nyc.priority == pytest.approx((1 / 432_000) * 200)
        assert nyc_lon.receivers == 1
        assert nyc_lon.priority == pytest.approx((1 / 432_000) * 50)
        assert all(d.traffic == pytest.approx(0.05) for d in demands)
        assert all(d.kind == 1 and d.multicast is False for d in demands)

    def test_multiplier_scales_traffic(self):
        """Test demand_multiplier scales every row."""
        demands = build_demands(create_test_topology(), ShapleySettings(demand_multiplier=1.2))
        assert all(d.traffic == pytest.approx(0.06) for d in demands)

    def test_override(self):
        """Test per-pair overrides replace default traffic and class."""
        overrides = {("NYC", "LON"): DemandOverride(traffic=0.5, kind=2)}
        demands = build_demands(
            create_test_topology(), ShapleySettings(demand_multiplier=1.0), DemandSettings(), overrides
        )
        by_pair = {(d.start, d.end): d for d in demands}
        assert by_pair[("NYC", "LON")].traffic == pytest.approx(0.5)
        assert by_pair[("NYC", "LON")].kind == 2
        assert by_pair[("LON", "NYC")].traffic == pytest.approx(0.05)

    def test_no_validators(self):
        """Test an empty validator set yields no demands."""
        topology = create_test_topology()
        topology.validators = []
        assert build_demands(topology, ShapleySettings()) == []


# ============================================================================
# DETERMINISM
# ============================================================================

class TestDeterminism:
    """Identical inputs must serialize identically."""

    def test_same_inputs_same_bytes(self):
        """Test two builds produce byte-identical JSON."""
        stats = measured_stats()
        a = build_reward_inputs(create_test_topology(), stats)
        b = build_reward_inputs(create_test_topology(), stats)
        assert a.to_json() == b.to_json()

    def test_input_order_does_not_matter(self):
        """Test reordering the stats mapping does not change output."""
        stats = measured_stats()
        shuffled = dict(reversed(list(stats.items())))
        a = build_reward_inputs(create_test_topology(), stats)
        b = build_reward_inputs(create_test_topology(), shuffled)
        assert a.to_json() == b.to_json()

    def test_round_trip(self):
        """Test ShapleyInputs survives to_dict/from_dict."""
        inputs = build_reward_inputs(create_test_topology(), measured_stats())
        assert ShapleyInputs.from_dict(inputs.to_dict()).to_json() == inputs.to_json()
        assert inputs.counts()["private_links"] == 3
