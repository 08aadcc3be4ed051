import numpy as np
import pytest

from graph import GraphConfig, RejectReason, ViewpointGraph, ViewpointGraphBuilder
from occupancy import OccupancyVolume, Pose

TARGET = [11.0, 11.0, 1.0]


def _pose(x, y, z):
    return Pose.look_at([x, y, z], TARGET)


def _builder(volume, camera, config):
    return ViewpointGraphBuilder(ViewpointGraph(), volume, camera, config)


def test_add_viewpoint_stores_stateless_information(block_volume, small_camera, open_graph_config):
    builder = _builder(block_volume, small_camera, open_graph_config)
    result = builder.add_viewpoint(_pose(7.0, 7.0, 1.0))
    assert result.accepted
    assert result.information > 0.0
    node = builder.graph.node(result.index)
    assert node.information == pytest.approx(result.information)
    assert node.voxel_set.total_information == pytest.approx(result.information)
    assert builder.raycaster.aggregator.n_claimed == 0


def test_occupied_pose_is_rejected(block_volume, small_camera, open_graph_config):
    builder = _builder(block_volume, small_camera, open_graph_config)
    before = builder.n_infeasible
    result = builder.add_viewpoint(Pose.look_at([10.5, 10.5, 0.5], [0.0, 0.0, 0.5]))
    assert not result.accepted
    assert result.reason is RejectReason.OCCUPIED
    assert builder.n_infeasible == before + 1
    assert builder.graph.n_nodes == 0


def test_outside_region_and_low_information(block_volume, small_camera, open_graph_config):
    builder = _builder(block_volume, small_camera, open_graph_config)
    assert builder.add_viewpoint(_pose(50.0, 0.0, 0.0)).reason is RejectReason.OUTSIDE_REGION
    strict = GraphConfig.from_dict({**open_graph_config.to_dict(), "min_information": 1e6})
    builder = _builder(block_volume, small_camera, strict)
    assert builder.add_viewpoint(_pose(7.0, 7.0, 1.0)).reason is RejectReason.LOW_INFORMATION
    assert builder.graph.is_empty


def test_empty_volume_raises(small_camera, open_graph_config):
    builder = _builder(OccupancyVolume(), small_camera, open_graph_config)
    with pytest.raises(ValueError):
        builder.add_viewpoint(_pose(1.0, 1.0, 1.0))
    with pytest.raises(ValueError):
        builder.grow(3, rng=1)


def test_default_region_expands_map_bounds(block_volume, small_camera):
    builder = _builder(block_volume, small_camera, GraphConfig(region_margin=2.0))
    lo, hi = builder.region()
    np.testing.assert_allclose(lo, [8.0, 8.0, -2.0])
    np.testing.assert_allclose(hi, [14.0, 14.0, 4.0])


def test_connect_adds_one_edge_per_pair(block_volume, small_camera, open_graph_config):
    builder = _builder(block_volume, small_camera, open_graph_config)
    a = builder.add_viewpoint(_pose(2.0, 2.0, 1.0)).index
    b = builder.add_viewpoint(_pose(4.0, 2.0, 1.0)).index
    first = builder.connect(a)
    assert (first.n_attempted, first.n_added) == (2, 1)
    assert builder.connect(a).n_added == 0
    assert builder.connect(b).n_attempted == 0
    graph = builder.graph
    assert graph.n_edges == 1
    assert graph.edge(a, b) is graph.edge(b, a)
    assert graph.edge(a, b).cost == pytest.approx(2.0)
    assert graph.can_move(a, b) and graph.can_move(b, a)


def test_slope_limit_makes_edges_one_way(block_volume, small_camera, open_graph_config):
    config = GraphConfig.from_dict({**open_graph_config.to_dict(), "max_climb_slope": 0.1})
    builder = _builder(block_volume, small_camera, config)
    a = builder.add_viewpoint(_pose(2.0, 2.0, 1.0)).index
    b = builder.add_viewpoint(_pose(4.0, 2.0, 3.0)).index
    result = builder.connect(a)
    assert (result.n_attempted, result.n_added, result.n_infeasible) == (2, 1, 1)
    graph = builder.graph
    assert graph.n_edges == 1
    assert graph.edge(a, b).is_one_way
    assert not graph.can_move(a, b)
    assert graph.can_move(b, a)
    assert list(graph.motions()) == [(b, a, pytest.approx(graph.edge(a, b).cost))]


def test_blocked_segment_is_not_connected(block_volume, small_camera, open_graph_config):
    builder = _builder(block_volume, small_camera, open_graph_config)
    a = builder.add_viewpoint(Pose.look_at([9.0, 11.0, 1.0], [11.0, 9.0, 1.0])).index
    b = builder.add_viewpoint(Pose.look_at([13.0, 11.0, 1.0], [11.0, 9.0, 1.0])).index
    result = builder.connect(a)
    assert result.n_added == 0
    assert result.n_infeasible == 1
    assert builder.graph.n_edges == 0
    assert builder.graph.components() == [{a}, {b}]


def test_build_motions_connects_all(block_volume, small_camera, open_graph_config):
    builder = _builder(block_volume, small_camera, open_graph_config)
    for x in (0.0, 2.0, 4.0):
        builder.add_viewpoint(_pose(x, 0.0, 1.0))
    stats = builder.build_motions()
    assert stats.n_edges_added == 3
    assert builder.build_motions().n_edges_added == 0
    assert len(builder.graph.components()) == 1


def test_connect_on_add(block_volume, small_camera, open_graph_config):
    config = GraphConfig.from_dict({**open_graph_config.to_dict(), "connect_on_add": True})
    builder = _builder(block_volume, small_camera, config)
    builder.add_viewpoint(_pose(0.0, 0.0, 1.0))
    second = builder.add_viewpoint(_pose(1.0, 0.0, 1.0))
    assert second.n_edges_added == 1


def test_grow_is_reproducible(block_volume, small_camera, open_graph_config):
    b1 = _builder(block_volume, small_camera, open_graph_config)
    b2 = _builder(block_volume, small_camera, open_graph_config)
    s1 = b1.grow(5, rng=42)
    s2 = b2.grow(5, rng=42)
    assert s1.n_added == s2.n_added == 5
    assert not s1.budget_limited
    np.testing.assert_allclose(b1.graph.positions(), b2.graph.positions())
    lo, hi = b1.region()
    for p in b1.graph.positions():
        assert np.all(p >= lo) and np.all(p <= hi)


def test_grow_budget_limited(block_volume, small_camera):
    config = GraphConfig(
        region_min=(10.1, 10.1, 0.1), region_max=(11.9, 11.9, 1.9),
        max_sample_attempts=3, connect_on_add=False, raycast_stride=2)
    builder = _builder(block_volume, small_camera, config)
    stats = builder.grow(2, rng=7)
    assert stats.budget_limited
    assert stats.n_added == 0
    assert stats.n_attempts == 6
    assert stats.reject_counts == {"occupied": 6}
    assert builder.n_infeasible == 6


def test_grow_cancel(block_volume, small_camera, open_graph_config):
    builder = _builder(block_volume, small_camera, open_graph_config)
    stats = builder.grow(5, rng=3, should_stop=lambda: True)
    assert stats.cancelled
    assert stats.n_added == 0
    assert builder.graph.is_empty
