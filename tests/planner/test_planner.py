import json

import numpy as np
import pytest

from conftest import make_manual_graph
from graph import GraphConfig
from occupancy import OccupancyVolume, PinholeCamera, Pose
from planner import (
    EmptyGraphError,
    EmptyVolumeError,
    InvalidRequestError,
    PathResult,
    PlannerConfig,
    TourBudget,
    ViewpointPath,
    ViewpointPlanner,
)
from raycast import RaycastMode

BLOCK_TARGET = [11.0, 11.0, 1.0]


def _config(seed=11, **graph_overrides):
    graph = GraphConfig(
        region_min=(0.0, 0.0, 0.0), region_max=(8.0, 8.0, 3.0),
        k_neighbors=6, max_edge_length=5.0, raycast_stride=1, **graph_overrides)
    return PlannerConfig(graph=graph, seed=seed)


@pytest.fixture
def center_camera():
    """奇数尺寸：中心像素射线与光轴重合"""
    return PinholeCamera.create_simple(9, 7, 4.0)


@pytest.fixture
def planner(block_volume, center_camera):
    return ViewpointPlanner(block_volume, center_camera, _config())


@pytest.fixture
def grown(planner):
    planner.grow_graph(10)
    return planner


def test_grow_graph(planner):
    stats = planner.grow_graph(10)
    assert stats.n_added == 10
    assert "total" in stats.timings
    n_nodes, n_edges = planner.graph_size()
    assert n_nodes == 10
    assert n_edges > 0
    for index in planner.graph.indices():
        assert planner.graph.node(index).information > 0.0
    # 建图不写入已提交信息状态
    assert planner.aggregator.n_claimed == 0


def test_grow_graph_is_reproducible(block_volume, center_camera):
    a = ViewpointPlanner(block_volume, center_camera, _config(seed=5))
    b = ViewpointPlanner(block_volume, center_camera, _config(seed=5))
    a.grow_graph(6)
    b.grow_graph(6)
    np.testing.assert_allclose(a.graph.positions(), b.graph.positions())


def test_precondition_errors(block_volume, center_camera):
    empty = ViewpointPlanner(OccupancyVolume(), center_camera, _config())
    with pytest.raises(EmptyVolumeError):
        empty.grow_graph(3)
    with pytest.raises(EmptyVolumeError):
        empty.raycast(Pose.look_at([0.0, 0.0, 0.0], BLOCK_TARGET))
    with pytest.raises(EmptyVolumeError):
        empty.build_path()

    planner = ViewpointPlanner(block_volume, center_camera, _config())
    with pytest.raises(InvalidRequestError):
        planner.grow_graph(0)
    with pytest.raises(EmptyGraphError):
        planner.build_path()
    with pytest.raises(EmptyGraphError):
        planner.build_motions()


def test_export_without_path(grown, tmp_path):
    with pytest.raises(InvalidRequestError):
        grown.export_pose_text(tmp_path / "poses.txt")
    with pytest.raises(InvalidRequestError):
        grown.make_sparse_matchable()


def test_build_path_publishes_claims(grown):
    result = grown.build_path(TourBudget.unlimited())
    assert grown.path is result
    assert not result.is_empty
    assert grown.aggregator.claimed_total == pytest.approx(result.total_information)

    first = grown.graph.node(result.branches[0][0]).viewpoint.pose
    discounted = grown.raycast(first, mode=RaycastMode.WITH_CURRENT_INFORMATION)
    assert discounted.total_information == pytest.approx(0.0, abs=1e-12)
    assert grown.last_raycast is discounted

    grown.reset_path()
    assert grown.path is None
    assert grown.aggregator.n_claimed == 0
    fresh = grown.raycast(first, mode=RaycastMode.WITH_CURRENT_INFORMATION)
    assert fresh.total_information > 0.0


def test_budget_caps_every_branch(grown):
    result = grown.build_path(TourBudget(max_cost=4.0))
    costs = grown.optimizer.motion_costs()
    for branch in result.branches:
        assert branch.total_cost(costs.cost) <= 4.0 + 1e-9


def test_solve_tsp_without_path_covers_graph(grown):
    result = grown.solve_tsp()
    assert sorted(result.node_indices()) == grown.graph.indices()
    assert result.n_branches == len(grown.graph.components())
    assert grown.path is result


def test_solve_tsp_keeps_path_members(grown):
    built = grown.build_path(TourBudget(max_nodes=4))
    members = [sorted(b) for b in built.branches]
    solved = grown.solve_tsp()
    assert [sorted(b) for b in solved.branches] == members
    assert solved.budget == built.budget


def test_reset_operations(grown):
    grown.build_path()
    grown.reset_motions()
    assert grown.graph_size() == (10, 0)
    assert grown.path is None
    grown.reset_graph()
    assert grown.graph_size() == (0, 0)
    assert grown.aggregator.n_claimed == 0
    grown.grow_graph(1)
    assert grown.graph.indices() == [0]


def test_graph_and_path_persistence(grown, block_volume, center_camera, tmp_path):
    grown.build_path()
    graph_file = grown.save_graph(tmp_path / "graph.json")
    path_file = grown.save_path(tmp_path / "path.json")

    other = ViewpointPlanner(block_volume, center_camera, _config())
    other.load_graph(graph_file)
    assert other.graph_size() == grown.graph_size()
    loaded = other.load_path(path_file)
    assert loaded.node_indices() == grown.path.node_indices()
    assert other.aggregator.claimed_total == pytest.approx(grown.aggregator.claimed_total)


def test_load_path_with_unknown_nodes(grown, tmp_path):
    bad = PathResult(branches=[ViewpointPath([0, 99])])
    path_file = bad.save(tmp_path / "bad.json")
    with pytest.raises(InvalidRequestError):
        grown.load_path(path_file)
    assert grown.path is None


def test_exports(grown, tmp_path):
    result = grown.build_path()
    text = (tmp_path / "poses.txt")
    grown.export_pose_text(text)
    blocks = text.read_text().strip().split("\n\n")
    assert len(blocks) == result.n_branches
    assert sum(len(b.splitlines()) for b in blocks) == result.n_nodes
    data = json.loads(open(grown.export_pose_json(tmp_path / "poses.json")).read())
    assert [[p["index"] for p in b] for b in data["branches"]] == \
        [b.order for b in result.branches]
    sparse = grown.export_sparse_reconstruction(tmp_path / "sparse")
    for name in ("cameras.txt", "images.txt", "points3D.txt"):
        assert (tmp_path / "sparse" / name).exists()
    assert sparse.endswith("sparse")


def test_dump_mesh(planner, center_camera, tmp_path):
    pose = Pose.look_at([6.0, 6.0, 1.0], BLOCK_TARGET)
    dump = planner.dump_mesh(pose, filepath=tmp_path / "mesh.npz", stride=1)
    assert dump.depth_image.shape == (center_camera.height, center_camera.width)
    assert dump.n_voxels > 0
    assert dump.voxels.shape == (dump.n_voxels, 4)
    assert dump.screen_coordinates.shape == (dump.n_voxels, 2)
    assert dump.normals.shape == (dump.n_voxels, 3)
    assert np.nanmin(dump.depth_image) == pytest.approx(dump.depths.min())
    assert (tmp_path / "mesh.npz").exists()


def test_match_poses(planner):
    near_1 = Pose.look_at([8.0, 8.0, 1.0], BLOCK_TARGET)
    near_2 = Pose.look_at([8.3, 8.0, 1.0], BLOCK_TARGET)
    away = Pose.look_at([8.0, 8.0, 1.0], [0.0, 0.0, 1.0])
    match = planner.match_poses(near_1, near_2)
    assert match.matchable
    assert match.n_common > 0
    assert match.distance == pytest.approx(0.3)
    miss = planner.match_poses(near_1, away)
    assert not miss.matchable
    assert miss.overlap == 0.0


def test_make_sparse_matchable_via_planner(planner, tmp_path):
    chain = [[0.0, 0.0, 1.0], [1.0, 0.0, 1.0], [2.0, 0.0, 1.0], [3.0, 0.0, 1.0]]
    planner.graph.assign(make_manual_graph(
        chain, [[1, 2, 3], [3, 4, 5], [5, 6, 7], [7, 8, 9]],
        edges=[(0, 1), (1, 2), (2, 3)]))
    planner.load_path(PathResult(branches=[ViewpointPath([0, 3])]).save(tmp_path / "p.json"))
    stats = planner.make_sparse_matchable()
    assert stats.n_inserted == 2
    branch = planner.path.branches[0]
    assert branch.order == [0, 1, 2, 3]
    assert branch.cached_cost() == pytest.approx(3.0)
    assert planner.aggregator.n_claimed == 9
