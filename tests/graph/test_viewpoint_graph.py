import json

import numpy as np
import pytest

from conftest import make_manual_graph
from graph import GraphConfig, ViewpointEdge, ViewpointGraph
from graph.viewpoint_graph import GRAPH_FORMAT_VERSION


LINE = [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0], [3.0, 0.0, 0.0]]


def test_indices_are_stable_after_removal():
    graph = make_manual_graph(LINE, [[1], [2], [3], [4]], edges=[(0, 1), (1, 2), (2, 3)])
    graph.remove_node(1)
    assert graph.indices() == [0, 2, 3]
    assert graph.node(2).position[0] == pytest.approx(2.0)
    assert not graph.has_edge(0, 1)
    assert not graph.has_edge(2, 1)
    assert graph.n_edges == 1
    new = graph.add_node(graph.node(0).viewpoint)
    assert new == 4


def test_missing_node_raises():
    graph = ViewpointGraph()
    with pytest.raises(KeyError):
        graph.node(3)
    with pytest.raises(KeyError):
        graph.remove_node(0)


def test_edges_are_unique_per_pair():
    graph = make_manual_graph(LINE[:2], [[1], [2]], edges=[])
    assert graph.add_edge(0, 1, 1.0, length=1.0, backward=False)
    assert not graph.add_edge(1, 0, 0.5)
    assert graph.edge(1, 0) is graph.edge(0, 1)
    assert graph.edge(0, 1).cost == pytest.approx(1.0)
    assert graph.has_edge(0, 1) and graph.has_edge(1, 0)
    assert graph.can_move(0, 1)
    assert not graph.can_move(1, 0)
    assert list(graph.motions()) == [(0, 1, 1.0)]
    assert graph.n_edges == 1
    with pytest.raises(ValueError):
        graph.add_edge(0, 0, 1.0)
    with pytest.raises(KeyError):
        graph.add_edge(0, 9, 1.0)


def test_edge_endpoints_are_normalized():
    edge = ViewpointEdge(2, 1, 3.0, forward=True, backward=False)
    assert (edge.source, edge.target) == (1, 2)
    assert not edge.forward and edge.backward
    assert edge.allows(2, 1) and not edge.allows(1, 2)
    assert edge.other(1) == 2
    assert edge.directions() == [(2, 1)]
    assert ViewpointEdge.from_list(edge.to_list()) == edge
    with pytest.raises(ValueError):
        ViewpointEdge(0, 1, 1.0, forward=False, backward=False)


def test_revision_changes_on_mutation():
    graph = make_manual_graph(LINE[:2], [[1], [2]], edges=[])
    rev = graph.revision
    graph.add_edge(0, 1, 1.0)
    assert graph.revision > rev
    rev = graph.revision
    graph.clear_edges()
    assert graph.revision > rev
    assert graph.n_edges == 0


def test_nearest_neighbors():
    graph = make_manual_graph(LINE, [[1], [2], [3], [4]], edges=[])
    got = graph.nearest([0.1, 0.0, 0.0], k=2)
    assert [i for i, _ in got] == [0, 1]
    got = graph.nearest([0.0, 0.0, 0.0], k=3, max_distance=1.5, exclude=0)
    assert [i for i, _ in got] == [1]
    assert got[0][1] == pytest.approx(1.0)
    # 新增节点后 KD 树重建
    from graph import Viewpoint
    from occupancy import Pose
    idx = graph.add_node(Viewpoint(pose=Pose(translation=[0.0, 0.2, 0.0]),
                                   camera=graph.node(0).viewpoint.camera))
    assert graph.nearest([0.0, 0.3, 0.0], k=1)[0][0] == idx
    assert ViewpointGraph().nearest([0.0, 0.0, 0.0], k=3) == []


def test_components_are_weakly_connected():
    graph = make_manual_graph(LINE, [[1], [2], [3], [4]], edges=[])
    graph.add_edge(0, 1, 1.0, backward=False)
    graph.add_edge(2, 1, 1.0, backward=False)
    assert not graph.can_move(1, 0) and not graph.can_move(1, 2)
    comps = graph.components()
    assert comps == [{0, 1, 2}, {3}]
    assert graph.component_of(3) == {3}


def test_compact_renumbers():
    graph = make_manual_graph(LINE, [[1], [2], [3], [4]], edges=[(0, 1), (2, 3)])
    graph.remove_node(0)
    mapping = graph.compact()
    assert mapping == {1: 0, 2: 1, 3: 2}
    assert graph.indices() == [0, 1, 2]
    assert graph.has_edge(1, 2) and graph.has_edge(2, 1)
    assert graph.edge(1, 2).source == 1
    assert graph.add_node(graph.node(0).viewpoint) == 3


def test_save_load_roundtrip(tmp_path):
    graph = make_manual_graph(LINE, [[1, 2], [2, 3], [3], [4]],
                              edges=[(0, 1), (1, 2)])
    graph.add_edge(2, 0, 2.0, length=2.0, backward=False)
    graph.remove_node(3)
    path = graph.save(tmp_path / "graph.json")
    loaded = ViewpointGraph.load(path)
    assert loaded.indices() == graph.indices()
    assert [e.to_list() for e in loaded.edges()] == [e.to_list() for e in graph.edges()]
    assert loaded.node(0).voxel_set == graph.node(0).voxel_set
    assert loaded.node(1).information == pytest.approx(graph.node(1).information)
    np.testing.assert_allclose(loaded.positions(), graph.positions())
    # 已用索引不复用
    assert loaded.add_node(loaded.node(0).viewpoint) == 4


def test_load_rejects_foreign_format():
    with pytest.raises(ValueError):
        ViewpointGraph.from_dict({"format": "something_else", "nodes": []})


def test_load_newer_version_warns(caplog):
    data = make_manual_graph(LINE[:2], [[1], [2]]).to_dict()
    data["version"] = GRAPH_FORMAT_VERSION + 1
    with caplog.at_level("WARNING"):
        graph = ViewpointGraph.from_dict(json.loads(json.dumps(data)))
    assert graph.n_nodes == 2
    assert any("版本" in r.getMessage() for r in caplog.records)


def test_assign_keeps_identity():
    graph = ViewpointGraph()
    other = make_manual_graph(LINE[:3], [[1], [2], [3]])
    rev = graph.revision
    graph.assign(other)
    assert graph.n_nodes == 3
    assert graph.revision > rev
    assert graph.nearest([2.0, 0.0, 0.0], k=1)[0][0] == 2


def test_config_json_roundtrip(tmp_path):
    cfg = GraphConfig(region_min=(0, 0, 0), region_max=(1, 2, 3), max_climb_slope=0.5)
    path = cfg.to_json(tmp_path / "graph_config.json")
    loaded = GraphConfig.from_json(path)
    assert loaded == cfg
    assert loaded.is_direction_dependent
    assert GraphConfig.from_dict({"k_neighbors": 3, "bogus": 1}).k_neighbors == 3
    with pytest.raises(ValueError):
        GraphConfig(k_neighbors=0)
