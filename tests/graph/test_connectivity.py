import numpy as np
import pytest

from graph import UnionFind, find_components, reconstruct_motion, shortest_motions


def test_union_find_basic():
    uf = UnionFind(range(5))
    assert uf.union(0, 1)
    assert uf.union(3, 4)
    assert not uf.union(1, 0)
    assert uf.same(0, 1)
    assert not uf.same(1, 3)
    assert uf.n_components() == 3
    assert uf.components() == [{0, 1}, {3, 4}, {2}]
    uf.add(7)
    uf.add(7)
    assert uf.n_components() == 4


def test_find_components_ignores_direction():
    comps = find_components([10, 11, 12, 13], [(10, 11), (12, 11)])
    assert comps == [{10, 11, 12}, {13}]


def test_shortest_motions_directed():
    # 0 → 1 → 2 直达代价 1+1，0 → 2 直接代价 5；2 → 0 不可达
    edges = [(0, 1, 1.0), (1, 2, 1.0), (0, 2, 5.0)]
    dist, pred, col = shortest_motions([0, 1, 2], edges, [0, 2])
    assert dist[0, col[2]] == pytest.approx(2.0)
    assert np.isinf(dist[1, col[0]])
    assert reconstruct_motion(pred[0], [0, 1, 2], col[0], col[2]) == [0, 1, 2]
    assert reconstruct_motion(pred[1], [0, 1, 2], col[2], col[0]) == []
    assert reconstruct_motion(pred[0], [0, 1, 2], col[0], col[0]) == [0]


def test_shortest_motions_zero_cost_edge_kept():
    dist, _, col = shortest_motions([5, 9], [(5, 9, 0.0)], [5])
    assert np.isfinite(dist[0, col[9]])
    assert dist[0, col[9]] == pytest.approx(0.0, abs=1e-9)


def test_shortest_motions_sparse_ids():
    dist, _, col = shortest_motions([3, 8, 20], [(3, 20, 2.5), (20, 8, 1.0)], [3])
    assert col == {3: 0, 8: 1, 20: 2}
    assert dist[0, col[8]] == pytest.approx(3.5)
    empty_dist, _, _ = shortest_motions([], [], [])
    assert empty_dist.shape == (0, 0)
