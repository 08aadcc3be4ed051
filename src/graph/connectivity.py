"""
graph/connectivity.py - 视点图连通性与最短运动

- UnionFind: 连通分量检测（边视为无向，即弱连通）
- shortest_motions: 基于 scipy.sparse.csgraph 的多源最短路径
- reconstruct_motion: 由前驱矩阵恢复节点序列

最短路径在有向边上计算，因此方向相关的可行性（单向边）自然保留。
"""

import logging
from typing import Dict, Iterable, List, Sequence, Set, Tuple

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import dijkstra

logger = logging.getLogger(__name__)


class UnionFind:
    """带路径压缩和按秩合并的并查集。"""

    __slots__ = ("_parent", "_rank")

    def __init__(self, keys: Iterable[int] = ()):
        self._parent = {k: k for k in keys}
        self._rank = {k: 0 for k in self._parent}

    def add(self, key: int) -> None:
        if key not in self._parent:
            self._parent[key] = key
            self._rank[key] = 0

    def find(self, x: int) -> int:
        r = x
        while self._parent[r] != r:
            r = self._parent[r]
        while self._parent[x] != r:
            self._parent[x], x = r, self._parent[x]
        return r

    def union(self, x: int, y: int) -> bool:
        """合并 x, y 所在集合。返回 True 表示实际合并。"""
        rx, ry = self.find(x), self.find(y)
        if rx == ry:
            return False
        if self._rank[rx] < self._rank[ry]:
            rx, ry = ry, rx
        self._parent[ry] = rx
        if self._rank[rx] == self._rank[ry]:
            self._rank[rx] += 1
        return True

    def same(self, x: int, y: int) -> bool:
        return self.find(x) == self.find(y)

    def components(self) -> List[Set[int]]:
        """所有连通分量，按大小降序，同大小按最小索引升序。"""
        groups: Dict[int, Set[int]] = {}
        for k in self._parent:
            groups.setdefault(self.find(k), set()).add(k)
        return sorted(groups.values(), key=lambda s: (-len(s), min(s)))

    def n_components(self) -> int:
        return len({self.find(k) for k in self._parent})


def find_components(
    node_ids: Iterable[int],
    edges: Iterable[Tuple[int, int]],
) -> List[Set[int]]:
    """节点 + 有向边 → 弱连通分量列表"""
    uf = UnionFind(node_ids)
    for a, b in edges:
        uf.union(a, b)
    return uf.components()


def shortest_motions(
    node_ids: Sequence[int],
    edges: Iterable[Tuple[int, int, float]],
    sources: Sequence[int],
) -> Tuple[np.ndarray, np.ndarray, Dict[int, int]]:
    """多源最短运动代价

    Args:
        node_ids: 参与计算的节点索引（决定矩阵列顺序）
        edges: (source, target, cost) 有向边
        sources: 源节点索引

    Returns:
        (dist, predecessors, column_of)
        dist[i, column_of[v]] 为 sources[i] → v 的最短代价（不可达为 inf）；
        predecessors 使用列号，-9999 表示无前驱
    """
    column_of = {idx: col for col, idx in enumerate(node_ids)}
    n = len(node_ids)
    rows, cols, data = [], [], []
    for a, b, cost in edges:
        if a in column_of and b in column_of:
            rows.append(column_of[a])
            cols.append(column_of[b])
            # csgraph 把 0 权重视为无边
            data.append(max(float(cost), 1e-12))
    matrix = csr_matrix((data, (rows, cols)), shape=(n, n))
    if n == 0 or not sources:
        return np.zeros((len(sources), n)), np.full((len(sources), n), -9999), column_of
    src_cols = [column_of[s] for s in sources]
    dist, pred = dijkstra(
        matrix, directed=True, indices=src_cols, return_predecessors=True)
    return np.atleast_2d(dist), np.atleast_2d(pred), column_of


def reconstruct_motion(
    predecessors_row: np.ndarray,
    node_ids: Sequence[int],
    source_col: int,
    target_col: int,
) -> List[int]:
    """由单源前驱行恢复 source → target 的节点索引序列（含两端）

    不可达时返回空列表。
    """
    if source_col == target_col:
        return [node_ids[source_col]]
    chain = [target_col]
    cur = target_col
    while cur != source_col:
        cur = int(predecessors_row[cur])
        if cur < 0:
            return []
        chain.append(cur)
    chain.reverse()
    return [node_ids[c] for c in chain]
