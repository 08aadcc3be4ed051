"""
graph/viewpoint_graph.py - 视点图容器

ViewpointGraph 维护节点字典与关联边，提供：
- 稳定索引：删除节点不会让存活节点的索引改变，已用索引不复用
- 去重边：同一节点对至多一条边，可行性按方向记录
- 空间查询：cKDTree 最近邻（惰性重建）
- 连通分量：UnionFind
- 持久化：带版本号的 JSON

图本身不做碰撞检测与射线投射，这些由 ViewpointGraphBuilder 负责。
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

import numpy as np
from scipy.spatial import cKDTree

from raycast.models import VoxelWithInformationSet
from .connectivity import find_components
from .models import Viewpoint, ViewpointEdge, ViewpointNode

logger = logging.getLogger(__name__)

GRAPH_FORMAT = "viewpoint_graph"
GRAPH_FORMAT_VERSION = 1


class ViewpointGraph:
    """视点图

    Attributes:
        nodes: {index: ViewpointNode}
    """

    def __init__(self) -> None:
        self.nodes: Dict[int, ViewpointNode] = {}
        self._next_id: int = 0
        self._kdtree: Optional[cKDTree] = None
        self._kdtree_ids: List[int] = []
        self._kdtree_dirty: bool = True
        self.revision: int = 0

    def _touch(self, geometry: bool = True) -> None:
        """任何结构变化后调用：递增 revision，必要时标记 KD 树失效"""
        self.revision += 1
        if geometry:
            self._kdtree_dirty = True

    # ── 基本属性 ──

    @property
    def n_nodes(self) -> int:
        return len(self.nodes)

    @property
    def n_edges(self) -> int:
        return sum(node.degree for node in self.nodes.values()) // 2

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, index: int) -> bool:
        return index in self.nodes

    def node(self, index: int) -> ViewpointNode:
        try:
            return self.nodes[index]
        except KeyError:
            raise KeyError(f"视点图中没有节点 {index}") from None

    def indices(self) -> List[int]:
        return sorted(self.nodes)

    # ── 节点 ──

    def add_node(
        self,
        viewpoint: Viewpoint,
        information: float = 0.0,
        voxel_set: Optional[VoxelWithInformationSet] = None,
    ) -> int:
        """添加节点，返回新分配的稳定索引"""
        index = self._next_id
        self._next_id += 1
        self.nodes[index] = ViewpointNode(
            index=index,
            viewpoint=viewpoint,
            information=float(information),
            voxel_set=voxel_set if voxel_set is not None else VoxelWithInformationSet(),
        )
        self._touch()
        return index

    def remove_node(self, index: int) -> None:
        """删除节点及其所有关联边（其他节点索引不变）"""
        node = self.node(index)
        for other in self.nodes.values():
            other.edges.pop(index, None)
        del self.nodes[node.index]
        self._touch()

    # ── 边 ──

    def has_edge(self, a: int, b: int) -> bool:
        """节点对 {a, b} 是否已有边（与方向无关）"""
        node = self.nodes.get(a)
        return node is not None and b in node.edges

    def can_move(self, start: int, end: int) -> bool:
        """start → end 是否存在可行运动边"""
        edge = self.edge(start, end)
        return edge is not None and edge.allows(start, end)

    def add_edge(
        self,
        source: int,
        target: int,
        cost: float,
        length: float = 0.0,
        turn_angle: float = 0.0,
        forward: bool = True,
        backward: bool = True,
    ) -> bool:
        """添加节点对 {source, target} 的边

        forward / backward 分别表示 source → target 与 target → source 是否可行。

        Returns:
            False 表示该节点对已有边（不重复添加）

        Raises:
            KeyError: 端点不存在
            ValueError: 自环，或两个方向都不可行
        """
        if source == target:
            raise ValueError(f"不允许自环: {source}")
        src = self.node(source)
        dst = self.node(target)
        if target in src.edges:
            return False
        edge = ViewpointEdge(
            source=source, target=target, cost=float(cost),
            forward=bool(forward), backward=bool(backward),
            length=float(length), turn_angle=float(turn_angle),
        )
        src.edges[target] = edge
        dst.edges[source] = edge
        self._touch(geometry=False)
        return True

    def edge(self, a: int, b: int) -> Optional[ViewpointEdge]:
        node = self.nodes.get(a)
        return None if node is None else node.edges.get(b)

    def edges(self) -> Iterator[ViewpointEdge]:
        """所有边，每个节点对一次，按 (source, target) 排序"""
        for index in sorted(self.nodes):
            node = self.nodes[index]
            for other in sorted(node.edges):
                if other > index:
                    yield node.edges[other]

    def motions(self) -> Iterator[Tuple[int, int, float]]:
        """所有可行的有向运动 (start, end, cost)"""
        for edge in self.edges():
            for start, end in edge.directions():
                yield start, end, edge.cost

    def neighbors(self, index: int) -> List[int]:
        return sorted(self.node(index).edges)

    def clear_edges(self) -> int:
        """删除所有边（节点保留），返回删除数量"""
        n = self.n_edges
        for node in self.nodes.values():
            node.edges.clear()
        self._touch(geometry=False)
        return n

    # ── 空间查询 ──

    def positions(self, indices: Optional[List[int]] = None) -> np.ndarray:
        if indices is None:
            indices = self.indices()
        if not indices:
            return np.empty((0, 3))
        return np.array([self.nodes[i].position for i in indices])

    def _ensure_kdtree(self) -> None:
        if not self._kdtree_dirty:
            return
        self._kdtree_ids = self.indices()
        if self._kdtree_ids:
            self._kdtree = cKDTree(self.positions(self._kdtree_ids))
        else:
            self._kdtree = None
        self._kdtree_dirty = False

    def nearest(
        self,
        position: np.ndarray,
        k: int,
        max_distance: float = np.inf,
        exclude: Optional[int] = None,
    ) -> List[Tuple[int, float]]:
        """位置最近的 k 个节点 [(index, distance)]，按距离再按索引排序"""
        self._ensure_kdtree()
        if self._kdtree is None or k <= 0:
            return []
        n_query = min(len(self._kdtree_ids), k + (1 if exclude is not None else 0))
        dists, idxs = self._kdtree.query(
            np.asarray(position, dtype=np.float64), k=n_query,
            distance_upper_bound=max_distance)
        dists = np.atleast_1d(dists)
        idxs = np.atleast_1d(idxs)
        out = []
        for d, i in zip(dists, idxs):
            if not np.isfinite(d):
                continue
            node_id = self._kdtree_ids[int(i)]
            if node_id == exclude:
                continue
            out.append((node_id, float(d)))
        out.sort(key=lambda p: (p[1], p[0]))
        return out[:k]

    # ── 连通性 ──

    def components(self) -> List[Set[int]]:
        """弱连通分量（按大小降序）"""
        return find_components(
            self.nodes.keys(),
            ((e.source, e.target) for e in self.edges()),
        )

    def component_of(self, index: int) -> Set[int]:
        self.node(index)
        for comp in self.components():
            if index in comp:
                return comp
        return {index}

    # ── 压缩 ──

    def compact(self) -> Dict[int, int]:
        """把索引重排为 0..n-1，返回 {旧索引: 新索引}

        调用后所有外部持有的旧索引失效，调用方需自行重映射。
        """
        mapping = {old: new for new, old in enumerate(self.indices())}
        old_edges = list(self.edges())
        new_nodes: Dict[int, ViewpointNode] = {}
        for old, new in mapping.items():
            node = self.nodes[old]
            node.index = new
            node.edges = {}
            new_nodes[new] = node
        for e in old_edges:
            a, b = mapping[e.source], mapping[e.target]
            edge = ViewpointEdge(
                source=a, target=b, cost=e.cost, forward=e.forward,
                backward=e.backward, length=e.length, turn_angle=e.turn_angle)
            new_nodes[a].edges[b] = edge
            new_nodes[b].edges[a] = edge
        self.nodes = new_nodes
        self._next_id = len(new_nodes)
        self._touch()
        return mapping

    def clear(self) -> None:
        self.nodes.clear()
        self._next_id = 0
        self._touch()

    def assign(self, other: 'ViewpointGraph') -> None:
        """用 other 的内容替换本图（对象身份不变，共享引用者继续有效）"""
        self.nodes = other.nodes
        self._next_id = other._next_id
        self._touch()

    # ── 持久化 ──

    def to_dict(self) -> dict:
        return {
            'format': GRAPH_FORMAT,
            'version': GRAPH_FORMAT_VERSION,
            'next_id': self._next_id,
            'nodes': [
                {
                    'index': node.index,
                    'viewpoint': node.viewpoint.to_dict(),
                    'information': node.information,
                    'voxels': node.voxel_set.to_list(),
                }
                for node in (self.nodes[i] for i in self.indices())
            ],
            'edges': [e.to_list() for e in self.edges()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ViewpointGraph':
        """从字典恢复

        Raises:
            ValueError: format 字段不匹配
        """
        if data.get('format') != GRAPH_FORMAT:
            raise ValueError(f"不是视点图文件: format={data.get('format')!r}")
        version = int(data.get('version', 0))
        if version > GRAPH_FORMAT_VERSION:
            logger.warning("视点图文件版本 %d 比当前支持的 %d 新，尝试继续读取",
                           version, GRAPH_FORMAT_VERSION)
        graph = cls()
        for item in data['nodes']:
            index = int(item['index'])
            graph.nodes[index] = ViewpointNode(
                index=index,
                viewpoint=Viewpoint.from_dict(item['viewpoint']),
                information=float(item['information']),
                voxel_set=VoxelWithInformationSet.from_list(item.get('voxels', [])),
            )
        for row in data.get('edges', []):
            edge = ViewpointEdge.from_list(row)
            graph.nodes[edge.source].edges[edge.target] = edge
            graph.nodes[edge.target].edges[edge.source] = edge
        graph._next_id = int(data.get('next_id', 0))
        # 确保 _next_id 不与已有节点冲突
        if graph.nodes:
            graph._next_id = max(graph._next_id, max(graph.nodes) + 1)
        graph._kdtree_dirty = True
        return graph

    def save(self, filepath: str | Path) -> str:
        """保存到 JSON 文件"""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f)
        logger.info("视点图已保存到 %s (%d nodes, %d edges)",
                    filepath, self.n_nodes, self.n_edges)
        return str(filepath)

    @classmethod
    def load(cls, filepath: str | Path) -> 'ViewpointGraph':
        with open(filepath, 'r', encoding='utf-8') as f:
            graph = cls.from_dict(json.load(f))
        logger.info("从 %s 加载视点图: %d nodes, %d edges",
                    filepath, graph.n_nodes, graph.n_edges)
        return graph

    def __repr__(self) -> str:
        return f"ViewpointGraph(n_nodes={self.n_nodes}, n_edges={self.n_edges})"
