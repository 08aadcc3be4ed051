"""
planner/models.py - 路径规划数据模型

定义视点路径规划使用的核心数据结构：TourBudget、ViewpointPath、
PathResult、MeshDump、PlannerConfig，以及规划器异常层级。

异常只用于前置条件违反（调用方误用）；不可行输入与预算耗尽
都以普通结果 + 标志位的形式返回。
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from graph.models import GraphConfig
from raycast.models import RaycastMode, VoxelWithInformationSet

logger = logging.getLogger(__name__)

PATH_FORMAT = "viewpoint_path"
PATH_FORMAT_VERSION = 1


# ─── 异常 ────────────────────────────────────────────────

class PlannerError(RuntimeError):
    """规划器前置条件违反"""


class EmptyVolumeError(PlannerError):
    """占据体为空或未初始化"""


class EmptyGraphError(PlannerError):
    """视点图为空"""


class InvalidRequestError(PlannerError):
    """请求参数或当前状态不允许该操作"""


# ─── 预算 ────────────────────────────────────────────────

@dataclass(frozen=True)
class TourBudget:
    """路径预算（两项可同时生效）

    Attributes:
        max_cost: 最大运动代价（inf = 不限制）
        max_nodes: 最大节点数（None = 不限制）
    """
    max_cost: float = math.inf
    max_nodes: Optional[int] = None

    def __post_init__(self) -> None:
        if math.isnan(self.max_cost) or self.max_cost < 0:
            raise ValueError(f"max_cost 必须 ≥ 0, 得到 {self.max_cost}")
        if self.max_nodes is not None and self.max_nodes < 1:
            raise ValueError(f"max_nodes 必须 ≥ 1, 得到 {self.max_nodes}")

    @classmethod
    def unlimited(cls) -> 'TourBudget':
        return cls()

    @property
    def is_unlimited(self) -> bool:
        return math.isinf(self.max_cost) and self.max_nodes is None

    def fits(self, cost: float, n_nodes: int) -> bool:
        if cost > self.max_cost:
            return False
        return self.max_nodes is None or n_nodes <= self.max_nodes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'max_cost': None if math.isinf(self.max_cost) else self.max_cost,
            'max_nodes': self.max_nodes,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TourBudget':
        data = data or {}
        max_cost = data.get('max_cost')
        return cls(
            max_cost=math.inf if max_cost is None else float(max_cost),
            max_nodes=data.get('max_nodes'),
        )


# ─── 路径 ────────────────────────────────────────────────

class ViewpointPath:
    """一条连续的视点路径（一个分支）

    order 为图节点索引序列。总代价与总信息量按需计算并缓存，
    任何成员变化都会使缓存失效。

    Args:
        order: 节点索引序列
        closed: 是否闭合（回到起点）
    """

    def __init__(self, order: Optional[List[int]] = None, closed: bool = False) -> None:
        self._order: List[int] = list(order or [])
        self.closed = bool(closed)
        self._cost: Optional[float] = None
        self._information: Optional[float] = None

    @property
    def order(self) -> List[int]:
        return list(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self):
        return iter(self._order)

    def __getitem__(self, i: int) -> int:
        return self._order[i]

    def __contains__(self, index: int) -> bool:
        return index in self._order

    # ── 修改（使缓存失效） ──

    def invalidate(self) -> None:
        self._cost = None
        self._information = None

    def set_order(self, order: List[int]) -> None:
        self._order = list(order)
        self.invalidate()

    def append(self, index: int) -> None:
        self._order.append(index)
        self.invalidate()

    def insert(self, position: int, index: int) -> None:
        self._order.insert(position, index)
        self.invalidate()

    def remove(self, index: int) -> None:
        self._order.remove(index)
        self.invalidate()

    # ── 缓存量 ──

    @property
    def is_cached(self) -> bool:
        return self._cost is not None and self._information is not None

    def legs(self) -> List[tuple]:
        pairs = list(zip(self._order[:-1], self._order[1:]))
        if self.closed and len(self._order) > 1:
            pairs.append((self._order[-1], self._order[0]))
        return pairs

    def total_cost(self, leg_cost: Callable[[int, int], float]) -> float:
        """总运动代价（leg_cost(a, b) 为 a → b 的运动代价）"""
        if self._cost is None:
            self._cost = float(sum(leg_cost(a, b) for a, b in self.legs()))
        return self._cost

    def total_information(
        self, voxel_set_of: Callable[[int], VoxelWithInformationSet],
    ) -> float:
        """路径覆盖的总信息量（同一体素只计一次，取最大值）"""
        if self._information is None:
            best: Dict[Any, float] = {}
            for index in self._order:
                for voxel, info in voxel_set_of(index).items():
                    if info > best.get(voxel, 0.0):
                        best[voxel] = info
            self._information = float(sum(best.values()))
        return self._information

    def set_cached(self, cost: float, information: float) -> None:
        self._cost = float(cost)
        self._information = float(information)

    def cached_cost(self) -> Optional[float]:
        return self._cost

    def cached_information(self) -> Optional[float]:
        return self._information

    def copy(self) -> 'ViewpointPath':
        out = ViewpointPath(self._order, self.closed)
        out._cost, out._information = self._cost, self._information
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order': list(self._order),
            'closed': self.closed,
            'cost': self._cost,
            'information': self._information,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ViewpointPath':
        path = cls(data['order'], data.get('closed', False))
        if data.get('cost') is not None and data.get('information') is not None:
            path.set_cached(data['cost'], data['information'])
        return path

    def __repr__(self) -> str:
        return (f"ViewpointPath(n={len(self)}, closed={self.closed}, "
                f"cost={self._cost}, information={self._information})")


@dataclass
class PathResult:
    """一次路径优化的结果

    Attributes:
        branches: 分支列表（每个分支独立优化）
        budget: 使用的预算
        budget_limited: 预算是限制因素（仍有正信息节点未能加入）
        cancelled: 被取消（结果为当时最好的部分结果）
        n_candidates: 参与选择的候选节点数
        timings: 各阶段耗时 (s)
        timestamp: 时间戳
    """
    branches: List[ViewpointPath] = field(default_factory=list)
    budget: TourBudget = field(default_factory=TourBudget)
    budget_limited: bool = False
    cancelled: bool = False
    n_candidates: int = 0
    timings: Dict[str, float] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now().strftime('%Y%m%d_%H%M%S'))

    @property
    def n_branches(self) -> int:
        return len(self.branches)

    @property
    def n_nodes(self) -> int:
        return sum(len(b) for b in self.branches)

    @property
    def is_empty(self) -> bool:
        return self.n_nodes == 0

    @property
    def total_cost(self) -> float:
        return float(sum(b.cached_cost() or 0.0 for b in self.branches))

    @property
    def total_information(self) -> float:
        return float(sum(b.cached_information() or 0.0 for b in self.branches))

    def node_indices(self) -> List[int]:
        return [i for b in self.branches for i in b]

    # ── 持久化 ──

    def to_dict(self) -> Dict[str, Any]:
        return {
            'format': PATH_FORMAT,
            'version': PATH_FORMAT_VERSION,
            'branches': [b.to_dict() for b in self.branches],
            'budget': self.budget.to_dict(),
            'budget_limited': self.budget_limited,
            'cancelled': self.cancelled,
            'n_candidates': self.n_candidates,
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PathResult':
        if data.get('format') != PATH_FORMAT:
            raise ValueError(f"不是视点路径文件: format={data.get('format')!r}")
        version = int(data.get('version', 0))
        if version > PATH_FORMAT_VERSION:
            logger.warning("视点路径文件版本 %d 比当前支持的 %d 新，尝试继续读取",
                           version, PATH_FORMAT_VERSION)
        return cls(
            branches=[ViewpointPath.from_dict(b) for b in data.get('branches', [])],
            budget=TourBudget.from_dict(data.get('budget')),
            budget_limited=bool(data.get('budget_limited', False)),
            cancelled=bool(data.get('cancelled', False)),
            n_candidates=int(data.get('n_candidates', 0)),
            timestamp=data.get('timestamp', ''),
        )

    def save(self, filepath: str | Path) -> str:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        return str(filepath)

    @classmethod
    def load(cls, filepath: str | Path) -> 'PathResult':
        with open(filepath, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))


@dataclass
class MeshDump:
    """某位姿下可见表面的导出

    Attributes:
        depth_image: (H, W) 深度图（沿射线距离，未命中为 nan）
        voxels: 可见体素 (N, 4) [i, j, k, depth]
        depths: 每个可见体素的最近命中距离 (N,)
        screen_coordinates: 每个可见体素首次命中的像素坐标 (N, 2)
        normals: 每个可见体素的命中面法向 (N, 3)
    """
    depth_image: np.ndarray
    voxels: np.ndarray
    depths: np.ndarray
    screen_coordinates: np.ndarray
    normals: np.ndarray
    cancelled: bool = False

    @property
    def n_voxels(self) -> int:
        return int(self.voxels.shape[0])

    def save(self, filepath: str | Path) -> str:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(
            filepath,
            depth_image=self.depth_image,
            voxels=self.voxels,
            depths=self.depths,
            screen_coordinates=self.screen_coordinates,
            normals=self.normals,
        )
        return str(filepath)


# ─── 配置 ────────────────────────────────────────────────

@dataclass
class PlannerConfig:
    """视点规划器参数配置

    Attributes:
        graph: 视点图构建参数
        raycast_mode: 前端 Raycast 请求的缺省模式
        raycast_stride: 前端 Raycast / DumpMesh 的缺省像素步长
        closed_tour: 路径是否闭合
        alpha: 贪心比值中运动代价的权重
        beta: 距离起点平方距离的惩罚权重
        max_improvement_passes: 局部改进（2-opt / 重定位）最大轮数
        exact_tsp_threshold: 节点数不超过该值时精确枚举排序
        sparse_matching_min_overlap: 相邻视点可匹配的最小体素重叠率
        worker_queue_size: 后台线程命令队列容量
        seed: 随机种子（0 = 按时间生成）
    """
    graph: GraphConfig = field(default_factory=GraphConfig)
    raycast_mode: str = RaycastMode.DEFAULT.value
    raycast_stride: int = 1
    closed_tour: bool = True
    alpha: float = 1.0
    beta: float = 0.0
    max_improvement_passes: int = 100
    exact_tsp_threshold: int = 7
    sparse_matching_min_overlap: float = 0.3
    worker_queue_size: int = 16
    seed: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.graph, dict):
            self.graph = GraphConfig.from_dict(self.graph)
        self.raycast_mode = RaycastMode.parse(self.raycast_mode).value
        if self.worker_queue_size < 1:
            raise ValueError("worker_queue_size 必须 ≥ 1")

    @property
    def mode(self) -> RaycastMode:
        return RaycastMode(self.raycast_mode)

    # ── JSON 序列化 ──

    def to_dict(self) -> Dict[str, Any]:
        """转为字典"""
        from dataclasses import fields as dc_fields
        d = {f.name: getattr(self, f.name) for f in dc_fields(self)}
        d['graph'] = self.graph.to_dict()
        return d

    def to_json(self, filepath: str | Path) -> str:
        """保存到 JSON 文件"""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        return str(filepath)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlannerConfig':
        """从字典创建（忽略未知字段，缺失字段用默认值）"""
        from dataclasses import fields as dc_fields
        valid_fields = {f.name for f in dc_fields(cls)}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)

    @classmethod
    def from_json(cls, filepath: str | Path) -> 'PlannerConfig':
        """从 JSON 文件加载"""
        filepath = Path(filepath)
        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls.from_dict(data)
