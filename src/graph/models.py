"""
graph/models.py - 视点图数据模型

定义视点图使用的核心数据结构：Viewpoint、ViewpointNode、ViewpointEdge、
GraphConfig。

- Viewpoint 创建后不可变；身份由其在图中的索引决定，而非位姿值
- ViewpointNode 缓存视点总信息量与可见体素集合，持有关联边
- ViewpointEdge 代价与方向无关，但可行性可以是方向相关的
"""

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from occupancy.camera import PinholeCamera, Pose
from raycast.models import VoxelWithInformationSet


@dataclass(frozen=True, eq=False)
class Viewpoint:
    """候选相机视点：6-DoF 位姿 + 相机模型

    Attributes:
        pose: 相机位姿 (camera → world)
        camera: 针孔相机模型
    """
    pose: Pose
    camera: PinholeCamera

    @property
    def position(self) -> np.ndarray:
        return self.pose.translation

    def to_dict(self) -> Dict[str, Any]:
        return {'pose': self.pose.to_dict(), 'camera': self.camera.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Viewpoint':
        return cls(
            pose=Pose.from_dict(data['pose']),
            camera=PinholeCamera.from_dict(data['camera']),
        )


@dataclass
class ViewpointEdge:
    """视点图中的一条边（每个无序节点对至多一条）

    代价与方向无关；可行性按方向分别记录（例如坡度限制只允许下坡）。
    端点按索引规范化：source < target。

    Attributes:
        source: 较小的端点索引
        target: 较大的端点索引
        cost: 运动代价（路径长度 + 转向惩罚）
        forward: source → target 可行
        backward: target → source 可行
        length: 直线长度
        turn_angle: 两端位姿旋转角 (rad)
    """
    source: int
    target: int
    cost: float
    forward: bool = True
    backward: bool = True
    length: float = 0.0
    turn_angle: float = 0.0

    def __post_init__(self) -> None:
        if self.source > self.target:
            self.source, self.target = self.target, self.source
            self.forward, self.backward = self.backward, self.forward
        if not (self.forward or self.backward):
            raise ValueError(f"边 ({self.source}, {self.target}) 两个方向都不可行")

    @property
    def feasible(self) -> bool:
        return self.forward or self.backward

    @property
    def is_one_way(self) -> bool:
        return self.forward != self.backward

    def other(self, index: int) -> int:
        return self.target if index == self.source else self.source

    def allows(self, start: int, end: int) -> bool:
        """start → end 方向是否可行"""
        if (start, end) == (self.source, self.target):
            return self.forward
        if (start, end) == (self.target, self.source):
            return self.backward
        return False

    def directions(self) -> List[Tuple[int, int]]:
        out = []
        if self.forward:
            out.append((self.source, self.target))
        if self.backward:
            out.append((self.target, self.source))
        return out

    def to_list(self) -> list:
        return [self.source, self.target, self.cost, self.length, self.turn_angle,
                int(self.forward), int(self.backward)]

    @classmethod
    def from_list(cls, row) -> 'ViewpointEdge':
        source, target, cost, length, turn = row[:5]
        forward, backward = (bool(row[5]), bool(row[6])) if len(row) >= 7 else (True, True)
        return cls(source=int(source), target=int(target), cost=float(cost),
                   forward=forward, backward=backward,
                   length=float(length), turn_angle=float(turn))


@dataclass
class ViewpointNode:
    """视点图节点

    Attributes:
        index: 稳定索引（节点存活期间不变、不复用）
        viewpoint: 视点
        information: 缓存的总信息量（无状态评估）
        voxel_set: 该视点可见体素及其信息值
        edges: 关联边 {另一端点索引: ViewpointEdge}（与对端共享同一对象）
    """
    index: int
    viewpoint: Viewpoint
    information: float = 0.0
    voxel_set: VoxelWithInformationSet = field(default_factory=VoxelWithInformationSet)
    edges: Dict[int, ViewpointEdge] = field(default_factory=dict)

    @property
    def position(self) -> np.ndarray:
        return self.viewpoint.position

    @property
    def degree(self) -> int:
        return len(self.edges)


@dataclass
class GraphConfig:
    """视点图构建参数

    Attributes:
        region_min: 感兴趣区域最小角点（None = 地图包围盒扩展 region_margin）
        region_max: 感兴趣区域最大角点
        region_margin: 缺省 ROI 相对地图包围盒的外扩距离
        min_clearance: 视点与运动线段离占据/未知体素的最小距离
        k_neighbors: 每个节点尝试连接的最近邻数量
        max_edge_length: 单条运动最大长度（运动学限制）
        segment_resolution: 线段碰撞检测采样间隔（None = 半个体素）
        turn_penalty: 每弧度转向的附加代价
        max_climb_slope: 最大爬升坡度 dz/dxy（None = 不限制）
        max_descent_slope: 最大下降坡度（None = 不限制）
        connect_on_add: 添加节点时立即连接邻居
        raycast_stride: 评估视点信息量时的像素步长
        max_sample_attempts: grow 时每个目标节点的最大采样次数
        min_information: 低于该信息量的视点被拒绝
    """
    region_min: Optional[Tuple[float, float, float]] = None
    region_max: Optional[Tuple[float, float, float]] = None
    region_margin: float = 2.0
    min_clearance: float = 0.0
    k_neighbors: int = 6
    max_edge_length: float = 5.0
    segment_resolution: Optional[float] = None
    turn_penalty: float = 0.0
    max_climb_slope: Optional[float] = None
    max_descent_slope: Optional[float] = None
    connect_on_add: bool = True
    raycast_stride: int = 4
    max_sample_attempts: int = 20
    min_information: float = 0.0

    def __post_init__(self) -> None:
        if self.region_min is not None:
            self.region_min = tuple(float(v) for v in self.region_min)
        if self.region_max is not None:
            self.region_max = tuple(float(v) for v in self.region_max)
        if self.k_neighbors < 1:
            raise ValueError("k_neighbors 必须 ≥ 1")
        if self.max_edge_length <= 0 or math.isnan(self.max_edge_length):
            raise ValueError("max_edge_length 必须为正")

    @property
    def is_direction_dependent(self) -> bool:
        return self.max_climb_slope is not None or self.max_descent_slope is not None

    # ── JSON 序列化 ──

    def to_dict(self) -> Dict[str, Any]:
        """转为字典"""
        from dataclasses import fields as dc_fields
        d = {f.name: getattr(self, f.name) for f in dc_fields(self)}
        for key in ('region_min', 'region_max'):
            if d[key] is not None:
                d[key] = list(d[key])
        return d

    def to_json(self, filepath: str | Path) -> str:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        return str(filepath)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GraphConfig':
        """从字典创建（忽略未知字段，缺失字段用默认值）"""
        from dataclasses import fields as dc_fields
        valid_fields = {f.name for f in dc_fields(cls)}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)

    @classmethod
    def from_json(cls, filepath: str | Path) -> 'GraphConfig':
        with open(filepath, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))
