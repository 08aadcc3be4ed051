"""
occupancy/models.py - 占据体素数据模型

定义占据体 (Occupancy Volume) 中单个体素的数据结构 VoxelCell，
以及体素阈值参数 VolumeConfig。

体素语义：
- occupied  ⇔ occupancy ≥ occupancy_threshold
- unknown   ⇔ observation_count == 0
- 信息权重 weight 由占据概率的二值熵导出（未观测体素取 unknown_weight）
"""

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

import numpy as np

VoxelKey = Tuple[int, int, int]


def binary_entropy(p: float) -> float:
    """占据概率的二值熵 (bit)，p∈{0,1} 时为 0"""
    if p <= 0.0 or p >= 1.0:
        return 0.0
    return -(p * math.log2(p) + (1.0 - p) * math.log2(1.0 - p))


def compute_information_weight(
    occupancy: float,
    observation_count: int,
    unknown_weight: float = 1.0,
) -> float:
    """由占据概率与观测次数导出体素信息权重

    未观测体素信息量最大 (unknown_weight)；已观测体素取二值熵，
    并随观测次数衰减 1 / (1 + n)。
    """
    if observation_count <= 0:
        return float(unknown_weight)
    return binary_entropy(occupancy) / (1.0 + observation_count)


@dataclass
class VoxelCell:
    """占据体中的一个体素

    Attributes:
        key: 体素整数索引 (i, j, k)，在 depth 层级的网格上
        depth: 分辨率层级 (tree_depth 为最细层)
        occupancy: 占据概率 [0, 1]
        observation_count: 观测次数 (非负)
        weight: 派生信息权重 (非负)
    """
    key: VoxelKey
    depth: int
    occupancy: float
    observation_count: int = 0
    weight: float = 0.0

    def __post_init__(self) -> None:
        self.key = tuple(int(k) for k in self.key)
        if len(self.key) != 3:
            raise ValueError("key 必须是三维整数索引")
        if not 0.0 <= self.occupancy <= 1.0:
            raise ValueError(f"occupancy 超出 [0,1]: {self.occupancy}")
        if self.observation_count < 0:
            raise ValueError("observation_count 不能为负")
        if self.weight < 0.0:
            raise ValueError("weight 不能为负")

    @property
    def is_unknown(self) -> bool:
        return self.observation_count == 0

    def is_occupied(self, threshold: float) -> bool:
        return self.occupancy >= threshold

    def is_informative(self, threshold: float) -> bool:
        """射线在此体素处终止：占据或未知"""
        return self.is_unknown or self.is_occupied(threshold)


@dataclass
class VolumeConfig:
    """占据体参数

    Attributes:
        resolution: 最细层体素边长 (m)
        tree_depth: 最细层级号
        origin: 网格原点 (索引 (0,0,0) 体素的最小角点)
        occupancy_threshold: 占据判定阈值
        max_range: 射线最大距离
        unknown_weight: 未观测体素的信息权重
    """
    resolution: float = 0.1
    tree_depth: int = 16
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    occupancy_threshold: float = 0.5
    max_range: float = float('inf')
    unknown_weight: float = 1.0

    def __post_init__(self) -> None:
        if self.resolution <= 0:
            raise ValueError("resolution 必须为正")
        self.origin = tuple(float(v) for v in self.origin)

    @property
    def origin_array(self) -> np.ndarray:
        return np.asarray(self.origin, dtype=np.float64)

    def to_dict(self) -> Dict[str, Any]:
        from dataclasses import fields as dc_fields
        d = {f.name: getattr(self, f.name) for f in dc_fields(self)}
        d['origin'] = list(self.origin)
        if math.isinf(self.max_range):
            d['max_range'] = None
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VolumeConfig':
        """从字典创建（忽略未知字段，缺失字段用默认值）"""
        from dataclasses import fields as dc_fields
        valid_fields = {f.name for f in dc_fields(cls)}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        if filtered.get('max_range', 0.0) is None:
            filtered['max_range'] = float('inf')
        return cls(**filtered)

    def to_json(self, filepath: str | Path) -> str:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        return str(filepath)

    @classmethod
    def from_json(cls, filepath: str | Path) -> 'VolumeConfig':
        with open(filepath, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))


@dataclass
class CellHit:
    """射线命中的一个体素

    Attributes:
        cell: 命中的体素
        distance: 射线进入该体素时的距离
        normal: 射线进入面的外法向 (起点位于体素内部时为零向量)
    """
    cell: VoxelCell
    distance: float
    normal: np.ndarray = field(default_factory=lambda: np.zeros(3))
