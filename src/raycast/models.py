"""
raycast/models.py - 射线投射数据模型

- RaycastMode: 信息权重策略（同时决定 Raycaster 与 Aggregator 行为）
- VoxelWrapper: 体素弱引用 (key + depth)，可哈希，不持有占据体内存
- VoxelWithInformationSet: {VoxelWrapper: 信息值}，重复插入为替换而非累加
- PixelWindow: 图像平面矩形子窗口（半开区间）
- RayHit / RaycastResult: 单条射线命中与整次投射结果
"""

import enum
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from occupancy.models import VoxelCell, VoxelKey


class RaycastMode(enum.Enum):
    """射线投射模式

    DEFAULT: 使用体素存储的信息权重
    WITH_CURRENT_INFORMATION: 按当前累计信息状态重新计算（已覆盖体素贡献减少）
    INFORMATION_VOXEL_CENTER: 仅采样体素几何中心，而非逐像素射线
    """
    DEFAULT = "default"
    WITH_CURRENT_INFORMATION = "with_current_information"
    INFORMATION_VOXEL_CENTER = "information_voxel_center"

    @classmethod
    def parse(cls, value) -> 'RaycastMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls[str(value).upper()]


@dataclass(frozen=True, order=True)
class VoxelWrapper:
    """占据体体素的弱引用

    以 (key, depth) 作为身份；通过 resolve(volume) 显式反查。
    """
    key: VoxelKey
    depth: int

    @classmethod
    def from_cell(cls, cell: VoxelCell) -> 'VoxelWrapper':
        return cls(key=tuple(cell.key), depth=int(cell.depth))

    def resolve(self, volume) -> Optional[VoxelCell]:
        return volume.lookup(self.key, self.depth)

    def to_list(self) -> List[int]:
        return [*self.key, self.depth]

    @classmethod
    def from_list(cls, data: Iterable[int]) -> 'VoxelWrapper':
        i, j, k, depth = (int(v) for v in data)
        return cls(key=(i, j, k), depth=depth)


class VoxelWithInformationSet:
    """体素 → 信息值集合

    insert 是幂等的：同一体素再次插入会替换旧值（表示"该体素从此视点可见，
    边际价值为 v"），而不是累加。
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Optional[Dict[VoxelWrapper, float]] = None) -> None:
        self._entries: Dict[VoxelWrapper, float] = dict(entries or {})

    def insert(self, voxel: VoxelWrapper, information: float) -> None:
        self._entries[voxel] = float(information)

    def get(self, voxel: VoxelWrapper, default: float = 0.0) -> float:
        return self._entries.get(voxel, default)

    def discard(self, voxel: VoxelWrapper) -> None:
        self._entries.pop(voxel, None)

    def voxels(self) -> List[VoxelWrapper]:
        return list(self._entries.keys())

    def items(self):
        return self._entries.items()

    @property
    def total_information(self) -> float:
        return float(sum(self._entries.values()))

    def intersection(self, other: 'VoxelWithInformationSet') -> List[VoxelWrapper]:
        small, large = (self, other) if len(self) <= len(other) else (other, self)
        return [v for v in small._entries if v in large._entries]

    def overlap_ratio(self, other: 'VoxelWithInformationSet') -> float:
        """|A∩B| / min(|A|, |B|)，任一为空时为 0"""
        denom = min(len(self), len(other))
        if denom == 0:
            return 0.0
        return len(self.intersection(other)) / denom

    def copy(self) -> 'VoxelWithInformationSet':
        return VoxelWithInformationSet(self._entries)

    def to_list(self) -> List[List[float]]:
        return [[*v.to_list(), info] for v, info in sorted(self._entries.items())]

    @classmethod
    def from_list(cls, data: Iterable[Iterable[float]]) -> 'VoxelWithInformationSet':
        out = cls()
        for row in data:
            row = list(row)
            out.insert(VoxelWrapper.from_list(row[:4]), float(row[4]))
        return out

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, voxel: VoxelWrapper) -> bool:
        return voxel in self._entries

    def __iter__(self) -> Iterator[VoxelWrapper]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VoxelWithInformationSet):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return (f"VoxelWithInformationSet(n={len(self)}, "
                f"total={self.total_information:.4f})")


@dataclass(frozen=True)
class PixelWindow:
    """图像平面矩形窗口 [x_start, x_end) × [y_start, y_end)"""
    x_start: int
    x_end: int
    y_start: int
    y_end: int

    @classmethod
    def full(cls, camera) -> 'PixelWindow':
        return cls(0, int(camera.width), 0, int(camera.height))

    @classmethod
    def centered(cls, camera, width: int, height: int) -> 'PixelWindow':
        """以主点为中心的 width × height 子窗口"""
        x0 = max(0, int(round(camera.cx - width / 2.0)))
        y0 = max(0, int(round(camera.cy - height / 2.0)))
        return cls(x0, x0 + int(width), y0, y0 + int(height)).clipped(camera)

    def clipped(self, camera) -> 'PixelWindow':
        return PixelWindow(
            x_start=max(0, self.x_start),
            x_end=min(int(camera.width), self.x_end),
            y_start=max(0, self.y_start),
            y_end=min(int(camera.height), self.y_end),
        )

    @property
    def is_empty(self) -> bool:
        return self.x_end <= self.x_start or self.y_end <= self.y_start

    @property
    def n_pixels(self) -> int:
        if self.is_empty:
            return 0
        return (self.x_end - self.x_start) * (self.y_end - self.y_start)

    def contains(self, x: float, y: float) -> bool:
        return self.x_start <= x < self.x_end and self.y_start <= y < self.y_end

    def to_tuple(self) -> Tuple[int, int, int, int]:
        return self.x_start, self.x_end, self.y_start, self.y_end


@dataclass
class RayHit:
    """一条射线（或一个体素中心采样）的首个命中体素

    Attributes:
        voxel: 命中体素的弱引用
        pixel: 图像坐标 (x, y)
        distance: 相机中心到命中点的距离
        weight: 体素存储的信息权重
        normal: 命中面外法向 (世界坐标)
    """
    voxel: VoxelWrapper
    pixel: Tuple[float, float]
    distance: float
    weight: float
    normal: np.ndarray = field(default_factory=lambda: np.zeros(3))


@dataclass
class RaycastResult:
    """一次射线投射（并聚合）的结果

    Attributes:
        hits: 按扫描顺序排列的命中列表（每条射线至多一项）
        voxel_set: 去重后的体素信息集合
        total_information: 视点总信息量
        n_rays: 实际投射的射线数
        mode: 使用的投射模式
        window: 使用的像素窗口
        cancelled: 扫描是否被中途取消（结果为部分结果）
    """
    hits: List[RayHit] = field(default_factory=list)
    voxel_set: VoxelWithInformationSet = field(default_factory=VoxelWithInformationSet)
    total_information: float = 0.0
    n_rays: int = 0
    mode: RaycastMode = RaycastMode.DEFAULT
    window: Optional[PixelWindow] = None
    cancelled: bool = False

    @property
    def n_hits(self) -> int:
        return len(self.hits)

    def screen_coordinates(self) -> Dict[VoxelWrapper, np.ndarray]:
        """体素 → 首次命中的像素坐标"""
        out: Dict[VoxelWrapper, np.ndarray] = {}
        for h in self.hits:
            out.setdefault(h.voxel, np.asarray(h.pixel, dtype=np.float64))
        return out

    def depths(self) -> Dict[VoxelWrapper, float]:
        """体素 → 最近命中距离"""
        out: Dict[VoxelWrapper, float] = {}
        for h in self.hits:
            prev = out.get(h.voxel)
            if prev is None or h.distance < prev:
                out[h.voxel] = h.distance
        return out

    def normals(self) -> Dict[VoxelWrapper, np.ndarray]:
        out: Dict[VoxelWrapper, np.ndarray] = {}
        for h in self.hits:
            out.setdefault(h.voxel, h.normal)
        return out
