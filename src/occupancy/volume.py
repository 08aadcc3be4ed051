"""
occupancy/volume.py - 稀疏体素占据体

规划核心只读使用的占据体实现：
- 稀疏存储：{(i, j, k): VoxelCell}，仅保存摄入管线写入的体素
- 层级查询：lookup(key, depth) 支持粗层级（子体素取最大占据，聚合缓存）
- 射线遍历：3D-DDA (Amanatides & Woo)，返回按距离排序的命中体素
- 持久化：.npz (numpy)

未存储的体素视为已知空闲；存储但 observation_count == 0 的体素为未知。
规划期间占据体只读，所有写操作（insert_cell / clear）属于摄入管线。
"""

import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .models import (
    CellHit,
    VolumeConfig,
    VoxelCell,
    VoxelKey,
    compute_information_weight,
)

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1


class OccupancyVolume:
    """稀疏层级体素占据体

    Args:
        config: 体素分辨率与阈值参数

    Example:
        >>> volume = OccupancyVolume(VolumeConfig(resolution=1.0))
        >>> volume.insert_cell((2, 0, 0), occupancy=0.9, observation_count=3)
        >>> hits = volume.cast_ray([0.5, 0.5, 0.5], [1, 0, 0], max_hits=1)
    """

    def __init__(self, config: Optional[VolumeConfig] = None) -> None:
        self.config = config or VolumeConfig()
        self._cells: Dict[VoxelKey, VoxelCell] = {}
        self._key_min: Optional[np.ndarray] = None
        self._key_max: Optional[np.ndarray] = None
        self._coarse_cache: Dict[int, Dict[VoxelKey, VoxelCell]] = {}

    # ── 基本属性 ──────────────────────────────────────────

    @property
    def n_cells(self) -> int:
        return len(self._cells)

    @property
    def is_empty(self) -> bool:
        return not self._cells

    @property
    def resolution(self) -> float:
        return self.config.resolution

    @property
    def tree_depth(self) -> int:
        return self.config.tree_depth

    def cells(self) -> Iterator[VoxelCell]:
        return iter(self._cells.values())

    def cell_size(self, depth: Optional[int] = None) -> float:
        """depth 层级体素边长"""
        if depth is None:
            depth = self.tree_depth
        return self.resolution * float(2 ** (self.tree_depth - depth))

    def key_of(self, point: np.ndarray) -> VoxelKey:
        """世界坐标 → 最细层体素索引"""
        p = (np.asarray(point, dtype=np.float64) - self.config.origin_array)
        k = np.floor(p / self.resolution).astype(np.int64)
        return int(k[0]), int(k[1]), int(k[2])

    def cell_center(self, key: VoxelKey, depth: Optional[int] = None) -> np.ndarray:
        size = self.cell_size(depth)
        return self.config.origin_array + (np.asarray(key, dtype=np.float64) + 0.5) * size

    def cell_bounds(
        self, key: VoxelKey, depth: Optional[int] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        size = self.cell_size(depth)
        lo = self.config.origin_array + np.asarray(key, dtype=np.float64) * size
        return lo, lo + size

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """整个地图的度量包围盒 (min_point, max_point)"""
        if self.is_empty:
            raise ValueError("占据体为空，没有包围盒")
        lo = self.config.origin_array + self._key_min * self.resolution
        hi = self.config.origin_array + (self._key_max + 1) * self.resolution
        return lo, hi

    # ── 摄入管线写接口 ────────────────────────────────────

    def insert_cell(
        self,
        key: VoxelKey,
        occupancy: float,
        observation_count: int = 1,
        weight: Optional[float] = None,
    ) -> VoxelCell:
        """写入/覆盖一个最细层体素 (weight 缺省时由占据概率导出)"""
        if weight is None:
            weight = compute_information_weight(
                occupancy, observation_count, self.config.unknown_weight)
        cell = VoxelCell(
            key=key,
            depth=self.tree_depth,
            occupancy=float(occupancy),
            observation_count=int(observation_count),
            weight=float(weight),
        )
        self._cells[cell.key] = cell
        k = np.asarray(cell.key, dtype=np.int64)
        if self._key_min is None:
            self._key_min = k.copy()
            self._key_max = k.copy()
        else:
            self._key_min = np.minimum(self._key_min, k)
            self._key_max = np.maximum(self._key_max, k)
        self._coarse_cache.clear()
        return cell

    def insert_point(
        self,
        point: np.ndarray,
        occupancy: float,
        observation_count: int = 1,
        weight: Optional[float] = None,
    ) -> VoxelCell:
        """按世界坐标写入点所在的最细层体素"""
        return self.insert_cell(
            self.key_of(point), occupancy, observation_count, weight)

    def clear(self) -> None:
        self._cells.clear()
        self._key_min = None
        self._key_max = None
        self._coarse_cache.clear()

    # ── 查询 ──────────────────────────────────────────────

    def lookup(self, key: VoxelKey, depth: Optional[int] = None) -> Optional[VoxelCell]:
        """按 (key, depth) 反查体素，粗层级返回子体素聚合 (最大占据)"""
        if depth is None or depth == self.tree_depth:
            return self._cells.get(tuple(key))
        if depth > self.tree_depth or depth < 0:
            raise ValueError(f"depth 超出范围: {depth}")
        return self._coarse_level(depth).get(tuple(key))

    def _coarse_level(self, depth: int) -> Dict[VoxelKey, VoxelCell]:
        level = self._coarse_cache.get(depth)
        if level is not None:
            return level
        shift = self.tree_depth - depth
        groups: Dict[VoxelKey, List[VoxelCell]] = {}
        for key, cell in self._cells.items():
            ck = (key[0] >> shift, key[1] >> shift, key[2] >> shift)
            groups.setdefault(ck, []).append(cell)
        level = {}
        for ck, members in groups.items():
            level[ck] = VoxelCell(
                key=ck,
                depth=depth,
                occupancy=max(c.occupancy for c in members),
                observation_count=min(c.observation_count for c in members),
                weight=sum(c.weight for c in members),
            )
        self._coarse_cache[depth] = level
        return level

    def cell_at(self, point: np.ndarray) -> Optional[VoxelCell]:
        return self._cells.get(self.key_of(point))

    def is_occupied_at(self, point: np.ndarray) -> bool:
        cell = self.cell_at(point)
        return cell is not None and cell.is_occupied(self.config.occupancy_threshold)

    def is_unknown_at(self, point: np.ndarray) -> bool:
        cell = self.cell_at(point)
        return cell is not None and cell.is_unknown

    def is_blocked_at(self, point: np.ndarray) -> bool:
        """占据或未知 (运动规划中都视为不可通行)"""
        cell = self.cell_at(point)
        return cell is not None and cell.is_informative(self.config.occupancy_threshold)

    def is_blocked_within(self, point: np.ndarray, radius: float) -> bool:
        """半径 radius 的球内是否存在占据或未知体素"""
        if radius <= 0.0:
            return self.is_blocked_at(point)
        point = np.asarray(point, dtype=np.float64)
        lo = self.key_of(point - radius)
        hi = self.key_of(point + radius)
        thr = self.config.occupancy_threshold
        r2 = radius * radius
        for i in range(lo[0], hi[0] + 1):
            for j in range(lo[1], hi[1] + 1):
                for k in range(lo[2], hi[2] + 1):
                    cell = self._cells.get((i, j, k))
                    if cell is None or not cell.is_informative(thr):
                        continue
                    c_lo, c_hi = self.cell_bounds((i, j, k))
                    nearest = np.clip(point, c_lo, c_hi)
                    if float(np.sum((nearest - point) ** 2)) <= r2:
                        return True
        return False

    # ── 射线遍历 ──────────────────────────────────────────

    def traverse(
        self,
        origin: np.ndarray,
        direction: np.ndarray,
        max_range: Optional[float] = None,
    ) -> Iterator[Tuple[VoxelKey, float, int]]:
        """3D-DDA 遍历射线经过的、位于地图包围盒内的最细层体素

        Yields:
            (key, t_enter, entry_axis)；entry_axis 为进入该体素时
            穿过的面所在轴，起点体素为 -1
        """
        if self.is_empty:
            return
        origin = np.asarray(origin, dtype=np.float64)
        d = np.asarray(direction, dtype=np.float64)
        norm = float(np.linalg.norm(d))
        if norm < 1e-12:
            return
        d = d / norm
        if max_range is None:
            max_range = self.config.max_range

        lo, hi = self.bounds()
        t_near, t_far, near_axis = 0.0, float('inf'), -1
        for ax in range(3):
            if abs(d[ax]) < 1e-12:
                if origin[ax] < lo[ax] or origin[ax] > hi[ax]:
                    return
                continue
            t1 = (lo[ax] - origin[ax]) / d[ax]
            t2 = (hi[ax] - origin[ax]) / d[ax]
            if t1 > t2:
                t1, t2 = t2, t1
            if t1 > t_near:
                t_near, near_axis = t1, ax
            t_far = min(t_far, t2)
        t_far = min(t_far, max_range)
        if t_near > t_far:
            return

        res = self.resolution
        grid_origin = self.config.origin_array
        p = origin + d * t_near
        key = np.floor((p - grid_origin) / res).astype(np.int64)
        key = np.clip(key, self._key_min, self._key_max)

        step = np.zeros(3, dtype=np.int64)
        t_max = np.full(3, float('inf'))
        t_delta = np.full(3, float('inf'))
        for ax in range(3):
            if d[ax] > 1e-12:
                step[ax] = 1
                boundary = grid_origin[ax] + (key[ax] + 1) * res
            elif d[ax] < -1e-12:
                step[ax] = -1
                boundary = grid_origin[ax] + key[ax] * res
            else:
                continue
            t_max[ax] = (boundary - origin[ax]) / d[ax]
            t_delta[ax] = res / abs(d[ax])

        t = t_near
        entry_axis = near_axis
        while t <= t_far:
            yield (int(key[0]), int(key[1]), int(key[2])), t, entry_axis
            ax = int(np.argmin(t_max))
            t = float(t_max[ax])
            key[ax] += step[ax]
            t_max[ax] += t_delta[ax]
            entry_axis = ax
            if key[ax] < self._key_min[ax] or key[ax] > self._key_max[ax]:
                break

    def cast_ray(
        self,
        origin: np.ndarray,
        direction: np.ndarray,
        max_range: Optional[float] = None,
        max_hits: int = 1,
    ) -> List[CellHit]:
        """从 origin 沿 direction 投射射线

        返回按距离排序的占据或未知体素（至多 max_hits 个）。
        射线离开地图仍未命中时返回空列表。
        """
        hits: List[CellHit] = []
        thr = self.config.occupancy_threshold
        d = np.asarray(direction, dtype=np.float64)
        for key, t_enter, axis in self.traverse(origin, d, max_range):
            cell = self._cells.get(key)
            if cell is None or not cell.is_informative(thr):
                continue
            normal = np.zeros(3)
            if axis >= 0:
                normal[axis] = -1.0 if d[axis] > 0 else 1.0
            hits.append(CellHit(cell=cell, distance=float(t_enter), normal=normal))
            if len(hits) >= max_hits:
                break
        return hits

    # ── 持久化 ────────────────────────────────────────────

    def save(self, filepath: str | Path) -> str:
        """保存到 .npz 文件"""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        cells = list(self._cells.values())
        keys = np.array([c.key for c in cells], dtype=np.int64).reshape(-1, 3)
        np.savez_compressed(
            filepath,
            version=np.int64(_FORMAT_VERSION),
            keys=keys,
            occupancy=np.array([c.occupancy for c in cells], dtype=np.float64),
            observations=np.array(
                [c.observation_count for c in cells], dtype=np.int64),
            weights=np.array([c.weight for c in cells], dtype=np.float64),
            resolution=np.float64(self.config.resolution),
            tree_depth=np.int64(self.config.tree_depth),
            origin=np.asarray(self.config.origin, dtype=np.float64),
            occupancy_threshold=np.float64(self.config.occupancy_threshold),
            unknown_weight=np.float64(self.config.unknown_weight),
        )
        logger.info("占据体已保存到 %s (%d cells)", filepath, self.n_cells)
        return str(filepath)

    @classmethod
    def load(cls, filepath: str | Path) -> 'OccupancyVolume':
        """从 .npz 文件加载"""
        with np.load(filepath) as data:
            config = VolumeConfig(
                resolution=float(data['resolution']),
                tree_depth=int(data['tree_depth']),
                origin=tuple(data['origin'].tolist()),
                occupancy_threshold=float(data['occupancy_threshold']),
                unknown_weight=float(data['unknown_weight']),
            )
            volume = cls(config)
            for key, occ, obs, w in zip(
                data['keys'], data['occupancy'],
                data['observations'], data['weights'],
            ):
                volume.insert_cell(tuple(key.tolist()), float(occ), int(obs), float(w))
        logger.info("从 %s 加载占据体 (%d cells)", filepath, volume.n_cells)
        return volume

    def __repr__(self) -> str:
        return (f"OccupancyVolume(n_cells={self.n_cells}, "
                f"resolution={self.resolution})")


def make_box_volume(
    min_key: VoxelKey,
    max_key: VoxelKey,
    occupancy: float = 0.9,
    observation_count: int = 1,
    config: Optional[VolumeConfig] = None,
    hollow: bool = True,
) -> OccupancyVolume:
    """构造一个 (空心) 立方体占据体，用于演示与测试"""
    volume = OccupancyVolume(config)
    for i in range(min_key[0], max_key[0] + 1):
        for j in range(min_key[1], max_key[1] + 1):
            for k in range(min_key[2], max_key[2] + 1):
                on_shell = (
                    i in (min_key[0], max_key[0])
                    or j in (min_key[1], max_key[1])
                    or k in (min_key[2], max_key[2])
                )
                if hollow and not on_shell:
                    continue
                volume.insert_cell((i, j, k), occupancy, observation_count)
    return volume

