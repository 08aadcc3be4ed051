"""
raycast/raycaster.py - 视锥射线投射

从视点出发，按像素步长在图像平面（或其矩形子窗口）上采样射线，
每条射线返回第一个占据或未知体素；射线离开地图或超过最大距离
而未命中时不产生条目（不是错误）。

INFORMATION_VOXEL_CENTER 模式下不采样像素，而是对每个候选体素
只朝其几何中心投射一条射线：中心投影落在窗口内、且该射线的首个
命中正是该体素时，记为可见。

代价约为 采样射线数 × 平均遍历深度，是整个引擎的主要开销。
取消检查只发生在扫描行之间（安全点），不进入单条射线的内循环。
"""

import logging
from typing import Callable, List, Optional, Tuple

import numpy as np

from occupancy.camera import PinholeCamera, Pose
from occupancy.volume import OccupancyVolume
from .information import InformationAggregator
from .models import (
    PixelWindow,
    RayHit,
    RaycastMode,
    RaycastResult,
    VoxelWrapper,
)

logger = logging.getLogger(__name__)

StopCallback = Callable[[], bool]

# 体素中心模式下每处理多少个候选体素检查一次取消
_CENTER_SWEEP_CHUNK = 256


class Raycaster:
    """视锥射线投射器（对占据体纯只读）

    Args:
        volume: 占据体
        camera: 针孔相机模型
        aggregator: 信息聚合器（缺省新建一个无累计状态的实例）
        max_range: 射线最大距离（缺省取 volume.config.max_range）

    Example:
        >>> caster = Raycaster(volume, camera)
        >>> result = caster.raycast(pose, stride=4)
        >>> result.total_information
    """

    def __init__(
        self,
        volume: OccupancyVolume,
        camera: PinholeCamera,
        aggregator: Optional[InformationAggregator] = None,
        max_range: Optional[float] = None,
    ) -> None:
        if not camera.is_valid():
            raise ValueError(f"无效相机: {camera}")
        self.volume = volume
        self.camera = camera
        self.aggregator = aggregator or InformationAggregator()
        self.max_range = volume.config.max_range if max_range is None else max_range
        self._n_rays_cast = 0

    @property
    def n_rays_cast(self) -> int:
        """累计投射射线数"""
        return self._n_rays_cast

    def raycast(
        self,
        pose: Pose,
        window: Optional[PixelWindow] = None,
        mode: RaycastMode = RaycastMode.DEFAULT,
        stride: int = 1,
        should_stop: Optional[StopCallback] = None,
    ) -> RaycastResult:
        """投射并聚合（聚合为无状态评估）

        Args:
            pose: 视点位姿
            window: 像素子窗口（None = 全帧）
            mode: 投射模式
            stride: 像素采样步长 (≥1)
            should_stop: 安全点回调，返回 True 时中止扫描

        Returns:
            RaycastResult（被取消时 cancelled=True，含已完成部分）
        """
        mode = RaycastMode.parse(mode)
        if window is None:
            window = PixelWindow.full(self.camera)
        window = window.clipped(self.camera)

        if mode is RaycastMode.INFORMATION_VOXEL_CENTER:
            hits, n_rays, cancelled = self.cast_voxel_centers(pose, window, should_stop)
        else:
            hits, n_rays, cancelled = self.cast_pixels(pose, window, stride, should_stop)

        voxel_set, total = self.aggregator.aggregate(hits, mode)
        if cancelled:
            logger.debug("raycast 被取消: %d rays, %d hits", n_rays, len(hits))
        return RaycastResult(
            hits=hits,
            voxel_set=voxel_set,
            total_information=total,
            n_rays=n_rays,
            mode=mode,
            window=window,
            cancelled=cancelled,
        )

    def cast_pixels(
        self,
        pose: Pose,
        window: PixelWindow,
        stride: int = 1,
        should_stop: Optional[StopCallback] = None,
    ) -> Tuple[List[RayHit], int, bool]:
        """逐像素射线扫描，返回 (命中列表, 射线数, 是否取消)"""
        stride = max(1, int(stride))
        hits: List[RayHit] = []
        if window.is_empty or self.volume.is_empty:
            return hits, 0, False

        origin = pose.translation
        rot = pose.rotation_matrix
        xs = np.arange(window.x_start, window.x_end, stride, dtype=np.float64)
        n_rays = 0
        for y in range(window.y_start, window.y_end, stride):
            if should_stop is not None and should_stop():
                self._n_rays_cast += n_rays
                return hits, n_rays, True
            # 像素中心
            rays_cam = self.camera.camera_rays(xs + 0.5, np.full(len(xs), y + 0.5))
            rays_world = rays_cam @ rot.T
            for x, direction in zip(xs, rays_world):
                n_rays += 1
                cell_hits = self.volume.cast_ray(
                    origin, direction, self.max_range, max_hits=1)
                if not cell_hits:
                    continue
                ch = cell_hits[0]
                hits.append(RayHit(
                    voxel=VoxelWrapper.from_cell(ch.cell),
                    pixel=(float(x), float(y)),
                    distance=ch.distance,
                    weight=ch.cell.weight,
                    normal=ch.normal,
                ))
        self._n_rays_cast += n_rays
        return hits, n_rays, False

    def cast_voxel_centers(
        self,
        pose: Pose,
        window: PixelWindow,
        should_stop: Optional[StopCallback] = None,
    ) -> Tuple[List[RayHit], int, bool]:
        """体素中心采样，返回 (命中列表, 射线数, 是否取消)"""
        hits: List[RayHit] = []
        if window.is_empty or self.volume.is_empty:
            return hits, 0, False

        thr = self.volume.config.occupancy_threshold
        origin = pose.translation
        candidates = sorted(
            (c for c in self.volume.cells() if c.is_informative(thr)),
            key=lambda c: c.key,
        )
        n_rays = 0
        for idx, cell in enumerate(candidates):
            if idx % _CENTER_SWEEP_CHUNK == 0 and should_stop is not None and should_stop():
                self._n_rays_cast += n_rays
                return hits, n_rays, True
            center = self.volume.cell_center(cell.key)
            dist = float(np.linalg.norm(center - origin))
            if dist > self.max_range:
                continue
            pixel = self.camera.project_point(pose.world_to_camera(center))
            if not np.all(np.isfinite(pixel)) or not window.contains(pixel[0], pixel[1]):
                continue
            n_rays += 1
            cell_hits = self.volume.cast_ray(
                origin, center - origin, self.max_range, max_hits=1)
            if not cell_hits or cell_hits[0].cell.key != cell.key:
                continue
            hits.append(RayHit(
                voxel=VoxelWrapper.from_cell(cell),
                pixel=(float(pixel[0]), float(pixel[1])),
                distance=cell_hits[0].distance,
                weight=cell.weight,
                normal=cell_hits[0].normal,
            ))
        self._n_rays_cast += n_rays
        return hits, n_rays, False
