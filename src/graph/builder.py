"""
graph/builder.py - 视点图增量构建

ViewpointGraphBuilder 负责：
- sample_pose: 在感兴趣区域内随机采样位姿（朝向随机信息体素）
- evaluate / add_viewpoint: 校验视点（区域、视锥、占据）并做无状态信息评估
- connect: 对 k 近邻逐对做运动可行性检测，每个可行节点对添加一条边
- grow: 重复采样直到新增 count 个节点或采样预算耗尽
- build_motions: 对整个图重新连接

建图阶段的信息评估总是无状态的，不读取也不写入累计信息状态。
耗时的射线投射在锁外完成，只有提交到图时才持有 lock。
"""

import contextlib
import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from occupancy.camera import PinholeCamera, Pose
from occupancy.volume import OccupancyVolume
from raycast.models import RaycastMode, RaycastResult
from raycast.raycaster import Raycaster
from utils.seed import make_rng
from .models import GraphConfig, Viewpoint
from .motion import MotionChecker
from .viewpoint_graph import ViewpointGraph

logger = logging.getLogger(__name__)

StopCallback = Callable[[], bool]


class RejectReason(enum.Enum):
    """视点被拒绝的原因"""
    OUTSIDE_REGION = "outside_region"
    DEGENERATE_FRUSTUM = "degenerate_frustum"
    OCCUPIED = "occupied"
    LOW_INFORMATION = "low_information"


@dataclass
class AddResult:
    """add_viewpoint 结果

    Attributes:
        accepted: 是否加入图
        index: 新节点索引（拒绝时为 None）
        reason: 拒绝原因
        information: 无状态评估的信息量
        n_edges_added: connect_on_add 时新增的边数
    """
    accepted: bool
    index: Optional[int] = None
    reason: Optional[RejectReason] = None
    information: float = 0.0
    n_edges_added: int = 0


@dataclass
class ConnectResult:
    """connect 结果

    Attributes:
        index: 被连接的节点
        n_attempted: 检测的有序对数量
        n_added: 新增边数（每个节点对一条）
        n_infeasible: 不可行的有序对数量
    """
    index: int
    n_attempted: int = 0
    n_added: int = 0
    n_infeasible: int = 0


@dataclass
class GrowStats:
    """grow / build_motions 统计

    Attributes:
        n_added: 新增节点数
        n_rejected: 被拒绝的采样数
        reject_counts: 按原因统计的拒绝数
        n_edges_added: 新增边数
        n_attempts: 总采样次数
        budget_limited: 采样预算耗尽而未达到目标数量
        cancelled: 被取消（结果为部分结果）
        timings: 各阶段耗时
    """
    n_added: int = 0
    n_rejected: int = 0
    reject_counts: Dict[str, int] = field(default_factory=dict)
    n_edges_added: int = 0
    n_attempts: int = 0
    budget_limited: bool = False
    cancelled: bool = False
    timings: Dict[str, float] = field(default_factory=dict)


@dataclass
class _Candidate:
    """已通过校验并完成信息评估、尚未提交的视点"""
    viewpoint: Viewpoint
    raycast: RaycastResult


class ViewpointGraphBuilder:
    """视点图构建器

    Args:
        graph: 目标视点图
        volume: 占据体（只读）
        camera: 相机模型
        config: 构建参数
        raycaster: 射线投射器（缺省按 volume/camera 新建）
        lock: 提交到图时持有的锁（缺省不加锁）
    """

    def __init__(
        self,
        graph: ViewpointGraph,
        volume: OccupancyVolume,
        camera: PinholeCamera,
        config: Optional[GraphConfig] = None,
        raycaster: Optional[Raycaster] = None,
        lock=None,
    ) -> None:
        self.graph = graph
        self.volume = volume
        self.camera = camera
        self.config = config or GraphConfig()
        self.raycaster = raycaster or Raycaster(volume, camera)
        self.motion_checker = MotionChecker(volume, self.config)
        self.lock = lock if lock is not None else contextlib.nullcontext()
        self.n_infeasible = 0
        self._targets: Optional[np.ndarray] = None
        self._targets_n_cells = -1

    # ── 感兴趣区域 ──

    def region(self) -> Tuple[np.ndarray, np.ndarray]:
        """感兴趣区域 (min, max)；未配置时取地图包围盒外扩 region_margin"""
        cfg = self.config
        if cfg.region_min is not None and cfg.region_max is not None:
            return np.asarray(cfg.region_min), np.asarray(cfg.region_max)
        lo, hi = self.volume.bounds()
        margin = cfg.region_margin
        lo, hi = lo - margin, hi + margin
        if cfg.region_min is not None:
            lo = np.asarray(cfg.region_min)
        if cfg.region_max is not None:
            hi = np.asarray(cfg.region_max)
        return lo, hi

    def in_region(self, position: np.ndarray) -> bool:
        lo, hi = self.region()
        p = np.asarray(position, dtype=np.float64)
        return bool(np.all(p >= lo) and np.all(p <= hi))

    # ── 采样 ──

    def _target_points(self) -> np.ndarray:
        """信息体素（占据或未知）中心，作为采样朝向目标"""
        if self._targets is None or self._targets_n_cells != self.volume.n_cells:
            thr = self.volume.config.occupancy_threshold
            keys = sorted(c.key for c in self.volume.cells() if c.is_informative(thr))
            if keys:
                self._targets = np.array([self.volume.cell_center(k) for k in keys])
            else:
                self._targets = np.empty((0, 3))
            self._targets_n_cells = self.volume.n_cells
        return self._targets

    def sample_pose(
        self,
        rng: np.random.Generator,
        region: Optional[Tuple[np.ndarray, np.ndarray]] = None,
    ) -> Optional[Pose]:
        """在区域内均匀采样位置，朝向随机一个信息体素

        Returns:
            Pose，朝向退化（与目标重合或与竖直方向平行）时为 None
        """
        lo, hi = region if region is not None else self.region()
        position = rng.uniform(lo, hi)
        targets = self._target_points()
        if len(targets):
            target = targets[int(rng.integers(len(targets)))]
        else:
            yaw = rng.uniform(-math.pi, math.pi)
            target = position + np.array([math.cos(yaw), math.sin(yaw), 0.0])
        try:
            return Pose.look_at(position, target)
        except ValueError:
            return None

    # ── 校验与评估 ──

    def validate(self, pose: Pose) -> Optional[RejectReason]:
        """区域 → 视锥 → 占据 的顺序校验，通过时返回 None"""
        position = pose.translation
        if not np.all(np.isfinite(position)) or not np.all(np.isfinite(pose.quaternion)):
            return RejectReason.DEGENERATE_FRUSTUM
        if not self.in_region(position):
            return RejectReason.OUTSIDE_REGION
        if not self.camera.is_valid():
            return RejectReason.DEGENERATE_FRUSTUM
        if not self.motion_checker.is_position_free(position):
            return RejectReason.OCCUPIED
        return None

    def evaluate(
        self,
        pose: Pose,
        should_stop: Optional[StopCallback] = None,
    ) -> Tuple[Optional[_Candidate], Optional[RejectReason]]:
        """校验并做无状态信息评估（不修改图，不需要持有锁）"""
        reason = self.validate(pose)
        if reason is not None:
            return None, reason
        result = self.raycaster.raycast(
            pose, mode=RaycastMode.DEFAULT,
            stride=self.config.raycast_stride, should_stop=should_stop)
        if result.cancelled:
            return None, None
        if result.total_information < self.config.min_information:
            return None, RejectReason.LOW_INFORMATION
        return _Candidate(Viewpoint(pose=pose, camera=self.camera), result), None

    def _commit(self, candidate: _Candidate, connect: bool) -> AddResult:
        with self.lock:
            index = self.graph.add_node(
                candidate.viewpoint,
                information=candidate.raycast.total_information,
                voxel_set=candidate.raycast.voxel_set,
            )
            n_edges = self.connect(index).n_added if connect else 0
        return AddResult(
            accepted=True, index=index,
            information=candidate.raycast.total_information,
            n_edges_added=n_edges,
        )

    def _reject(self, reason: RejectReason) -> AddResult:
        self.n_infeasible += 1
        logger.debug("视点被拒绝: %s", reason.value)
        return AddResult(accepted=False, reason=reason)

    def add_viewpoint(
        self,
        pose: Pose,
        connect: Optional[bool] = None,
    ) -> AddResult:
        """校验、评估并加入单个视点

        Args:
            pose: 视点位姿
            connect: 是否立即连接邻居（None = config.connect_on_add）
        """
        if self.volume.is_empty:
            raise ValueError("占据体为空，无法评估视点")
        candidate, reason = self.evaluate(pose)
        if candidate is None:
            return self._reject(reason or RejectReason.DEGENERATE_FRUSTUM)
        if connect is None:
            connect = self.config.connect_on_add
        return self._commit(candidate, connect)

    # ── 连接 ──

    def connect(self, index: int) -> ConnectResult:
        """连接 index 与其 k 近邻

        每个节点对两个方向分别检测，至少一个方向可行时添加一条边；
        已有边的节点对跳过。线段碰撞与方向无关，正向碰撞时不再检测反向。
        """
        cfg = self.config
        node = self.graph.node(index)
        result = ConnectResult(index=index)
        neighbors = self.graph.nearest(
            node.position, cfg.k_neighbors,
            max_distance=cfg.max_edge_length, exclude=index)
        for other, _dist in neighbors:
            if self.graph.has_edge(index, other):
                continue
            other_pose = self.graph.node(other).viewpoint.pose
            forward = self.motion_checker.check(node.viewpoint.pose, other_pose)
            result.n_attempted += 1
            if not forward.feasible:
                result.n_infeasible += 1
                if forward.reason in ('collision', 'too_long'):
                    continue
            backward = self.motion_checker.check(
                other_pose, node.viewpoint.pose,
                collision_known_free=forward.feasible)
            result.n_attempted += 1
            if not backward.feasible:
                result.n_infeasible += 1
                if not forward.feasible:
                    continue
            check = forward if forward.feasible else backward
            if self.graph.add_edge(index, other, check.cost, check.length,
                                   check.turn_angle, forward=forward.feasible,
                                   backward=backward.feasible):
                result.n_added += 1
        return result

    # ── 批量构建 ──

    def grow(
        self,
        count: int,
        rng=None,
        region: Optional[Tuple[np.ndarray, np.ndarray]] = None,
        should_stop: Optional[StopCallback] = None,
    ) -> GrowStats:
        """采样并加入 count 个新视点

        采样次数上限为 count × max_sample_attempts；耗尽时
        budget_limited=True。被取消时返回部分统计，已提交节点保留。
        """
        if self.volume.is_empty:
            raise ValueError("占据体为空，无法扩展视点图")
        rng = make_rng(rng)
        if region is None:
            region = self.region()
        region = (np.asarray(region[0], dtype=np.float64),
                  np.asarray(region[1], dtype=np.float64))
        stats = GrowStats()
        max_attempts = max(1, count * self.config.max_sample_attempts)

        while stats.n_added < count:
            if should_stop is not None and should_stop():
                stats.cancelled = True
                break
            if stats.n_attempts >= max_attempts:
                stats.budget_limited = True
                break
            stats.n_attempts += 1
            pose = self.sample_pose(rng, region)
            if pose is None:
                self._count_reject(stats, RejectReason.DEGENERATE_FRUSTUM)
                continue
            candidate, reason = self.evaluate(pose, should_stop)
            if candidate is None:
                if reason is None:
                    stats.cancelled = True
                    break
                self._count_reject(stats, reason)
                continue
            added = self._commit(candidate, self.config.connect_on_add)
            stats.n_added += 1
            stats.n_edges_added += added.n_edges_added

        logger.info(
            "grow: +%d nodes (%d rejected, %d attempts), +%d edges%s",
            stats.n_added, stats.n_rejected, stats.n_attempts,
            stats.n_edges_added,
            " [cancelled]" if stats.cancelled else
            (" [budget limited]" if stats.budget_limited else ""),
        )
        return stats

    def _count_reject(self, stats: GrowStats, reason: RejectReason) -> None:
        self._reject(reason)
        stats.n_rejected += 1
        stats.reject_counts[reason.value] = stats.reject_counts.get(reason.value, 0) + 1

    def build_motions(self, should_stop: Optional[StopCallback] = None) -> GrowStats:
        """对所有节点执行 connect（已有边跳过）"""
        stats = GrowStats()
        for index in self.graph.indices():
            if should_stop is not None and should_stop():
                stats.cancelled = True
                break
            with self.lock:
                stats.n_edges_added += self.connect(index).n_added
        logger.info("build_motions: +%d edges (total %d)%s",
                    stats.n_edges_added, self.graph.n_edges,
                    " [cancelled]" if stats.cancelled else "")
        return stats
