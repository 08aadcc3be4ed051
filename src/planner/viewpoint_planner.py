"""
planner/viewpoint_planner.py - 视点规划器门面

ViewpointPlanner 持有一次会话的全部规划状态：
占据体（只读）、相机、视点图、已提交信息状态、当前路径、最近一次
射线投射结果。每个公开操作对应 PlannerWorker 的一种 Operation。

并发约定：
- self.lock (RLock) 保护所有可变共享状态；读者与写者都要持有
- 耗时计算（射线投射、最短路径、TSP）在锁外对只读快照进行，
  只在发布结果时持锁
- should_stop 回调在安全点被轮询，返回 True 时操作尽快返回部分结果

Example:
    >>> planner = ViewpointPlanner(volume, camera, PlannerConfig(seed=42))
    >>> planner.grow_graph(50)
    >>> result = planner.build_path(TourBudget(max_cost=40.0))
    >>> planner.export_pose_text('tour.txt')
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Tuple

import numpy as np

from graph.builder import AddResult, GrowStats, ViewpointGraphBuilder
from graph.viewpoint_graph import ViewpointGraph
from occupancy.camera import PinholeCamera, Pose
from occupancy.volume import OccupancyVolume
from raycast.information import InformationAggregator
from raycast.models import PixelWindow, RaycastMode, RaycastResult
from raycast.raycaster import Raycaster
from utils.seed import make_rng
from utils.timing import Timer
from . import export
from .matching import (
    PoseMatchResult,
    SparseMatchableResult,
    make_sparse_matchable,
    match_poses,
)
from .models import (
    EmptyGraphError,
    EmptyVolumeError,
    InvalidRequestError,
    MeshDump,
    PathResult,
    PlannerConfig,
    TourBudget,
)
from .tsp import PathOptimizer

logger = logging.getLogger(__name__)

StopCallback = Callable[[], bool]


class ViewpointPlanner:
    """视点规划器

    Args:
        volume: 占据体（会话期间只读）
        camera: 针孔相机模型
        config: 规划参数
    """

    def __init__(
        self,
        volume: OccupancyVolume,
        camera: PinholeCamera,
        config: Optional[PlannerConfig] = None,
    ) -> None:
        self.config = config or PlannerConfig()
        self.volume = volume
        self.camera = camera
        self.lock = threading.RLock()
        self.rng = make_rng(self.config.seed)

        self.graph = ViewpointGraph()
        self.aggregator = InformationAggregator()
        self.raycaster = Raycaster(volume, camera, aggregator=self.aggregator)
        self.builder = ViewpointGraphBuilder(
            self.graph, volume, camera, self.config.graph,
            raycaster=self.raycaster, lock=self.lock)
        self.optimizer = PathOptimizer(self.graph, self.config)

        self.path: Optional[PathResult] = None
        self.last_raycast: Optional[RaycastResult] = None

    # ── 查询 ──

    def graph_size(self) -> Tuple[int, int]:
        """(节点数, 边数)"""
        with self.lock:
            return self.graph.n_nodes, self.graph.n_edges

    @property
    def n_infeasible(self) -> int:
        return self.builder.n_infeasible

    def _require_volume(self) -> None:
        if self.volume is None or self.volume.is_empty:
            raise EmptyVolumeError("占据体为空，请先加载占据地图")

    def _require_graph(self) -> None:
        self._require_volume()
        if self.graph.is_empty:
            raise EmptyGraphError("视点图为空，请先执行 grow_graph")

    def _require_path(self) -> PathResult:
        self._require_graph()
        if self.path is None or self.path.is_empty:
            raise InvalidRequestError("当前没有路径，请先执行 build_path")
        return self.path

    # ── 建图 ──

    def add_viewpoint(self, pose: Pose, connect: Optional[bool] = None) -> AddResult:
        """手动添加单个视点（不可行时返回 accepted=False）"""
        self._require_volume()
        return self.builder.add_viewpoint(pose, connect=connect)

    def grow_graph(
        self,
        count: int,
        region: Optional[Tuple[np.ndarray, np.ndarray]] = None,
        should_stop: Optional[StopCallback] = None,
    ) -> GrowStats:
        """采样并加入 count 个视点"""
        self._require_volume()
        if count < 1:
            raise InvalidRequestError(f"count 必须 ≥ 1, 得到 {count}")
        timer = Timer()
        with timer.phase('grow'):
            stats = self.builder.grow(
                count, rng=self.rng, region=region, should_stop=should_stop)
        stats.timings = timer.to_dict()
        return stats

    def build_motions(self, should_stop: Optional[StopCallback] = None) -> GrowStats:
        """对所有节点重新尝试连接邻居"""
        self._require_graph()
        timer = Timer()
        with timer.phase('build_motions'):
            stats = self.builder.build_motions(should_stop=should_stop)
        stats.timings = timer.to_dict()
        return stats

    # ── 路径 ──

    def build_path(
        self,
        budget: Optional[TourBudget] = None,
        n_branches: Optional[int] = None,
        start: Optional[int] = None,
        component: Optional[int] = None,
        should_stop: Optional[StopCallback] = None,
    ) -> PathResult:
        """重新选择并排序视点，替换当前路径与已提交信息状态"""
        self._require_graph()
        result = self.optimizer.build_path(
            budget=budget,
            aggregator=None,
            n_branches=n_branches,
            start=start,
            component=component,
            should_stop=should_stop,
        )
        self._publish_path(result)
        return result

    def solve_tsp(self, should_stop: Optional[StopCallback] = None) -> PathResult:
        """重排当前路径各分支；没有路径时对每个连通分量求巡回路径"""
        self._require_graph()
        current = self.path
        branches, cancelled = self.optimizer.solve_tsp(
            None if current is None else current.branches, should_stop=should_stop)
        if current is None:
            result = PathResult(branches=branches, n_candidates=self.graph.n_nodes)
        else:
            result = PathResult(
                branches=branches,
                budget=current.budget,
                budget_limited=current.budget_limited,
                n_candidates=current.n_candidates,
            )
        result.cancelled = cancelled
        self._publish_path(result)
        return result

    def _publish_path(self, result: PathResult) -> None:
        with self.lock:
            self.aggregator.reset()
            for branch in result.branches:
                for index in branch:
                    self.aggregator.claim(self.graph.nodes[index].voxel_set)
            self.path = result

    # ── 射线投射 ──

    def raycast(
        self,
        pose: Pose,
        window: Optional[PixelWindow] = None,
        mode: Optional[RaycastMode] = None,
        stride: Optional[int] = None,
        should_stop: Optional[StopCallback] = None,
    ) -> RaycastResult:
        """对任意位姿射线投射；结果保存为 last_raycast"""
        self._require_volume()
        mode = self.config.mode if mode is None else RaycastMode.parse(mode)
        stride = self.config.raycast_stride if stride is None else stride
        result = self.raycaster.raycast(
            pose, window=window, mode=mode, stride=stride, should_stop=should_stop)
        with self.lock:
            self.last_raycast = result
        return result

    def dump_mesh(
        self,
        pose: Pose,
        filepath: Optional[str | Path] = None,
        stride: Optional[int] = None,
        should_stop: Optional[StopCallback] = None,
    ) -> MeshDump:
        """导出位姿下可见表面：深度图 + 每个可见体素的深度/像素/法向"""
        self._require_volume()
        stride = self.config.raycast_stride if stride is None else stride
        hits, _n_rays, cancelled = self.raycaster.cast_pixels(
            pose, PixelWindow.full(self.camera), stride, should_stop)

        depth_image = np.full((self.camera.height, self.camera.width), np.nan)
        first = {}
        nearest = {}
        for hit in hits:
            x, y = int(hit.pixel[0]), int(hit.pixel[1])
            depth_image[y, x] = hit.distance
            first.setdefault(hit.voxel, hit)
            if hit.voxel not in nearest or hit.distance < nearest[hit.voxel]:
                nearest[hit.voxel] = hit.distance

        voxels = sorted(first)
        dump = MeshDump(
            depth_image=depth_image,
            voxels=np.array([v.to_list() for v in voxels], dtype=np.int64).reshape(-1, 4),
            depths=np.array([nearest[v] for v in voxels], dtype=np.float64),
            screen_coordinates=np.array(
                [first[v].pixel for v in voxels], dtype=np.float64).reshape(-1, 2),
            normals=np.array(
                [first[v].normal for v in voxels], dtype=np.float64).reshape(-1, 3),
            cancelled=cancelled,
        )
        if filepath is not None and not cancelled:
            dump.save(filepath)
            logger.info("可见表面已导出到 %s (%d voxels)", filepath, dump.n_voxels)
        return dump

    # ── 匹配 ──

    def match_poses(self, pose_1: Pose, pose_2: Pose) -> PoseMatchResult:
        self._require_volume()
        return match_poses(
            self.raycaster, pose_1, pose_2,
            self.config.sparse_matching_min_overlap,
            stride=self.config.graph.raycast_stride)

    def make_sparse_matchable(
        self, should_stop: Optional[StopCallback] = None,
    ) -> SparseMatchableResult:
        """在当前路径中插入中间视点，使相邻视点可稀疏匹配"""
        current = self._require_path()
        costs = self.optimizer.motion_costs()
        branches = [b.copy() for b in current.branches]
        stats = make_sparse_matchable(
            branches, self.graph, costs,
            self.config.sparse_matching_min_overlap, should_stop=should_stop)
        for branch in branches:
            if not branch.is_cached:
                branch.total_cost(costs.cost)
                branch.total_information(lambda i: self.graph.nodes[i].voxel_set)
        result = PathResult(
            branches=branches,
            budget=current.budget,
            budget_limited=current.budget_limited,
            cancelled=stats.cancelled,
            n_candidates=current.n_candidates,
        )
        self._publish_path(result)
        return stats

    # ── 重置 ──

    def reset_graph(self) -> None:
        """清空视点图、路径和已提交信息"""
        with self.lock:
            self.graph.clear()
            self.path = None
            self.aggregator.reset()
        logger.info("视点图已重置")

    def reset_motions(self) -> None:
        """删除所有边（节点保留），路径随之失效"""
        with self.lock:
            n = self.graph.clear_edges()
            self.path = None
            self.aggregator.reset()
        logger.info("已删除 %d 条运动边", n)

    def reset_path(self) -> None:
        with self.lock:
            self.path = None
            self.aggregator.reset()

    # ── 持久化 ──

    def save_graph(self, filepath: str | Path) -> str:
        with self.lock:
            return self.graph.save(filepath)

    def load_graph(self, filepath: str | Path) -> None:
        """加载视点图（替换当前图，路径被重置）"""
        loaded = ViewpointGraph.load(filepath)
        with self.lock:
            self.graph.assign(loaded)
            self.path = None
            self.aggregator.reset()

    def save_path(self, filepath: str | Path) -> str:
        with self.lock:
            current = self._require_path()
            return current.save(filepath)

    def load_path(self, filepath: str | Path) -> PathResult:
        """加载路径；引用了图中不存在的节点时抛 InvalidRequestError"""
        result = PathResult.load(filepath)
        with self.lock:
            missing = [i for i in result.node_indices() if i not in self.graph]
            if missing:
                raise InvalidRequestError(f"路径引用了不存在的节点: {missing[:10]}")
            self._publish_path(result)
        return result

    def export_pose_json(self, filepath: str | Path) -> str:
        with self.lock:
            return export.export_pose_json(
                self._require_path().branches, self.graph, filepath)

    def export_pose_text(self, filepath: str | Path) -> str:
        with self.lock:
            return export.export_pose_text(
                self._require_path().branches, self.graph, filepath)

    def export_sparse_reconstruction(self, directory: str | Path) -> str:
        with self.lock:
            return export.export_sparse_reconstruction(
                self._require_path().branches, self.graph, self.camera, directory)
