"""
planner/matching.py - 视点间稀疏匹配性

特征匹配本身不在本包范围内；这里以"可见体素重叠率"作为两视点
能否稀疏匹配的代理量：

    overlap(A, B) = |A ∩ B| / min(|A|, |B|)

- match_poses: 对两个任意位姿做无状态射线投射并比较
- make_sparse_matchable: 对路径中每对相邻视点，若重叠率不足，
  沿两者之间的最短运动插入中间节点，直到每段都可匹配或没有候选
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from graph.viewpoint_graph import ViewpointGraph
from occupancy.camera import Pose
from raycast.models import RaycastMode
from raycast.raycaster import Raycaster
from .models import ViewpointPath
from .tsp import MotionCosts

logger = logging.getLogger(__name__)

StopCallback = Callable[[], bool]


@dataclass
class PoseMatchResult:
    """两个位姿的匹配评估

    Attributes:
        n_voxels_1, n_voxels_2: 各自可见体素数
        n_common: 共同可见体素数
        overlap: 重叠率 |A∩B| / min(|A|,|B|)
        matchable: overlap ≥ min_overlap
        distance: 平移距离
        angle: 旋转角 (rad)
    """
    n_voxels_1: int
    n_voxels_2: int
    n_common: int
    overlap: float
    matchable: bool
    distance: float
    angle: float


@dataclass
class SparseMatchableResult:
    """make_sparse_matchable 统计

    Attributes:
        n_pairs: 检查的相邻视点对数
        n_inserted: 插入的中间节点数
        n_unmatchable: 插入后仍不可匹配的相邻对数
        unmatchable_pairs: 不可匹配的 (a, b) 索引对
        cancelled: 被取消
    """
    n_pairs: int = 0
    n_inserted: int = 0
    n_unmatchable: int = 0
    unmatchable_pairs: List[tuple] = field(default_factory=list)
    cancelled: bool = False


def match_poses(
    raycaster: Raycaster,
    pose_1: Pose,
    pose_2: Pose,
    min_overlap: float,
    stride: int = 1,
) -> PoseMatchResult:
    """无状态评估两个位姿的可见体素重叠"""
    set_1 = raycaster.raycast(pose_1, mode=RaycastMode.DEFAULT, stride=stride).voxel_set
    set_2 = raycaster.raycast(pose_2, mode=RaycastMode.DEFAULT, stride=stride).voxel_set
    n_common = len(set_1.intersection(set_2))
    overlap = set_1.overlap_ratio(set_2)
    return PoseMatchResult(
        n_voxels_1=len(set_1),
        n_voxels_2=len(set_2),
        n_common=n_common,
        overlap=overlap,
        matchable=overlap >= min_overlap and n_common > 0,
        distance=pose_1.distance_to(pose_2),
        angle=pose_1.angle_to(pose_2),
    )


def make_sparse_matchable(
    paths: List[ViewpointPath],
    graph: ViewpointGraph,
    costs: MotionCosts,
    min_overlap: float,
    should_stop: Optional[StopCallback] = None,
) -> SparseMatchableResult:
    """在各分支相邻视点之间插入中间节点，使每段重叠率 ≥ min_overlap

    对不可匹配的 (a, b)，从 a 出发沿 a → b 最短运动的中间节点中，
    选取与当前节点可匹配的最远一个插入，再从该节点继续，直到当前
    节点与 b 可匹配。没有可选中间节点时该段记为不可匹配。
    路径在原地修改（成员变化使缓存失效）。
    """
    result = SparseMatchableResult()

    def overlap(a: int, b: int) -> float:
        return graph.nodes[a].voxel_set.overlap_ratio(graph.nodes[b].voxel_set)

    for path in paths:
        if len(path) < 2:
            continue
        legs = path.legs()
        new_order: List[int] = []
        for a, b in legs:
            if should_stop is not None and should_stop():
                result.cancelled = True
                break
            result.n_pairs += 1
            new_order.append(a)
            if overlap(a, b) >= min_overlap:
                continue
            intermediates = [
                n for n in costs.motion(a, b)[1:-1]
                if n not in path and n not in new_order
            ]
            current = a
            while overlap(current, b) < min_overlap:
                pick = None
                for i in range(len(intermediates) - 1, -1, -1):
                    if overlap(current, intermediates[i]) >= min_overlap:
                        pick = i
                        break
                if pick is None:
                    result.n_unmatchable += 1
                    result.unmatchable_pairs.append((current, b))
                    break
                current = intermediates[pick]
                new_order.append(current)
                result.n_inserted += 1
                intermediates = intermediates[pick + 1:]
        if result.cancelled:
            break
        if not path.closed:
            new_order.append(path[-1])
        if new_order != path.order:
            path.set_order(new_order)

    logger.info("make_sparse_matchable: %d pairs, +%d nodes, %d unmatchable",
                result.n_pairs, result.n_inserted, result.n_unmatchable)
    return result
