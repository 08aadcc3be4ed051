"""
graph/motion.py - 运动可行性检测

两个视点之间的运动被视为一条直线段：
1. 长度不得超过 max_edge_length（运动学限制）
2. 配置了坡度限制时，分别检查爬升/下降（方向相关）
3. 以 segment_resolution 为间隔采样线段，每个采样点周围
   min_clearance 半径内不得有占据或未知体素

代价 = 线段长度 + turn_penalty × 两端旋转角，与方向无关。
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from occupancy.camera import Pose
from occupancy.volume import OccupancyVolume
from .models import GraphConfig

logger = logging.getLogger(__name__)


@dataclass
class MotionCheck:
    """一次运动检测结果

    Attributes:
        feasible: 是否可行
        cost: 运动代价（不可行时为 inf）
        length: 线段长度
        turn_angle: 旋转角 (rad)
        reason: 不可行原因 ('too_long' / 'slope' / 'collision')
    """
    feasible: bool
    cost: float
    length: float
    turn_angle: float = 0.0
    reason: Optional[str] = None


class MotionChecker:
    """视点间直线运动检测器（对占据体只读）"""

    def __init__(self, volume: OccupancyVolume, config: GraphConfig) -> None:
        self.volume = volume
        self.config = config
        self.n_checks = 0

    @property
    def segment_resolution(self) -> float:
        if self.config.segment_resolution is not None:
            return float(self.config.segment_resolution)
        return 0.5 * self.volume.resolution

    def is_position_free(self, position: np.ndarray) -> bool:
        return not self.volume.is_blocked_within(position, self.config.min_clearance)

    def motion_cost(self, pose_a: Pose, pose_b: Pose) -> float:
        return (pose_a.distance_to(pose_b)
                + self.config.turn_penalty * pose_a.angle_to(pose_b))

    def slope_ok(self, start: np.ndarray, end: np.ndarray) -> bool:
        """方向相关的坡度检测 (start → end)"""
        cfg = self.config
        if not cfg.is_direction_dependent:
            return True
        delta = np.asarray(end, dtype=np.float64) - np.asarray(start, dtype=np.float64)
        horizontal = math.hypot(delta[0], delta[1])
        dz = float(delta[2])
        if dz == 0.0:
            return True
        slope = abs(dz) / horizontal if horizontal > 1e-12 else math.inf
        limit = cfg.max_climb_slope if dz > 0 else cfg.max_descent_slope
        return limit is None or slope <= limit

    def segment_free(self, start: np.ndarray, end: np.ndarray) -> bool:
        """线段采样碰撞检测（含两端点）"""
        start = np.asarray(start, dtype=np.float64)
        end = np.asarray(end, dtype=np.float64)
        length = float(np.linalg.norm(end - start))
        n_steps = max(1, int(math.ceil(length / self.segment_resolution)))
        for t in np.linspace(0.0, 1.0, n_steps + 1):
            if not self.is_position_free(start + t * (end - start)):
                return False
        return True

    def check(
        self, pose_a: Pose, pose_b: Pose, collision_known_free: bool = False,
    ) -> MotionCheck:
        """检测 a → b 运动

        Args:
            collision_known_free: 反向已通过碰撞检测时跳过线段采样
        """
        self.n_checks += 1
        length = pose_a.distance_to(pose_b)
        turn = pose_a.angle_to(pose_b)
        if length > self.config.max_edge_length:
            return MotionCheck(False, math.inf, length, turn, 'too_long')
        if not self.slope_ok(pose_a.translation, pose_b.translation):
            return MotionCheck(False, math.inf, length, turn, 'slope')
        if not collision_known_free and not self.segment_free(
                pose_a.translation, pose_b.translation):
            return MotionCheck(False, math.inf, length, turn, 'collision')
        cost = length + self.config.turn_penalty * turn
        return MotionCheck(True, cost, length, turn)
