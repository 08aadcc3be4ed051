"""
occupancy/camera.py - 位姿与针孔相机模型

提供规划所需的相机契约：
- Pose: 刚体变换 (平移 + 单位四元数)，约定相机系 +z 前、+x 右、+y 下
- PinholeCamera: 针孔内参 + 视口尺寸，生成逐像素射线与投影

四元数按 (w, x, y, z) 存储；与 scipy Rotation 交互时转换为 (x, y, z, w)。
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation


@dataclass(eq=False)
class Pose:
    """相机位姿 (camera → world)

    Attributes:
        translation: 相机中心的世界坐标 (3,)
        quaternion: 相机到世界的旋转 (w, x, y, z)，自动归一化
    """
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    quaternion: np.ndarray = field(
        default_factory=lambda: np.array([1.0, 0.0, 0.0, 0.0]))

    def __post_init__(self) -> None:
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(3)
        q = np.asarray(self.quaternion, dtype=np.float64).reshape(4)
        n = float(np.linalg.norm(q))
        if n < 1e-12:
            raise ValueError("quaternion 范数为零")
        q = q / n
        # 规范化到 w ≥ 0，保证同一旋转只有一种表示
        if q[0] < 0:
            q = -q
        self.quaternion = q

    # ── 构造 ──

    @classmethod
    def from_rotation(cls, translation: np.ndarray, rotation: Rotation) -> 'Pose':
        x, y, z, w = rotation.as_quat()
        return cls(translation=translation, quaternion=np.array([w, x, y, z]))

    @classmethod
    def from_matrix(cls, translation: np.ndarray, matrix: np.ndarray) -> 'Pose':
        return cls.from_rotation(translation, Rotation.from_matrix(matrix))

    @classmethod
    def look_at(
        cls,
        position: np.ndarray,
        target: np.ndarray,
        up: Tuple[float, float, float] = (0.0, 0.0, 1.0),
    ) -> 'Pose':
        """构造朝向 target 的位姿（图像上方对齐世界 up）

        Raises:
            ValueError: 视线方向为零或与 up 平行
        """
        position = np.asarray(position, dtype=np.float64)
        z = np.asarray(target, dtype=np.float64) - position
        nz = float(np.linalg.norm(z))
        if nz < 1e-12:
            raise ValueError("look_at: position 与 target 重合")
        z = z / nz
        x = np.cross(z, np.asarray(up, dtype=np.float64))
        nx = float(np.linalg.norm(x))
        if nx < 1e-9:
            raise ValueError("look_at: 视线方向与 up 平行")
        x = x / nx
        y = np.cross(z, x)
        return cls.from_matrix(position, np.column_stack([x, y, z]))

    # ── 几何 ──

    @property
    def rotation(self) -> Rotation:
        w, x, y, z = self.quaternion
        return Rotation.from_quat([x, y, z, w])

    @property
    def rotation_matrix(self) -> np.ndarray:
        return self.rotation.as_matrix()

    @property
    def forward(self) -> np.ndarray:
        """相机光轴方向 (世界坐标)"""
        return self.rotation_matrix[:, 2]

    def camera_to_world(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.float64)
        return pts @ self.rotation_matrix.T + self.translation

    def world_to_camera(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.float64)
        return (pts - self.translation) @ self.rotation_matrix

    def direction_to_world(self, direction: np.ndarray) -> np.ndarray:
        return self.rotation_matrix @ np.asarray(direction, dtype=np.float64)

    def inverse(self) -> 'Pose':
        """world → camera 变换（COLMAP 存储约定）"""
        rot_inv = self.rotation.inv()
        t_inv = -rot_inv.apply(self.translation)
        return Pose.from_rotation(t_inv, rot_inv)

    def distance_to(self, other: 'Pose') -> float:
        return float(np.linalg.norm(self.translation - other.translation))

    def angle_to(self, other: 'Pose') -> float:
        """两位姿之间的旋转角 (rad)"""
        dot = abs(float(np.dot(self.quaternion, other.quaternion)))
        return 2.0 * math.acos(min(1.0, dot))

    def is_close(self, other: 'Pose', tol: float = 1e-6) -> bool:
        return self.distance_to(other) <= tol and self.angle_to(other) <= tol

    # ── 序列化 ──

    def to_dict(self) -> Dict[str, Any]:
        return {
            'translation': self.translation.tolist(),
            'quaternion': self.quaternion.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Pose':
        return cls(translation=data['translation'], quaternion=data['quaternion'])

    def __repr__(self) -> str:
        t = np.round(self.translation, 3).tolist()
        q = np.round(self.quaternion, 3).tolist()
        return f"Pose(t={t}, q={q})"


@dataclass(frozen=True)
class PinholeCamera:
    """针孔相机模型

    Attributes:
        width, height: 视口尺寸 (像素)
        fx, fy: 焦距 (像素)
        cx, cy: 主点 (像素)
    """
    width: int
    height: int
    fx: float
    fy: float
    cx: float
    cy: float

    @classmethod
    def create_simple(
        cls,
        width: int,
        height: int,
        focal_length: float,
        focal_length_y: Optional[float] = None,
    ) -> 'PinholeCamera':
        """主点位于图像中心的简单相机"""
        fy = focal_length if focal_length_y is None else focal_length_y
        return cls(
            width=int(width), height=int(height),
            fx=float(focal_length), fy=float(fy),
            cx=width / 2.0, cy=height / 2.0,
        )

    @classmethod
    def from_intrinsics(cls, width: int, height: int, intrinsics: np.ndarray) -> 'PinholeCamera':
        K = np.asarray(intrinsics, dtype=np.float64)
        if K.shape not in ((3, 3), (4, 4)):
            raise ValueError(f"intrinsics 形状必须为 3x3 或 4x4, 得到 {K.shape}")
        return cls(
            width=int(width), height=int(height),
            fx=float(K[0, 0]), fy=float(K[1, 1]),
            cx=float(K[0, 2]), cy=float(K[1, 2]),
        )

    @property
    def intrinsics(self) -> np.ndarray:
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ])

    @property
    def mean_focal_length(self) -> float:
        return 0.5 * (self.fx + self.fy)

    def is_valid(self) -> bool:
        return self.width > 0 and self.height > 0 and self.fx > 0 and self.fy > 0

    def scaled(self, factor: float) -> 'PinholeCamera':
        """按比例缩放视口与内参（降采样射线网格）"""
        return PinholeCamera(
            width=max(1, int(round(self.width * factor))),
            height=max(1, int(round(self.height * factor))),
            fx=self.fx * factor, fy=self.fy * factor,
            cx=self.cx * factor, cy=self.cy * factor,
        )

    def horizontal_fov(self) -> float:
        return 2.0 * math.atan2(self.width / 2.0, self.fx)

    def vertical_fov(self) -> float:
        return 2.0 * math.atan2(self.height / 2.0, self.fy)

    def camera_ray(self, x: float, y: float) -> np.ndarray:
        """像素 (x, y) 的单位射线方向 (相机坐标)"""
        ray = np.array([(x - self.cx) / self.fx, (y - self.cy) / self.fy, 1.0])
        return ray / np.linalg.norm(ray)

    def camera_rays(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        """批量像素射线 (N, 3)"""
        rays = np.stack([
            (np.asarray(xs, dtype=np.float64) - self.cx) / self.fx,
            (np.asarray(ys, dtype=np.float64) - self.cy) / self.fy,
            np.ones(len(xs)),
        ], axis=1)
        return rays / np.linalg.norm(rays, axis=1, keepdims=True)

    def project_point(self, point_camera: np.ndarray) -> np.ndarray:
        """相机坐标点 → 像素坐标 (z ≤ 0 时返回 nan)"""
        x, y, z = np.asarray(point_camera, dtype=np.float64)
        if z <= 1e-12:
            return np.array([np.nan, np.nan])
        return np.array([self.fx * x / z + self.cx, self.fy * y / z + self.cy])

    def unproject_point(self, x: float, y: float, depth: float) -> np.ndarray:
        """像素 + 深度 (沿光轴) → 相机坐标点"""
        return np.array([
            (x - self.cx) / self.fx * depth,
            (y - self.cy) / self.fy * depth,
            depth,
        ])

    def is_point_in_viewport(self, point: np.ndarray, margin: float = 0.0) -> bool:
        px, py = float(point[0]), float(point[1])
        if not (math.isfinite(px) and math.isfinite(py)):
            return False
        return (margin <= px < self.width - margin
                and margin <= py < self.height - margin)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'width': self.width, 'height': self.height,
            'fx': self.fx, 'fy': self.fy, 'cx': self.cx, 'cy': self.cy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PinholeCamera':
        return cls(**{k: data[k] for k in ('width', 'height', 'fx', 'fy', 'cx', 'cy')})
