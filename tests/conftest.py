import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for path in (ROOT, SRC):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

for prefix in ("occupancy", "raycast", "graph", "planner", "utils"):
    for mod in [m for m in list(sys.modules.keys()) if m == prefix or m.startswith(prefix + ".")]:
        sys.modules.pop(mod, None)

from occupancy import OccupancyVolume, PinholeCamera, Pose, VolumeConfig, make_box_volume  # noqa: E402
from graph import GraphConfig, Viewpoint, ViewpointGraph  # noqa: E402
from raycast import VoxelWithInformationSet, VoxelWrapper  # noqa: E402


@pytest.fixture
def ray_volume() -> OccupancyVolume:
    """沿 +x 方向、距离 2/4/6 处各一个占据体素"""
    volume = OccupancyVolume(VolumeConfig(resolution=1.0))
    for i in (2, 4, 6):
        volume.insert_cell((i, 0, 0), occupancy=0.9, observation_count=1)
    return volume


@pytest.fixture
def ray_pose() -> Pose:
    """位于 (0, 0.5, 0.5)、光轴朝 +x"""
    return Pose.look_at([0.0, 0.5, 0.5], [10.0, 0.5, 0.5])


@pytest.fixture
def pixel_camera() -> PinholeCamera:
    """单像素相机：唯一一条射线沿光轴"""
    return PinholeCamera.create_simple(1, 1, 1.0)


@pytest.fixture
def small_camera() -> PinholeCamera:
    return PinholeCamera.create_simple(8, 6, 4.0)


@pytest.fixture
def box_volume() -> OccupancyVolume:
    """原点附近 6×6×6 的空心箱体 (分辨率 1.0)"""
    return make_box_volume((0, 0, 0), (5, 5, 5), occupancy=0.9,
                           config=VolumeConfig(resolution=1.0))


@pytest.fixture
def block_volume() -> OccupancyVolume:
    """远处一个 2×2×2 的实心块，其余空间空闲"""
    return make_box_volume((10, 10, 0), (11, 11, 1), occupancy=0.9,
                           config=VolumeConfig(resolution=1.0), hollow=False)


@pytest.fixture
def open_graph_config() -> GraphConfig:
    return GraphConfig(
        region_min=(-10.0, -10.0, -10.0),
        region_max=(20.0, 20.0, 20.0),
        k_neighbors=6,
        max_edge_length=5.0,
        connect_on_add=False,
        raycast_stride=1,
    )


def make_voxel_set(keys, weight: float = 1.0) -> VoxelWithInformationSet:
    out = VoxelWithInformationSet()
    for k in keys:
        out.insert(VoxelWrapper(key=(int(k), 0, 0), depth=16), weight)
    return out


def make_manual_graph(positions, voxel_keys, edges="complete", camera=None) -> ViewpointGraph:
    """不经过 builder 手工构造视点图

    edges: "complete" 为两两连接（双向可行，代价 = 欧氏距离），
    或 [(a, b), ...] 连接列表。
    """
    camera = camera or PinholeCamera.create_simple(4, 4, 2.0)
    graph = ViewpointGraph()
    for p, keys in zip(positions, voxel_keys):
        vs = make_voxel_set(keys)
        graph.add_node(Viewpoint(pose=Pose(translation=p), camera=camera),
                       information=vs.total_information, voxel_set=vs)
    ids = graph.indices()
    if edges == "complete":
        pairs = [(a, b) for a in ids for b in ids if a < b]
    else:
        pairs = list(edges)
    for a, b in pairs:
        d = float(np.linalg.norm(np.asarray(positions[a]) - np.asarray(positions[b])))
        graph.add_edge(a, b, d, length=d)
    return graph
