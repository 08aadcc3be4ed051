"""
planner/export.py - 路径导出

- export_pose_json: 结构化位姿列表 (JSON)
- export_pose_text: 纯文本位姿列表，每行 "x y z qw qx qy qz"，
  分支之间以空行分隔
- export_sparse_reconstruction: COLMAP 文本格式稀疏重建
  (cameras.txt / images.txt / points3D.txt)，位姿存为 world → camera
"""

import json
import logging
from pathlib import Path
from typing import List

from graph.viewpoint_graph import ViewpointGraph
from occupancy.camera import PinholeCamera
from .models import ViewpointPath

logger = logging.getLogger(__name__)


def _branch_nodes(graph: ViewpointGraph, branch: ViewpointPath):
    return [graph.node(i) for i in branch]


def export_pose_json(
    paths: List[ViewpointPath],
    graph: ViewpointGraph,
    filepath: str | Path,
) -> str:
    """导出为 JSON 位姿列表"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    data = {
        'branches': [
            [
                {
                    'index': node.index,
                    'translation': node.viewpoint.pose.translation.tolist(),
                    'quaternion': node.viewpoint.pose.quaternion.tolist(),
                    'information': node.information,
                }
                for node in _branch_nodes(graph, branch)
            ]
            for branch in paths
        ],
    }
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
    logger.info("路径位姿已导出到 %s", filepath)
    return str(filepath)


def export_pose_text(
    paths: List[ViewpointPath],
    graph: ViewpointGraph,
    filepath: str | Path,
) -> str:
    """导出为纯文本位姿列表"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    blocks = []
    for branch in paths:
        lines = []
        for node in _branch_nodes(graph, branch):
            t = node.viewpoint.pose.translation
            q = node.viewpoint.pose.quaternion
            lines.append(" ".join(f"{v:.9g}" for v in (*t, *q)))
        blocks.append("\n".join(lines))
    with open(filepath, 'w', encoding='utf-8') as f:
        f.write("\n\n".join(blocks))
        f.write("\n")
    return str(filepath)


def export_sparse_reconstruction(
    paths: List[ViewpointPath],
    graph: ViewpointGraph,
    camera: PinholeCamera,
    directory: str | Path,
) -> str:
    """导出为 COLMAP 文本格式（无三维点）

    images.txt 每张图两行：
        IMAGE_ID QW QX QY QZ TX TY TZ CAMERA_ID NAME
        （空的二维点行）
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    with open(directory / 'cameras.txt', 'w', encoding='utf-8') as f:
        f.write("# Camera list with one line of data per camera:\n")
        f.write("#   CAMERA_ID, MODEL, WIDTH, HEIGHT, PARAMS[]\n")
        f.write(f"1 PINHOLE {camera.width} {camera.height} "
                f"{camera.fx:.9g} {camera.fy:.9g} {camera.cx:.9g} {camera.cy:.9g}\n")

    n_images = 0
    with open(directory / 'images.txt', 'w', encoding='utf-8') as f:
        f.write("# Image list with two lines of data per image:\n")
        f.write("#   IMAGE_ID, QW, QX, QY, QZ, TX, TY, TZ, CAMERA_ID, NAME\n")
        f.write("#   POINTS2D[] as (X, Y, POINT3D_ID)\n")
        for b, branch in enumerate(paths):
            for k, node in enumerate(_branch_nodes(graph, branch)):
                n_images += 1
                world_to_cam = node.viewpoint.pose.inverse()
                q = world_to_cam.quaternion
                t = world_to_cam.translation
                name = f"branch{b:02d}_{k:04d}_node{node.index}.png"
                f.write(f"{n_images} "
                        + " ".join(f"{v:.9g}" for v in (*q, *t))
                        + f" 1 {name}\n\n")

    with open(directory / 'points3D.txt', 'w', encoding='utf-8') as f:
        f.write("# 3D point list with one line of data per point:\n")

    logger.info("稀疏重建已导出到 %s (%d images)", directory, n_images)
    return str(directory)
