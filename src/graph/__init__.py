"""
graph - 视点图

视点节点 + 可行运动边的增量构建、查询与持久化。
"""

from .models import GraphConfig, Viewpoint, ViewpointEdge, ViewpointNode
from .connectivity import UnionFind, find_components, shortest_motions, reconstruct_motion
from .motion import MotionCheck, MotionChecker
from .viewpoint_graph import ViewpointGraph
from .builder import (
    AddResult,
    ConnectResult,
    GrowStats,
    RejectReason,
    ViewpointGraphBuilder,
)

__all__ = [
    'GraphConfig',
    'Viewpoint',
    'ViewpointEdge',
    'ViewpointNode',
    'UnionFind',
    'find_components',
    'shortest_motions',
    'reconstruct_motion',
    'MotionCheck',
    'MotionChecker',
    'ViewpointGraph',
    'AddResult',
    'ConnectResult',
    'GrowStats',
    'RejectReason',
    'ViewpointGraphBuilder',
]
