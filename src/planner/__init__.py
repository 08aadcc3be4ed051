"""
planner - 视点路径规划

在视点图上选择并排序视点，使按顺序访问时在运动预算内获取的
场景信息量最大；并提供可暂停、可取消的后台执行模型。

核心流程：
1. GrowGraph: 采样视点，无状态评估信息量，连接可行运动边
2. BuildPath: 贪心插入（信息 / 代价 比值）+ 预算截断 + 局部改进
3. SolveTSP: 对已选视点重排，使运动代价最小
4. 导出：位姿列表 / COLMAP 稀疏重建

所有操作既可直接调用 ViewpointPlanner，也可通过 PlannerWorker
在后台线程中以请求 + Future 的方式执行。
"""

from .models import (
    PlannerError,
    EmptyVolumeError,
    EmptyGraphError,
    InvalidRequestError,
    TourBudget,
    ViewpointPath,
    PathResult,
    MeshDump,
    PlannerConfig,
)
from .tsp import MotionCosts, PathOptimizer, tour_cost
from .matching import (
    PoseMatchResult,
    SparseMatchableResult,
    make_sparse_matchable,
    match_poses,
)
from .export import (
    export_pose_json,
    export_pose_text,
    export_sparse_reconstruction,
)
from .viewpoint_planner import ViewpointPlanner
from .worker import (
    Operation,
    WorkerState,
    Checkpoint,
    PlannerFuture,
    PlannerWorker,
    NopRequest,
    GrowGraphRequest,
    BuildMotionsRequest,
    BuildPathRequest,
    SolveTSPRequest,
    RaycastRequest,
    DumpMeshRequest,
    MakeSparseMatchableRequest,
    MatchPosesRequest,
    CustomRequest,
)

__all__ = [
    # 数据模型
    'PlannerError',
    'EmptyVolumeError',
    'EmptyGraphError',
    'InvalidRequestError',
    'TourBudget',
    'ViewpointPath',
    'PathResult',
    'MeshDump',
    'PlannerConfig',
    # 路径优化
    'MotionCosts',
    'PathOptimizer',
    'tour_cost',
    # 匹配
    'PoseMatchResult',
    'SparseMatchableResult',
    'make_sparse_matchable',
    'match_poses',
    # 导出
    'export_pose_json',
    'export_pose_text',
    'export_sparse_reconstruction',
    # 门面与后台线程
    'ViewpointPlanner',
    'Operation',
    'WorkerState',
    'Checkpoint',
    'PlannerFuture',
    'PlannerWorker',
    'NopRequest',
    'GrowGraphRequest',
    'BuildMotionsRequest',
    'BuildPathRequest',
    'SolveTSPRequest',
    'RaycastRequest',
    'DumpMeshRequest',
    'MakeSparseMatchableRequest',
    'MatchPosesRequest',
    'CustomRequest',
]
