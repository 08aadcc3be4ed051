#!/usr/bin/env python
"""
scripts/plan_viewpoints.py - 视点规划命令行入口

加载（或生成演示用）占据体，在后台线程中依次执行
GrowGraph → BuildMotions → BuildPath → SolveTSP，并导出结果。

输出（--output 目录）：
  - graph.json     视点图
  - path.json      视点路径
  - poses.txt      纯文本位姿列表
  - poses.json     JSON 位姿列表
  - sparse/        COLMAP 文本格式稀疏重建

运行：
    python scripts/plan_viewpoints.py --demo --grow 60 --budget 40
    python scripts/plan_viewpoints.py --volume scene.npz --config planner.json
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import datetime
from pathlib import Path

import numpy as np

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from occupancy import OccupancyVolume, PinholeCamera, VolumeConfig, make_box_volume
from planner import (
    BuildMotionsRequest,
    BuildPathRequest,
    GrowGraphRequest,
    Operation,
    PlannerConfig,
    PlannerWorker,
    SolveTSPRequest,
    TourBudget,
    ViewpointPlanner,
)

# ── 日志配置 ──────────────────────────────────────────────
LOG_FMT = "[%(asctime)s] %(levelname)-7s %(name)s: %(message)s"
logger = logging.getLogger("plan_viewpoints")


def build_demo_volume() -> OccupancyVolume:
    """8×8×4 的空心箱体，外加一圈未知体素"""
    config = VolumeConfig(resolution=0.5, origin=(-2.0, -2.0, 0.0))
    volume = make_box_volume((0, 0, 0), (7, 7, 3), occupancy=0.85,
                             observation_count=2, config=config)
    # 箱体 -y 侧上方一排未知体素（体素中心坐标）
    for x in np.arange(-2.25, 2.5, 0.5):
        volume.insert_point([x, -2.25, 2.25], occupancy=0.5, observation_count=0)
    return volume


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Viewpoint planning: grow graph, build path, export poses")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--volume", type=str, default=None,
                     help="占据体 .npz 文件")
    src.add_argument("--demo", action="store_true",
                     help="使用内置演示占据体")
    parser.add_argument("--config", type=str, default=None,
                        help="PlannerConfig JSON 文件")
    parser.add_argument("--seed", type=int, default=None,
                        help="随机种子（覆盖配置，0 = 按时间生成）")
    parser.add_argument("--grow", type=int, default=40,
                        help="采样加入的视点数")
    parser.add_argument("--budget", type=float, default=None,
                        help="每个分支的最大运动代价")
    parser.add_argument("--max-nodes", type=int, default=None,
                        help="每个分支的最大视点数")
    parser.add_argument("--branches", type=int, default=None,
                        help="分支数（缺省每个连通分量一个）")
    parser.add_argument("--width", type=int, default=64)
    parser.add_argument("--height", type=int, default=48)
    parser.add_argument("--focal", type=float, default=50.0)
    parser.add_argument("--output", type=str, default=None,
                        help="输出目录（缺省 output/plan_<timestamp>）")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format=LOG_FMT, datefmt="%H:%M:%S")

    config = PlannerConfig.from_json(args.config) if args.config else PlannerConfig()
    if args.seed is not None:
        config.seed = args.seed
    volume = build_demo_volume() if args.demo else OccupancyVolume.load(args.volume)
    camera = PinholeCamera.create_simple(args.width, args.height, args.focal)
    logger.info("占据体: %d cells, 相机 %dx%d f=%.1f",
                volume.n_cells, camera.width, camera.height, camera.fx)

    output_dir = Path(args.output) if args.output else (
        ROOT / "output" / f"plan_{datetime.now().strftime('%Y%m%d_%H%M%S')}")
    output_dir.mkdir(parents=True, exist_ok=True)

    planner = ViewpointPlanner(volume, camera, config)
    worker = PlannerWorker(planner)
    worker.add_listener(
        Operation.GROW_GRAPH,
        lambda rid, op, stats: logger.info(
            "  #%d grow: +%d nodes, %d rejected", rid, stats.n_added, stats.n_rejected))
    worker.start()

    t0 = time.time()
    try:
        logger.info("▶ Step 1/4: GrowGraph (%d)", args.grow)
        worker.submit(GrowGraphRequest(count=args.grow)).result()
        logger.info("▶ Step 2/4: BuildMotions")
        worker.submit(BuildMotionsRequest()).result()
        n_nodes, n_edges = planner.graph_size()
        logger.info("  视点图: %d nodes, %d edges, %d components",
                    n_nodes, n_edges, len(planner.graph.components()))

        budget = TourBudget(
            max_cost=float('inf') if args.budget is None else args.budget,
            max_nodes=args.max_nodes,
        )
        logger.info("▶ Step 3/4: BuildPath (%s)", budget.to_dict())
        result = worker.submit(BuildPathRequest(
            budget=budget, n_branches=args.branches)).result()
        logger.info("▶ Step 4/4: SolveTSP")
        result = worker.submit(SolveTSPRequest()).result()
    finally:
        worker.stop(timeout=5.0)

    for b, branch in enumerate(result.branches):
        logger.info("  branch %d: %d viewpoints, cost=%.3f, info=%.4f",
                    b, len(branch), branch.cached_cost() or 0.0,
                    branch.cached_information() or 0.0)
    if result.budget_limited:
        logger.info("  预算是限制因素")

    planner.save_graph(output_dir / "graph.json")
    planner.save_path(output_dir / "path.json")
    planner.export_pose_text(output_dir / "poses.txt")
    planner.export_pose_json(output_dir / "poses.json")
    planner.export_sparse_reconstruction(output_dir / "sparse")
    logger.info("完成 (%.2fs)，输出目录: %s", time.time() - t0, output_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
