"""
planner/tsp.py - 视点路径优化 (带收益的 TSP)

精确求解带收益 TSP 在图规模下不可行，因此采用：
1. 贪心插入构造：每步选择 边际信息 / 插入代价 比值最大的节点，
   插入到代价增量最小的位置。构造过程与预算无关，得到一串嵌套前缀。
2. 预算截断：取满足 代价 ≤ max_cost 且 节点数 ≤ max_nodes 的最长前缀。
   最短路代价满足三角不等式，前缀代价单调不减，因此第一个超预算的
   前缀即为截断点；预算越小前缀越短，信息量不会增加。
3. 局部改进：节点数 ≤ exact_tsp_threshold 时精确枚举排序，否则
   2-opt 段反转 + 单点重定位，直到无改进或达到轮数上限。只接受
   使代价下降的移动，因此改进后仍满足预算。
   BuildPath 的起点固定；SolveTSP 的开放路径起点不固定，可整体重排。

腿代价 (leg cost) 为图上最短运动代价，由 scipy.sparse.csgraph 计算。
整个过程是 anytime 的：取消时返回当前最好的（已满足预算的）结果。
"""

import itertools
import logging
import math
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from graph.connectivity import reconstruct_motion, shortest_motions
from graph.viewpoint_graph import ViewpointGraph
from raycast.information import InformationAggregator
from utils.timing import Timer
from .models import (
    EmptyGraphError,
    InvalidRequestError,
    PathResult,
    PlannerConfig,
    TourBudget,
    ViewpointPath,
)

logger = logging.getLogger(__name__)

StopCallback = Callable[[], bool]

_EPS = 1e-9


class MotionCosts:
    """图上所有节点对之间的最短运动代价（快照）"""

    def __init__(self, graph: ViewpointGraph) -> None:
        self.node_ids = graph.indices()
        edges = list(graph.motions())
        self.dist, self.pred, self.column_of = shortest_motions(
            self.node_ids, edges, self.node_ids)

    def cost(self, a: int, b: int) -> float:
        if a == b:
            return 0.0
        return float(self.dist[self.column_of[a], self.column_of[b]])

    def motion(self, a: int, b: int) -> List[int]:
        """a → b 最短运动经过的节点序列（含两端，不可达为空）"""
        ca, cb = self.column_of[a], self.column_of[b]
        return reconstruct_motion(self.pred[ca], self.node_ids, ca, cb)

    def reachable(self, a: int, b: int) -> bool:
        return math.isfinite(self.cost(a, b))


def tour_cost(order: Sequence[int], costs: MotionCosts, closed: bool) -> float:
    total = 0.0
    for a, b in zip(order[:-1], order[1:]):
        total += costs.cost(a, b)
    if closed and len(order) > 1:
        total += costs.cost(order[-1], order[0])
    return total


class PathOptimizer:
    """视点路径优化器

    Args:
        graph: 视点图
        config: 规划参数（closed_tour / alpha / beta / 改进轮数 / 精确阈值）

    Example:
        >>> optimizer = PathOptimizer(graph, config)
        >>> result = optimizer.build_path(TourBudget(max_cost=30.0), aggregator)
        >>> result.branches[0].order
    """

    def __init__(self, graph: ViewpointGraph, config: Optional[PlannerConfig] = None) -> None:
        self.graph = graph
        self.config = config or PlannerConfig()
        self._costs: Optional[MotionCosts] = None
        self._costs_revision = -1

    # ── 最短运动代价 ──

    def motion_costs(self) -> MotionCosts:
        """当前图的最短运动代价（图未变化时复用）"""
        if self._costs is None or self._costs_revision != self.graph.revision:
            self._costs = MotionCosts(self.graph)
            self._costs_revision = self.graph.revision
        return self._costs

    # ── 构造 ──

    def build_path(
        self,
        budget: Optional[TourBudget] = None,
        aggregator: Optional[InformationAggregator] = None,
        n_branches: Optional[int] = None,
        start: Optional[int] = None,
        component: Optional[int] = None,
        should_stop: Optional[StopCallback] = None,
    ) -> PathResult:
        """选择节点子集并排序，使累计信息量最大

        Args:
            budget: 每个分支的预算（None = 不限制）
            aggregator: 已提交信息状态（只读；内部在副本上试算）
            n_branches: 分支数（None = 每个连通分量一个分支）
            start: 第一个分支的起点（None = 边际信息最大的节点）
            component: 只在第 component 大的连通分量内规划
            should_stop: 安全点回调

        Returns:
            PathResult；各分支已缓存 代价 与 边际信息量

        Raises:
            EmptyGraphError: 图为空
            InvalidRequestError: component / start / n_branches 无效
        """
        if self.graph.is_empty:
            raise EmptyGraphError("视点图为空，无法规划路径")
        if n_branches is not None and n_branches < 1:
            raise InvalidRequestError(f"n_branches 必须 ≥ 1, 得到 {n_branches}")
        budget = budget or TourBudget.unlimited()
        timer = Timer()

        with timer.phase('shortest_motions'):
            costs = self.motion_costs()
        components = self.graph.components()
        if component is not None:
            if not 0 <= component < len(components):
                raise InvalidRequestError(
                    f"连通分量 {component} 不存在（共 {len(components)} 个）")
            pool = set(components[component])
        else:
            pool = set(self.graph.nodes)
        if start is not None and start not in pool:
            raise InvalidRequestError(f"起点 {start} 不在候选节点中")

        scratch = aggregator.copy() if aggregator is not None else InformationAggregator()
        result = PathResult(budget=budget, n_candidates=len(pool))
        used: Set[int] = set()

        with timer.phase('construct'):
            while n_branches is None or result.n_branches < n_branches:
                if should_stop is not None and should_stop():
                    result.cancelled = True
                    break
                remaining = pool - used
                branch_start = start if (start is not None and not result.branches) \
                    else self._best_start(remaining, scratch)
                if branch_start is None:
                    break
                comp = next(c for c in components if branch_start in c)
                candidates = (comp & remaining) | {branch_start}
                branch, limited, cancelled = self._build_branch(
                    branch_start, candidates, budget, scratch, costs, should_stop)
                result.branches.append(branch)
                result.budget_limited |= limited
                if n_branches is None:
                    used |= comp
                else:
                    used |= set(branch)
                if cancelled:
                    result.cancelled = True
                    break

        result.timings = timer.to_dict()
        logger.info(
            "build_path: %d branches, %d nodes, cost=%.3f, info=%.4f%s%s",
            result.n_branches, result.n_nodes, result.total_cost,
            result.total_information,
            " [budget limited]" if result.budget_limited else "",
            " [cancelled]" if result.cancelled else "",
        )
        return result

    def _best_start(
        self, remaining: Set[int], scratch: InformationAggregator,
    ) -> Optional[int]:
        """边际信息最大的剩余节点（同值取最小索引），无正信息节点时为 None"""
        best, best_gain = None, _EPS
        for idx in sorted(remaining):
            gain = scratch.marginal_information(self.graph.nodes[idx].voxel_set)
            if gain > best_gain:
                best, best_gain = idx, gain
        return best

    def _build_branch(
        self,
        start: int,
        candidates: Set[int],
        budget: TourBudget,
        scratch: InformationAggregator,
        costs: MotionCosts,
        should_stop: Optional[StopCallback],
    ) -> Tuple[ViewpointPath, bool, bool]:
        """单分支：贪心插入 → 预算截断 → 局部改进

        scratch 会被提交该分支选中节点的体素。
        Returns:
            (分支, 是否受预算限制, 是否被取消)
        """
        cfg = self.config
        closed = cfg.closed_tour
        nodes = self.graph.nodes
        start_pos = nodes[start].position

        order = [start]
        cost = 0.0
        information = scratch.claim(nodes[start].voxel_set)
        remaining = sorted(candidates - {start})
        limited = False
        cancelled = False

        while remaining:
            if should_stop is not None and should_stop():
                cancelled = True
                break
            best = None
            best_key = None
            for c in remaining:
                gain = scratch.marginal_information(nodes[c].voxel_set)
                if gain <= _EPS:
                    continue
                delta, pos = self._cheapest_insertion(order, c, costs, closed)
                if not math.isfinite(delta):
                    continue
                spread = float(np.sum((nodes[c].position - start_pos) ** 2))
                denom = max(cfg.alpha * delta + cfg.beta * spread, _EPS)
                key = (gain / denom, -c)
                if best_key is None or key > best_key:
                    best, best_key = (c, delta, pos), key
            if best is None:
                break
            c, delta, pos = best
            if not budget.fits(cost + delta, len(order) + 1):
                limited = True
                break
            order.insert(pos, c)
            cost += delta
            information += scratch.claim(nodes[c].voxel_set)
            remaining.remove(c)
            logger.debug("insert node %d at %d: +cost %.3f", c, pos, delta)

        order, cost, improve_cancelled = self.improve(order, costs, closed, should_stop)
        branch = ViewpointPath(order, closed=closed)
        branch.set_cached(cost, information)
        return branch, limited, cancelled or improve_cancelled

    @staticmethod
    def _cheapest_insertion(
        order: List[int], c: int, costs: MotionCosts, closed: bool,
    ) -> Tuple[float, int]:
        """把 c 插入 order 的最小代价增量与位置（起点固定在 0 号位）"""
        n = len(order)
        if n == 1:
            delta = costs.cost(order[0], c)
            if closed:
                delta += costs.cost(c, order[0])
            return delta, 1
        best_delta, best_pos = math.inf, n
        for i in range(n - 1):
            a, b = order[i], order[i + 1]
            delta = costs.cost(a, c) + costs.cost(c, b) - costs.cost(a, b)
            if delta < best_delta - _EPS:
                best_delta, best_pos = delta, i + 1
        if closed:
            a, b = order[-1], order[0]
            delta = costs.cost(a, c) + costs.cost(c, b) - costs.cost(a, b)
        else:
            delta = costs.cost(order[-1], c)
        if delta < best_delta - _EPS:
            best_delta, best_pos = delta, n
        if math.isnan(best_delta):
            return math.inf, n
        return max(best_delta, 0.0), best_pos

    # ── 局部改进 ──

    def improve(
        self,
        order: List[int],
        costs: MotionCosts,
        closed: bool,
        should_stop: Optional[StopCallback] = None,
        fixed_start: bool = True,
    ) -> Tuple[List[int], float, bool]:
        """只降低代价的重排，返回 (order, cost, cancelled)

        fixed_start 为 True 时 order[0] 保持不动；否则第一个位置也参与
        2-opt 与重定位。
        """
        order = list(order)
        n = len(order)
        best_cost = tour_cost(order, costs, closed)
        if n <= 1 or (fixed_start and n == 2):
            return order, best_cost, False
        if n <= self.config.exact_tsp_threshold:
            return self._exact_order(order, costs, closed, fixed_start) + (False,)

        lo = 1 if fixed_start else 0
        for n_pass in range(self.config.max_improvement_passes):
            if should_stop is not None and should_stop():
                return order, best_cost, True
            improved = False
            # 2-opt：反转 order[i..j]
            for i in range(lo, n - 1):
                for j in range(i + 1, n):
                    cand = order[:i] + order[i:j + 1][::-1] + order[j + 1:]
                    c = tour_cost(cand, costs, closed)
                    if c < best_cost - _EPS:
                        order, best_cost, improved = cand, c, True
            # 重定位：把 order[i] 移到 j
            for i in range(lo, n):
                for j in range(lo, n):
                    if i == j:
                        continue
                    cand = order[:i] + order[i + 1:]
                    cand.insert(j, order[i])
                    c = tour_cost(cand, costs, closed)
                    if c < best_cost - _EPS:
                        order, best_cost, improved = cand, c, True
            logger.debug("improve pass %d: cost=%.4f", n_pass, best_cost)
            if not improved:
                break
        return order, best_cost, False

    @staticmethod
    def _exact_order(
        order: List[int], costs: MotionCosts, closed: bool, fixed_start: bool = True,
    ) -> Tuple[List[int], float]:
        """小规模实例枚举所有排列"""
        head, rest = (order[:1], order[1:]) if fixed_start else ([], order)
        best_order, best_cost = list(order), tour_cost(order, costs, closed)
        for perm in itertools.permutations(rest):
            cand = [*head, *perm]
            c = tour_cost(cand, costs, closed)
            if c < best_cost - _EPS:
                best_order, best_cost = cand, c
        return best_order, best_cost

    # ── SolveTSP ──

    def solve_tsp(
        self,
        paths: Optional[List[ViewpointPath]] = None,
        should_stop: Optional[StopCallback] = None,
    ) -> Tuple[List[ViewpointPath], bool]:
        """重排各分支使总代价最小，成员不变

        paths 为 None 时，对每个连通分量的全部节点求一条巡回路径。
        闭合路径旋转不改变代价，起点保持为 order[0]；开放路径的起点
        也参与优化。

        Returns:
            (新分支列表, 是否被取消)
        """
        if self.graph.is_empty:
            raise EmptyGraphError("视点图为空，无法求解 TSP")
        costs = self.motion_costs()
        closed = self.config.closed_tour
        if paths is None:
            paths = [ViewpointPath(sorted(comp), closed=closed)
                     for comp in self.graph.components()]
        out: List[ViewpointPath] = []
        cancelled = False
        for path in paths:
            order = list(path)
            if cancelled or not order:
                out.append(path.copy())
                continue
            order = self._nearest_neighbor_order(order, costs) \
                if len(order) > self.config.exact_tsp_threshold else order
            order, cost, cancelled = self.improve(
                order, costs, path.closed, should_stop, fixed_start=path.closed)
            if not math.isfinite(cost):
                logger.warning("分支 %s 中存在不可达节点，代价为 inf", order[:5])
            new_path = ViewpointPath(order, closed=path.closed)
            info = path.cached_information()
            if info is None:
                info = new_path.total_information(
                    lambda i: self.graph.nodes[i].voxel_set)
            new_path.set_cached(cost, info)
            out.append(new_path)
        logger.info("solve_tsp: %d branches, cost=%.3f",
                    len(out), sum(p.cached_cost() or 0.0 for p in out))
        return out, cancelled

    @staticmethod
    def _nearest_neighbor_order(order: List[int], costs: MotionCosts) -> List[int]:
        """最近邻初始排序（起点固定，同代价取较小索引）"""
        head, rest = order[0], sorted(order[1:])
        out = [head]
        while rest:
            last = out[-1]
            nxt = min(rest, key=lambda c: (costs.cost(last, c), c))
            out.append(nxt)
            rest.remove(nxt)
        return out
