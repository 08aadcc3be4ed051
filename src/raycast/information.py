"""
raycast/information.py - 视点信息量聚合

把一次射线投射的逐射线命中列表归约为：
1. 视点的标量总信息量
2. 可复用的 VoxelWithInformationSet

聚合规则：同一体素无论被多少条射线命中，在一个视点内只贡献一次
（首次命中去重），其值由 RaycastMode 决定。

两种使用方式：
- 无状态 (aggregate): 纯评估候选视点，不修改任何全局状态
- 累计 (claim / aggregate_and_claim): 路径选择时提交已覆盖体素，
  后续 WITH_CURRENT_INFORMATION 请求中这些体素的贡献被折减

累计状态只由最终提交到路径中的视点写入（建图阶段总是无状态评估），
reset() 随路径重置一起调用。
"""

import logging
from typing import Dict, Iterable, Optional, Tuple

from .models import (
    RayHit,
    RaycastMode,
    VoxelWithInformationSet,
    VoxelWrapper,
)

logger = logging.getLogger(__name__)


class InformationAggregator:
    """信息量聚合器

    Args:
        claimed: 初始已覆盖信息 {VoxelWrapper: 已获取信息量}（可选）

    Example:
        >>> agg = InformationAggregator()
        >>> voxel_set, total = agg.aggregate(result.hits, RaycastMode.DEFAULT)
        >>> agg.claim(voxel_set)   # 提交到路径后
    """

    def __init__(self, claimed: Optional[Dict[VoxelWrapper, float]] = None) -> None:
        self._claimed: Dict[VoxelWrapper, float] = dict(claimed or {})

    @property
    def n_claimed(self) -> int:
        return len(self._claimed)

    @property
    def claimed_total(self) -> float:
        return float(sum(self._claimed.values()))

    def claimed(self, voxel: VoxelWrapper) -> float:
        return self._claimed.get(voxel, 0.0)

    def copy(self) -> 'InformationAggregator':
        """独立副本（优化器内部试算用，不影响已提交状态）"""
        return InformationAggregator(self._claimed)

    def reset(self) -> None:
        self._claimed.clear()

    # ── 权重策略 ──

    def voxel_information(
        self, voxel: VoxelWrapper, weight: float, mode: RaycastMode,
    ) -> float:
        if mode is RaycastMode.WITH_CURRENT_INFORMATION:
            return max(weight - self._claimed.get(voxel, 0.0), 0.0)
        return weight

    # ── 无状态聚合 ──

    def aggregate(
        self,
        hits: Iterable[RayHit],
        mode: RaycastMode = RaycastMode.DEFAULT,
    ) -> Tuple[VoxelWithInformationSet, float]:
        """命中列表 → (体素信息集合, 总信息量)，不修改累计状态"""
        voxel_set = VoxelWithInformationSet()
        for hit in hits:
            if hit.voxel in voxel_set:
                continue
            voxel_set.insert(
                hit.voxel, self.voxel_information(hit.voxel, hit.weight, mode))
        return voxel_set, voxel_set.total_information

    def marginal_information(self, voxel_set: VoxelWithInformationSet) -> float:
        """相对当前累计状态的边际信息量（不修改状态）"""
        total = 0.0
        for voxel, info in voxel_set.items():
            total += max(info - self._claimed.get(voxel, 0.0), 0.0)
        return total

    # ── 累计模式 ──

    def claim(self, voxel_set: VoxelWithInformationSet) -> float:
        """提交一个视点的可见体素，返回本次新获得的信息量"""
        gained = 0.0
        for voxel, info in voxel_set.items():
            prev = self._claimed.get(voxel, 0.0)
            if info > prev:
                gained += info - prev
                self._claimed[voxel] = info
        return gained

    def aggregate_and_claim(
        self,
        hits: Iterable[RayHit],
        mode: RaycastMode = RaycastMode.WITH_CURRENT_INFORMATION,
    ) -> Tuple[VoxelWithInformationSet, float]:
        """顺序规划用：先按当前状态聚合，再提交"""
        hits = list(hits)
        voxel_set, total = self.aggregate(hits, mode)
        # 提交完整权重：该体素此后视为已覆盖
        self.claim(VoxelWithInformationSet(self._weights_of(hits)))
        logger.debug("aggregate_and_claim: %d voxels, info=%.4f, claimed=%d",
                     len(voxel_set), total, self.n_claimed)
        return voxel_set, total

    @staticmethod
    def _weights_of(hits: Iterable[RayHit]) -> Dict[VoxelWrapper, float]:
        out: Dict[VoxelWrapper, float] = {}
        for hit in hits:
            out.setdefault(hit.voxel, hit.weight)
        return out
