"""
utils/seed.py - 随机种子管理

统一管理视点采样与路径优化的可复现性种子。
"""

import time
from typing import Union

import numpy as np


def make_seed(seed: int = 0) -> int:
    """如果 seed == 0, 用当前时间戳生成; 否则原样返回."""
    if seed == 0:
        return int(time.time()) % (2**31)
    return seed


def make_rng(
    seed: Union[int, np.random.Generator, None] = 0,
) -> np.random.Generator:
    """返回 numpy Generator.

    已经是 Generator 时原样返回 (调用方共享同一随机流),
    None / 0 时自动分配种子.
    """
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(make_seed(seed or 0))
