"""
utils/timing.py - 阶段计时器

用于记录规划操作各阶段 (raycast / 建图 / 求解) 耗时。
"""

import time
from contextlib import contextmanager
from typing import Dict


class Timer:
    """阶段计时器，用于精确记录规划操作各阶段耗时。

    同名阶段多次进入时耗时累加 (例如每次 grow 迭代的 raycast)。
    """

    def __init__(self):
        self.records: Dict[str, float] = {}

    @contextmanager
    def phase(self, name: str):
        """记录 name 阶段的耗时 (秒)."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.records[name] = (
                self.records.get(name, 0.0) + time.perf_counter() - t0)

    @property
    def total(self) -> float:
        return sum(self.records.values())

    def to_dict(self) -> Dict[str, float]:
        return {**self.records, "total": self.total}
