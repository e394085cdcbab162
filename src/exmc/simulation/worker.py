# -*- coding: utf-8 -*-
"""
    进程本地的副本集合（WorkerState）

    每个进程拥有一段连续的全局副本编号 [offset, offset + n)。本模块只做纯本地工作：
按当前 rung 设置控制参数、推进一个 sweep、取出 weight parameter；交换后整体替换本地 rung 分配。
不与其它进程交互，也不持有任何全局数组（tid / wid 只存在于 coordinator）。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

from ..core.ladder import TemperatureLadder
from ..core.partition import partition_replicas
from ..core.rng import spawn_replica_seeds
from ..core.walkers import Walker

logger = logging.getLogger(__name__)

__all__ = ["WorkerState"]

WalkerFactory = Callable[[int, int], Walker]


class WorkerState:
    """
    本地副本与其 rung 分配。

    Args:
        walkers: 本进程拥有的 walker，按全局编号升序
        offset: 第一个 walker 的全局编号
        num_replicas: 全局副本数 N（用于校验 rung 范围）
        tids: 初始 rung 分配；缺省为恒等分配 tid[r] = r
    """

    def __init__(
        self,
        walkers: Sequence[Walker],
        offset: int,
        num_replicas: int,
        tids: Optional[Sequence[int]] = None,
    ) -> None:
        self.walkers: List[Walker] = list(walkers)
        self.offset = int(offset)
        self.num_replicas = int(num_replicas)
        if self.offset < 0 or self.offset + len(self.walkers) > self.num_replicas:
            raise ValueError(
                f"local block [{self.offset}, {self.offset + len(self.walkers)}) "
                f"exceeds num_replicas={self.num_replicas}"
            )
        if tids is None:
            tids = np.arange(self.offset, self.offset + len(self.walkers))
        self._tids = self.validate_assignment(tids)
        self._weights: List[Any] = [None] * len(self.walkers)

    @classmethod
    def build(
        cls,
        factory: WalkerFactory,
        num_replicas: int,
        num_processes: int,
        rank: int,
        master_seed: int,
    ) -> "WorkerState":
        """按划分结果构造本进程的 walker；种子由主种子统一派生，与进程数无关。"""
        n, offset = partition_replicas(num_replicas, num_processes, rank)
        seeds = spawn_replica_seeds(master_seed, num_replicas)
        walkers = [factory(r, seeds[r]) for r in range(offset, offset + n)]
        logger.debug("rank %d owns replicas [%d, %d)", rank, offset, offset + n)
        return cls(walkers, offset, num_replicas)

    # ---- 读取 ----
    @property
    def local_count(self) -> int:
        return len(self.walkers)

    @property
    def replica_ids(self) -> List[int]:
        return list(range(self.offset, self.offset + len(self.walkers)))

    @property
    def tids(self) -> np.ndarray:
        return self._tids.copy()

    def control_index(self, local_index: int) -> int:
        return int(self._tids[local_index])

    # ---- 本地推进 ----
    def advance_one_sweep(self, ladder: TemperatureLadder) -> None:
        for i, w in enumerate(self.walkers):
            w.set_control_value(ladder[int(self._tids[i])])
            w.sweep()
            self._weights[i] = w.weight_parameter()

    def collect_local_weights(self) -> List[Any]:
        """按本地编号顺序返回最近一次 sweep 的 weight parameter（尚未 sweep 时现取）。"""
        return [
            w.weight_parameter() if wp is None else wp
            for w, wp in zip(self.walkers, self._weights)
        ]

    def apply_new_assignment(self, tids: Sequence[int]) -> None:
        # 先完整校验构造，再一次性替换
        self._tids = self.validate_assignment(tids)
        # 缓存只对上一次 sweep 的 walker 状态有效
        self._weights = [None] * len(self.walkers)

    def validate_assignment(self, tids: Sequence[int]) -> np.ndarray:
        """校验一份本地分配并返回其副本，不修改 self。"""
        arr = np.array(tids, dtype=np.int64).reshape(-1)
        if arr.size != len(self.walkers):
            raise ValueError(f"assignment has {arr.size} entries, expected {len(self.walkers)}")
        if arr.size and (arr.min() < 0 or arr.max() >= self.num_replicas):
            raise ValueError(f"assignment out of range [0, {self.num_replicas}): {arr.tolist()}")
        if np.unique(arr).size != arr.size:
            raise ValueError(f"assignment has duplicate rungs: {arr.tolist()}")
        return arr
