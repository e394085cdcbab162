# -*- coding: utf-8 -*-
"""
副本到进程的连续划分

把 R 个副本（全局编号 0..R-1）按进程号切成连续块：
    - 各块大小之差不超过 1；
    - 前 R mod P 个进程多分 1 个；
    - R < P 时直接抛 ConfigurationError（每个进程至少要有一个副本）。
"""

from __future__ import annotations

from typing import List, Tuple

from .errors import ConfigurationError

__all__ = ["partition_replicas", "partition_table"]


def partition_replicas(num_replicas: int, num_processes: int, process_index: int) -> Tuple[int, int]:
    """
    返回进程 ``process_index`` 拥有的 (副本数, 起始全局编号)。

    >>> partition_replicas(10, 4, 0), partition_replicas(10, 4, 3)
    ((3, 0), (2, 8))
    """
    R = int(num_replicas)
    P = int(num_processes)
    p = int(process_index)
    if P <= 0:
        raise ConfigurationError(f"number of processes must be positive, got {P}")
    if not (0 <= p < P):
        raise ConfigurationError(f"process index {p} out of range [0, {P})")
    if R < P:
        raise ConfigurationError(
            f"number of replicas ({R}) is smaller than number of processes ({P})"
        )
    n = R // P
    extra = R - n * P
    if p < extra:
        n += 1
        offset = n * p
    else:
        offset = extra + n * p
    return n, offset


def partition_table(num_replicas: int, num_processes: int) -> List[Tuple[int, int]]:
    """所有进程的 (count, offset) 列表，按进程号排序。"""
    return [partition_replicas(num_replicas, num_processes, p) for p in range(int(num_processes))]
