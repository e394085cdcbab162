# -*- coding: utf-8 -*-
"""
交换统计累加器

实现功能：
    - Accumulator 接口：record(sample) / mean() / count / reset()；交换接受率、上行/下行比例、
      逆往返时间都通过它记录，不做任何类型强转。
    - MeanAccumulator：标量样本的均值（无样本时 mean() 为 NaN）。
    - WeightAccumulator：按温度槽累加副本的 weight parameter（只依赖 `+`），
      用于阶段结束时给出平均 weight parameter。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

__all__ = [
    "Accumulator", "MeanAccumulator", "WeightAccumulator",
    "mean_vector", "accumulator_state", "accumulators_from_state",
]


class Accumulator(ABC):
    """记录样本并给出均值的最小接口。"""
    __slots__ = ()

    @abstractmethod
    def record(self, sample: float) -> None:
        ...

    @abstractmethod
    def mean(self) -> float:
        ...

    @property
    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def reset(self) -> None:
        ...


class MeanAccumulator(Accumulator):
    __slots__ = ("_sum", "_count")

    def __init__(self, total: float = 0.0, count: int = 0) -> None:
        self._sum = float(total)
        self._count = int(count)

    def record(self, sample: float) -> None:
        self._sum += float(sample)
        self._count += 1

    def mean(self) -> float:
        if self._count == 0:
            return float("nan")
        return self._sum / self._count

    @property
    def count(self) -> int:
        return self._count

    @property
    def total(self) -> float:
        return self._sum

    def reset(self) -> None:
        self._sum = 0.0
        self._count = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MeanAccumulator):
            return NotImplemented
        return self._count == other._count and self._sum == other._sum

    def __repr__(self) -> str:
        return f"MeanAccumulator(total={self._sum!r}, count={self._count})"


def mean_vector(accs: Sequence[MeanAccumulator]) -> np.ndarray:
    return np.asarray([a.mean() for a in accs], dtype=float)


class WeightAccumulator:
    """
    每个温度槽一个 weight parameter 累加和。

    weight parameter 对本模块是不透明的，只要求支持 ``+`` 与除以整数；
    落盘时要求可 ``np.asarray(w, dtype=float)``（标量或固定形状数组）。
    """

    def __init__(self, size: int) -> None:
        self._size = int(size)
        self._sums: List[Any] = [None] * self._size
        self._counts = np.zeros(self._size, dtype=np.int64)

    def __len__(self) -> int:
        return self._size

    def add(self, rung: int, weight: Any) -> None:
        cur = self._sums[rung]
        if cur is None:
            # 拷贝一份，避免与 walker 内部状态共享可变数组
            self._sums[rung] = weight.copy() if hasattr(weight, "copy") else weight
        else:
            self._sums[rung] = cur + weight
        self._counts[rung] += 1

    def total(self, rung: int) -> Any:
        return self._sums[rung]

    def count(self, rung: int) -> int:
        return int(self._counts[rung])

    def mean(self, rung: int) -> Any:
        c = int(self._counts[rung])
        if c == 0:
            return None
        return self._sums[rung] / c

    def means(self) -> List[Any]:
        return [self.mean(p) for p in range(self._size)]

    def reset(self) -> None:
        self._sums = [None] * self._size
        self._counts[:] = 0

    # ---- checkpoint helpers ----
    def to_arrays(self) -> Dict[str, np.ndarray]:
        """打包为 (sums, counts) 两个数组；空槽以零填充。"""
        filled = [np.asarray(s, dtype=float) for s in self._sums if s is not None]
        shape = filled[0].shape if filled else ()
        sums = np.zeros((self._size,) + shape, dtype=float)
        for p, s in enumerate(self._sums):
            if s is not None:
                sums[p] = np.asarray(s, dtype=float)
        return {"sums": sums, "counts": self._counts.copy()}

    @classmethod
    def from_arrays(cls, sums: np.ndarray, counts: np.ndarray) -> "WeightAccumulator":
        sums = np.asarray(sums, dtype=float)
        counts = np.asarray(counts, dtype=np.int64)
        acc = cls(int(counts.shape[0]))
        for p in range(acc._size):
            if counts[p] > 0:
                v = sums[p]
                acc._sums[p] = float(v) if v.ndim == 0 else v.copy()
        acc._counts[:] = counts
        return acc

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WeightAccumulator):
            return NotImplemented
        if self._size != other._size or not np.array_equal(self._counts, other._counts):
            return False
        for a, b in zip(self._sums, other._sums):
            if (a is None) != (b is None):
                return False
            if a is not None and not np.array_equal(np.asarray(a, dtype=float), np.asarray(b, dtype=float)):
                return False
        return True


def accumulator_state(accs: Sequence[MeanAccumulator]) -> np.ndarray:
    """(n, 2) 数组：每行 [sum, count]，用于 checkpoint。"""
    out = np.zeros((len(accs), 2), dtype=float)
    for i, a in enumerate(accs):
        out[i, 0] = a.total
        out[i, 1] = a.count
    return out


def accumulators_from_state(state: Optional[np.ndarray]) -> List[MeanAccumulator]:
    arr = np.asarray(state, dtype=float).reshape(-1, 2)
    return [MeanAccumulator(total=row[0], count=int(row[1])) for row in arr]
