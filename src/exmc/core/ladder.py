# -*- coding: utf-8 -*-
"""
    控制参数阶梯（逆温度序列）与两种阶梯优化

    TemperatureLadder 保存严格单调的逆温度序列 β_0..β_{N-1}。rung 0 是往返（round trip）
的锚点端：副本从 rung 0 出发，到达 rung N-1 后再回到 rung 0 记为一次往返。阶梯对象不可变，
优化函数总是返回一个新的 TemperatureLadder，由 coordinator 在阶段边界替换。

实现功能:
    - 几何 / 线性间隔构造，显式数值构造（校验 N >= 2 与严格单调）。
    - optimize_rates: 接受率匹配。相邻对接受率 A_i 转为“难度” c_i = 2·erfcinv(A_i)，
      局部宽度 σ_i = c_i / Δβ_i；等难度不动点要求 Δβ_i ∝ 1/σ_i。带阻尼与单次缩放钳位，端点固定。
    - optimize_round_trip: 往返流反馈优化。f_i 为 rung i 上“上行”副本比例，
      新阶梯在第 i 个间隔上的测度为 sqrt(Δf_i)，按该累积测度的等分位点重新放置各 rung。
      f 含 NaN、非单调（超出容差）或总增量不为正时返回失败。
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple

import numpy as np
from scipy.special import erfcinv

from .errors import ConfigurationError

__all__ = ["TemperatureLadder", "ladder_from_spec"]

# 接受率钳位到 [eps, 1-eps]，避免 erfcinv 发散
_ACC_EPS = 1e-6


class TemperatureLadder:
    """严格单调的逆温度阶梯（不可变）。"""

    __slots__ = ("_values",)

    def __init__(self, values: Iterable[float]) -> None:
        arr = np.array(list(values) if not isinstance(values, np.ndarray) else values, dtype=float)
        if arr.ndim != 1 or arr.size < 2:
            raise ConfigurationError("ladder must be a 1D sequence with at least 2 entries")
        if not np.all(np.isfinite(arr)):
            raise ConfigurationError("ladder values must be finite")
        d = np.diff(arr)
        if not (np.all(d > 0) or np.all(d < 0)):
            raise ConfigurationError(f"ladder values must be strictly monotonic: {arr.tolist()}")
        arr.setflags(write=False)
        self._values = arr

    # ---- 构造 ----
    @classmethod
    def geometric(cls, beta_min: float, beta_max: float, n: int) -> "TemperatureLadder":
        if not (beta_min > 0 and beta_max > 0):
            raise ConfigurationError("geometric spacing requires positive end points")
        return cls(np.geomspace(float(beta_min), float(beta_max), int(n)))

    @classmethod
    def linear(cls, beta_min: float, beta_max: float, n: int) -> "TemperatureLadder":
        return cls(np.linspace(float(beta_min), float(beta_max), int(n)))

    @classmethod
    def from_values(cls, values: Sequence[float]) -> "TemperatureLadder":
        return cls(values)

    # ---- 读取 ----
    def size(self) -> int:
        return int(self._values.size)

    def __len__(self) -> int:
        return int(self._values.size)

    def __getitem__(self, index: int) -> float:
        return float(self._values[index])

    def __iter__(self):
        return iter(self._values.tolist())

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def temperatures(self) -> np.ndarray:
        return 1.0 / self._values

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TemperatureLadder):
            return NotImplemented
        return np.array_equal(self._values, other._values)

    def __repr__(self) -> str:
        return f"TemperatureLadder({np.array2string(self._values, precision=5)})"

    # ---- 优化 ----
    def optimize_rates(
        self,
        acceptance: Sequence[float],
        damping: float = 0.5,
        clip: Tuple[float, float] = (0.75, 1.35),
    ) -> "TemperatureLadder":
        """
        接受率匹配：返回使相邻对接受率趋于相等的新阶梯（端点不变）。

        acceptance: 长度 N-1 的各相邻对平均接受率；NaN（该对无尝试）按有限值均值处理。
        damping: 0 < damping <= 1，越小越保守。
        clip: 单次对每个间隔宽度的乘性变化上下限。
        """
        b = self._values
        A = np.asarray(acceptance, dtype=float)
        if A.shape != (b.size - 1,):
            raise ValueError(f"acceptance must have shape ({b.size - 1},), got {A.shape}")
        finite = np.isfinite(A)
        if not finite.any():
            return self
        A = np.where(finite, A, float(np.mean(A[finite])))

        sign = 1.0 if b[-1] > b[0] else -1.0
        gap = np.abs(np.diff(b))
        span = float(np.sum(gap))

        c = 2.0 * erfcinv(np.clip(A, _ACC_EPS, 1.0 - _ACC_EPS))
        # σ_i = c_i/Δβ_i；等难度不动点 Δβ_i ∝ 1/σ_i
        target = gap / np.maximum(c, _ACC_EPS)
        target *= span / float(np.sum(target))

        d = float(min(max(damping, 0.0), 1.0))
        new_gap = (1.0 - d) * gap + d * target
        fac = np.clip(new_gap / gap, clip[0], clip[1])
        new_gap = gap * fac
        new_gap *= span / float(np.sum(new_gap))

        vals = b[0] + sign * np.concatenate(([0.0], np.cumsum(new_gap)))
        vals[-1] = b[-1]
        return TemperatureLadder(vals)

    def optimize_round_trip(
        self,
        upward: Sequence[float],
        tolerance: float = 0.05,
        damping: float = 1.0,
        floor: float = 1e-3,
    ) -> Tuple["TemperatureLadder", bool]:
        """
        往返流反馈优化。

        upward: 长度 N，各 rung 上“上行”副本比例；无访问的 rung 为 NaN。
        tolerance: 允许的非单调噪声幅度（f 的逐段下降不得超过该值）。
        floor: 每段增量的下限（相对于总增量），保证测度为正。

        返回 (新阶梯, True)；数据不足时返回 (self, False)。
        """
        b = self._values
        n = b.size
        f = np.asarray(upward, dtype=float)
        if f.shape != (n,):
            raise ValueError(f"upward ratio must have shape ({n},), got {f.shape}")
        if np.any(np.isnan(f)):
            return self, False
        rise = float(f[-1] - f[0])
        if not rise > 0.0:
            return self, False
        df = np.diff(f)
        if np.any(df < -abs(float(tolerance))):
            return self, False

        df = np.maximum(df, float(floor) * rise)
        mass = np.sqrt(df)
        cum = np.concatenate(([0.0], np.cumsum(mass)))
        cum /= cum[-1]

        rungs = np.arange(n, dtype=float)
        pos = np.interp(np.linspace(0.0, 1.0, n), cum, rungs)
        vals = np.interp(pos, rungs, b)
        vals[0], vals[-1] = b[0], b[-1]

        d = float(min(max(damping, 0.0), 1.0))
        vals = (1.0 - d) * b + d * vals

        steps = np.diff(vals)
        if not (np.all(steps > 0) or np.all(steps < 0)):
            return self, False
        return TemperatureLadder(vals), True


def ladder_from_spec(
    num_replicas: int,
    beta_min: float,
    beta_max: float,
    spacing: str = "geom",
    values: Optional[Sequence[float]] = None,
) -> TemperatureLadder:
    """按配置构造阶梯：显式 values 优先，否则 geom / linear。"""
    if values is not None:
        lad = TemperatureLadder(values)
        if lad.size() != int(num_replicas):
            raise ConfigurationError(
                f"ladder length ({lad.size()}) must match num_replicas ({num_replicas})"
            )
        return lad
    if spacing == "geom":
        return TemperatureLadder.geometric(beta_min, beta_max, num_replicas)
    if spacing == "linear":
        return TemperatureLadder.linear(beta_min, beta_max, num_replicas)
    raise ConfigurationError("spacing must be 'geom' or 'linear'")
