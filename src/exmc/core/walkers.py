# -*- coding: utf-8 -*-
"""
Walker 能力接口与参考实现

实现功能:
    - Walker (ABC)：交换核心对单个副本的全部要求
        set_control_value(v) / sweep() / weight_parameter() /
        log_weight(w, v)（静态）/ save() -> bytes / load(bytes)
    - IsingWalker：二维周期 Ising 模型，棋盘格（odd/even 子格）Metropolis，NumPy 向量化。
        weight parameter = 总能量 E_total（含外场项），log_weight(E, β) = -β·E。
    - IsingWalkerFactory：可 pickle 的工厂（spawn 子进程中按 (replica_id, seed) 构造 walker）。

约定:
    - 自旋为 int8 的 ±1，格点数 L×L，L 为偶数（棋盘格两子格互不相邻）。
    - 每个 sweep 消耗 L*L 个 uniform（每个格点一个接受随机数）。
"""

from __future__ import annotations

import io
import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import numpy as np

from .rng import deserialize_rng_state, make_generator, serialize_rng_state

__all__ = ["Walker", "IsingWalker", "IsingWalkerFactory", "energy_total"]


class Walker(ABC):
    """副本 walker 的最小能力集合（对交换核心不透明）。"""

    @abstractmethod
    def set_control_value(self, value: float) -> None:
        ...

    @abstractmethod
    def sweep(self) -> None:
        ...

    @abstractmethod
    def weight_parameter(self) -> Any:
        ...

    @staticmethod
    @abstractmethod
    def log_weight(weight: Any, control_value: float) -> float:
        ...

    @abstractmethod
    def save(self) -> bytes:
        ...

    @abstractmethod
    def load(self, payload: bytes) -> None:
        ...


def energy_total(latt: np.ndarray, h: float = 0.0) -> float:
    """
    计算全部能量 E_total = E_bond - h * M_total (NOT divided by N).
    """
    a = np.asarray(latt)
    if a.size == 0:
        raise ValueError("lattice must be non-empty")
    ai = a.astype(np.int64)
    right = np.roll(ai, -1, axis=1)
    down = np.roll(ai, -1, axis=0)
    e_bond = -int(np.sum(ai * (right + down)))
    m_tot = int(np.sum(ai))
    return float(e_bond) - float(h) * float(m_tot)


def _neighbour_sum(a: np.ndarray) -> np.ndarray:
    return (np.roll(a, 1, axis=0) + np.roll(a, -1, axis=0)
            + np.roll(a, 1, axis=1) + np.roll(a, -1, axis=1))


class IsingWalker(Walker):
    """
    二维 Ising walker。

    Args:
        L: 线性尺寸（偶数）
        h: 外场
        seed: 32-bit 种子（Philox）
        init: "random" | "up"
    """

    def __init__(self, L: int, h: float = 0.0, seed: Optional[int] = None, init: str = "random") -> None:
        L = int(L)
        if L < 2 or L % 2 != 0:
            raise ValueError(f"L must be an even integer >= 2, got {L}")
        self.L = L
        self.h = float(h)
        self.seed = 0 if seed is None else int(seed)
        self.rng = make_generator(self.seed)
        self.beta = 0.0
        if init == "up":
            self.lattice = np.ones((L, L), dtype=np.int8)
        elif init == "random":
            self.lattice = self.rng.choice(np.array([-1, 1], dtype=np.int8), size=(L, L))
        else:
            raise ValueError(f"unknown init '{init}'")
        ii, jj = np.indices((L, L))
        self._masks = ((ii + jj) % 2 == 0, (ii + jj) % 2 == 1)
        self._energy = energy_total(self.lattice, self.h)
        self.accepted = 0
        self.attempts = 0

    def set_control_value(self, value: float) -> None:
        self.beta = float(value)

    def sweep(self) -> None:
        # 两个子格依次更新；同一子格内格点互不相邻，可整体判定
        u = self.rng.random((self.L, self.L))
        for mask in self._masks:
            s = self.lattice.astype(np.int64)
            dE = 2.0 * s * (_neighbour_sum(s) + self.h)
            with np.errstate(over="ignore"):
                acc = (dE <= 0.0) | (u < np.exp(-self.beta * dE))
            flip = mask & acc
            self.lattice[flip] = -self.lattice[flip]
            self.accepted += int(np.count_nonzero(flip))
        self.attempts += self.L * self.L
        self._energy = energy_total(self.lattice, self.h)

    def weight_parameter(self) -> float:
        return self._energy

    @staticmethod
    def log_weight(weight: Any, control_value: float) -> float:
        return -float(control_value) * float(weight)

    def magnetization(self) -> float:
        return float(np.sum(self.lattice, dtype=np.int64)) / float(self.lattice.size)

    # ---- 持久化 ----
    def save(self) -> bytes:
        buf = io.BytesIO()
        meta = {
            "L": self.L,
            "h": self.h,
            "seed": self.seed,
            "beta": self.beta,
            "accepted": self.accepted,
            "attempts": self.attempts,
            "rng": serialize_rng_state(self.rng.bit_generator.state),
        }
        np.savez(buf, lattice=self.lattice, meta=np.array(json.dumps(meta)))
        return buf.getvalue()

    def load(self, payload: bytes) -> None:
        with np.load(io.BytesIO(bytes(payload))) as z:
            lattice = np.asarray(z["lattice"], dtype=np.int8)
            meta = json.loads(str(z["meta"]))
        if lattice.shape != (self.L, self.L) or int(meta["L"]) != self.L:
            raise ValueError(f"walker payload has lattice {lattice.shape}, expected {(self.L, self.L)}")
        self.lattice = lattice.copy()
        self.h = float(meta["h"])
        self.seed = int(meta["seed"])
        self.beta = float(meta["beta"])
        self.accepted = int(meta["accepted"])
        self.attempts = int(meta["attempts"])
        self.rng.bit_generator.state = deserialize_rng_state(meta["rng"])
        self._energy = energy_total(self.lattice, self.h)


class IsingWalkerFactory:
    """按 (replica_id, seed) 构造 IsingWalker；replica_id 仅用于日志/诊断。"""

    def __init__(self, L: int, h: float = 0.0, init: str = "random") -> None:
        self.L = int(L)
        self.h = float(h)
        self.init = init

    def __call__(self, replica_id: int, seed: int) -> IsingWalker:
        return IsingWalker(self.L, h=self.h, seed=seed, init=self.init)

    def __repr__(self) -> str:
        return f"IsingWalkerFactory(L={self.L}, h={self.h}, init={self.init!r})"
