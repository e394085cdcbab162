# -*- coding: utf-8 -*-
"""
进程级随机源

实现功能:
    - 每个进程一条独立随机流：SeedSequence(master_seed, spawn_key=(rank,)) + Philox。
      同一 (seed, rank) 可复现，不同 rank 互相独立。
    - uniform() / permutation(n)：交换判据与随机配对所需的两种抽样。
    - spawn_replica_seeds：由主种子派生每个副本的 32-bit 种子（副本 walker 自带 RNG）。
    - get_state / set_state：bit_generator.state 的 JSON 友好序列化（checkpoint 用）。
"""

from __future__ import annotations

import json
from typing import Any, Dict, List

import numpy as np
from numpy.random import Generator, Philox, SeedSequence

__all__ = [
    "RandomSource",
    "make_generator",
    "spawn_replica_seeds",
    "serialize_rng_state",
    "deserialize_rng_state",
]


def make_generator(seed: int) -> np.random.Generator:
    """32-bit 种子 → Philox Generator。"""
    return Generator(Philox(int(seed) & 0xFFFFFFFF))


def spawn_replica_seeds(master_seed: int, n_replicas: int) -> List[int]:
    """
    用 SeedSequence.spawn 从主种子派生 n 个 32-bit 副本种子。
    只应调用一次（例如在每个进程构造时对全体副本调用），再按全局编号取用。
    """
    if master_seed is None:
        raise ValueError("master_seed must be provided")
    children = SeedSequence(int(master_seed)).spawn(int(n_replicas))
    return [int(ch.generate_state(1, dtype=np.uint32)[0]) for ch in children]


def serialize_rng_state(state_obj: Any) -> Any:
    """递归转换为 JSON 可写对象；ndarray 保留 dtype。"""
    if state_obj is None or isinstance(state_obj, (str, bool, int, float)):
        return state_obj
    if isinstance(state_obj, np.ndarray):
        return {"__ndarray__": state_obj.tolist(), "dtype": str(state_obj.dtype)}
    if isinstance(state_obj, np.generic):
        return state_obj.item()
    if isinstance(state_obj, (list, tuple)):
        return [serialize_rng_state(x) for x in state_obj]
    if isinstance(state_obj, dict):
        return {str(k): serialize_rng_state(v) for k, v in state_obj.items()}
    raise TypeError(f"cannot serialize RNG state component of type {type(state_obj).__name__}")


def deserialize_rng_state(serial_obj: Any) -> Any:
    if isinstance(serial_obj, dict):
        if "__ndarray__" in serial_obj:
            return np.asarray(serial_obj["__ndarray__"], dtype=serial_obj.get("dtype", "uint64"))
        return {k: deserialize_rng_state(v) for k, v in serial_obj.items()}
    if isinstance(serial_obj, list):
        return [deserialize_rng_state(x) for x in serial_obj]
    return serial_obj


class RandomSource:
    """
    交换阶段使用的随机源（每进程一个；真正抽样的只有 coordinator 所在进程）。
    """

    def __init__(self, seed: int, stream: int = 0) -> None:
        self.seed = int(seed)
        self.stream = int(stream)
        ss = SeedSequence(self.seed, spawn_key=(self.stream,))
        self._gen = Generator(Philox(ss))
        # 抽样计数，用于 provenance / 诊断
        self.draws = 0

    @classmethod
    def for_process(cls, seed: int, rank: int) -> "RandomSource":
        return cls(seed, stream=rank)

    @property
    def generator(self) -> np.random.Generator:
        return self._gen

    def uniform(self) -> float:
        self.draws += 1
        return float(self._gen.random())

    def permutation(self, n: int) -> np.ndarray:
        self.draws += 1
        return self._gen.permutation(int(n))

    def get_state(self) -> Dict[str, Any]:
        return {
            "seed": self.seed,
            "stream": self.stream,
            "draws": self.draws,
            "bit_generator": serialize_rng_state(self._gen.bit_generator.state),
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        self.seed = int(state["seed"])
        self.stream = int(state["stream"])
        self.draws = int(state.get("draws", 0))
        self._gen.bit_generator.state = deserialize_rng_state(state["bit_generator"])

    def state_json(self) -> str:
        return json.dumps(self.get_state())

    def load_state_json(self, txt: str) -> None:
        self.set_state(json.loads(txt))
