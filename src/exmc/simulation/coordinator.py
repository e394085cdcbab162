# -*- coding: utf-8 -*-
"""
    交换协调者（ExchangeCoordinator）

    只在 coordinator 进程（rank 0）上构造；其它进程持有 None，不保存任何全局数组。
每个交换间隔由 engine 调用一次 process_interval(weights, stages)，完成:

    1. 聚合：按 rung 累加当前占据者的 weight parameter（WeightAccumulator）。
    2. 提议 / 判定交换：配对策略对象给出相邻对 (p, p+1) 的处理顺序，
       logp = [lw(W[w1], β_p) + lw(W[w0], β_{p+1})] - [lw(W[w1], β_{p+1}) + lw(W[w0], β_p)]，
       logp > 0 直接接受，否则抽一个 u 与 exp(logp) 比较；接受则同时交换 tid 与 wid。
       随机配对按置换顺序逐对串行判定（前一对的结果会改变 wid）。
    3. 往返记账：rung 0 为锚点端；rung 0 上的 UP 副本完成一次往返（returnee + 1，逆往返时间样本 1/N），
       rung 0 占据者标为 DOWN，rung N-1 上的 DOWN 占据者翻为 UP。
    4. 阶段评估：优化策略对象（接受率匹配 / 往返反馈 / 不优化时的热化判定）给出
       escalated / advanced 两个布尔量以及（阶段推进时的）新阶梯。

    tid[replica_id] -> rung 与 wid[rung] -> replica_id 任何时候都互为逆映射。
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..core.accumulators import (
    MeanAccumulator,
    WeightAccumulator,
    accumulator_state,
    accumulators_from_state,
    mean_vector,
)
from ..core.ladder import TemperatureLadder
from ..core.partition import partition_table
from ..core.rng import RandomSource
from ..utils.logger import format_vector
from .stages import StageController

logger = logging.getLogger(__name__)

__all__ = [
    "UNLABELED", "UP", "DOWN",
    "ExchangeDecision", "ExchangeCoordinator",
    "PairingPolicy", "AlternatingPairing", "RandomPairing", "make_pairing",
    "OptimizationPolicy", "RateOptimization", "RoundTripOptimization", "ThermalizationCheck",
    "make_optimization",
]

# 方向标签（按副本编号存储）
UNLABELED = 0
UP = 1
DOWN = -1

LogWeight = Callable[[Any, float], float]


@dataclass(frozen=True)
class ExchangeDecision:
    """广播给所有进程的控制信号；ladder 仅在阶段推进且阶梯变化时非 None。"""
    escalated: bool = False
    advanced: bool = False
    ladder: Optional[TemperatureLadder] = None


# ---------------------------------------------------------------------------
# 配对策略
# ---------------------------------------------------------------------------
class PairingPolicy(ABC):
    name = "base"

    @abstractmethod
    def pairs(self, exchange_index: int, num_rungs: int, rng: RandomSource) -> Iterable[int]:
        """本次交换按顺序判定的相邻对起点 p（对应 (p, p+1)）。"""


class AlternatingPairing(PairingPolicy):
    """第 k 次交换处理 (s, s+1), (s+2, s+3), ...，s = k mod 2；对之间互不重叠。"""
    name = "alternating"

    def pairs(self, exchange_index: int, num_rungs: int, rng: RandomSource) -> Iterable[int]:
        return range(exchange_index % 2, num_rungs - 1, 2)


class RandomPairing(PairingPolicy):
    """N-1 个相邻对的均匀随机置换，按置换顺序串行判定。"""
    name = "random"

    def pairs(self, exchange_index: int, num_rungs: int, rng: RandomSource) -> Iterable[int]:
        return [int(p) for p in rng.permutation(num_rungs - 1)]


def make_pairing(name: str) -> PairingPolicy:
    if name == "alternating":
        return AlternatingPairing()
    if name == "random":
        return RandomPairing()
    raise ValueError(f"unknown exchange pairing '{name}' (expected 'alternating' or 'random')")


# ---------------------------------------------------------------------------
# 阶段评估策略
# ---------------------------------------------------------------------------
class OptimizationPolicy(ABC):
    name = "base"

    def due(self, stages: StageController) -> bool:
        return stages.stage_due()

    @abstractmethod
    def evaluate(self, coord: "ExchangeCoordinator", stages: StageController) -> ExchangeDecision:
        ...


class RateOptimization(OptimizationPolicy):
    """
    接受率匹配：阶段结束总是推进；stage 0 只收集统计，不调用优化器。
    推进后清空交换统计与 weight 累加器。
    """
    name = "rate"

    def __init__(self, damping: float = 0.5, clip: Tuple[float, float] = (0.75, 1.35)) -> None:
        self.damping = float(damping)
        self.clip = (float(clip[0]), float(clip[1]))

    def evaluate(self, coord: "ExchangeCoordinator", stages: StageController) -> ExchangeDecision:
        acc = coord.acceptance_rates()
        logger.info("EXMC stage %d: acceptance rate = %s", stages.stage, format_vector(acc))
        means = coord.weights.means()
        logger.debug("EXMC stage %d: mean weight parameters = %s", stages.stage, means)
        ladder = None
        if stages.stage != 0:
            ladder = coord.ladder.optimize_rates(acc, damping=self.damping, clip=self.clip)
            coord.ladder = ladder
            logger.info("EXMC stage %d: optimized ladder = %s", stages.stage, format_vector(ladder.values))
        coord.reset_statistics()
        coord.weights.reset()
        return ExchangeDecision(advanced=True, ladder=ladder)


class RoundTripOptimization(OptimizationPolicy):
    """
    往返反馈：需要 returnee >= N 且没有 UNLABELED 副本；stage 0 满足条件即推进（不优化）。
    条件不满足或优化器失败时 escalate，不清空任何统计。
    """
    name = "round_trip"

    def __init__(self, tolerance: float = 0.05, damping: float = 1.0) -> None:
        self.tolerance = float(tolerance)
        self.damping = float(damping)

    def evaluate(self, coord: "ExchangeCoordinator", stages: StageController) -> ExchangeDecision:
        upward = coord.upward_ratios()
        unlabeled = coord.num_unlabeled()
        logger.info(
            "EXMC stage %d: upward ratio = %s, returnees = %d, unlabeled = %d",
            stages.stage, format_vector(upward), coord.returnees, unlabeled,
        )
        success = False
        ladder = None
        if coord.returnees >= coord.size and unlabeled == 0:
            if stages.stage == 0:
                success = True
            else:
                ladder, success = coord.ladder.optimize_round_trip(
                    upward, tolerance=self.tolerance, damping=self.damping
                )
        if not success:
            logger.info(
                "EXMC stage %d: NOT FINISHED; sweep target will grow from %d",
                stages.stage, stages.stage_target,
            )
            return ExchangeDecision(escalated=True)
        if ladder is not None:
            coord.ladder = ladder
            logger.info("EXMC stage %d: optimized ladder = %s", stages.stage, format_vector(ladder.values))
        logger.info("EXMC stage %d: DONE", stages.stage)
        coord.reset_statistics()
        coord.weights.reset()
        coord.returnees = 0
        return ExchangeDecision(advanced=True, ladder=ladder)


class ThermalizationCheck(OptimizationPolicy):
    """不优化：热化目标到达时检查 returnee >= N 且无 UNLABELED；不满足则放大热化目标。"""
    name = "none"

    def due(self, stages: StageController) -> bool:
        return stages.thermalization_due()

    def evaluate(self, coord: "ExchangeCoordinator", stages: StageController) -> ExchangeDecision:
        unlabeled = coord.num_unlabeled()
        if coord.returnees >= coord.size and unlabeled == 0:
            logger.info("EXMC thermalization: DONE after %d sweeps", stages.thermalization_count)
            return ExchangeDecision(advanced=True)
        logger.info(
            "EXMC thermalization: NOT FINISHED (returnees = %d, unlabeled = %d); target %d will grow",
            coord.returnees, unlabeled, stages.thermalization_target,
        )
        return ExchangeDecision(escalated=True)


def make_optimization(name: str, **kwargs: Any) -> OptimizationPolicy:
    if name == "rate":
        return RateOptimization(**kwargs)
    if name == "round_trip":
        return RoundTripOptimization(**kwargs)
    if name == "none":
        return ThermalizationCheck()
    raise ValueError(f"unknown optimization '{name}' (expected 'rate', 'round_trip' or 'none')")


# ---------------------------------------------------------------------------
# 协调者
# ---------------------------------------------------------------------------
class ExchangeCoordinator:
    """
    rank 0 上的全局交换状态。

    Args:
        ladder: 初始阶梯（长度 N = 副本数）
        log_weight: walker 类的静态 log_weight(W, β)
        rng: coordinator 进程的随机源
        pairing / optimization: 构造时选定的策略对象
        num_processes: 仅用于布局日志与 tid_slices 的默认划分
    """

    def __init__(
        self,
        ladder: TemperatureLadder,
        log_weight: LogWeight,
        rng: RandomSource,
        pairing: Optional[PairingPolicy] = None,
        optimization: Optional[OptimizationPolicy] = None,
        num_processes: int = 1,
    ) -> None:
        self.ladder = ladder
        self.size = ladder.size()
        self.log_weight = log_weight
        self.rng = rng
        self.pairing = pairing if pairing is not None else AlternatingPairing()
        self.optimization = optimization if optimization is not None else ThermalizationCheck()
        self.partitions = partition_table(self.size, num_processes)

        n = self.size
        self.tid = np.arange(n, dtype=np.int64)
        self.wid = np.arange(n, dtype=np.int64)
        self.labels = np.full(n, UNLABELED, dtype=np.int8)
        # rung 0 的初始占据者从锚点端出发
        self.labels[int(self.wid[0])] = DOWN
        self.returnees = 0
        self.exchange_count = 0
        self.weights = WeightAccumulator(n)
        self.acceptance: List[MeanAccumulator] = [MeanAccumulator() for _ in range(n - 1)]
        self.upward: List[MeanAccumulator] = [MeanAccumulator() for _ in range(n)]
        self.downward: List[MeanAccumulator] = [MeanAccumulator() for _ in range(n)]
        self.inverse_round_trip = MeanAccumulator()

        counts = [c for c, _ in self.partitions]
        logger.info(
            "EXMC: number of replicas = %d, number of processes = %d, replicas per process = %s",
            n, num_processes, counts,
        )
        logger.info("EXMC: pairing = %s, optimization = %s", self.pairing.name, self.optimization.name)
        logger.info("EXMC: initial ladder = %s", format_vector(ladder.values))

    # ---- 单步原语 ----
    def aggregate(self, weights: Sequence[Any]) -> None:
        for p in range(self.size):
            self.weights.add(p, weights[int(self.wid[p])])

    def resolve_pair(self, p: int, weights: Sequence[Any]) -> bool:
        """判定相邻对 (p, p+1)；接受时交换 tid / wid。返回是否接受。"""
        w0 = int(self.wid[p])
        w1 = int(self.wid[p + 1])
        b0 = self.ladder[p]
        b1 = self.ladder[p + 1]
        lw = self.log_weight
        logp = (lw(weights[w1], b0) + lw(weights[w0], b1)) - (lw(weights[w1], b1) + lw(weights[w0], b0))
        accept = logp > 0 or self.rng.uniform() < math.exp(logp)
        if accept:
            self.tid[w0], self.tid[w1] = p + 1, p
            self.wid[p], self.wid[p + 1] = w1, w0
        self.acceptance[p].record(1.0 if accept else 0.0)
        return accept

    def record_round_trips(self) -> None:
        n = self.size
        anchor = int(self.wid[0])
        if self.labels[anchor] == UP:
            self.returnees += 1
            self.inverse_round_trip.record(1.0 / n)
        else:
            self.inverse_round_trip.record(0.0)
        self.labels[anchor] = DOWN
        top = int(self.wid[n - 1])
        if self.labels[top] == DOWN:
            self.labels[top] = UP
        for p in range(n):
            lab = self.labels[int(self.wid[p])]
            self.upward[p].record(1.0 if lab == UP else 0.0)
            self.downward[p].record(1.0 if lab == DOWN else 0.0)

    # ---- 一个交换间隔 ----
    def process_interval(self, weights: Sequence[Any], stages: StageController) -> ExchangeDecision:
        if len(weights) != self.size:
            raise ValueError(f"expected {self.size} weight parameters, got {len(weights)}")
        self.aggregate(weights)
        for p in self.pairing.pairs(self.exchange_count, self.size, self.rng):
            self.resolve_pair(p, weights)
        self.exchange_count += 1
        self.record_round_trips()
        if self.optimization.due(stages):
            return self.optimization.evaluate(self, stages)
        return ExchangeDecision()

    # ---- 统计 ----
    def acceptance_rates(self) -> np.ndarray:
        return mean_vector(self.acceptance)

    def upward_ratios(self) -> np.ndarray:
        out = np.full(self.size, np.nan)
        for p in range(self.size):
            up = self.upward[p].total
            down = self.downward[p].total
            if up + down > 0:
                out[p] = up / (up + down)
        return out

    def num_unlabeled(self) -> int:
        return int(np.count_nonzero(self.labels == UNLABELED))

    def reset_statistics(self) -> None:
        for a in self.acceptance + self.upward + self.downward:
            a.reset()
        self.inverse_round_trip.reset()

    def summary(self) -> Dict[str, Any]:
        return {
            "ladder": self.ladder.values.tolist(),
            "acceptance_rate": self.acceptance_rates().tolist(),
            "upward_ratio": self.upward_ratios().tolist(),
            "returnees": int(self.returnees),
            "inverse_round_trip_time": self.inverse_round_trip.mean(),
            "unlabeled": self.num_unlabeled(),
            "exchanges": int(self.exchange_count),
            "tid": self.tid.tolist(),
            "wid": self.wid.tolist(),
        }

    # ---- 分发 ----
    def tid_slices(self, partitions: Optional[Sequence[Tuple[int, int]]] = None) -> List[np.ndarray]:
        parts = self.partitions if partitions is None else partitions
        return [self.tid[off:off + n].copy() for n, off in parts]

    @staticmethod
    def _check_tables(n: int, tid: np.ndarray, wid: np.ndarray, labels: np.ndarray) -> None:
        if tid.shape != (n,) or wid.shape != (n,):
            raise RuntimeError("tid/wid have wrong size")
        if labels.shape != (n,):
            raise RuntimeError(f"labels have wrong size: {labels.shape}")
        if np.any(tid < 0) or np.any(tid >= n) or np.any(wid < 0) or np.any(wid >= n):
            raise RuntimeError(f"tid/wid out of range: tid={tid.tolist()} wid={wid.tolist()}")
        if not np.array_equal(tid[wid], np.arange(n)):
            raise RuntimeError(f"tid[wid[p]] != p: tid={tid.tolist()} wid={wid.tolist()}")
        if not np.array_equal(wid[tid], np.arange(n)):
            raise RuntimeError(f"wid[tid[r]] != r: tid={tid.tolist()} wid={wid.tolist()}")
        if not np.all(np.isin(labels, (UNLABELED, UP, DOWN))):
            raise RuntimeError(f"invalid direction labels: {labels.tolist()}")

    def check_invariants(self) -> None:
        self._check_tables(self.size, self.tid, self.wid, self.labels)

    # ---- checkpoint ----
    def state(self) -> Dict[str, Any]:
        w = self.weights.to_arrays()
        return {
            "tid": self.tid.copy(),
            "wid": self.wid.copy(),
            "labels": self.labels.copy(),
            "returnees": int(self.returnees),
            "exchange_count": int(self.exchange_count),
            "weight_sums": w["sums"],
            "weight_counts": w["counts"],
            "acceptance": accumulator_state(self.acceptance),
            "upward": accumulator_state(self.upward),
            "downward": accumulator_state(self.downward),
            "inverse_round_trip": accumulator_state([self.inverse_round_trip]),
        }

    def parse_state(self, state: Dict[str, Any]) -> Dict[str, Any]:
        """
        把 checkpoint 字典解析成可直接赋值的字段，不修改 self。
        任何不一致都在这里抛出（ValueError / RuntimeError），
        调用者可在全部检查通过后再 apply_state()。
        """
        n = self.size
        try:
            tid = np.asarray(state["tid"], dtype=np.int64).copy()
            wid = np.asarray(state["wid"], dtype=np.int64).copy()
            raw_labels = np.asarray(state["labels"])
            sums = np.asarray(state["weight_sums"], dtype=float)
            counts = np.asarray(state["weight_counts"], dtype=np.int64)
            acceptance = accumulators_from_state(state["acceptance"])
            upward = accumulators_from_state(state["upward"])
            downward = accumulators_from_state(state["downward"])
            inverse = accumulators_from_state(state["inverse_round_trip"])
            returnees = int(state["returnees"])
            exchange_count = int(state["exchange_count"])
        except KeyError as exc:
            raise ValueError(f"coordinator state misses field {exc}") from exc
        if not np.all(np.isin(raw_labels, (UNLABELED, UP, DOWN))):
            raise RuntimeError(f"invalid direction labels: {np.ravel(raw_labels).tolist()}")
        labels = raw_labels.astype(np.int8)
        self._check_tables(n, tid, wid, labels)
        if counts.shape != (n,) or sums.ndim < 1 or sums.shape[0] != n or np.any(counts < 0):
            raise ValueError(f"weight accumulator shape {sums.shape}/{counts.shape} does not match {n} replicas")
        if len(acceptance) != n - 1 or len(upward) != n or len(downward) != n or len(inverse) != 1:
            raise ValueError("coordinator state does not match the number of replicas")
        if returnees < 0 or exchange_count < 0:
            raise ValueError("negative counters in coordinator state")
        return {
            "tid": tid,
            "wid": wid,
            "labels": labels,
            "returnees": returnees,
            "exchange_count": exchange_count,
            "weights": WeightAccumulator.from_arrays(sums, counts),
            "acceptance": acceptance,
            "upward": upward,
            "downward": downward,
            "inverse_round_trip": inverse[0],
        }

    def apply_state(self, parsed: Dict[str, Any]) -> None:
        for key, value in parsed.items():
            setattr(self, key, value)

    def load_state(self, state: Dict[str, Any]) -> None:
        self.apply_state(self.parse_state(state))
