# -*- coding: utf-8 -*-
"""
    单进程驱动（ExchangeEngine）

    把 WorkerState、StageController 镜像、（rank 0 上的）ExchangeCoordinator 与 Transport 串起来:

    每个 sweep:
        worker.advance_one_sweep(ladder) → stages.advance()
    每 interval 个 sweep（交换开启时）:
        gather 本地 weight → [rank 0] coordinator.process_interval
        → broadcast (escalated, advanced, 新阶梯) → 各进程更新 stages 镜像 / 阶梯
        → scatter tid 切片 → worker.apply_new_assignment

    所有进程以相同顺序调用同样的集体操作；断点只在 sweep 边界写入。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from numpy.random import SeedSequence

from ..core.errors import CheckpointError
from ..core.ladder import TemperatureLadder, ladder_from_spec
from ..core.rng import RandomSource
from ..core.walkers import Walker
from ..utils.config import Config
from ..utils.logger import ProgressLogger, format_vector
from .checkpoint import CheckpointCodec, rank_checkpoint_path
from .coordinator import ExchangeCoordinator, make_optimization, make_pairing
from .stages import StageController
from .transport import SerialTransport, Transport
from .worker import WorkerState

logger = logging.getLogger(__name__)

__all__ = ["ExchangeEngine", "resolve_seed"]

WalkerFactory = Callable[[int, int], Walker]


def resolve_seed(seed: Optional[int]) -> int:
    """None → 新抽取的 32-bit 种子（调用方负责记录）。"""
    if seed is not None:
        return int(seed)
    return int(SeedSequence().generate_state(1, dtype=np.uint32)[0])


class ExchangeEngine:
    """
    Args:
        config: 完整运行配置
        factory: (replica_id, seed) -> Walker
        transport: 集体通信；缺省为单进程 SerialTransport
    """

    def __init__(self, config: Config, factory: WalkerFactory, transport: Optional[Transport] = None) -> None:
        self.config = config
        self.transport = transport if transport is not None else SerialTransport()
        ex = config.exchange
        rank, size = self.transport.rank, self.transport.size

        # 种子以 rank 0 为准
        seed = resolve_seed(config.run.seed) if rank == 0 else None
        self.seed = int(self.transport.broadcast(seed, root=0))
        if config.run.seed is None and rank == 0:
            logger.info("EXMC: no seed configured, using seed = %d", self.seed)

        self.num_replicas = int(ex.num_replicas)
        self.ladder = ladder_from_spec(ex.num_replicas, ex.beta_min, ex.beta_max, ex.spacing, ex.betas)
        self.worker = WorkerState.build(factory, self.num_replicas, size, rank, self.seed)
        self.rng = RandomSource.for_process(self.seed, rank)
        self.exchange = bool(ex.exchange)
        self.interval = int(ex.interval)
        optimize = self.exchange and ex.optimization != "none"
        self.stages = StageController(
            sweeps=config.run.sweeps,
            thermalization=config.run.thermalization,
            stage_sweeps=ex.stage_sweeps,
            stage_growth=ex.stage_growth,
            max_stages=ex.max_stages,
            optimize=optimize,
            exchange=self.exchange,
        )

        self.coordinator: Optional[ExchangeCoordinator] = None
        if self.exchange and rank == 0:
            if ex.optimization == "rate":
                opt = make_optimization("rate", damping=ex.rate_damping)
            elif ex.optimization == "round_trip":
                opt = make_optimization("round_trip", tolerance=ex.round_trip_tolerance)
            else:
                opt = make_optimization("none")
            self.coordinator = ExchangeCoordinator(
                self.ladder,
                type(self.worker.walkers[0]).log_weight,
                self.rng,
                pairing=make_pairing(ex.pairing),
                optimization=opt,
                num_processes=size,
            )

    # ---- 读取 ----
    @property
    def is_root(self) -> bool:
        return self.transport.rank == 0

    def is_thermalized(self) -> bool:
        return self.stages.is_thermalized()

    def progress(self) -> float:
        return self.stages.progress()

    # ---- 一个 sweep ----
    def step(self) -> None:
        self.worker.advance_one_sweep(self.ladder)
        self.stages.advance()
        if self.exchange and self.stages.total_sweeps % self.interval == 0:
            self._exchange()

    def _exchange(self) -> None:
        t = self.transport
        gathered = t.gather(self.worker.collect_local_weights(), root=0)

        message = None
        slices = None
        if self.coordinator is not None:
            weights: List[Any] = [w for block in gathered for w in block]
            decision = self.coordinator.process_interval(weights, self.stages)
            message = (
                bool(decision.escalated),
                bool(decision.advanced),
                None if decision.ladder is None else decision.ladder.values.tolist(),
            )
            slices = self.coordinator.tid_slices()

        escalated, advanced, ladder_values = t.broadcast(message, root=0)
        if escalated:
            self.stages.continue_stage()
        if advanced:
            self.stages.next_stage()
        if ladder_values is not None:
            self.ladder = self.coordinator.ladder if self.coordinator is not None else TemperatureLadder(ladder_values)

        self.worker.apply_new_assignment(t.scatter(slices, root=0))

    # ---- 主循环 ----
    def run(self) -> Dict[str, Any]:
        run_cfg = self.config.run
        if run_cfg.resume:
            self.load_checkpoint()

        progress = None
        if self.is_root and run_cfg.progress_interval > 0:
            progress = ProgressLogger(
                self.stages.sweeps, desc="EXMC production", logger=logger,
                log_every_n=run_cfg.progress_interval,
            )
            progress.current = min(self.stages.production_count, self.stages.sweeps)

        while not self.stages.is_finished():
            before = self.stages.production_count
            self.step()
            if progress is not None and self.stages.production_count > before:
                progress.update()
            if (run_cfg.checkpoint and run_cfg.checkpoint_interval > 0
                    and self.stages.total_sweeps % run_cfg.checkpoint_interval == 0):
                self.save_checkpoint()

        if progress is not None:
            progress.finish()
        if run_cfg.checkpoint:
            self.save_checkpoint()
        return self.result()

    def result(self) -> Dict[str, Any]:
        """集体操作：rank 0 上额外汇总全体副本的最终 weight 与 rung。"""
        local = (self.worker.offset, self.worker.tids.tolist(), self.worker.collect_local_weights())
        gathered = self.transport.gather(local, root=0)
        out: Dict[str, Any] = {
            "rank": self.transport.rank,
            "seed": self.seed,
            "ladder": self.ladder.values.tolist(),
            "stage": self.stages.state(),
        }
        if self.is_root:
            tids = np.zeros(self.num_replicas, dtype=np.int64)
            weights: List[Any] = [None] * self.num_replicas
            for offset, block_tids, block_weights in gathered:
                for i, (tid, w) in enumerate(zip(block_tids, block_weights)):
                    tids[offset + i] = tid
                    weights[offset + i] = w
            out["tid"] = tids.tolist()
            out["weights"] = weights
            if self.coordinator is not None:
                out["exchange"] = self.coordinator.summary()
                logger.info("EXMC final ladder = %s", format_vector(self.ladder.values))
                logger.info(
                    "EXMC final acceptance rate = %s",
                    format_vector(out["exchange"]["acceptance_rate"]),
                )
        return out

    # ---- 断点 ----
    def checkpoint_path(self) -> str:
        base = self.config.run.checkpoint
        if not base:
            raise CheckpointError("no checkpoint path configured")
        return rank_checkpoint_path(base, self.transport.rank)

    def save_checkpoint(self) -> str:
        return CheckpointCodec.write(CheckpointCodec.encode(self), self.checkpoint_path())

    def load_checkpoint(self) -> None:
        path = self.checkpoint_path()
        record = CheckpointCodec.read(path)
        if record.num_processes != self.transport.size or record.rank != self.transport.rank:
            raise CheckpointError(
                f"{path} was written by rank {record.rank} of {record.num_processes}, "
                f"this is rank {self.transport.rank} of {self.transport.size}"
            )
        CheckpointCodec.apply(record, self)
        logger.info("EXMC: resumed from %s at sweep %d", path, self.stages.total_sweeps)
