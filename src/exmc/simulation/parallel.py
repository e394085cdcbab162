# -*- coding: utf-8 -*-
"""
    进程启动器（副本交换的多进程 / MPI 运行入口）

实现功能：
    - run_serial: 单进程运行（SerialTransport）。
    - run_parallel: 强制使用 ``multiprocessing.get_context("spawn")`` 启动 P 个 rank，
      rank 之间通过 QueueTransport 通信；子进程日志经 QueueHandler 汇总到主进程；
      任一 rank 失败时终止其余 rank 并抛出 RuntimeError（附子进程 traceback）。
    - run_mpi: 在 ``mpiexec -n P python -m exmc.simulation.parallel --launcher mpi`` 下每个 rank 调用。
    - 种子：未配置时由主进程统一抽取并记录，所有 rank 共享同一主种子（副本种子由 SeedSequence 派生）。

主要入口:
- `run_parallel`: 返回 rank 0 的运行结果（含交换统计摘要）。
"""

from __future__ import annotations

import logging
import queue
import sys
import traceback
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from ..core.walkers import IsingWalkerFactory, Walker
from ..utils.config import Config, build_arg_parser, from_args
from ..utils.logger import (
    attach_queue_handler,
    get_log_queue,
    log_config,
    setup_logger,
    stop_listeners,
)
from .engine import ExchangeEngine, resolve_seed
from .transport import MPITransport, SerialTransport, make_queue_transports

logger = logging.getLogger(__name__)

__all__ = ["default_factory", "run_serial", "run_parallel", "run_mpi", "main"]

WalkerFactory = Callable[[int, int], Walker]

# 轮询子进程状态的间隔（秒）
_POLL_SECONDS = 0.5


def default_factory(config: Config) -> IsingWalkerFactory:
    m = config.model
    return IsingWalkerFactory(m.L, h=m.h, init=m.init)


def _with_seed(config: Config) -> Config:
    if config.run.seed is not None:
        return config
    seed = resolve_seed(None)
    logger.info("EXMC: no seed configured, using seed = %d", seed)
    return replace(config, run=replace(config.run, seed=seed))


# -----------------------------------------------------------------------------
# 单进程
# -----------------------------------------------------------------------------
def run_serial(config: Config, factory: Optional[WalkerFactory] = None) -> Dict[str, Any]:
    fac = factory if factory is not None else default_factory(config)
    engine = ExchangeEngine(config, fac, SerialTransport())
    return engine.run()


# -----------------------------------------------------------------------------
# spawn 多进程
# -----------------------------------------------------------------------------
def _rank_main(
    rank: int,
    config: Config,
    factory: WalkerFactory,
    transport: Any,
    results: Any,
    log_queue: Any,
    log_level: str,
) -> None:
    """子进程入口（模块级函数，spawn 可 pickle）。"""
    if log_queue is not None:
        attach_queue_handler(log_queue, name="exmc", level=log_level)
    try:
        engine = ExchangeEngine(config, factory, transport)
        out = engine.run()
        results.put((rank, "ok", out))
    except Exception:
        results.put((rank, "error", traceback.format_exc()))


def run_parallel(
    config: Config,
    factory: Optional[WalkerFactory] = None,
    n_processes: Optional[int] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """
    用 spawn 上下文启动 n_processes 个 rank 并返回 rank 0 的结果。

    timeout: rank 间单次消息接收超时（秒）；None 表示一直等待。
    """
    P = int(n_processes if n_processes is not None else config.run.n_processes)
    if P <= 1:
        return run_serial(config, factory)

    from multiprocessing import get_context

    ctx = get_context("spawn")
    config = _with_seed(config)
    fac = factory if factory is not None else default_factory(config)
    transports = make_queue_transports(P, ctx=ctx, timeout=timeout)
    results = ctx.Queue()
    log_queue = get_log_queue("exmc")

    procs = [
        ctx.Process(
            target=_rank_main,
            args=(r, config, fac, transports[r], results, log_queue, config.run.log_level),
            name=f"exmc-rank{r}",
        )
        for r in range(P)
    ]
    for p in procs:
        p.start()

    collected: Dict[int, Dict[str, Any]] = {}
    try:
        while len(collected) < P:
            try:
                rank, status, payload = results.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                dead = [p.name for p in procs if p.exitcode not in (None, 0)]
                if dead:
                    raise RuntimeError(f"rank process(es) exited abnormally: {dead}")
                continue
            if status != "ok":
                raise RuntimeError(f"rank {rank} failed:\n{payload}")
            collected[int(rank)] = payload
    except BaseException:
        for p in procs:
            if p.is_alive():
                p.terminate()
        raise
    finally:
        for p in procs:
            p.join()
    return collected[0]


# -----------------------------------------------------------------------------
# MPI
# -----------------------------------------------------------------------------
def run_mpi(config: Config, factory: Optional[WalkerFactory] = None, comm: Any = None) -> Dict[str, Any]:
    """每个 MPI rank 调用一次；所有 rank 返回各自的结果（rank 0 含汇总）。"""
    transport = MPITransport(comm)
    fac = factory if factory is not None else default_factory(config)
    engine = ExchangeEngine(config, fac, transport)
    return engine.run()


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
def main(argv: Optional[List[str]] = None) -> int:
    ap = build_arg_parser()
    ap.add_argument('--launcher', choices=['serial', 'spawn', 'mpi'], default='spawn')
    ns = ap.parse_args(args=argv)
    cfg = from_args(argv)

    if ns.launcher == 'mpi':
        transport = MPITransport()
        is_root = transport.rank == 0
    else:
        is_root = True
    setup_logger('exmc', level=cfg.run.log_level, log_file=cfg.run.log_file if is_root else None,
                 mp_safe=(ns.launcher == 'spawn'))
    if is_root:
        log_config(cfg.to_dict(), logging.getLogger('exmc'))

    try:
        if ns.launcher == 'serial':
            out = run_serial(cfg)
        elif ns.launcher == 'mpi':
            out = run_mpi(cfg)
        else:
            out = run_parallel(cfg)
    finally:
        stop_listeners()

    if is_root and "exchange" in out:
        ex = out["exchange"]
        print(f"ladder          = {ex['ladder']}")
        print(f"acceptance rate = {ex['acceptance_rate']}")
        print(f"returnees       = {ex['returnees']}")
    return 0


if __name__ == "__main__":
    import multiprocessing as mp

    mp.freeze_support()
    sys.exit(main())
