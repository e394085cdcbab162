# -*- coding: utf-8 -*-
"""
ExchangeEngine 端到端测试

覆盖:
- run_serial：接受率匹配校准 → 生产，阶段计数与交换次数
- 多 rank（线程 + QueueTransport）与单进程结果逐位一致（副本种子与进程数无关）
- 不做交换：阶梯与 rung 分配保持不变
- 不优化：热化判定通过后进入生产，returnee >= N
- 断点续跑与未中断运行结果一致；多 rank 断点
- spawn 多进程（SKIP_SLOW=1 时跳过）
"""

import os
import sys
import threading
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

SRC_PATH = Path(__file__).resolve().parents[1] / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from exmc.core.errors import CheckpointError, ConfigurationError
from exmc.core.walkers import IsingWalkerFactory
from exmc.simulation.engine import ExchangeEngine, resolve_seed
from exmc.simulation.parallel import run_parallel, run_serial
from exmc.simulation.transport import make_queue_transports
from exmc.utils.config import Config, ExchangeConfig, ModelConfig, RunConfig

SKIP_SLOW = os.environ.get("SKIP_SLOW", "0") == "1"


def make_config(num_replicas=4, optimization="rate", pairing="alternating", exchange=True,
                sweeps=10, thermalization=0, checkpoint=None, seed=7):
    return Config(
        exchange=ExchangeConfig(
            num_replicas=num_replicas, beta_min=0.2, beta_max=0.5, exchange=exchange,
            pairing=pairing, optimization=optimization, stage_sweeps=4, max_stages=2,
        ),
        model=ModelConfig(L=4),
        run=RunConfig(sweeps=sweeps, thermalization=thermalization, seed=seed,
                      progress_interval=0, checkpoint=checkpoint),
    )


def run_ranks(transports, fn):
    results = [None] * len(transports)
    errors = []

    def target(t):
        try:
            results[t.rank] = fn(t)
        except Exception as exc:  # noqa: BLE001 - 转交主线程断言
            errors.append(exc)

    threads = [threading.Thread(target=target, args=(t,)) for t in transports]
    for th in threads:
        th.start()
    for th in threads:
        th.join(timeout=120)
    if errors:
        raise errors[0]
    return results


def assert_same_result(a, b):
    assert a["tid"] == b["tid"]
    assert a["ladder"] == b["ladder"]
    assert a["weights"] == b["weights"]
    assert a["stage"] == b["stage"]
    if "exchange" in a or "exchange" in b:
        ea, eb = dict(a["exchange"]), dict(b["exchange"])
        ta, tb = ea.pop("inverse_round_trip_time"), eb.pop("inverse_round_trip_time")
        assert ea.keys() == eb.keys()
        for key in ea:
            np.testing.assert_array_equal(np.asarray(ea[key], dtype=float), np.asarray(eb[key], dtype=float))
        assert ta == tb or (np.isnan(ta) and np.isnan(tb))


# ----------------------------- 单进程 -----------------------------

def test_rate_calibration_then_production():
    out = run_serial(make_config())
    stage = out["stage"]
    assert stage["phase"] == "production"
    assert stage["stage"] == 2
    assert stage["production_count"] == 10
    # stage 0: 4 sweeps, stage 1: 8 sweeps
    assert stage["total_sweeps"] == 4 + 8 + 10
    ex = out["exchange"]
    assert ex["exchanges"] == 22
    assert sorted(out["tid"]) == [0, 1, 2, 3]
    assert out["ladder"][0] == pytest.approx(0.2)
    assert out["ladder"][-1] == pytest.approx(0.5)
    assert np.all(np.diff(out["ladder"]) > 0)
    assert len(out["weights"]) == 4


def test_no_exchange_keeps_assignment():
    cfg = make_config(exchange=False, sweeps=5, thermalization=3)
    out = run_serial(cfg)
    assert "exchange" not in out
    assert out["tid"] == [0, 1, 2, 3]
    assert out["ladder"] == pytest.approx(np.geomspace(0.2, 0.5, 4).tolist())
    assert out["stage"]["total_sweeps"] == 8


def test_thermalization_check_reaches_production():
    out = run_serial(make_config(optimization="none", thermalization=20, sweeps=10))
    assert out["stage"]["phase"] == "production"
    assert out["stage"]["production_count"] == 10
    assert out["exchange"]["returnees"] >= 4
    assert out["exchange"]["unlabeled"] == 0


def test_same_seed_same_result():
    cfg = make_config(pairing="random")
    assert_same_result(run_serial(cfg), run_serial(cfg))


def test_resolve_seed():
    assert resolve_seed(5) == 5
    s = resolve_seed(None)
    assert 0 <= s < 2 ** 32


def test_more_processes_than_replicas_rejected():
    cfg = make_config(num_replicas=2)
    transports = make_queue_transports(3, timeout=5)
    with pytest.raises(ConfigurationError):
        run_ranks(transports, lambda t: ExchangeEngine(cfg, IsingWalkerFactory(4), t))


# ----------------------------- 多 rank（线程） -----------------------------

@pytest.mark.parametrize("pairing", ["alternating", "random"])
def test_multi_rank_matches_serial(pairing):
    cfg = make_config(num_replicas=5, pairing=pairing)
    serial = run_serial(cfg)

    transports = make_queue_transports(3, timeout=60)
    results = run_ranks(transports, lambda t: ExchangeEngine(cfg, IsingWalkerFactory(4), t).run())
    assert_same_result(results[0], serial)
    for r in (1, 2):
        assert results[r]["rank"] == r
        assert results[r]["ladder"] == serial["ladder"]
        assert results[r]["stage"] == serial["stage"]
        assert "tid" not in results[r]


def test_multi_rank_checkpoint(tmp_path):
    cfg = make_config(num_replicas=5, pairing="random", sweeps=30, checkpoint=str(tmp_path / "mr"))
    transports = make_queue_transports(2, timeout=60)

    def first(t):
        e = ExchangeEngine(cfg, IsingWalkerFactory(4), t)
        for _ in range(6):
            e.step()
        e.save_checkpoint()
        return e

    originals = run_ranks(transports, first)

    def second(t):
        e = ExchangeEngine(cfg, IsingWalkerFactory(4), t)
        e.load_checkpoint()
        for _ in range(4):
            e.step()
        return e

    resumed = run_ranks(make_queue_transports(2, timeout=60), second)

    def advance(t):
        e = originals[t.rank]
        for _ in range(4):
            e.step()
        return e

    run_ranks(transports, advance)
    for a, b in zip(originals, resumed):
        assert a.worker.tids.tolist() == b.worker.tids.tolist()
        assert a.stages == b.stages
        for wa, wb in zip(a.worker.walkers, b.worker.walkers):
            np.testing.assert_array_equal(wa.lattice, wb.lattice)
    assert originals[0].coordinator.tid.tolist() == resumed[0].coordinator.tid.tolist()
    assert resumed[1].coordinator is None

    # 两进程写的断点不能由单进程加载
    with pytest.raises(CheckpointError):
        ExchangeEngine(cfg, IsingWalkerFactory(4)).load_checkpoint()


# ----------------------------- 断点续跑 -----------------------------

def test_resume_matches_uninterrupted(tmp_path):
    full = run_serial(make_config(pairing="random"))

    cfg = make_config(pairing="random", checkpoint=str(tmp_path / "run"))
    e = ExchangeEngine(cfg, IsingWalkerFactory(4))
    for _ in range(9):
        e.step()
    e.save_checkpoint()

    resumed_cfg = replace(cfg, run=replace(cfg.run, resume=True))
    out = ExchangeEngine(resumed_cfg, IsingWalkerFactory(4)).run()
    assert_same_result(out, full)


def test_periodic_checkpoints_written(tmp_path):
    base = tmp_path / "periodic"
    cfg = make_config(checkpoint=str(base))
    cfg = replace(cfg, run=replace(cfg.run, checkpoint_interval=5))
    run_serial(cfg)
    assert Path(str(base) + ".rank0000.h5").exists()


# ----------------------------- spawn 多进程 -----------------------------

@pytest.mark.skipif(SKIP_SLOW, reason="SKIP_SLOW=1")
def test_spawn_processes_match_serial():
    cfg = make_config(num_replicas=4, pairing="random")
    serial = run_serial(cfg)
    parallel = run_parallel(cfg, n_processes=2, timeout=120)
    assert_same_result(parallel, serial)
