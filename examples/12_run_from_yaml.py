# examples/12_run_from_yaml.py
"""
从 YAML 读取配置（configs/exchange_quick.yaml），做一致性检查后用 spawn 多进程运行。

- run.n_processes 个 rank，每个 rank 负责一段连续的副本
- 周期性写断点；再次运行时加 --resume 从断点继续
"""

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for p in (ROOT, ROOT / "src"):
    s = str(p)
    if s not in sys.path:
        sys.path.insert(0, s)

from exmc.simulation.parallel import run_parallel
from exmc.utils.config import load_config, validate_config
from exmc.utils.logger import setup_logger, stop_listeners


def main():
    # 1. 读取 YAML 配置并做一致性检查
    cfg = load_config(str(ROOT / "configs" / "exchange_quick.yaml"))
    ok, warnings = validate_config(cfg)
    if not ok:
        for w in warnings:
            print("[config warning]", w)

    if "--resume" in sys.argv[1:]:
        cfg = replace(cfg, run=replace(cfg.run, resume=True))

    # 2. 子进程日志经队列汇总到主进程
    setup_logger("exmc", level=cfg.run.log_level, mp_safe=True)
    try:
        out = run_parallel(cfg)
    finally:
        stop_listeners()

    ex = out["exchange"]
    print("optimized ladder :", [round(b, 4) for b in ex["ladder"]])
    print("upward ratio     :", [round(f, 3) for f in ex["upward_ratio"]])
    print("stage            :", out["stage"])


if __name__ == "__main__":
    main()
