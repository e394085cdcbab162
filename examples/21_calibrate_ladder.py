# examples/21_calibrate_ladder.py
"""
比较两种阶梯校准方式（单进程，小系统）:

- rate       : 接受率匹配，每个阶段都推进
- round_trip : 往返流反馈，往返不足时自动延长阶段

输出每种方式的最终阶梯、接受率与上行比例。
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

from exmc.simulation.parallel import run_serial
from exmc.utils.config import get_preset_config
from exmc.utils.logger import format_vector, setup_logger


def main():
    setup_logger("exmc", level="INFO")
    base = get_preset_config("calibrate")
    base = replace(
        base,
        exchange=replace(base.exchange, num_replicas=10, stage_sweeps=200, max_stages=4),
        model=replace(base.model, L=8),
        run=replace(base.run, sweeps=2000, seed=7, progress_interval=0),
    )

    for method in ("rate", "round_trip"):
        cfg = replace(base, exchange=replace(base.exchange, optimization=method))
        out = run_serial(cfg)
        ex = out["exchange"]
        print(f"\n== {method} ==")
        print("ladder     :", format_vector(ex["ladder"]))
        print("acceptance :", format_vector(ex["acceptance_rate"]))
        print("upward     :", format_vector(ex["upward_ratio"]))
        print("stages     :", out["stage"]["stage"], "| total sweeps:", out["stage"]["total_sweeps"])


if __name__ == "__main__":
    main()
