# examples/00_quick_start.py
"""
Quick start: 最简单的副本交换示例

- 单进程运行 quick 预设（R=4, L=8），不做阶梯校准
- 打印最终阶梯、各相邻对的接受率与往返次数
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for p in (ROOT, ROOT / "src"):
    s = str(p)
    if s not in sys.path:
        sys.path.insert(0, s)

from exmc.simulation.parallel import run_serial
from exmc.utils.config import get_preset_config
from exmc.utils.logger import setup_logger


def main():
    setup_logger("exmc", level="INFO")
    cfg = get_preset_config("quick")

    out = run_serial(cfg)
    ex = out["exchange"]

    print("\nladder (beta):")
    for p, b in enumerate(ex["ladder"]):
        print(f"  rung {p}: beta = {b:.4f}")
    print("acceptance rate per pair:", [round(a, 3) for a in ex["acceptance_rate"]])
    print("returnees:", ex["returnees"])
    print("final replica -> rung:", out["tid"])


if __name__ == "__main__":
    main()
