# examples/13_run_with_from_args.py
"""
使用 from_args() + 命令行 --preset / --config / --set / ENV 来驱动副本交换。

    python examples/13_run_with_from_args.py --preset quick --set exchange.pairing=random
    EXMC__run__sweeps=500 python examples/13_run_with_from_args.py --preset standard
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for p in (ROOT, ROOT / "src"):
    s = str(p)
    if s not in sys.path:
        sys.path.insert(0, s)

from exmc.simulation.parallel import run_parallel
from exmc.utils.config import from_args
from exmc.utils.logger import log_config, setup_logger, stop_listeners


def main():
    cfg = from_args()  # 会解析 --preset / --config / --set / ENV 等
    logger = setup_logger("exmc", level=cfg.run.log_level, log_file=cfg.run.log_file, mp_safe=True)
    log_config(cfg.to_dict(), logger)

    try:
        out = run_parallel(cfg)
    finally:
        stop_listeners()
    print("final ladder:", out["ladder"])


if __name__ == "__main__":
    main()
