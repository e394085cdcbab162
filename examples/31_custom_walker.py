# examples/31_custom_walker.py
"""
自定义 walker：交换核心只通过 Walker 接口与副本交互。

这里用一维双势阱 U(x) = (x^2 - 1)^2 的 Metropolis 随机游走作为副本，
weight parameter 为势能 U，log_weight(U, β) = -β·U。低温下单个 walker 很难越过势垒，
副本交换把高温的越垒事件传递到低温。
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for p in (ROOT, ROOT / "src"):
    s = str(p)
    if s not in sys.path:
        sys.path.insert(0, s)

import numpy as np

from exmc.core.rng import deserialize_rng_state, make_generator, serialize_rng_state
from exmc.core.walkers import Walker
from exmc.simulation.parallel import run_serial
from exmc.utils.config import Config, ExchangeConfig, RunConfig
from exmc.utils.logger import setup_logger


def potential(x: float) -> float:
    return (x * x - 1.0) ** 2


class DoubleWellWalker(Walker):
    def __init__(self, seed: int, step: float = 0.5, moves: int = 20):
        self.rng = make_generator(seed)
        self.x = -1.0
        self.beta = 1.0
        self.step = step
        self.moves = moves
        self.crossings = 0

    def set_control_value(self, value):
        self.beta = float(value)

    def sweep(self):
        for _ in range(self.moves):
            y = self.x + self.rng.uniform(-self.step, self.step)
            d = potential(y) - potential(self.x)
            if d <= 0 or self.rng.random() < np.exp(-self.beta * d):
                if np.sign(y) != np.sign(self.x):
                    self.crossings += 1
                self.x = y

    def weight_parameter(self):
        return potential(self.x)

    @staticmethod
    def log_weight(weight, control_value):
        return -float(control_value) * float(weight)

    def save(self):
        state = {"x": self.x, "beta": self.beta, "crossings": self.crossings,
                 "rng": serialize_rng_state(self.rng.bit_generator.state)}
        return json.dumps(state).encode("utf-8")

    def load(self, payload):
        state = json.loads(bytes(payload).decode("utf-8"))
        self.x = float(state["x"])
        self.beta = float(state["beta"])
        self.crossings = int(state["crossings"])
        self.rng.bit_generator.state = deserialize_rng_state(state["rng"])


def make_walker(replica_id, seed):
    return DoubleWellWalker(seed)


def main():
    setup_logger("exmc", level="INFO")
    cfg = Config(
        exchange=ExchangeConfig(num_replicas=8, beta_min=0.5, beta_max=20.0,
                                pairing="random", optimization="rate",
                                stage_sweeps=200, max_stages=3),
        run=RunConfig(sweeps=3000, thermalization=0, seed=11, progress_interval=1000),
    )
    out = run_serial(cfg, factory=make_walker)
    ex = out["exchange"]
    print("ladder     :", [round(b, 3) for b in ex["ladder"]])
    print("acceptance :", [round(a, 3) for a in ex["acceptance_rate"]])
    print("returnees  :", ex["returnees"])


if __name__ == "__main__":
    main()
