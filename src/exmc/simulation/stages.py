# -*- coding: utf-8 -*-
"""
    校准阶段状态机（StageController）

    THERMALIZING → CALIBRATING(stage = 0, 1, ...) → PRODUCTION

    - 启用优化：先热化 `thermalization` 个 sweep（可为 0），进入 CALIBRATING；
      next_stage() 使 stage+1、阶段计数清零、阶段目标乘以 stage_growth；
      完成 max_stages 个阶段后进入 PRODUCTION。continue_stage() 只放大当前阶段目标。
    - 不启用优化：停留在 THERMALIZING，直到 coordinator 判定热化条件满足（next_stage() → PRODUCTION）；
      continue_stage() 放大热化目标。
    - 完全不做交换：热化 `thermalization` 个 sweep 后进入 PRODUCTION。

    每个进程持有一个镜像；镜像只通过 advance() 与广播下来的两个布尔量改变，因此各进程保持一致。
"""

from __future__ import annotations

import enum
import logging
import math
from typing import Any, Dict

logger = logging.getLogger(__name__)

__all__ = ["Phase", "StageController"]


class Phase(str, enum.Enum):
    THERMALIZING = "thermalizing"
    CALIBRATING = "calibrating"
    PRODUCTION = "production"


class StageController:
    def __init__(
        self,
        sweeps: int,
        thermalization: int,
        stage_sweeps: int = 0,
        stage_growth: float = 2.0,
        max_stages: int = 0,
        optimize: bool = True,
        exchange: bool = True,
    ) -> None:
        if sweeps < 0 or thermalization < 0:
            raise ValueError("sweeps and thermalization must be non-negative")
        if stage_growth <= 1.0:
            raise ValueError(f"stage_growth must be > 1, got {stage_growth}")
        self.sweeps = int(sweeps)
        self.stage_growth = float(stage_growth)
        self.max_stages = int(max_stages)
        self.optimize = bool(optimize) and bool(exchange)
        self.exchange = bool(exchange)
        if self.optimize and (stage_sweeps <= 0 or max_stages <= 0):
            raise ValueError("optimization requires stage_sweeps > 0 and max_stages > 0")

        self.phase = Phase.THERMALIZING
        self.stage = 0
        self.stage_target = int(stage_sweeps)
        self.stage_count = 0
        self.thermalization_target = int(thermalization)
        self.thermalization_count = 0
        self.production_count = 0
        self.total_sweeps = 0

        if self.thermalization_target == 0 and (self.optimize or not self.exchange):
            self._leave_thermalization()

    # ---- 推进 ----
    def advance(self) -> None:
        """每个 sweep 之后调用一次。"""
        self.total_sweeps += 1
        if self.phase is Phase.THERMALIZING:
            self.thermalization_count += 1
            # 不优化时的热化出口由 coordinator 判定
            if (self.optimize or not self.exchange) and self.thermalization_count >= self.thermalization_target:
                self._leave_thermalization()
        elif self.phase is Phase.CALIBRATING:
            self.stage_count += 1
        else:
            self.production_count += 1

    def _leave_thermalization(self) -> None:
        self.phase = Phase.CALIBRATING if self.optimize else Phase.PRODUCTION
        logger.debug("thermalization done after %d sweeps -> %s", self.thermalization_count, self.phase.value)

    def next_stage(self) -> None:
        if self.phase is Phase.THERMALIZING:
            self.phase = Phase.PRODUCTION
            return
        if self.phase is not Phase.CALIBRATING:
            raise RuntimeError(f"next_stage() called in phase {self.phase.value}")
        self.stage += 1
        self.stage_count = 0
        self.stage_target = self._grown(self.stage_target)
        if self.stage >= self.max_stages:
            self.phase = Phase.PRODUCTION

    def continue_stage(self) -> None:
        if self.phase is Phase.THERMALIZING:
            self.thermalization_target = self._grown(self.thermalization_target)
        elif self.phase is Phase.CALIBRATING:
            self.stage_target = self._grown(self.stage_target)
        else:
            raise RuntimeError("continue_stage() called in production phase")

    def _grown(self, target: int) -> int:
        # 严格增大
        return max(int(math.ceil(target * self.stage_growth)), int(target) + 1)

    # ---- 判定 ----
    def stage_due(self) -> bool:
        return self.phase is Phase.CALIBRATING and self.stage_count >= self.stage_target

    def thermalization_due(self) -> bool:
        return (
            self.phase is Phase.THERMALIZING
            and not self.optimize
            and self.thermalization_count >= self.thermalization_target
        )

    def is_thermalized(self) -> bool:
        return self.phase is not Phase.THERMALIZING

    def is_production(self) -> bool:
        return self.phase is Phase.PRODUCTION

    def is_finished(self) -> bool:
        return self.phase is Phase.PRODUCTION and self.production_count >= self.sweeps

    def progress(self) -> float:
        if self.phase is not Phase.PRODUCTION:
            return 0.0
        if self.sweeps == 0:
            return 1.0
        return min(1.0, self.production_count / float(self.sweeps))

    # ---- checkpoint ----
    def state(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "stage": self.stage,
            "stage_target": self.stage_target,
            "stage_count": self.stage_count,
            "thermalization_target": self.thermalization_target,
            "thermalization_count": self.thermalization_count,
            "production_count": self.production_count,
            "total_sweeps": self.total_sweeps,
        }

    def load_state(self, state: Dict[str, Any]) -> None:
        self.phase = Phase(state["phase"])
        for key in ("stage", "stage_target", "stage_count", "thermalization_target",
                    "thermalization_count", "production_count", "total_sweeps"):
            setattr(self, key, int(state[key]))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StageController):
            return NotImplemented
        return self.state() == other.state()

    def __repr__(self) -> str:
        s = self.state()
        return "StageController(" + ", ".join(f"{k}={v}" for k, v in s.items()) + ")"
