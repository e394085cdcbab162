# -*- coding: utf-8 -*-
"""
阶段状态机单元测试

覆盖:
- 启用优化：热化 → CALIBRATING(stage 0..max_stages-1) → PRODUCTION，阶段目标按 growth 增长
- continue_stage 严格增大目标（growth 很小时也至少 +1）
- 不优化：热化出口由外部判定；不交换：热化后直接进入生产
- progress / is_finished / 状态往返
"""

import sys
import unittest
from pathlib import Path

SRC_PATH = Path(__file__).resolve().parents[1] / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from exmc.simulation.stages import Phase, StageController


class TestOptimizedSchedule(unittest.TestCase):
    def setUp(self):
        self.st = StageController(sweeps=3, thermalization=2, stage_sweeps=4,
                                  stage_growth=2.0, max_stages=2, optimize=True)

    def test_full_schedule(self):
        st = self.st
        self.assertIs(st.phase, Phase.THERMALIZING)
        st.advance()
        self.assertFalse(st.is_thermalized())
        st.advance()
        self.assertIs(st.phase, Phase.CALIBRATING)
        self.assertTrue(st.is_thermalized())

        for _ in range(4):
            self.assertFalse(st.stage_due())
            st.advance()
        self.assertTrue(st.stage_due())
        st.next_stage()
        self.assertEqual((st.stage, st.stage_target, st.stage_count), (1, 8, 0))

        for _ in range(8):
            st.advance()
        st.next_stage()
        self.assertIs(st.phase, Phase.PRODUCTION)
        self.assertEqual(st.progress(), 0.0)
        for _ in range(3):
            self.assertFalse(st.is_finished())
            st.advance()
        self.assertTrue(st.is_finished())
        self.assertEqual(st.progress(), 1.0)
        self.assertEqual(st.total_sweeps, 2 + 4 + 8 + 3)

    def test_continue_stage_grows_target(self):
        st = self.st
        st.advance()
        st.advance()
        st.continue_stage()
        self.assertEqual(st.stage_target, 8)
        self.assertEqual(st.stage, 0)

    def test_growth_is_strict(self):
        st = StageController(sweeps=1, thermalization=0, stage_sweeps=1,
                             stage_growth=1.01, max_stages=3)
        targets = [st.stage_target]
        for _ in range(5):
            st.continue_stage()
            targets.append(st.stage_target)
        self.assertEqual(targets, [1, 2, 3, 4, 5, 6])

    def test_next_stage_in_production_raises(self):
        st = StageController(sweeps=1, thermalization=0, exchange=False, optimize=False)
        self.assertTrue(st.is_production())
        with self.assertRaises(RuntimeError):
            st.next_stage()
        with self.assertRaises(RuntimeError):
            st.continue_stage()

    def test_state_roundtrip(self):
        st = self.st
        for _ in range(5):
            st.advance()
        other = StageController(sweeps=3, thermalization=2, stage_sweeps=4,
                                stage_growth=2.0, max_stages=2, optimize=True)
        self.assertNotEqual(other, st)
        other.load_state(st.state())
        self.assertEqual(other, st)
        self.assertIs(other.phase, Phase.CALIBRATING)


class TestUnoptimizedSchedule(unittest.TestCase):
    def test_exchange_without_optimization_waits_for_check(self):
        st = StageController(sweeps=2, thermalization=2, optimize=False, exchange=True)
        for _ in range(5):
            st.advance()
        self.assertIs(st.phase, Phase.THERMALIZING)
        self.assertTrue(st.thermalization_due())
        self.assertFalse(st.stage_due())
        st.next_stage()
        self.assertIs(st.phase, Phase.PRODUCTION)

    def test_zero_thermalization_still_requires_check(self):
        st = StageController(sweeps=2, thermalization=0, optimize=False, exchange=True)
        self.assertIs(st.phase, Phase.THERMALIZING)
        self.assertTrue(st.thermalization_due())

    def test_no_exchange_goes_straight_to_production(self):
        st = StageController(sweeps=2, thermalization=1, stage_sweeps=4, max_stages=2,
                             optimize=True, exchange=False)
        self.assertFalse(st.optimize)
        st.advance()
        self.assertIs(st.phase, Phase.PRODUCTION)
        self.assertFalse(st.thermalization_due())

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            StageController(sweeps=-1, thermalization=0)
        with self.assertRaises(ValueError):
            StageController(sweeps=1, thermalization=0, stage_growth=1.0)
        with self.assertRaises(ValueError):
            StageController(sweeps=1, thermalization=0, stage_sweeps=0, max_stages=2, optimize=True)


if __name__ == "__main__":
    unittest.main(verbosity=2)
