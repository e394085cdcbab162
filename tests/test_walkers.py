# -*- coding: utf-8 -*-
"""
Ising walker 与本地副本集合测试

覆盖:
- energy_total 的已知值（全同向、棋盘反铁磁、外场项）
- sweep 后缓存能量与重算一致；低温从全同向出发保持有序；β=0 时接受全部翻转
- save/load 之后继续 sweep 的轨迹逐点一致；尺寸不符的 payload 被拒绝
- WorkerState：种子与进程数无关、控制参数按 tid 设置、非法分配被拒绝且原分配不变
- 新分配之后不再返回旧 sweep 缓存的 weight parameter
"""

import sys
import unittest
from pathlib import Path

import numpy as np

SRC_PATH = Path(__file__).resolve().parents[1] / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from exmc.core.ladder import TemperatureLadder
from exmc.core.walkers import IsingWalker, IsingWalkerFactory, energy_total
from exmc.simulation.worker import WorkerState


class TestEnergy(unittest.TestCase):
    def test_known_values(self):
        L = 4
        up = np.ones((L, L), dtype=np.int8)
        self.assertEqual(energy_total(up), -2.0 * L * L)
        self.assertEqual(energy_total(up, h=0.5), -2.0 * L * L - 0.5 * L * L)
        ii, jj = np.indices((L, L))
        checker = np.where((ii + jj) % 2 == 0, 1, -1).astype(np.int8)
        self.assertEqual(energy_total(checker), 2.0 * L * L)

    def test_empty_lattice_raises(self):
        with self.assertRaises(ValueError):
            energy_total(np.zeros((0, 0)))


class TestIsingWalker(unittest.TestCase):
    def test_odd_size_rejected(self):
        with self.assertRaises(ValueError):
            IsingWalker(5)
        with self.assertRaises(ValueError):
            IsingWalker(4, init="stripes")

    def test_cached_energy_matches_lattice(self):
        w = IsingWalker(8, h=0.1, seed=3)
        w.set_control_value(0.4)
        for _ in range(10):
            w.sweep()
            self.assertAlmostEqual(w.weight_parameter(), energy_total(w.lattice, 0.1))
        self.assertEqual(w.attempts, 10 * 64)

    def test_cold_ordered_state_stays_ordered(self):
        w = IsingWalker(8, seed=1, init="up")
        w.set_control_value(10.0)
        for _ in range(5):
            w.sweep()
        self.assertEqual(w.magnetization(), 1.0)
        self.assertEqual(w.weight_parameter(), -128.0)

    def test_infinite_temperature_flips_everything(self):
        w = IsingWalker(4, seed=1, init="up")
        w.set_control_value(0.0)
        w.sweep()
        # 两个子格依次全翻
        self.assertEqual(w.magnetization(), -1.0)
        self.assertEqual(w.accepted, 16)

    def test_log_weight(self):
        self.assertEqual(IsingWalker.log_weight(-10.0, 0.5), 5.0)

    def test_save_load_continues_identically(self):
        a = IsingWalker(6, seed=9)
        a.set_control_value(0.35)
        for _ in range(3):
            a.sweep()
        payload = a.save()
        self.assertIsInstance(payload, bytes)

        b = IsingWalker(6, seed=123)
        b.load(payload)
        np.testing.assert_array_equal(a.lattice, b.lattice)
        self.assertEqual(b.beta, 0.35)
        for _ in range(4):
            a.sweep()
            b.sweep()
        np.testing.assert_array_equal(a.lattice, b.lattice)
        self.assertEqual(a.weight_parameter(), b.weight_parameter())

    def test_load_rejects_other_size(self):
        payload = IsingWalker(4, seed=1).save()
        with self.assertRaises(ValueError):
            IsingWalker(6, seed=1).load(payload)


class TestWorkerState(unittest.TestCase):
    def setUp(self):
        self.factory = IsingWalkerFactory(4, init="random")
        self.ladder = TemperatureLadder.linear(0.2, 0.5, 5)

    def test_seeds_do_not_depend_on_process_count(self):
        whole = WorkerState.build(self.factory, 5, 1, 0, master_seed=77)
        part = WorkerState.build(self.factory, 5, 2, 1, master_seed=77)
        self.assertEqual(part.offset, 3)
        self.assertEqual(part.replica_ids, [3, 4])
        for i, r in enumerate(part.replica_ids):
            np.testing.assert_array_equal(part.walkers[i].lattice, whole.walkers[r].lattice)

    def test_advance_uses_assigned_rungs(self):
        ws = WorkerState.build(self.factory, 5, 2, 0, master_seed=1)
        self.assertEqual(ws.tids.tolist(), [0, 1, 2])
        ws.apply_new_assignment([4, 0, 2])
        ws.advance_one_sweep(self.ladder)
        self.assertEqual([w.beta for w in ws.walkers], [self.ladder[4], self.ladder[0], self.ladder[2]])
        self.assertEqual(ws.control_index(0), 4)
        weights = ws.collect_local_weights()
        self.assertEqual(weights, [w.weight_parameter() for w in ws.walkers])

    def test_weights_available_before_first_sweep(self):
        ws = WorkerState.build(self.factory, 3, 1, 0, master_seed=1)
        self.assertEqual(len(ws.collect_local_weights()), 3)

    def test_invalid_assignment_leaves_state_untouched(self):
        ws = WorkerState.build(self.factory, 5, 2, 0, master_seed=1)
        for bad in ([0, 0, 1], [0, 1], [0, 1, 5], [-1, 0, 1]):
            with self.assertRaises(ValueError):
                ws.apply_new_assignment(bad)
            self.assertEqual(ws.tids.tolist(), [0, 1, 2])

    def test_new_assignment_drops_cached_weights(self):
        ws = WorkerState.build(self.factory, 3, 1, 0, master_seed=1)
        ws.advance_one_sweep(self.ladder)
        donor = IsingWalker(4, init="up")
        ii, jj = np.indices((4, 4))
        donor.lattice = np.where((ii + jj) % 2 == 0, 1, -1).astype(np.int8)
        ws.walkers[0].load(donor.save())

        ws.apply_new_assignment(ws.tids)
        weights = ws.collect_local_weights()
        self.assertEqual(weights[0], 32.0)
        self.assertEqual(weights, [w.weight_parameter() for w in ws.walkers])

    def test_validate_assignment_does_not_apply(self):
        ws = WorkerState.build(self.factory, 5, 2, 0, master_seed=1)
        checked = ws.validate_assignment([2, 0, 1])
        self.assertEqual(checked.tolist(), [2, 0, 1])
        self.assertEqual(ws.tids.tolist(), [0, 1, 2])

    def test_tids_property_is_a_copy(self):
        ws = WorkerState.build(self.factory, 3, 1, 0, master_seed=1)
        t = ws.tids
        t[0] = 2
        self.assertEqual(ws.control_index(0), 0)

    def test_block_must_fit(self):
        with self.assertRaises(ValueError):
            WorkerState([IsingWalker(4)] * 2, offset=2, num_replicas=3)


if __name__ == "__main__":
    unittest.main(verbosity=2)
