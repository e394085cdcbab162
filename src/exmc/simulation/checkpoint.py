# -*- coding: utf-8 -*-
"""
    断点（checkpoint）编解码

    每个进程一个 HDF5 文件（<base>.rank0000.h5），字段按固定逻辑顺序写入，顺序记录在根属性 `layout`:

        ladder        阶梯数值
        stage         阶段状态（phase / stage / 目标 / 计数，JSON 属性）
        local_tid     本进程各副本的 rung
        coordinator   [仅 rank 0] tid / wid / 方向标签 / returnee / weight 累加器 / 交换统计
        rng           进程随机源状态（JSON 属性）
        payloads      每个本地 walker 的不透明字节串（vlen uint8）

    加载时拒绝：副本数不符、本地切片大小不符、coordinator 段的有无与角色不符、
    tid / wid 不互逆、方向标签或累加器形状不符、payload 数量不符（CheckpointError）。
    检查全部在修改 engine 之前完成；被拒绝的 checkpoint 不改变 engine 的任何状态。
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import h5py
import numpy as np

from ..core.errors import CheckpointError
from ..core.ladder import TemperatureLadder
from ..core.rng import RandomSource

if TYPE_CHECKING:
    from .engine import ExchangeEngine

logger = logging.getLogger(__name__)

__all__ = ["CheckpointRecord", "CheckpointCodec", "rank_checkpoint_path", "LAYOUT"]

FORMAT_VERSION = 1
LAYOUT = ("ladder", "stage", "local_tid", "coordinator", "rng", "payloads")

_COORD_ARRAYS = (
    "tid", "wid", "labels", "weight_sums", "weight_counts",
    "acceptance", "upward", "downward", "inverse_round_trip",
)
_COORD_SCALARS = ("returnees", "exchange_count")


def rank_checkpoint_path(base: str, rank: int) -> str:
    return f"{base}.rank{int(rank):04d}.h5"


@dataclass(eq=False)
class CheckpointRecord:
    num_replicas: int
    rank: int
    num_processes: int
    ladder: np.ndarray
    stage: Dict[str, Any]
    local_tid: np.ndarray
    coordinator: Optional[Dict[str, Any]]
    rng: Dict[str, Any]
    payloads: List[bytes] = field(default_factory=list)


class CheckpointCodec:
    """engine 状态 <-> CheckpointRecord <-> HDF5 文件。"""

    # ---- 内存 ----
    @staticmethod
    def encode(engine: "ExchangeEngine") -> CheckpointRecord:
        coord = engine.coordinator
        return CheckpointRecord(
            num_replicas=engine.num_replicas,
            rank=engine.transport.rank,
            num_processes=engine.transport.size,
            ladder=np.array(engine.ladder.values, dtype=float),
            stage=engine.stages.state(),
            local_tid=engine.worker.tids,
            coordinator=None if coord is None else coord.state(),
            rng=engine.rng.get_state(),
            payloads=[bytes(w.save()) for w in engine.worker.walkers],
        )

    @staticmethod
    def validate(record: CheckpointRecord, engine: "ExchangeEngine") -> Dict[str, Any]:
        """
        完整检查 record 与 engine 的相容性，不修改 engine。
        返回 apply() 直接赋值用的已解析部件；任何问题都抛出 CheckpointError。
        """
        if record.num_replicas != engine.num_replicas:
            raise CheckpointError(
                f"checkpoint has {record.num_replicas} replicas, run is configured with {engine.num_replicas}"
            )
        n_local = engine.worker.local_count
        if np.asarray(record.local_tid).size != n_local:
            raise CheckpointError(
                f"checkpoint local slice has {np.asarray(record.local_tid).size} replicas, "
                f"process {engine.transport.rank} owns {n_local}"
            )
        if len(record.payloads) != n_local:
            raise CheckpointError(f"checkpoint has {len(record.payloads)} walker payloads, expected {n_local}")
        if np.asarray(record.ladder).size != engine.num_replicas:
            raise CheckpointError("checkpoint ladder length does not match the number of replicas")
        is_coord = engine.coordinator is not None
        if is_coord and record.coordinator is None:
            raise CheckpointError("coordinator process loaded a checkpoint without coordinator section")
        if not is_coord and record.coordinator is not None:
            raise CheckpointError("non-coordinator process loaded a checkpoint with coordinator section")

        try:
            ladder = TemperatureLadder(record.ladder)
        except ValueError as exc:
            raise CheckpointError(f"checkpoint ladder is invalid: {exc}") from exc

        stages = copy.copy(engine.stages)
        try:
            stages.load_state(record.stage)
        except (KeyError, TypeError, ValueError) as exc:
            raise CheckpointError(f"checkpoint stage section is invalid: {exc!r}") from exc

        try:
            RandomSource(0).set_state(record.rng)
        except (KeyError, TypeError, ValueError) as exc:
            raise CheckpointError(f"checkpoint rng section is invalid: {exc!r}") from exc

        try:
            local_tid = engine.worker.validate_assignment(record.local_tid)
        except ValueError as exc:
            raise CheckpointError(f"checkpoint local tid slice is invalid: {exc}") from exc

        coordinator = None
        if is_coord:
            try:
                coordinator = engine.coordinator.parse_state(record.coordinator)
            except (RuntimeError, ValueError) as exc:
                raise CheckpointError(f"checkpoint coordinator section is inconsistent: {exc}") from exc
            off = engine.worker.offset
            if not np.array_equal(coordinator["tid"][off:off + n_local], local_tid):
                raise CheckpointError("checkpoint local tid slice disagrees with the global tid table")

        return {"ladder": ladder, "stages": stages, "local_tid": local_tid, "coordinator": coordinator}

    @classmethod
    def apply(cls, record: CheckpointRecord, engine: "ExchangeEngine") -> None:
        """全部检查通过后才修改 engine；walker 载入失败时恢复原状态。"""
        prepared = cls.validate(record, engine)

        walkers = engine.worker.walkers
        backups = [bytes(w.save()) for w in walkers]
        try:
            for w, payload in zip(walkers, record.payloads):
                w.load(payload)
        except Exception as exc:
            for w, payload in zip(walkers, backups):
                w.load(payload)
            raise CheckpointError(f"checkpoint walker payload rejected: {exc!r}") from exc

        engine.ladder = prepared["ladder"]
        engine.stages = prepared["stages"]
        engine.worker.apply_new_assignment(prepared["local_tid"])
        if engine.coordinator is not None:
            engine.coordinator.ladder = prepared["ladder"]
            engine.coordinator.apply_state(prepared["coordinator"])
        # coordinator 持有同一个随机源对象，只替换其状态
        engine.rng.set_state(record.rng)

    # ---- 文件 ----
    @staticmethod
    def write(record: CheckpointRecord, path: str) -> str:
        """原子写入（先写临时文件再 os.replace）。"""
        d = os.path.dirname(os.path.abspath(path))
        os.makedirs(d, exist_ok=True)
        tmp = path + ".tmp"
        with h5py.File(tmp, "w") as f:
            f.attrs["format_version"] = FORMAT_VERSION
            f.attrs["layout"] = json.dumps(list(LAYOUT))
            f.attrs["num_replicas"] = int(record.num_replicas)
            f.attrs["rank"] = int(record.rank)
            f.attrs["num_processes"] = int(record.num_processes)

            f.create_dataset("ladder", data=np.asarray(record.ladder, dtype=float))
            f.attrs["stage"] = json.dumps(record.stage)
            f.create_dataset("local_tid", data=np.asarray(record.local_tid, dtype=np.int64))
            if record.coordinator is not None:
                g = f.create_group("coordinator")
                for key in _COORD_ARRAYS:
                    g.create_dataset(key, data=np.asarray(record.coordinator[key]))
                for key in _COORD_SCALARS:
                    g.attrs[key] = int(record.coordinator[key])
            f.attrs["rng"] = json.dumps(record.rng)

            dt = h5py.vlen_dtype(np.dtype("uint8"))
            ds = f.create_dataset("payloads", (len(record.payloads),), dtype=dt)
            for i, p in enumerate(record.payloads):
                ds[i] = np.frombuffer(p, dtype=np.uint8)
            f.flush()
        os.replace(tmp, path)
        logger.debug("checkpoint written: %s", path)
        return path

    @staticmethod
    def read(path: str) -> CheckpointRecord:
        try:
            with h5py.File(path, "r") as f:
                layout = json.loads(f.attrs["layout"])
                if tuple(layout) != LAYOUT:
                    raise CheckpointError(f"{path}: unexpected checkpoint layout {layout}")
                coordinator = None
                if "coordinator" in f:
                    g = f["coordinator"]
                    coordinator = {key: np.asarray(g[key][()]) for key in _COORD_ARRAYS}
                    for key in _COORD_SCALARS:
                        coordinator[key] = int(g.attrs[key])
                payloads = [np.asarray(p, dtype=np.uint8).tobytes() for p in f["payloads"][()]]
                return CheckpointRecord(
                    num_replicas=int(f.attrs["num_replicas"]),
                    rank=int(f.attrs["rank"]),
                    num_processes=int(f.attrs["num_processes"]),
                    ladder=np.asarray(f["ladder"][()], dtype=float),
                    stage=json.loads(f.attrs["stage"]),
                    local_tid=np.asarray(f["local_tid"][()], dtype=np.int64),
                    coordinator=coordinator,
                    rng=json.loads(f.attrs["rng"]),
                    payloads=payloads,
                )
        except (OSError, KeyError) as exc:
            raise CheckpointError(f"cannot read checkpoint {path}: {exc}") from exc
