# -*- coding: utf-8 -*-
"""
模拟层
======

副本交换的分布式部分：本地副本、交换协调者、阶段状态机、断点、通信与启动器。

子模块
------
- worker: 进程本地副本集合
- coordinator: rank 0 上的交换协调者与配对 / 优化策略
- stages: 校准阶段状态机
- checkpoint: 断点编解码（HDF5，每进程一个文件）
- transport: 集体通信（串行 / 队列 / MPI）
- engine: 单进程驱动（sweep + 交换循环）
- parallel: spawn / MPI 启动器与命令行入口

示例
----
>>> from exmc.utils.config import get_preset_config
>>> from exmc.simulation.parallel import run_serial
>>> out = run_serial(get_preset_config("quick"))
"""

# exmc/simulation/__init__.py
from importlib import import_module
from typing import TYPE_CHECKING

__all__ = ["worker", "coordinator", "stages", "checkpoint", "transport", "engine", "parallel"]

_lazy = {
    "worker": ".worker",
    "coordinator": ".coordinator",
    "stages": ".stages",
    "checkpoint": ".checkpoint",    # needs h5py
    "transport": ".transport",      # MPITransport needs mpi4py (imported on use)
    "engine": ".engine",
    "parallel": ".parallel",
}

def __getattr__(name: str):
    if name in _lazy:
        mod = import_module(_lazy[name], __name__)
        globals()[name] = mod
        return mod
    raise AttributeError(f"{__name__} has no attribute {name!r}")

def __dir__():
    return sorted(list(__all__))

if TYPE_CHECKING:
    from . import worker, coordinator, stages, checkpoint, transport, engine, parallel
