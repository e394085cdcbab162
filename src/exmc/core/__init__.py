# -*- coding: utf-8 -*-
"""
核心模块
========

与进程 / 通信无关的纯逻辑部分。

子模块
------
- partition: 副本到进程的连续均衡划分
- ladder: 逆温度阶梯与两种阶梯优化
- accumulators: 交换统计累加器
- rng: 进程级随机源与种子派生
- walkers: Walker 接口与参考 Ising walker
- errors: 错误类型

示例
----
>>> from exmc.core.partition import partition_replicas
>>> partition_replicas(10, 4, 0)
(3, 0)
"""


# exmc/core/__init__.py
from importlib import import_module
from typing import TYPE_CHECKING

__all__ = ["partition", "ladder", "accumulators", "rng", "walkers", "errors"]

_lazy = {
    "partition": ".partition",
    "ladder": ".ladder",          # needs scipy
    "accumulators": ".accumulators",
    "rng": ".rng",
    "walkers": ".walkers",
    "errors": ".errors",
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
    from . import partition, ladder, accumulators, rng, walkers, errors
