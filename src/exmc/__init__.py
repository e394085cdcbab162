# -*- coding: utf-8 -*-
"""
Parallel Replica-Exchange Monte Carlo Coordinator
=================================================

多进程 / MPI 副本交换（并行回火）协调框架：副本划分、交换判定、往返记账、
阶梯自适应校准（接受率匹配 / 往返反馈）与断点续跑。

快速开始
--------
>>> from exmc.utils.config import get_preset_config
>>> from exmc.simulation.parallel import run_parallel
>>> cfg = get_preset_config("quick")
>>> out = run_parallel(cfg, n_processes=2)
>>> out["exchange"]["acceptance_rate"]

模块组织
--------
- core: 划分、阶梯与优化器、累加器、随机源、walker 接口与参考 Ising walker
- simulation: WorkerState、ExchangeCoordinator、StageController、断点、通信与启动器
- utils: 日志与配置工具
"""

# exmc/__init__.py
from importlib import import_module, util as _import_util
from typing import TYPE_CHECKING

# ---- version ----
try:
    from importlib.metadata import version as _pkg_version, PackageNotFoundError
    __version__ = _pkg_version("exmc")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = [
    "core",
    "simulation",
    "utils",
    "HAS_MPI4PY",
    "__version__",
]

HAS_MPI4PY = _import_util.find_spec("mpi4py") is not None

_lazy_subpackages = {
    "core": ".core",
    "simulation": ".simulation",
    "utils": ".utils",
}

def __getattr__(name: str):
    if name in _lazy_subpackages:
        mod = import_module(_lazy_subpackages[name], __name__)
        globals()[name] = mod  # cache
        return mod
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

def __dir__():
    return sorted(list(__all__))

if TYPE_CHECKING:  # for IDE/static type checkers only
    from . import core, simulation, utils
