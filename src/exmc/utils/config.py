# -*- coding: utf-8 -*-
"""
统一配置管理系统（预设、分层覆盖、构造期硬校验）

实现功能：
    - 三个配置块：exchange（阶梯 / 交换 / 校准）、model（参考 Ising walker）、run（sweep 数 / 种子 / 进程 / 断点）
    - 构造期硬约束（__post_init__，违反即抛 ConfigurationError）：
         num_replicas >= 2；显式 betas 长度等于 num_replicas 且严格单调
         pairing ∈ {alternating, random}；optimization ∈ {none, rate, round_trip}
         优化需要 stage_sweeps > 0、max_stages > 0、stage_growth > 1
         棋盘 Metropolis ⇒ L 为偶数
    - 完整验证函数 validate_config() 返回 (ok, issues) 列表（跨块一致性，仅提示）
    - YAML / JSON 读写，预设，环境变量（EXMC__exchange__num_replicas=32），argparse --set

注意：
    合并优先级：默认/预设 < 文件 < 环境变量 < CLI --set
"""

from __future__ import annotations

import os
import sys
import json
import ast
import copy
import logging
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple

import yaml

from ..core.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    'Config', 'ExchangeConfig', 'ModelConfig', 'RunConfig',
    'load_config', 'save_config', 'get_preset_config',
    'load_from_env', 'merge_configs', 'validate_config', 'from_args'
]

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
_PAIRINGS = ('alternating', 'random')
_OPTIMIZATIONS = ('none', 'rate', 'round_trip')
_SPACINGS = ('geom', 'linear')
_PRESETS = ('quick', 'standard', 'calibrate')

def _to_serializable(obj: Any):
    """将对象递归转换为 JSON/YAML 友好格式。"""
    import numpy as _np

    if isinstance(obj, (tuple, list)):
        return [_to_serializable(v) for v in obj]
    if isinstance(obj, dict):
        return {k: _to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, _np.generic):
        return obj.item()
    if isinstance(obj, _np.ndarray):
        return obj.tolist()
    return obj

def _deep_merge(d1: Dict[str, Any], d2: Dict[str, Any]) -> Dict[str, Any]:
    """将 d2 深度合并到 d1（原地修改 d1 并返回它）。"""
    for k, v in (d2 or {}).items():
        if k in d1 and isinstance(d1[k], dict) and isinstance(v, dict):
            _deep_merge(d1[k], v)
        else:
            d1[k] = v
    return d1

def _set_by_path(d: Dict[str, Any], path: List[str], value: Any):
    """按照 path（list）在嵌套 dict 中设置 value。"""
    cur = d
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value

def _parse_env_value(s: str):
    """将环境变量字符串解析为 Python 值（literal_eval 优先，兼容 true/false/none）。"""
    if s is None:
        return None
    try:
        return ast.literal_eval(s)
    except (ValueError, SyntaxError):
        sl = s.strip()
        sl_l = sl.lower()
        if sl_l == 'true':
            return True
        if sl_l == 'false':
            return False
        if sl_l in ('none', 'null'):
            return None
        return sl

def _check_non_negative_int(obj: Any, names: Tuple[str, ...]):
    for name in names:
        v = getattr(obj, name)
        if isinstance(v, bool) or not (isinstance(v, int) and v >= 0):
            raise ConfigurationError(f"{name} must be a non-negative integer (got {v!r})")

# -----------------------------------------------------------------------------
# Dataclasses
# -----------------------------------------------------------------------------
@dataclass
class ExchangeConfig:
    # 阶梯（逆温度；rung 0 为往返锚点端）
    num_replicas: int = 16
    beta_min: float = 0.2
    beta_max: float = 0.6
    spacing: str = 'geom'                 # 'geom' | 'linear'
    betas: Optional[List[float]] = None   # 显式阶梯，优先于 beta_min/beta_max

    # 交换
    exchange: bool = True
    interval: int = 1                     # 每 interval 个 sweep 交换一次
    pairing: str = 'alternating'          # 'alternating' | 'random'

    # 校准
    optimization: str = 'none'            # 'none' | 'rate' | 'round_trip'
    stage_sweeps: int = 256
    stage_growth: float = 2.0
    max_stages: int = 4
    rate_damping: float = 0.5
    round_trip_tolerance: float = 0.05

    def __post_init__(self):
        _check_non_negative_int(self, ('num_replicas', 'interval', 'stage_sweeps', 'max_stages'))
        if self.num_replicas < 2:
            raise ConfigurationError(f"num_replicas must be >= 2, got {self.num_replicas}")
        if self.interval < 1:
            raise ConfigurationError("interval must be >= 1")
        if self.spacing not in _SPACINGS:
            raise ConfigurationError(f"spacing must be one of {_SPACINGS}, got {self.spacing!r}")
        if self.pairing not in _PAIRINGS:
            raise ConfigurationError(f"pairing must be one of {_PAIRINGS}, got {self.pairing!r}")
        if self.optimization not in _OPTIMIZATIONS:
            raise ConfigurationError(f"optimization must be one of {_OPTIMIZATIONS}, got {self.optimization!r}")
        if self.betas is not None:
            self.betas = [float(b) for b in self.betas]
            if len(self.betas) != self.num_replicas:
                raise ConfigurationError(
                    f"betas length ({len(self.betas)}) must match num_replicas ({self.num_replicas})"
                )
        elif float(self.beta_min) == float(self.beta_max):
            raise ConfigurationError("beta_min and beta_max must differ")
        if self.spacing == 'geom' and self.betas is None and not (self.beta_min > 0 and self.beta_max > 0):
            raise ConfigurationError("geometric spacing requires positive beta_min/beta_max")
        if self.optimization != 'none':
            if self.stage_sweeps <= 0 or self.max_stages <= 0:
                raise ConfigurationError("optimization requires stage_sweeps > 0 and max_stages > 0")
        if not float(self.stage_growth) > 1.0:
            raise ConfigurationError(f"stage_growth must be > 1, got {self.stage_growth}")
        if not (0.0 < float(self.rate_damping) <= 1.0):
            raise ConfigurationError("rate_damping must be in (0, 1]")
        if float(self.round_trip_tolerance) < 0.0:
            raise ConfigurationError("round_trip_tolerance cannot be negative")

@dataclass
class ModelConfig:
    L: int = 16
    h: float = 0.0
    init: str = 'random'   # 'random' | 'up'

    def __post_init__(self):
        if isinstance(self.L, bool) or not (isinstance(self.L, int) and self.L > 0):
            raise ConfigurationError(f"L must be a positive integer, got {self.L!r}")
        # 棋盘 Metropolis ⇒ L 必须为偶数
        if self.L % 2 == 1:
            raise ConfigurationError(f"checkerboard Metropolis requires an EVEN L, got L={self.L}")
        if self.init not in ('random', 'up'):
            raise ConfigurationError("init must be 'random' or 'up'")

@dataclass
class RunConfig:
    sweeps: int = 10000
    thermalization: int = 1000
    seed: Optional[int] = None
    n_processes: int = 1

    # 断点：base 路径（每进程一个 <base>.rankNNNN.h5）
    checkpoint: Optional[str] = None
    checkpoint_interval: int = 0          # 0 = 仅在结束时保存
    resume: bool = False

    # 日志
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    progress_interval: int = 1000

    def __post_init__(self):
        _check_non_negative_int(self, ('sweeps', 'thermalization', 'checkpoint_interval', 'progress_interval'))
        if isinstance(self.n_processes, bool) or not (isinstance(self.n_processes, int) and self.n_processes > 0):
            raise ConfigurationError("n_processes must be a positive int")
        if self.seed is not None:
            self.seed = int(self.seed)
        if self.resume and not self.checkpoint:
            raise ConfigurationError("resume=True requires a checkpoint path")

@dataclass
class Config:
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    run: RunConfig = field(default_factory=RunConfig)

    project_name: str = 'exmc'
    verbose: bool = True
    debug: bool = False
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'exchange': asdict(self.exchange),
            'model': asdict(self.model),
            'run': asdict(self.run),
            'project_name': self.project_name,
            'verbose': self.verbose,
            'debug': self.debug,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'Config':
        d = d or {}
        return cls(
            exchange=ExchangeConfig(**(d.get('exchange', {}) or {})),
            model=ModelConfig(**(d.get('model', {}) or {})),
            run=RunConfig(**(d.get('run', {}) or {})),
            project_name=d.get('project_name', 'exmc'),
            verbose=bool(d.get('verbose', True)),
            debug=bool(d.get('debug', False)),
            version=int(d.get('version', 1)),
        )

# -----------------------------------------------------------------------------
# I/O
# -----------------------------------------------------------------------------
def load_config(filepath: str) -> Config:
    """从 YAML 或 JSON 文件加载配置并返回 Config 对象。"""
    p = Path(filepath)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {filepath}")
    suf = p.suffix.lower()
    if suf in ('.yaml', '.yml'):
        with open(p, 'r', encoding='utf-8') as f:
            cfg = yaml.safe_load(f) or {}
    elif suf == '.json':
        with open(p, 'r', encoding='utf-8') as f:
            cfg = json.load(f) or {}
    else:
        raise ValueError(f"Unsupported config file extension: {suf}")
    return Config.from_dict(cfg)

def save_config(config: Config, filepath: str, format: Optional[str] = None):
    """将 Config 保存为 YAML 或 JSON。默认根据后缀判断格式。"""
    p = Path(filepath)
    p.parent.mkdir(parents=True, exist_ok=True)
    data = _to_serializable(config.to_dict())
    fmt = format
    if fmt is None:
        fmt = 'json' if p.suffix.lower() == '.json' else 'yaml'

    if fmt == 'yaml':
        with open(p, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)
    elif fmt == 'json':
        with open(p, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
    else:
        raise ValueError(f"Unsupported format: {fmt}")
    logger.info("Config saved: %s", p)

# -----------------------------------------------------------------------------
# Presets
# -----------------------------------------------------------------------------
def get_preset_config(name: str) -> Config:
    """返回内置预设配置的副本（deepcopy）。"""
    presets: Dict[str, Config] = {
        'quick': Config(
            exchange=ExchangeConfig(num_replicas=4, beta_min=0.25, beta_max=0.5),
            model=ModelConfig(L=8),
            run=RunConfig(sweeps=200, thermalization=50, seed=1234, progress_interval=50),
        ),
        'standard': Config(
            exchange=ExchangeConfig(num_replicas=16, beta_min=0.3, beta_max=0.55, pairing='alternating'),
            model=ModelConfig(L=32),
            run=RunConfig(sweeps=20000, thermalization=2000),
        ),
        'calibrate': Config(
            exchange=ExchangeConfig(
                num_replicas=16, beta_min=0.3, beta_max=0.55,
                optimization='round_trip', stage_sweeps=512, max_stages=6,
            ),
            model=ModelConfig(L=16),
            run=RunConfig(sweeps=20000, thermalization=0),
        ),
    }
    if name not in presets:
        raise ValueError(f"Unknown preset: {name}. Available: {list(presets.keys())}")
    return copy.deepcopy(presets[name])

# -----------------------------------------------------------------------------
# Environment variables (nested via sep, e.g., EXMC__exchange__num_replicas=32)
# -----------------------------------------------------------------------------
def load_from_env(prefix: str = 'EXMC', sep: str = '__') -> Dict[str, Any]:
    """
    从环境变量读取以 prefix 开头、用 sep 分层的键，返回嵌套 dict。
    例： EXMC__exchange__num_replicas=32  → {'exchange': {'num_replicas': 32}}
    """
    out: Dict[str, Any] = {}
    pfx = prefix + sep
    for k, v in os.environ.items():
        if not k.startswith(pfx):
            continue
        parts = [p for p in k[len(pfx):].split(sep) if p]
        if not parts:
            continue
        _set_by_path(out, parts, _parse_env_value(v))
    return out

# -----------------------------------------------------------------------------
# Merge & validate
# -----------------------------------------------------------------------------
def merge_configs(base: Config, override: Dict[str, Any]) -> Config:
    """将 override（nested dict）深度合并到 base Config 的字典表示上，并返回新的 Config。"""
    base_dict = base.to_dict()
    _deep_merge(base_dict, override or {})
    return Config.from_dict(base_dict)

def validate_config(cfg: Config) -> Tuple[bool, List[str]]:
    """
    跨块一致性检查（仅返回 issues，不抛错；构造阶段的硬约束已在 __post_init__ 完成）。
    """
    issues: List[str] = []
    ex, run = cfg.exchange, cfg.run

    if ex.num_replicas < run.n_processes:
        issues.append(
            f"exchange.num_replicas ({ex.num_replicas}) < run.n_processes ({run.n_processes}) "
            "-- every process needs at least one replica"
        )
    if not ex.exchange and ex.optimization != 'none':
        issues.append("exchange.exchange=False disables exchange; exchange.optimization is ignored")
    if ex.optimization == 'round_trip' and ex.stage_sweeps < ex.num_replicas * ex.interval:
        issues.append("exchange.stage_sweeps is too short for any round trip; the first stages will escalate")
    if ex.optimization == 'rate' and run.thermalization > 0:
        issues.append("rate optimization starts after run.thermalization sweeps; stage 0 only gathers statistics")
    if run.checkpoint_interval > 0 and not run.checkpoint:
        issues.append("run.checkpoint_interval > 0 but run.checkpoint is not set -- no checkpoints will be written")
    if run.seed is None:
        issues.append("run.seed is None -- a fresh seed will be drawn and logged (run not reproducible by config alone)")

    ok = len(issues) == 0
    return ok, issues

# -----------------------------------------------------------------------------
# CLI helpers
# -----------------------------------------------------------------------------
def _parse_cli_overrides(kv_list: List[str]) -> Dict[str, Any]:
    """
    解析 --set key=value（点分路径）列表，返回 nested dict。
    例：--set exchange.num_replicas=32 → {'exchange': {'num_replicas': 32}}
    """
    out: Dict[str, Any] = {}
    for kv in (kv_list or []):
        if '=' not in kv:
            raise ValueError(f"--set expects key=value pairs, got: {kv}")
        key, val = kv.split('=', 1)
        path = [p.strip() for p in key.split('.') if p.strip()]
        if not path:
            continue
        _set_by_path(out, path, _parse_env_value(val))
    return out

def build_arg_parser(env_prefix: str = 'EXMC'):
    import argparse
    ap = argparse.ArgumentParser(description="Load & merge exmc configuration")
    ap.add_argument('--preset', type=str, choices=list(_PRESETS), help='preset name')
    ap.add_argument('--config', type=str, help='config file (yaml|json)')
    ap.add_argument('--env-prefix', type=str, default=env_prefix, help='environment variable prefix (default EXMC)')
    ap.add_argument('--set', dest='sets', action='append', default=[], help='override key=value (dot notation, can repeat)')
    return ap

def from_args(args: Optional[List[str]] = None, env_prefix: str = 'EXMC') -> Config:
    """
    从命令行加载并合并配置（优先级从低到高）:
      默认/预设 <- 文件 (--config) <- 环境变量 (--env-prefix) <- CLI --set
    """
    ns, _ = build_arg_parser(env_prefix).parse_known_args(args=args)

    cfg = get_preset_config(ns.preset) if ns.preset else Config()

    if ns.config:
        cfg = merge_configs(cfg, load_config(ns.config).to_dict())

    env_over = load_from_env(prefix=ns.env_prefix)
    if env_over:
        cfg = merge_configs(cfg, env_over)

    cli_over = _parse_cli_overrides(ns.sets)
    if cli_over:
        cfg = merge_configs(cfg, cli_over)

    ok, issues = validate_config(cfg)
    if not ok:
        print("⚠ Config validation warnings:", file=sys.stderr)
        for it in issues:
            print("  -", it, file=sys.stderr)
    return cfg
