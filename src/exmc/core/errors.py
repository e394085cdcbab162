# -*- coding: utf-8 -*-
"""
错误类型

- ConfigurationError: 构造期即可发现的配置错误（致命，不重试），例如副本数少于进程数。
- CheckpointError: 断点文件与当前运行配置不一致（副本数 / 本地切片 / 角色 / tid-wid 互逆）。
"""

from __future__ import annotations

__all__ = ["ConfigurationError", "CheckpointError"]


class ConfigurationError(ValueError):
    """Invalid run configuration detected before the first sweep."""


class CheckpointError(ValueError):
    """Checkpoint content does not match the running configuration."""
