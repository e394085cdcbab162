# -*- coding: utf-8 -*-
"""
日志记录器

实现功能：
    - setup_logger: 控制台（可彩色）+ 可选文件（可轮转）handler；重复调用会替换旧 handler。
    - 多进程安全: mp_safe=True 时挂 QueueHandler，由主进程的 QueueListener 统一落地；
      spawn 子进程用 attach_queue_handler(queue) 把记录送回主进程。
    - ProgressLogger: 按步数或时间间隔打印 sweep 进度。
    - log_config / format_vector: 运行开始时打印配置，向量统计量的紧凑格式。
"""

from __future__ import annotations

import logging
import sys
import time
import atexit
import threading
from pathlib import Path
from typing import Optional, Dict, Any, Sequence, Union
import multiprocessing as mp

import yaml

from logging.handlers import (
    RotatingFileHandler,
    TimedRotatingFileHandler,
    QueueHandler,
    QueueListener,
)

__all__ = [
    'setup_logger', 'get_logger', 'attach_queue_handler', 'get_log_queue',
    'stop_listeners', 'log_config', 'format_vector', 'ProgressLogger',
]

# -----------------------------------------------------------------------------
# Colored terminal formatter (only affects console handler)
# -----------------------------------------------------------------------------
class ColoredFormatter(logging.Formatter):
    """
    控制台彩色格式化器：仅临时包装 levelname 字段以添加颜色码，
    并在返回前恢复，避免对 record 做持久性修改。
    """
    COLORS = {
        'DEBUG': '\033[36m',    # cyan
        'INFO': '\033[32m',     # green
        'WARNING': '\033[33m',  # yellow
        'ERROR': '\033[31m',    # red
        'CRITICAL': '\033[35m', # magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        orig_levelname = record.levelname
        try:
            color = self.COLORS.get(orig_levelname)
            if color:
                record.levelname = f"{color}{orig_levelname}{self.RESET}"
            return super().format(record)
        finally:
            record.levelname = orig_levelname

# -----------------------------------------------------------------------------
# Handler 工厂
# -----------------------------------------------------------------------------
_DATEFMT = '%Y-%m-%d %H:%M:%S'

def _make_console_handler(level: int, use_color: bool, utc: bool) -> logging.Handler:
    if use_color:
        formatter: logging.Formatter = ColoredFormatter(
            '%(asctime)s | %(levelname)s | %(processName)s | %(message)s', datefmt=_DATEFMT
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(processName)s | %(message)s', datefmt=_DATEFMT
        )
    if utc:
        formatter.converter = time.gmtime  # type: ignore
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(formatter)
    return ch

def _make_file_handler(log_path: Path, level: int, rotate: Optional[Dict[str, Any]], utc: bool) -> logging.Handler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    fmt = '%(asctime)s | %(levelname)-8s | %(processName)s | %(name)s | %(message)s'
    if rotate:
        if 'when' in rotate:
            fh: logging.Handler = TimedRotatingFileHandler(
                str(log_path),
                when=rotate.get('when', 'D'),
                interval=int(rotate.get('interval', 1)),
                backupCount=int(rotate.get('backupCount', 14)),
                encoding='utf-8',
                utc=utc
            )
        else:
            fh = RotatingFileHandler(
                str(log_path),
                maxBytes=int(rotate.get('maxBytes', 10_000_000)),
                backupCount=int(rotate.get('backupCount', 5)),
                encoding='utf-8'
            )
    else:
        fh = logging.FileHandler(str(log_path), mode='a', encoding='utf-8')
    fh.setLevel(logging.DEBUG)  # keep detailed records; logger.level controls emission
    formatter = logging.Formatter(fmt, datefmt=_DATEFMT)
    if utc:
        formatter.converter = time.gmtime  # type: ignore
    fh.setFormatter(formatter)
    return fh

def _as_level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        value = logging.getLevelName(level.upper())
        if not isinstance(value, int):
            raise ValueError(f"unknown log level {level!r}")
        return value
    return int(level)

# -----------------------------------------------------------------------------
# 全局：跟踪启动的 QueueListener（按 logger.name 存储），便于重复 setup 时清理
# -----------------------------------------------------------------------------
_QUEUE_LISTENERS: Dict[str, Dict[str, Any]] = {}
_QUEUE_LOCK = threading.Lock()

def _remove_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

# -----------------------------------------------------------------------------
# setup_logger / get_logger
# -----------------------------------------------------------------------------
def setup_logger(
    name: str = 'exmc',
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    use_color: bool = True,
    utc: bool = False,
    rotate: Optional[Dict[str, Any]] = None,
    mp_safe: bool = False,
    mp_context: Any = None,
) -> logging.Logger:
    """
    配置并返回 logger。重复调用会覆盖同名 logger 的 handlers，并停止旧 listener（若存在）。
    mp_safe=True 时使用 QueueHandler + QueueListener 以便多进程日志聚合；
    队列通过 get_log_queue(name) 取得并传给子进程。
    """
    lvl = _as_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(lvl)

    with _QUEUE_LOCK:
        prev = _QUEUE_LISTENERS.pop(name, None)
    if prev is not None:
        prev["listener"].stop()

    _remove_handlers(logger)
    logger.propagate = False

    # 仅在真实终端时启用颜色
    use_color = bool(use_color and hasattr(sys.stdout, "isatty") and sys.stdout.isatty())

    console_handler = _make_console_handler(lvl, use_color, utc)
    file_handler = _make_file_handler(Path(log_file), lvl, rotate, utc) if log_file else None

    if mp_safe:
        ctx = mp_context if mp_context is not None else mp.get_context("spawn")
        queue = ctx.Queue(-1)
        qh = QueueHandler(queue)
        qh.setLevel(lvl)
        logger.addHandler(qh)

        handlers = [console_handler]
        if file_handler is not None:
            handlers.append(file_handler)
        listener = QueueListener(queue, *handlers, respect_handler_level=True)
        listener.start()

        with _QUEUE_LOCK:
            _QUEUE_LISTENERS[name] = {"queue": queue, "listener": listener}
        atexit.register(listener.stop)
    else:
        logger.addHandler(console_handler)
        if file_handler is not None:
            logger.addHandler(file_handler)

    return logger

def get_logger(name: str = 'exmc') -> logging.Logger:
    """获取 logger（若未 setup，返回同名 logger 对象，但不自动配置 handlers）。"""
    return logging.getLogger(name)

def get_log_queue(name: str = 'exmc') -> Optional[Any]:
    """mp_safe logger 的队列（供 spawn 子进程使用）；未启用时返回 None。"""
    with _QUEUE_LOCK:
        rec = _QUEUE_LISTENERS.get(name)
    return None if rec is None else rec["queue"]

def attach_queue_handler(queue: Any, name: str = 'exmc', level: Union[int, str] = logging.INFO) -> logging.Logger:
    """子进程中调用：所有记录经队列送回主进程的 QueueListener。"""
    lvl = _as_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(lvl)
    _remove_handlers(logger)
    logger.propagate = False
    qh = QueueHandler(queue)
    qh.setLevel(lvl)
    logger.addHandler(qh)
    return logger

def stop_listeners() -> None:
    """停止所有 QueueListener（刷新剩余记录）。"""
    with _QUEUE_LOCK:
        recs = list(_QUEUE_LISTENERS.values())
        _QUEUE_LISTENERS.clear()
    for rec in recs:
        rec["listener"].stop()

# -----------------------------------------------------------------------------
# 格式化
# -----------------------------------------------------------------------------
def log_config(config: dict, logger: Optional[logging.Logger] = None) -> None:
    """YAML 形式逐行 INFO 输出，保持清晰格式。"""
    lg = logger or get_logger()
    lg.info("配置参数:")
    dumped = yaml.safe_dump(config, allow_unicode=True, sort_keys=False)
    for line in dumped.rstrip().splitlines():
        lg.info("  %s", line)

def format_vector(values: Sequence[float], precision: int = 4) -> str:
    return "[" + ", ".join(f"{float(v):.{precision}g}" for v in values) + "]"

# -----------------------------------------------------------------------------
# ProgressLogger
# -----------------------------------------------------------------------------
class ProgressLogger:
    """按步数或时间间隔打印进度的简单工具。"""
    def __init__(self, total: int, desc: str = "Progress",
                 logger: Optional[logging.Logger] = None,
                 log_every_n: int = 10,
                 log_every_seconds: Optional[float] = None):
        self.total = int(total)
        self.desc = desc
        self.logger = logger or get_logger()
        self.log_every_n = max(1, int(log_every_n))
        self.log_every_seconds = float(log_every_seconds) if log_every_seconds is not None else None

        self.current = 0
        self.start_time = time.time()
        self.last_log_time = self.start_time

    def update(self, n: int = 1):
        self.current = min(self.total, self.current + int(n))
        now = time.time()
        should = (self.current % self.log_every_n == 0) or (self.current >= self.total)
        if self.log_every_seconds is not None:
            should = should or ((now - self.last_log_time) >= self.log_every_seconds)
        if should:
            self._log_progress(now)
            self.last_log_time = now

    def _log_progress(self, now: Optional[float] = None):
        if now is None:
            now = time.time()
        elapsed = max(1e-9, now - self.start_time)
        percent = 100.0 * self.current / max(1, self.total)
        speed = self.current / elapsed
        remaining = max(0, self.total - self.current)
        eta = remaining / max(speed, 1e-9)
        self.logger.info(
            "%s: %d/%d (%.1f%%) | %.2f sweeps/s | ETA: %.1fs",
            self.desc, self.current, self.total, percent, speed, eta
        )

    def finish(self):
        elapsed = max(1e-9, time.time() - self.start_time)
        speed = self.current / elapsed
        self.logger.info(
            "%s 完成! 总计: %d | 耗时: %.2fs | 速度: %.2f sweeps/s",
            self.desc, self.current, elapsed, speed
        )
