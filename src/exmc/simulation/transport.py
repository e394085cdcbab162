# -*- coding: utf-8 -*-
"""
    进程间集体通信（Transport）

    交换阶段只需要 root 定向的四种集体操作：gather / broadcast / scatter / barrier。
所有进程必须以相同顺序调用同样的集体操作（与 MPI 语义一致）。

实现功能:
    - SerialTransport: 单进程（P = 1），所有操作退化为恒等。
    - QueueTransport: 每个 rank 一个收件 multiprocessing 队列；消息带 (源 rank, 序号) 标签，
      乱序到达的消息先缓存。spawn 子进程与线程均可使用（测试中用线程模拟多进程）。
    - MPITransport: mpi4py 通信子的薄封装（mpi4py 为可选依赖，按需导入）。
"""

from __future__ import annotations

import logging
import queue
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

__all__ = [
    "Transport",
    "SerialTransport",
    "QueueTransport",
    "MPITransport",
    "make_queue_transports",
]


class Transport(ABC):
    """root 定向集体通信接口。"""

    @property
    @abstractmethod
    def rank(self) -> int:
        ...

    @property
    @abstractmethod
    def size(self) -> int:
        ...

    @abstractmethod
    def gather(self, value: Any, root: int = 0) -> Optional[List[Any]]:
        """root 上返回按 rank 排序的列表，其它 rank 返回 None。"""

    @abstractmethod
    def broadcast(self, value: Any, root: int = 0) -> Any:
        ...

    @abstractmethod
    def scatter(self, values: Optional[Sequence[Any]], root: int = 0) -> Any:
        """root 提供长度为 size 的序列；每个 rank 返回属于自己的一项。"""

    @abstractmethod
    def barrier(self) -> None:
        ...

    @property
    def is_root(self) -> bool:
        return self.rank == 0

    def close(self) -> None:
        pass


class SerialTransport(Transport):
    @property
    def rank(self) -> int:
        return 0

    @property
    def size(self) -> int:
        return 1

    def gather(self, value: Any, root: int = 0) -> Optional[List[Any]]:
        return [value]

    def broadcast(self, value: Any, root: int = 0) -> Any:
        return value

    def scatter(self, values: Optional[Sequence[Any]], root: int = 0) -> Any:
        if values is None or len(values) != 1:
            raise ValueError("scatter on a serial transport needs exactly one value")
        return values[0]

    def barrier(self) -> None:
        pass


class QueueTransport(Transport):
    """
    基于队列的集体通信。

    Args:
        rank: 本进程编号
        inboxes: 所有 rank 的收件队列（下标即 rank），由 make_queue_transports 创建
        timeout: 单次接收的超时秒数；None 表示一直等待
    """

    def __init__(self, rank: int, inboxes: Sequence[Any], timeout: Optional[float] = None) -> None:
        self._rank = int(rank)
        self._inboxes = list(inboxes)
        self._timeout = timeout
        self._seq = 0
        self._pending: Dict[Tuple[int, int], Any] = {}
        if not (0 <= self._rank < len(self._inboxes)):
            raise ValueError(f"rank {rank} out of range for {len(self._inboxes)} inboxes")

    @property
    def rank(self) -> int:
        return self._rank

    @property
    def size(self) -> int:
        return len(self._inboxes)

    # ---- 点对点 ----
    def _send(self, dest: int, seq: int, payload: Any) -> None:
        self._inboxes[dest].put((self._rank, seq, payload))

    def _recv(self, source: int, seq: int) -> Any:
        key = (source, seq)
        while key not in self._pending:
            try:
                src, s, payload = self._inboxes[self._rank].get(timeout=self._timeout)
            except queue.Empty as exc:
                raise RuntimeError(
                    f"rank {self._rank}: timed out waiting for message {seq} from rank {source}"
                ) from exc
            self._pending[(src, s)] = payload
        return self._pending.pop(key)

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    # ---- 集体操作 ----
    def gather(self, value: Any, root: int = 0) -> Optional[List[Any]]:
        seq = self._next_seq()
        if self._rank != root:
            self._send(root, seq, value)
            return None
        out: List[Any] = []
        for src in range(self.size):
            out.append(value if src == root else self._recv(src, seq))
        return out

    def broadcast(self, value: Any, root: int = 0) -> Any:
        seq = self._next_seq()
        if self._rank == root:
            for dest in range(self.size):
                if dest != root:
                    self._send(dest, seq, value)
            return value
        return self._recv(root, seq)

    def scatter(self, values: Optional[Sequence[Any]], root: int = 0) -> Any:
        seq = self._next_seq()
        if self._rank == root:
            if values is None or len(values) != self.size:
                raise ValueError(f"scatter needs {self.size} values on the root")
            for dest in range(self.size):
                if dest != root:
                    self._send(dest, seq, values[dest])
            return values[root]
        return self._recv(root, seq)

    def barrier(self) -> None:
        self.gather(None)
        self.broadcast(None)


def make_queue_transports(size: int, ctx: Any = None, timeout: Optional[float] = None) -> List[QueueTransport]:
    """
    为 size 个 rank 创建一组 QueueTransport。

    ctx 为 multiprocessing 上下文（spawn 子进程场景）；为 None 时使用线程安全的 queue.Queue。
    """
    if size <= 0:
        raise ValueError("size must be positive")
    if ctx is None:
        inboxes = [queue.Queue() for _ in range(size)]
    else:
        inboxes = [ctx.Queue() for _ in range(size)]
    return [QueueTransport(r, inboxes, timeout=timeout) for r in range(size)]


class MPITransport(Transport):
    """mpi4py 通信子封装；comm 缺省为 MPI.COMM_WORLD。"""

    def __init__(self, comm: Any = None) -> None:
        if comm is None:
            from mpi4py import MPI

            comm = MPI.COMM_WORLD
        self.comm = comm

    @property
    def rank(self) -> int:
        return int(self.comm.Get_rank())

    @property
    def size(self) -> int:
        return int(self.comm.Get_size())

    def gather(self, value: Any, root: int = 0) -> Optional[List[Any]]:
        return self.comm.gather(value, root=root)

    def broadcast(self, value: Any, root: int = 0) -> Any:
        return self.comm.bcast(value, root=root)

    def scatter(self, values: Optional[Sequence[Any]], root: int = 0) -> Any:
        return self.comm.scatter(None if values is None else list(values), root=root)

    def barrier(self) -> None:
        self.comm.Barrier()
