"""
RunRegistry：pane 级 run 状态表（run 句柄 / 活跃线程 / steering 队列）。

说明：
- 三张表由同一把锁保护；每次查询/插入/移除都是原子的
- 由 service 持有并注入 coordinator，不使用模块级全局状态
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from pane_agent.core.contracts import RunKey


@dataclass(eq=False)
class RunHandle:
    """
    一次 run 的取消句柄。

    字段：
    - thread_id：run 所属线程
    - task：承载 run 的 asyncio task（启动后回填）
    - cancel_requested：是否已请求取消（请求后不再接受 steering）
    """

    thread_id: str
    task: Optional["asyncio.Task[None]"] = None
    cancel_requested: bool = False

    def cancel(self) -> None:
        self.cancel_requested = True
        if self.task is not None and not self.task.done():
            self.task.cancel()

    @property
    def accepting_steering(self) -> bool:
        if self.cancel_requested:
            return False
        return self.task is None or not self.task.done()


@dataclass
class _Tables:
    runs: Dict[RunKey, RunHandle] = field(default_factory=dict)
    active_threads: Dict[RunKey, str] = field(default_factory=dict)
    steering: Dict[RunKey, Deque[str]] = field(default_factory=dict)


class RunRegistry:
    """pane → run 状态的线程安全登记表。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._t = _Tables()

    # ---- run handles ----

    def get_run(self, key: RunKey) -> Optional[RunHandle]:
        with self._lock:
            return self._t.runs.get(key)

    def replace_run(self, key: RunKey, handle: RunHandle) -> Optional[RunHandle]:
        """
        登记新 run，返回被替换的旧句柄（调用方负责取消）。

        说明：
        - 同时清空该 key 的 steering 队列：残留的 prompt 属于旧 run，不得注入新 run
        """

        with self._lock:
            previous = self._t.runs.get(key)
            self._t.runs[key] = handle
            self._t.steering.pop(key, None)
            return previous

    def release_run(self, key: RunKey, handle: RunHandle) -> None:
        """
        run 结束时调用。

        说明：
        - 仅当登记的仍是该句柄时移除（被新 run 替换的旧 run 不影响新 run）
        - 若 key 已无 run 且 steering 队列为空，移除队列
        """

        with self._lock:
            if self._t.runs.get(key) is handle:
                del self._t.runs[key]
            queue = self._t.steering.get(key)
            if key not in self._t.runs and queue is not None and not queue:
                del self._t.steering[key]

    def running_handles(self) -> List[RunHandle]:
        with self._lock:
            return list(self._t.runs.values())

    # ---- active threads ----

    def get_active_thread(self, key: RunKey) -> Optional[str]:
        with self._lock:
            return self._t.active_threads.get(key)

    def set_active_thread(self, key: RunKey, thread_id: Optional[str]) -> None:
        """设置活跃线程；空白 id 清除映射。"""

        with self._lock:
            if thread_id is None or not thread_id.strip():
                self._t.active_threads.pop(key, None)
            else:
                self._t.active_threads[key] = thread_id.strip()

    # ---- steering ----

    def enqueue_steering(self, key: RunKey, prompt: str) -> None:
        text = (prompt or "").strip()
        if not text:
            return
        with self._lock:
            self._t.steering.setdefault(key, deque()).append(text)

    def drain_steering(self, key: RunKey) -> List[str]:
        """按 FIFO 取出全部待注入的 steering prompt。"""

        with self._lock:
            queue = self._t.steering.get(key)
            if not queue:
                return []
            out = [p for p in queue if p.strip()]
            queue.clear()
            return out

    def has_steering_queue(self, key: RunKey) -> bool:
        with self._lock:
            return key in self._t.steering

    # ---- lifecycle ----

    def cancel_all(self) -> List[RunHandle]:
        """取消所有 run 并清空三张表；返回被取消的句柄。"""

        with self._lock:
            handles = list(self._t.runs.values())
            self._t = _Tables()
        for handle in handles:
            handle.cancel()
        return handles
