"""
会话存储（ConversationStore）。

- `ConversationStore`：runtime 消费的最小接口（create/get thread、get messages、append）
- `JsonlConversationStore`：文件实现
  - `<root>/threads.json`：线程索引（整体重写）
  - `<root>/threads/<thread_id>.jsonl`：append-only 消息日志（每行一条 ConversationMessage）

并发约定：
- 单进程内由 `RLock` 串行化所有读写；runtime 不在外部额外加锁。
"""

from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pane_agent.core.errors import StateError
from pane_agent.core.utils import flatten_line, now_rfc3339, truncate
from pane_agent.state.models import ConversationMessage, ConversationThread


class ConversationStore(Protocol):
    """runtime 依赖的会话存储接口。"""

    def create_thread(self, workspace_id: str, surface_id: str, pane_id: str, agent_name: str) -> ConversationThread:
        """创建线程并返回其快照。"""
        ...

    def get_thread(self, thread_id: str) -> Optional[ConversationThread]:
        """按 id 获取线程快照；不存在返回 None。"""
        ...

    def get_messages(self, thread_id: str, max_entries: int = 1000) -> List[ConversationMessage]:
        """按创建时间排序后返回最后 `max_entries` 条消息。"""
        ...

    def append_message(self, message: ConversationMessage) -> ConversationMessage:
        """追加消息（补齐 id/created_at），返回落盘后的快照。"""
        ...


class JsonlConversationStore:
    """
    基于 JSONL 的会话存储。

    参数：
    - root_dir：存储根目录（不存在会创建）
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = Path(root_dir)
        self._threads_dir = self.root_dir / "threads"
        self._index_path = self.root_dir / "threads.json"
        self._lock = threading.RLock()
        self._threads: Dict[str, ConversationThread] = {}
        self._ensure_storage()
        self._load_index()

    def _ensure_storage(self) -> None:
        self._threads_dir.mkdir(parents=True, exist_ok=True)

    def _messages_path(self, thread_id: str) -> Path:
        return self._threads_dir / f"{thread_id}.jsonl"

    def _load_index(self) -> None:
        """读取线程索引；文件损坏时抛 StateError（不静默丢弃历史）。"""

        with self._lock:
            self._threads.clear()
            if not self._index_path.exists():
                return
            try:
                raw = json.loads(self._index_path.read_text(encoding="utf-8") or "[]")
            except json.JSONDecodeError as e:
                raise StateError(f"threads index is not valid JSON: {self._index_path}: {e}") from e
            if not isinstance(raw, list):
                raise StateError(f"threads index root must be a list: {self._index_path}")
            for item in raw:
                if isinstance(item, dict) and item.get("id"):
                    thread = ConversationThread.model_validate(item)
                    self._threads[thread.id] = thread

    def _persist_index(self) -> None:
        """整体重写索引（先写临时文件再 rename，避免半写）。"""

        data = [t.model_dump() for t in self._threads.values()]
        tmp = self._index_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self._index_path)

    def create_thread(self, workspace_id: str, surface_id: str, pane_id: str, agent_name: str) -> ConversationThread:
        """创建线程；标题为 `{agent} · {本地时间 yyyy-MM-dd HH:mm}`。"""

        name = (agent_name or "").strip() or "assistant"
        with self._lock:
            self._ensure_storage()
            now = now_rfc3339()
            thread = ConversationThread(
                id=uuid.uuid4().hex,
                workspace_id=workspace_id or "",
                surface_id=surface_id or "",
                pane_id=pane_id or "",
                agent_name=name,
                title=f"{name} · {datetime.now():%Y-%m-%d %H:%M}",
                created_at=now,
                updated_at=now,
            )
            self._threads[thread.id] = thread
            self._persist_index()
            return thread.model_copy()

    def get_thread(self, thread_id: str) -> Optional[ConversationThread]:
        with self._lock:
            thread = self._threads.get((thread_id or "").strip())
            return thread.model_copy() if thread is not None else None

    def list_threads(
        self,
        *,
        workspace_id: str = "",
        surface_id: str = "",
        pane_id: str = "",
        max_entries: int = 200,
    ) -> List[ConversationThread]:
        """按 updated_at 倒序列出线程（空过滤条件表示不过滤）。"""

        with self._lock:
            items = [
                t
                for t in self._threads.values()
                if (not workspace_id or t.workspace_id == workspace_id)
                and (not surface_id or t.surface_id == surface_id)
                and (not pane_id or t.pane_id == pane_id)
            ]
            items.sort(key=lambda t: t.updated_at, reverse=True)
            return [t.model_copy() for t in items[: max(1, max_entries)]]

    def get_messages(self, thread_id: str, max_entries: int = 1000) -> List[ConversationMessage]:
        if not thread_id or not thread_id.strip():
            return []
        with self._lock:
            path = self._messages_path(thread_id.strip())
            if not path.exists():
                return []
            messages: List[ConversationMessage] = []
            with path.open("r", encoding="utf-8") as f:
                for raw_line in f:
                    line = raw_line.strip()
                    if not line:
                        continue
                    messages.append(ConversationMessage.model_validate_json(line))
            messages.sort(key=lambda m: m.created_at)
            return messages[-max(1, max_entries):]

    def append_message(self, message: ConversationMessage) -> ConversationMessage:
        """
        追加消息并更新线程聚合字段。

        异常：
        - StateError：thread_id 为空或线程不存在
        """

        if not message.thread_id or not message.thread_id.strip():
            raise StateError("thread_id is required to append a message.")

        with self._lock:
            self._ensure_storage()
            thread = self._threads.get(message.thread_id)
            if thread is None:
                raise StateError(f"Conversation thread '{message.thread_id}' was not found.")

            stored = message.model_copy(
                update={
                    "id": message.id or uuid.uuid4().hex,
                    "created_at": message.created_at or now_rfc3339(),
                    "role": (message.role or "").strip().lower() or "user",
                    "content": message.content or "",
                }
            )

            with self._messages_path(stored.thread_id).open("a", encoding="utf-8") as fh:
                fh.write(stored.model_dump_json())
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())

            thread.message_count += 1
            thread.updated_at = stored.created_at
            thread.total_input_tokens += max(0, stored.input_tokens)
            thread.total_output_tokens += max(0, stored.output_tokens)
            thread.total_tokens += max(0, stored.total_tokens)
            if stored.is_compaction_summary:
                thread.compaction_count += 1
            thread.last_message_preview = truncate(flatten_line(stored.content), 160)

            self._persist_index()
            return stored.model_copy()
