"""
ConversationContextManager：历史选择、token 估算与自动压缩。

约定：
- token 估算：`ceil(len / 4)`（至少 1；空白文本为 0）；每条历史消息额外 +8 开销。
- 压缩：把较早的消息替换为一条 `is_compaction_summary=True` 的 system 摘要，并永久写入线程；
  摘要记录 `compaction_anchor_id`（第一条被原样保留的消息），后续组装从锚点开始读取，
  因此在没有新消息时重复组装不会再次触发压缩。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from pane_agent.config.loader import ContextConfig
from pane_agent.core.utils import flatten_line
from pane_agent.state.models import ConversationMessage
from pane_agent.state.store import ConversationStore

_SUMMARY_MAX_LINES = 24
_SUMMARY_LINE_MAX_CHARS = 220
_PER_MESSAGE_OVERHEAD = 8


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def estimate_tokens(text: Optional[str]) -> int:
    """粗略估算 token 数（多数 tokenizer 对英文约 4 字符/token）。"""

    if not text or not text.strip():
        return 0
    return max(1, math.ceil(len(text) / 4))


def estimate_context_tokens(
    system_prompt: Optional[str],
    history: Iterable[ConversationMessage],
    user_prompt: Optional[str],
) -> int:
    """估算一次模型调用的上下文 token：system + prompt + Σ(历史消息 + 8)。"""

    total = estimate_tokens(system_prompt) + estimate_tokens(user_prompt)
    for msg in history:
        total += estimate_tokens(msg.content) + _PER_MESSAGE_OVERHEAD
    return total


def normalize_history_role(role: Optional[str]) -> str:
    """把存储里的 role 归一化为 `system|assistant|tool|user`（未知按 user）。"""

    normalized = (role or "").strip().lower()
    if normalized in ("system", "assistant", "tool"):
        return normalized
    return "user"


def build_compaction_summary(messages: Sequence[ConversationMessage], *, now: Optional[datetime] = None) -> str:
    """
    生成压缩摘要文本。

    格式：
    - 首行：`Context summary (auto-compacted at yyyy-MM-dd HH:mm:ss):`（本地时间）
    - 之后最多 24 行：`- <role>: <单行内容>`（超过 220 字符截断并追加 `...`）

    返回：
    - 没有可摘要的非空消息时返回空串
    """

    if not messages:
        return ""

    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    lines = [f"Context summary (auto-compacted at {stamp}):"]
    for message in list(messages)[-_SUMMARY_MAX_LINES:]:
        if not message.content or not message.content.strip():
            continue
        line = flatten_line(message.content)
        if len(line) > _SUMMARY_LINE_MAX_CHARS:
            line = line[:_SUMMARY_LINE_MAX_CHARS] + "..."
        lines.append(f"- {normalize_history_role(message.role)}: {line}")

    if len(lines) == 1:
        return ""
    return "\n".join(lines).strip()


@dataclass(frozen=True)
class PreparedContext:
    """一次模型调用前组装好的历史与上下文指标。"""

    history: List[ConversationMessage]
    estimated_tokens: int
    budget_tokens: int
    needs_compaction: bool
    compaction_applied: bool


class ConversationContextManager:
    """
    选择 / 估算 / 压缩送入模型的历史。

    参数：
    - store：会话存储
    - cfg：上下文预算配置（数值在使用处 clamp）
    - memory_enabled：关闭会话记忆时不读取历史
    """

    def __init__(self, store: ConversationStore, cfg: ContextConfig, *, memory_enabled: bool = True) -> None:
        self._store = store
        self._cfg = cfg
        self._memory_enabled = memory_enabled

    @property
    def max_messages(self) -> int:
        return _clamp(self._cfg.max_messages, 8, 500)

    @property
    def keep_recent(self) -> int:
        return _clamp(self._cfg.keep_recent_on_compaction, 4, self.max_messages)

    @property
    def budget_tokens(self) -> int:
        return _clamp(self._cfg.budget_tokens, 2048, 1_000_000)

    @property
    def threshold_tokens(self) -> int:
        percent = _clamp(self._cfg.compact_threshold_percent, 50, 95)
        return self.budget_tokens * percent // 100

    def select_history(self, thread_id: str, *, exclude_message_id: Optional[str] = None) -> List[ConversationMessage]:
        """
        读取线程的“当前窗口”历史。

        规则：
        - 读取最近 `max_messages * 3` 条；若其中有压缩摘要，则从最新摘要的锚点开始，摘要置于首位
        - 仅保留非空的 user/assistant/system 消息，最后截取 `max_messages` 条
        """

        raw = self._store.get_messages(thread_id, self.max_messages * 3)
        raw = [m for m in raw if not (exclude_message_id and m.id == exclude_message_id)]

        summary_idx = None
        for idx in range(len(raw) - 1, -1, -1):
            if raw[idx].is_compaction_summary:
                summary_idx = idx
                break

        if summary_idx is not None:
            summary = raw[summary_idx]
            start = 0
            if summary.compaction_anchor_id:
                for idx, m in enumerate(raw):
                    if m.id == summary.compaction_anchor_id:
                        start = idx
                        break
            window = [summary] + [m for m in raw[start:] if m.id != summary.id and not m.is_compaction_summary]
        else:
            window = raw

        history = [
            m
            for m in window
            if m.content and m.content.strip() and normalize_history_role(m.role) in ("user", "assistant", "system")
        ]
        if len(history) > self.max_messages:
            history = history[-self.max_messages:]
        return history

    def prepare(
        self,
        thread_id: str,
        current_prompt: str,
        system_prompt: str,
        *,
        exclude_message_id: Optional[str] = None,
    ) -> PreparedContext:
        """
        组装一次模型调用的历史；必要时执行自动压缩（写入摘要消息）。

        参数：
        - exclude_message_id：当前 prompt 已落盘的消息 id（由 loop 单独追加，避免重复）
        """

        budget = self.budget_tokens
        threshold = self.threshold_tokens

        if not self._memory_enabled or not thread_id:
            estimated = estimate_context_tokens(system_prompt, [], current_prompt)
            return PreparedContext([], estimated, budget, estimated >= threshold, False)

        history = self.select_history(thread_id, exclude_message_id=exclude_message_id)
        estimated = estimate_context_tokens(system_prompt, history, current_prompt)
        needs_compaction = estimated >= threshold
        compaction_applied = False

        keep_recent = self.keep_recent
        if self._cfg.auto_compact and needs_compaction and len(history) > keep_recent + 2:
            older = history[: len(history) - keep_recent]
            recent = history[len(history) - keep_recent:]
            summary = build_compaction_summary(older)
            if summary:
                stored = self._store.append_message(
                    ConversationMessage(
                        thread_id=thread_id,
                        role="system",
                        content=summary,
                        is_compaction_summary=True,
                        compaction_anchor_id=recent[0].id if recent else None,
                        total_tokens=estimate_tokens(summary),
                    )
                )
                history = [stored] + recent
                estimated = estimate_context_tokens(system_prompt, history, current_prompt)
                needs_compaction = estimated >= threshold
                compaction_applied = True

        return PreparedContext(history, estimated, budget, needs_compaction, compaction_applied)
