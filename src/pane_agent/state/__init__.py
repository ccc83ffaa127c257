"""会话存储（线程索引 + JSONL 消息日志）。"""

from __future__ import annotations

from pane_agent.state.models import ConversationMessage, ConversationThread
from pane_agent.state.store import ConversationStore, JsonlConversationStore

__all__ = ["ConversationMessage", "ConversationStore", "ConversationThread", "JsonlConversationStore"]
