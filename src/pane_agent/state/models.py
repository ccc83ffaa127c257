"""
会话存储的数据模型（ConversationThread / ConversationMessage）。

说明：
- 线程索引（threads.json）与消息日志（threads/<id>.jsonl）都序列化这两个模型；
- message 追加后不可变；thread 的聚合字段由 store 在 append 时维护。
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from pane_agent.core.utils import now_rfc3339


class ConversationThread(BaseModel):
    """
    会话线程（索引条目）。

    字段：
    - id：uuid hex
    - title：`{agent} · {yyyy-MM-dd HH:mm}`（本地时间）
    - message_count / total_*_tokens / compaction_count：append 时累加
    - last_message_preview：最后一条消息的单行预览（160 字符截断）
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    workspace_id: str = ""
    surface_id: str = ""
    pane_id: str = ""
    agent_name: str = "assistant"
    title: str = ""
    created_at: str = Field(default_factory=now_rfc3339)
    updated_at: str = Field(default_factory=now_rfc3339)
    message_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    compaction_count: int = 0
    last_message_preview: str = ""


class ConversationMessage(BaseModel):
    """
    会话消息（append-only 日志的一行）。

    字段：
    - role：`user|assistant|system|tool`
    - provider/model：助手消息的来源（user 消息记录当时生效的 provider/model）
    - is_compaction_summary：是否为自动压缩生成的摘要
    - compaction_anchor_id：摘要专用；压缩时第一条被原样保留的消息 id
    """

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    thread_id: str
    role: str = "user"
    content: str = ""
    provider: str = ""
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    created_at: str = ""
    is_compaction_summary: bool = False
    compaction_anchor_id: Optional[str] = None
