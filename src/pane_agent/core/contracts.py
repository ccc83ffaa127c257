"""
核心契约（Core Contracts）。

包含：
- `RunKey`：pane 会话槽位标识（run 互斥的单位）
- `AgentPaneContext`：每次调用由调用方提供的 pane 上下文（不被 runtime 持有超过一次 run）
- `RuntimeUpdate`：对调用方输出的类型化更新事件
- 协作方接口：`PaneCommandDispatcher` / `SecretLookup`
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from pane_agent.core.utils import now_rfc3339

PaneCommandDispatcher = Callable[[str, Dict[str, str]], Awaitable[str]]
"""pane 命令分发器：`(command, args) -> text`（例如 `PANE.READ` → `{"ok":true,"text":...}`）。"""

SecretLookup = Callable[[str], Optional[str]]
"""secret 查询：`name -> value | None`。"""


@dataclass(frozen=True)
class RunKey:
    """一个 pane 的会话槽位（workspace/surface/pane 三元组）。"""

    workspace_id: str
    surface_id: str
    pane_id: str

    def __str__(self) -> str:
        """返回 `ws:surface:pane` 形式的字符串。"""

        return f"{self.workspace_id}:{self.surface_id}:{self.pane_id}"


@dataclass
class AgentPaneContext:
    """
    pane 上下文（调用方持有）。

    字段：
    - workspace_id/surface_id/pane_id：pane 定位
    - working_directory：pane 当前工作目录（未知时为 None）
    - write_to_pane：把原始文本写入 pane 输入流的 sink
    """

    workspace_id: str
    surface_id: str
    pane_id: str
    write_to_pane: Callable[[str], None]
    working_directory: Optional[str] = None

    @property
    def run_key(self) -> RunKey:
        """返回该上下文对应的 RunKey。"""

        return RunKey(self.workspace_id, self.surface_id, self.pane_id)


class RuntimeUpdateType(str, Enum):
    """更新事件类型。"""

    THREAD_CHANGED = "thread_changed"
    USER_MESSAGE = "user_message"
    ASSISTANT_DELTA = "assistant_delta"
    ASSISTANT_COMPLETED = "assistant_completed"
    STATUS = "status"
    ERROR = "error"
    CONTEXT_METRICS = "context_metrics"


class RuntimeUpdate(BaseModel):
    """
    RuntimeUpdate：对调用方输出的统一事件条目。

    字段：
    - type：事件类型
    - workspace_id/surface_id/pane_id：事件来源 pane（由 emit 时自动填充）
    - thread_id/agent_name/message：会话与文本载荷
    - provider/model：助手消息来源
    - input_tokens/output_tokens/total_tokens：本次 run 累计 token
    - error_kind/retryable：error 事件的稳定错误分类（取值见 `RunErrorKind`）与是否建议重试
    - estimated_context_tokens/context_budget_tokens/context_needs_compaction/compaction_applied：上下文指标
    - created_at：RFC3339 时间字符串
    """

    model_config = ConfigDict(extra="forbid", use_enum_values=False)

    type: RuntimeUpdateType
    workspace_id: str = ""
    surface_id: str = ""
    pane_id: str = ""
    thread_id: str = ""
    agent_name: str = ""
    message: str = ""
    provider: str = ""
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_context_tokens: int = 0
    context_budget_tokens: int = 0
    context_needs_compaction: bool = False
    compaction_applied: bool = False
    error_kind: str = ""
    retryable: bool = False
    created_at: str = Field(default_factory=now_rfc3339)

    def to_json(self) -> str:
        """序列化为 JSON 字符串。"""

        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw_json: str) -> "RuntimeUpdate":
        """从 JSON 字符串反序列化。"""

        return cls.model_validate_json(raw_json)
