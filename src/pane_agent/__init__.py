"""
Pane Agent Runtime（Python）。

说明：
- 把终端 pane 中输入的 prompt 变成一次“可调用工具”的模型对话，并以类型化更新事件回流给调用方。
- 当前包含：
  - 配置加载器（YAML overlay + pydantic 校验）
  - 核心契约（RuntimeUpdate / RunKey / AgentPaneContext）
  - RunRegistry + RunCoordinator（每个 pane 至多一个活跃 run；steering 队列）
  - ConversationContextManager（token 估算 + 自动压缩）
  - Provider loops（OpenAI-compatible chat.completions / Anthropic messages）
  - Tool System（ToolDescriptor、ToolCatalogBuilder、内置 platform/shell/web_search/custom tools）
  - MCP client（Content-Length 帧 JSON-RPC over stdio）
  - JSONL 会话存储
"""

from __future__ import annotations

from pane_agent.core.contracts import AgentPaneContext, RunKey, RuntimeUpdate, RuntimeUpdateType
from pane_agent.core.service import AgentRuntimeService

__all__ = [
    "AgentPaneContext",
    "AgentRuntimeService",
    "RunKey",
    "RuntimeUpdate",
    "RuntimeUpdateType",
    "__version__",
]

__version__ = "0.1.0"
