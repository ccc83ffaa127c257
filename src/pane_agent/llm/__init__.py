"""
LLM 层：provider 会话循环（OpenAI-compatible chat.completions / Anthropic Messages）。

- `ProviderConversationLoop`：模型调用 → 工具执行 → 回注 的公共骨架（最多 12 轮）
- `OpenAIChatLoop`：SSE streaming 与非流式两种路径
- `AnthropicMessagesLoop`：非流式请求 + 模拟流式 delta
- `FakeConversationLoop`：离线脚本化夹具
"""

from __future__ import annotations

from pane_agent.llm.anthropic_messages import AnthropicMessagesLoop
from pane_agent.llm.chat_sse import ChatCompletionsSseParser, ChatStreamEvent
from pane_agent.llm.fake import FakeConversationLoop, FakeModelCall
from pane_agent.llm.loop import MAX_TOOL_ITERATIONS, ProviderConversationLoop
from pane_agent.llm.openai_chat import OpenAIChatLoop
from pane_agent.llm.protocol import LoopResult, ModelTurn, Provider, TokenUsage

__all__ = [
    "AnthropicMessagesLoop",
    "ChatCompletionsSseParser",
    "ChatStreamEvent",
    "FakeConversationLoop",
    "FakeModelCall",
    "LoopResult",
    "MAX_TOOL_ITERATIONS",
    "ModelTurn",
    "OpenAIChatLoop",
    "ProviderConversationLoop",
    "Provider",
    "TokenUsage",
]
