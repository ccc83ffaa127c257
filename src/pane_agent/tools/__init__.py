"""工具层：协议、参数读取、执行器与工具目录构建。"""

from __future__ import annotations

from pane_agent.tools.catalog import ToolCatalogBuilder
from pane_agent.tools.executor import execute_tool_call
from pane_agent.tools.protocol import ToolCall, ToolDescriptor, tool_to_anthropic_tool, tool_to_openai_tool

__all__ = [
    "ToolCall",
    "ToolCatalogBuilder",
    "ToolDescriptor",
    "execute_tool_call",
    "tool_to_anthropic_tool",
    "tool_to_openai_tool",
]
