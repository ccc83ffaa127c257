"""
Tool 协议：ToolDescriptor / ToolCall 以及到两种 provider wire 形状的映射。

约定：
- `ToolDescriptor.parameters` 为 JSON Schema object（`type/properties/required/additionalProperties`），
  原样透传给 provider 的工具声明；
- handler 签名：`async (arguments: dict, pane_context) -> str`；取消必须向上传播。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict

from pydantic import BaseModel, ConfigDict

from pane_agent.core.contracts import AgentPaneContext

ToolHandler = Callable[[Dict[str, Any], AgentPaneContext], Awaitable[str]]


@dataclass(frozen=True)
class ToolDescriptor:
    """
    一次 run 内可用的工具。

    字段：
    - name：目录内唯一（大小写不敏感）
    - description：给模型看的说明
    - parameters：JSON Schema object
    - handler：执行函数
    """

    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler = field(compare=False, repr=False)


class ToolCall(BaseModel):
    """
    模型请求的工具调用。

    字段：
    - call_id：关联 tool 结果回注（OpenAI `tool_call_id` / Anthropic `tool_use_id`）
    - name：工具名
    - raw_arguments：参数 JSON 原文（由 ToolExecutor 解析）
    """

    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    raw_arguments: str = "{}"


def object_schema(properties: Dict[str, Any] | None = None, *, required: list[str] | None = None, additional: Any = False) -> Dict[str, Any]:
    """构造 `type: object` 的参数 schema。"""

    schema: Dict[str, Any] = {"type": "object", "properties": dict(properties or {})}
    if required:
        schema["required"] = list(required)
    schema["additionalProperties"] = additional
    return schema


def tool_to_openai_tool(tool: ToolDescriptor) -> Dict[str, Any]:
    """
    映射为 OpenAI chat.completions 的 tools[] entry。

    返回形状：
    {"type": "function", "function": {"name": ..., "description": ..., "parameters": {...}}}
    """

    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def tool_to_anthropic_tool(tool: ToolDescriptor) -> Dict[str, Any]:
    """映射为 Anthropic messages 的 tools[] entry：`{name, description, input_schema}`。"""

    return {
        "name": tool.name,
        "description": tool.description,
        "input_schema": tool.parameters,
    }
