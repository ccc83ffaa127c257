"""
ToolExecutor：按名称查找工具、解析参数并执行。

错误语义（全部以文本返回给模型，不中断 run）：
- 未知工具 → `Unknown tool: <name>`
- 参数不是合法 JSON object → `Tool arguments JSON parse error: <msg>`
- handler 抛出异常 → `Tool execution failed: <msg>`

`asyncio.CancelledError` 不属于以上任何一类，始终向上传播。
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Sequence

from pane_agent.core.contracts import AgentPaneContext
from pane_agent.tools.protocol import ToolCall, ToolDescriptor

logger = logging.getLogger(__name__)


def find_tool(catalog: Sequence[ToolDescriptor], name: str) -> Optional[ToolDescriptor]:
    """大小写不敏感地查找工具（目录内名称唯一，取第一个匹配）。"""

    wanted = (name or "").lower()
    for tool in catalog:
        if tool.name.lower() == wanted:
            return tool
    return None


def parse_tool_arguments(raw_arguments: Optional[str]) -> Dict[str, Any]:
    """
    解析参数 JSON。

    规则：
    - 空白/None 视为 `{}`
    - 顶层必须是 object

    异常：
    - ValueError：JSON 非法或不是 object（消息用于拼接错误文本）
    """

    text = raw_arguments if raw_arguments and raw_arguments.strip() else "{}"
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(str(e)) from e
    if not isinstance(obj, dict):
        raise ValueError(f"expected a JSON object, got {type(obj).__name__}")
    return obj


async def execute_tool_call(catalog: Sequence[ToolDescriptor], call: ToolCall, pane_context: AgentPaneContext) -> str:
    """执行一次工具调用并返回结果文本。"""

    tool = find_tool(catalog, call.name)
    if tool is None:
        return f"Unknown tool: {call.name}"

    try:
        arguments = parse_tool_arguments(call.raw_arguments)
    except ValueError as e:
        return f"Tool arguments JSON parse error: {e}"

    try:
        return await tool.handler(arguments, pane_context)
    except Exception as e:
        logger.debug("tool %s failed", tool.name, exc_info=True)
        return f"Tool execution failed: {e}"
