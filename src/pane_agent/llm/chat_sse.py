"""
Chat Completions Streaming SSE 解析器。

处理范围：
- 终止哨兵 `[DONE]`
- `choices[0].delta.content` 文本增量（仅字符串形式）
- `choices[0].delta.tool_calls[]` 分片：按 `index`（缺省 0）累积 id/name/arguments
- 任意 chunk 上的 `usage` 节点（跨 chunk 累加）
- 无法解析的 data 行被跳过，不终止流
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pane_agent.llm.protocol import TokenUsage, extract_usage
from pane_agent.tools.protocol import ToolCall


@dataclass(frozen=True)
class ChatStreamEvent:
    """
    解析输出事件。

    type:
    - `text_delta`：assistant 文本增量
    - `usage`：一条 chunk 携带的用量
    - `completed`：收到 `[DONE]`
    """

    type: str
    text: Optional[str] = None
    usage: Optional[TokenUsage] = None


@dataclass
class _ToolCallState:
    """单个 tool_call 的分片拼接状态。"""

    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


class ChatCompletionsSseParser:
    """
    OpenAI-compatible chat.completions SSE 解析器（只处理 `data:` 的 payload）。

    用法：
    - 每收到一条 data 字符串调用 `feed_data(data)`，得到 0..N 个事件
    - 流结束后调用 `finish_tool_calls()` 取得按 index 排序的工具调用
    """

    def __init__(self) -> None:
        self._tool_calls: Dict[int, _ToolCallState] = {}
        self.completed = False

    def feed_data(self, data: str) -> List[ChatStreamEvent]:
        data_s = (data or "").strip()
        if not data_s:
            return []
        if data_s == "[DONE]":
            self.completed = True
            return [ChatStreamEvent(type="completed")]

        try:
            obj = json.loads(data_s)
        except json.JSONDecodeError:
            return []
        if not isinstance(obj, dict):
            return []

        out: List[ChatStreamEvent] = []
        usage = extract_usage(obj)
        if usage is not None:
            out.append(ChatStreamEvent(type="usage", usage=usage))

        choices = obj.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return out
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return out

        content = delta.get("content")
        if isinstance(content, str) and content:
            out.append(ChatStreamEvent(type="text_delta", text=content))

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for tool_call in tool_calls:
                if isinstance(tool_call, dict):
                    self._accumulate_tool_call_delta(tool_call)
        return out

    def _accumulate_tool_call_delta(self, tool_call_delta: Dict[str, Any]) -> None:
        index = tool_call_delta.get("index")
        idx = index if isinstance(index, int) and not isinstance(index, bool) else 0
        state = self._tool_calls.setdefault(idx, _ToolCallState())

        call_id = tool_call_delta.get("id")
        if isinstance(call_id, str):
            state.id = call_id

        fn = tool_call_delta.get("function")
        if isinstance(fn, dict):
            name = fn.get("name")
            if isinstance(name, str):
                state.name = name
            args_part = fn.get("arguments")
            if isinstance(args_part, str):
                state.arguments += args_part

    def finish_tool_calls(self) -> List[ToolCall]:
        """
        输出累积的工具调用。

        约束：
        - 缺少 id 时生成随机 id；缺少 arguments 时为 `{}`
        - 没有 name 的调用被丢弃
        """

        out: List[ToolCall] = []
        for idx in sorted(self._tool_calls):
            st = self._tool_calls[idx]
            if not st.name or not st.name.strip():
                continue
            out.append(
                ToolCall(
                    call_id=st.id if st.id and st.id.strip() else uuid.uuid4().hex,
                    name=st.name,
                    raw_arguments=st.arguments or "{}",
                )
            )
        self._tool_calls.clear()
        return out


def sse_data_payload(line: Optional[str]) -> Optional[str]:
    """返回 `data:` 行的 payload（前缀大小写不敏感）；其它行返回 None。"""

    if not line or not line.strip() or line[:5].lower() != "data:":
        return None
    return line[5:].strip()
