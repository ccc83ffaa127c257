"""
Anthropic Messages API 会话循环。

说明：
- `POST {base}/v1/messages`，头 `x-api-key` + `anthropic-version: 2023-06-01`
- 请求不使用 streaming；最终文本以分块 delta 模拟流式输出
- 工具结果以一条 user 消息（若干 `tool_result` block）回传
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Tuple

import httpx

from pane_agent.core.errors import LlmTransportError
from pane_agent.core.utils import ensure_absolute_base
from pane_agent.llm.loop import NO_TEXT_RESPONSE, DeltaCallback, ProviderConversationLoop, model_error_body
from pane_agent.llm.protocol import ModelTurn, Provider, extract_usage
from pane_agent.state.models import ConversationMessage
from pane_agent.tools.protocol import ToolCall, ToolDescriptor, tool_to_anthropic_tool

DEFAULT_ANTHROPIC_BASE_URL = "https://api.anthropic.com"
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-sonnet-latest"
ANTHROPIC_VERSION = "2023-06-01"
MAX_TOKENS = 2048


def simulated_chunks(text: str) -> Tuple[List[str], float]:
    """
    把最终文本切成模拟流式的分块。

    返回：
    - (chunks, delay_sec)：≤220 字符按 18 字符/12ms，否则 36 字符/8ms
    """

    if len(text) <= 220:
        size, delay = 18, 0.012
    else:
        size, delay = 36, 0.008
    return [text[i : i + size] for i in range(0, len(text), size)], delay


def parse_messages_response(body: str) -> ModelTurn:
    """
    解析 Messages API 响应。

    异常：
    - `ValueError`：body 不是 JSON 对象
    """

    obj = json.loads(body)
    if not isinstance(obj, dict):
        raise ValueError("messages response must be a JSON object")

    content = obj.get("content")
    blocks: List[Any] = content if isinstance(content, list) else []
    texts: List[str] = []
    calls: List[ToolCall] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
        elif kind == "tool_use":
            name = block.get("name")
            if not isinstance(name, str) or not name.strip():
                continue
            raw_input = block.get("input")
            # 缺少 id 时补一个，回传的 tool_use block 与 tool_result 使用同一个 id
            call_id = str(block.get("id") or "").strip() or uuid.uuid4().hex
            block["id"] = call_id
            calls.append(
                ToolCall(
                    call_id=call_id,
                    name=name,
                    raw_arguments=json.dumps(raw_input, ensure_ascii=False) if raw_input is not None else "{}",
                )
            )
    return ModelTurn(
        text="".join(texts),
        tool_calls=calls,
        usage=extract_usage(obj),
        raw_assistant_content=blocks,
    )


class AnthropicMessagesLoop(ProviderConversationLoop):
    """Anthropic Messages API 循环。"""

    provider = Provider.ANTHROPIC
    default_model = DEFAULT_ANTHROPIC_MODEL
    missing_key_message = "Anthropic API key is not set in Settings -> Agent."
    _system_prompt = ""

    def _url(self) -> str:
        return ensure_absolute_base(self._endpoint.base_url, DEFAULT_ANTHROPIC_BASE_URL) + "/v1/messages"

    def initial_messages(
        self, system_prompt: str, history: List[ConversationMessage], user_prompt: str
    ) -> List[Dict[str, Any]]:
        self._system_prompt = system_prompt
        messages: List[Dict[str, Any]] = []
        for item in history:
            role = (item.role or "").strip().lower()
            if role not in ("user", "assistant") or not item.content.strip():
                continue
            messages.append({"role": role, "content": item.content})
        messages.append({"role": "user", "content": user_prompt})
        return messages

    async def call_model(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        messages: List[Dict[str, Any]],
        tools: List[ToolDescriptor],
        on_delta: DeltaCallback,
    ) -> ModelTurn:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": MAX_TOKENS,
            "temperature": 0.2,
            "system": self._system_prompt,
            "messages": messages,
        }
        if tools:
            payload["tools"] = [tool_to_anthropic_tool(t) for t in tools]
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

        resp = await client.post(self._url(), json=payload, headers=headers)
        body = resp.text
        if not resp.is_success:
            raise LlmTransportError(
                f"Model request failed ({resp.status_code}): {model_error_body(body)}", status_code=resp.status_code
            )
        try:
            turn = parse_messages_response(body)
        except ValueError as e:
            raise LlmTransportError(f"Unexpected model response: {model_error_body(body)}") from e
        return turn

    async def deliver_final_text(self, turn: ModelTurn, on_delta: DeltaCallback) -> str:
        final_text = turn.text.strip() or NO_TEXT_RESPONSE
        if not self._enable_streaming:
            on_delta(final_text)
            return final_text
        chunks, delay = simulated_chunks(final_text)
        for chunk in chunks:
            on_delta(chunk)
            await self._sleep(delay)
        return final_text

    def append_assistant_text(self, messages: List[Dict[str, Any]], turn: ModelTurn, final_text: str) -> None:
        # 原始 content 为空时以最终文本代替（空 content 的 assistant 消息会被 API 拒绝）
        content: Any = turn.raw_assistant_content or final_text
        messages.append({"role": "assistant", "content": content})

    def append_assistant_tool_turn(self, messages: List[Dict[str, Any]], turn: ModelTurn) -> None:
        # tool_use block 必须原样回传，才能与随后的 tool_result 配对
        messages.append({"role": "assistant", "content": turn.raw_assistant_content})

    def append_tool_results(self, messages: List[Dict[str, Any]], results: List[Tuple[ToolCall, str]]) -> None:
        messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": call.call_id, "content": output}
                    for call, output in results
                ],
            }
        )
