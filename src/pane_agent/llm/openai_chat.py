"""
OpenAI-compatible `/chat/completions` 会话循环。

请求：
- `POST {base}/chat/completions`，`Authorization: Bearer <key>`
- body：`model/messages/temperature=0.2`，有工具时附带 `tools` 与 `tool_choice=auto`
- streaming：`stream=true` + `stream_options.include_usage=true`，解析 SSE；
  若服务端返回的不是 `text/event-stream`，按单个 JSON 文档解析
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional, Tuple

import httpx

from pane_agent.core.context import normalize_history_role
from pane_agent.core.errors import LlmTransportError
from pane_agent.core.utils import ensure_absolute_base
from pane_agent.llm.chat_sse import ChatCompletionsSseParser, sse_data_payload
from pane_agent.llm.loop import (
    NO_TEXT_RESPONSE,
    DeltaCallback,
    ProviderConversationLoop,
    model_error_body,
)
from pane_agent.llm.protocol import ModelTurn, Provider, TokenUsage, extract_usage
from pane_agent.state.models import ConversationMessage
from pane_agent.tools.protocol import ToolCall, ToolDescriptor, tool_to_openai_tool

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


def _message_text(content: Any) -> str:
    """`message.content` 可能是字符串，也可能是 `[{type:text,text}]` 列表。"""

    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
        return "".join(parts)
    return ""


def _message_tool_calls(message: Dict[str, Any]) -> List[ToolCall]:
    calls: List[ToolCall] = []
    raw_calls = message.get("tool_calls")
    if not isinstance(raw_calls, list):
        return calls
    for raw in raw_calls:
        if not isinstance(raw, dict):
            continue
        fn = raw.get("function") if isinstance(raw.get("function"), dict) else {}
        name = fn.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        call_id = raw.get("id")
        arguments = fn.get("arguments")
        calls.append(
            ToolCall(
                call_id=call_id if isinstance(call_id, str) and call_id.strip() else uuid.uuid4().hex,
                name=name,
                raw_arguments=arguments if isinstance(arguments, str) and arguments.strip() else "{}",
            )
        )
    return calls


def parse_chat_completion(body: str) -> ModelTurn:
    """
    解析非流式 chat.completion JSON 文档。

    异常：
    - `ValueError`：body 不是 JSON 对象
    """

    obj = json.loads(body)
    if not isinstance(obj, dict):
        raise ValueError("chat completion response must be a JSON object")

    turn = ModelTurn(usage=extract_usage(obj))
    choices = obj.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict):
            turn.text = _message_text(message.get("content"))
            turn.tool_calls = _message_tool_calls(message)
    return turn


class OpenAIChatLoop(ProviderConversationLoop):
    """OpenAI-compatible chat.completions 循环（支持 SSE streaming）。"""

    provider = Provider.OPENAI
    default_model = DEFAULT_OPENAI_MODEL
    missing_key_message = "OpenAI-compatible API key is not set in Settings -> Agent."

    def _url(self) -> str:
        return ensure_absolute_base(self._endpoint.base_url, DEFAULT_OPENAI_BASE_URL) + "/chat/completions"

    def initial_messages(
        self, system_prompt: str, history: List[ConversationMessage], user_prompt: str
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for item in history:
            role = normalize_history_role(item.role)
            if role == "tool":
                continue
            messages.append({"role": role, "content": item.content})
        messages.append({"role": "user", "content": user_prompt})
        return messages

    def _payload(self, messages: List[Dict[str, Any]], tools: List[ToolDescriptor]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": 0.2,
        }
        if tools:
            payload["tools"] = [tool_to_openai_tool(t) for t in tools]
            payload["tool_choice"] = "auto"
        if self._enable_streaming:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def call_model(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        messages: List[Dict[str, Any]],
        tools: List[ToolDescriptor],
        on_delta: DeltaCallback,
    ) -> ModelTurn:
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        payload = self._payload(messages, tools)
        if self._enable_streaming:
            return await self._call_streaming(client, headers, payload, on_delta)

        resp = await client.post(self._url(), json=payload, headers=headers)
        body = resp.text
        if not resp.is_success:
            raise LlmTransportError(
                f"Model request failed ({resp.status_code}): {model_error_body(body)}", status_code=resp.status_code
            )
        try:
            return parse_chat_completion(body)
        except ValueError as e:
            raise LlmTransportError(f"Unexpected model response: {model_error_body(body)}") from e

    async def _call_streaming(
        self,
        client: httpx.AsyncClient,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        on_delta: DeltaCallback,
    ) -> ModelTurn:
        async with client.stream("POST", self._url(), json=payload, headers=headers) as resp:
            if not resp.is_success:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                raise LlmTransportError(
                    f"Model request failed ({resp.status_code}): {model_error_body(body)}",
                    status_code=resp.status_code,
                )

            content_type = resp.headers.get("content-type", "")
            if "text/event-stream" not in content_type.lower():
                body = (await resp.aread()).decode("utf-8", errors="replace")
                try:
                    return parse_chat_completion(body)
                except ValueError as e:
                    raise LlmTransportError(f"Unexpected non-stream response: {model_error_body(body)}") from e

            parser = ChatCompletionsSseParser()
            text_parts: List[str] = []
            usage: Optional[TokenUsage] = None
            async for line in resp.aiter_lines():
                data = sse_data_payload(line)
                if data is None:
                    continue
                for ev in parser.feed_data(data):
                    if ev.type == "text_delta" and ev.text:
                        text_parts.append(ev.text)
                        on_delta(ev.text)
                    elif ev.type == "usage" and ev.usage is not None:
                        if usage is None:
                            usage = TokenUsage()
                        usage.add(ev.usage)
                if parser.completed:
                    break

        return ModelTurn(
            text="".join(text_parts),
            tool_calls=parser.finish_tool_calls(),
            usage=usage,
            streamed=True,
        )

    async def deliver_final_text(self, turn: ModelTurn, on_delta: DeltaCallback) -> str:
        if not turn.streamed and turn.text.strip():
            on_delta(turn.text)
        return turn.text if turn.text.strip() else NO_TEXT_RESPONSE

    def append_assistant_text(self, messages: List[Dict[str, Any]], turn: ModelTurn, final_text: str) -> None:
        if turn.text.strip():
            messages.append({"role": "assistant", "content": turn.text})

    def append_assistant_tool_turn(self, messages: List[Dict[str, Any]], turn: ModelTurn) -> None:
        messages.append(
            {
                "role": "assistant",
                "content": turn.text if turn.text.strip() else None,
                "tool_calls": [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.raw_arguments},
                    }
                    for call in turn.tool_calls
                ],
            }
        )

    def append_tool_results(self, messages: List[Dict[str, Any]], results: List[Tuple[ToolCall, str]]) -> None:
        for call, output in results:
            messages.append({"role": "tool", "tool_call_id": call.call_id, "content": output})
