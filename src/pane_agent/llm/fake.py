"""
Fake 会话循环（离线回归夹具）。

用途：
- 在不依赖真实模型/外网的情况下，回归 run 编排逻辑（tool_calls → 执行 → 回注 → 继续、steering、取消）。
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from pane_agent.config.loader import ProviderEndpointConfig
from pane_agent.llm.loop import NO_TEXT_RESPONSE, DeltaCallback, HttpClientFactory, ProviderConversationLoop
from pane_agent.llm.protocol import ModelTurn, Provider, TokenUsage
from pane_agent.state.models import ConversationMessage
from pane_agent.tools.protocol import ToolCall, ToolDescriptor


@dataclass(frozen=True)
class FakeModelCall:
    """一次模型调用的预期输出。"""

    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[TokenUsage] = None


class FakeConversationLoop(ProviderConversationLoop):
    """
    用脚本化输出模拟模型。

    说明：
    - 每次模型调用消耗一个 `FakeModelCall`；耗尽时抛 `ValueError`
    - `before_call`：每次调用前 await 的钩子（测试用它挂起 run 以验证 steering/取消）
    - `requests`：每次调用时 messages 的快照
    - `client_factory`：可注入自定义 transport（例如关闭时挂起的 transport）
    """

    def __init__(
        self,
        calls: Sequence[FakeModelCall],
        *,
        provider: Provider = Provider.OPENAI,
        model: str = "fake-model",
        enable_streaming: bool = True,
        before_call: Optional[Callable[[int], Awaitable[None]]] = None,
        client_factory: Optional[HttpClientFactory] = None,
    ) -> None:
        super().__init__(
            ProviderEndpointConfig(base_url="http://fake.invalid", model=model, api_key_secret=""),
            secret_lookup=lambda _name: "fake",
            enable_streaming=enable_streaming,
            client_factory=client_factory or (lambda timeout: httpx.AsyncClient(timeout=timeout)),
        )
        self.provider = provider
        self._calls = list(calls)
        self._idx = 0
        self._before_call = before_call
        self.requests: List[List[Dict[str, Any]]] = []
        self.system_prompt = ""

    def initial_messages(
        self, system_prompt: str, history: List[ConversationMessage], user_prompt: str
    ) -> List[Dict[str, Any]]:
        self.system_prompt = system_prompt
        messages: List[Dict[str, Any]] = [{"role": m.role, "content": m.content} for m in history]
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
        if self._before_call is not None:
            await self._before_call(self._idx)
        if self._idx >= len(self._calls):
            raise ValueError("FakeConversationLoop calls exhausted")
        call = self._calls[self._idx]
        self._idx += 1
        self.requests.append(copy.deepcopy(messages))
        return ModelTurn(text=call.text, tool_calls=list(call.tool_calls), usage=call.usage)

    async def deliver_final_text(self, turn: ModelTurn, on_delta: DeltaCallback) -> str:
        if turn.text.strip() and self._enable_streaming:
            on_delta(turn.text)
        return turn.text if turn.text.strip() else NO_TEXT_RESPONSE

    def append_assistant_text(self, messages: List[Dict[str, Any]], turn: ModelTurn, final_text: str) -> None:
        messages.append({"role": "assistant", "content": final_text})

    def append_assistant_tool_turn(self, messages: List[Dict[str, Any]], turn: ModelTurn) -> None:
        messages.append({"role": "assistant", "content": turn.text, "tool_calls": [c.name for c in turn.tool_calls]})

    def append_tool_results(self, messages: List[Dict[str, Any]], results: List[Tuple[ToolCall, str]]) -> None:
        for call, output in results:
            messages.append({"role": "tool", "tool_call_id": call.call_id, "content": output})
