"""
Provider 会话循环的公共骨架。

每轮：检查取消 → 注入 steering → 调用模型 → 执行工具（或结束）。
provider 差异（消息格式、HTTP 协议、文本投递方式）由子类实现。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from pane_agent.config.loader import ProviderEndpointConfig
from pane_agent.core.contracts import AgentPaneContext, SecretLookup
from pane_agent.core.errors import ConfigError
from pane_agent.core.utils import truncate
from pane_agent.llm.protocol import LoopResult, ModelTurn, Provider, TokenUsage
from pane_agent.state.models import ConversationMessage
from pane_agent.tools.executor import execute_tool_call
from pane_agent.tools.protocol import ToolCall, ToolDescriptor

logger = logging.getLogger(__name__)

MAX_TOOL_ITERATIONS = 12
NO_TEXT_RESPONSE = "No text response received."
TOO_MANY_ITERATIONS = "Stopped after too many tool iterations."

HttpClientFactory = Callable[[float], httpx.AsyncClient]
"""`timeout_sec -> httpx.AsyncClient`；测试可注入 `httpx.MockTransport`。"""

DeltaCallback = Callable[[str], None]
StatusCallback = Callable[[str], None]
SteeringDrain = Callable[[], List[str]]
Sleep = Callable[[float], Awaitable[Any]]


def default_http_client_factory(timeout_sec: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec))


def steering_status(count: int) -> str:
    """返回 steering 注入后的状态文本。"""

    return "Applied steering message" if count == 1 else f"Applied {count} steering messages"


class ProviderConversationLoop:
    """
    会话循环基类（每次 run 新建一个实例）。

    参数：
    - endpoint：provider 端点配置（base_url/model/api_key_secret/timeout_sec）
    - secret_lookup：API key 查询
    - enable_streaming：是否以增量形式转发文本
    - client_factory：httpx 客户端工厂
    - sleep：可注入的 sleep（Anthropic 模拟流式使用）

    约束：
    - 取消以 `asyncio.CancelledError` 传播，循环不吞掉
    - 传输失败抛 `LlmTransportError`，缺少 API key 抛 `ConfigError`
    """

    provider: Provider = Provider.OPENAI
    default_model: str = ""
    missing_key_message: str = "API key is not set in Settings -> Agent."

    def __init__(
        self,
        endpoint: ProviderEndpointConfig,
        *,
        secret_lookup: SecretLookup,
        enable_streaming: bool = True,
        client_factory: HttpClientFactory = default_http_client_factory,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._endpoint = endpoint
        self._secret_lookup = secret_lookup
        self._enable_streaming = enable_streaming
        self._client_factory = client_factory
        self._sleep = sleep

    @property
    def model(self) -> str:
        """配置的模型名；空白时使用 provider 默认模型。"""

        model = (self._endpoint.model or "").strip()
        return model or self.default_model

    def _require_api_key(self) -> str:
        key = self._secret_lookup(self._endpoint.api_key_secret)
        if not key or not key.strip():
            raise ConfigError(self.missing_key_message, details={"secret": self._endpoint.api_key_secret})
        return key.strip()

    async def run(
        self,
        *,
        user_prompt: str,
        system_prompt: str,
        history: List[ConversationMessage],
        tools: List[ToolDescriptor],
        pane_context: AgentPaneContext,
        drain_steering: SteeringDrain,
        on_delta: DeltaCallback,
        on_status: StatusCallback,
    ) -> LoopResult:
        """
        执行会话循环直到得到最终文本。

        返回：
        - LoopResult：最终文本（可能是 `Stopped after too many tool iterations.`）与累计用量
        """

        api_key = self._require_api_key()
        messages = self.initial_messages(system_prompt, history, user_prompt)
        usage = TokenUsage()
        iteration = 0
        pending: List[str] = []

        while True:
            result: Optional[LoopResult] = None
            last_turn: Optional[ModelTurn] = None
            async with self._client_factory(self._endpoint.timeout_sec) as client:
                while result is None:
                    if iteration >= MAX_TOOL_ITERATIONS and not pending:
                        result = LoopResult(
                            text=TOO_MANY_ITERATIONS, provider=self.provider.value, model=self.model, usage=usage
                        )
                        break
                    iteration += 1
                    # 让出一次事件循环，使挂起的取消在模型调用前生效
                    await asyncio.sleep(0)
                    self._append_steering(messages, pending + drain_steering(), on_status)
                    pending = []

                    turn = await self.call_model(client, api_key, messages, tools, on_delta)
                    usage.add(turn.usage)

                    if not turn.tool_calls:
                        final_text = await self.deliver_final_text(turn, on_delta)
                        pending = drain_steering()
                        if pending:
                            self.append_assistant_text(messages, turn, final_text)
                            continue
                        last_turn = turn
                        result = LoopResult(text=final_text, provider=self.provider.value, model=self.model, usage=usage)
                        break

                    logger.debug(
                        "%s iteration %d requested tools: %s",
                        self.provider.value,
                        iteration,
                        ", ".join(c.name for c in turn.tool_calls),
                    )
                    self.append_assistant_tool_turn(messages, turn)
                    results: List[Tuple[ToolCall, str]] = []
                    for call in turn.tool_calls:
                        results.append((call, await execute_tool_call(tools, call, pane_context)))
                    self.append_tool_results(messages, results)

            # 关闭客户端会让出事件循环，期间被接受的 steering 必须在本次 run 内继续处理
            assert result is not None
            pending = drain_steering()
            if not pending:
                return result
            if last_turn is not None:
                self.append_assistant_text(messages, last_turn, result.text)

    def _append_steering(
        self, messages: List[Dict[str, Any]], pending: List[str], on_status: StatusCallback
    ) -> None:
        turns = [p for p in pending if p and p.strip()]
        if not turns:
            return
        for text in turns:
            messages.append({"role": "user", "content": text})
        on_status(steering_status(len(turns)))

    # ---- provider hooks ----

    def initial_messages(
        self, system_prompt: str, history: List[ConversationMessage], user_prompt: str
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def call_model(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        messages: List[Dict[str, Any]],
        tools: List[ToolDescriptor],
        on_delta: DeltaCallback,
    ) -> ModelTurn:
        raise NotImplementedError

    async def deliver_final_text(self, turn: ModelTurn, on_delta: DeltaCallback) -> str:
        """把无工具调用的回合文本投递给调用方，并返回最终文本。"""

        raise NotImplementedError

    def append_assistant_text(self, messages: List[Dict[str, Any]], turn: ModelTurn, final_text: str) -> None:
        raise NotImplementedError

    def append_assistant_tool_turn(self, messages: List[Dict[str, Any]], turn: ModelTurn) -> None:
        raise NotImplementedError

    def append_tool_results(self, messages: List[Dict[str, Any]], results: List[Tuple[ToolCall, str]]) -> None:
        raise NotImplementedError


def model_error_body(body: Optional[str]) -> str:
    """错误响应 body 的统一截断口径。"""

    return truncate(body or "", 800)
