"""
AgentRuntimeService：对宿主暴露的运行时门面。

职责：
- 解析 pane 中输入的 handler 命令（如 `/agent fix the build`）并提交 run
- 提交聊天面板 prompt、读写 pane 的活跃线程
- 事件分发：回调订阅 + async 迭代
- shutdown：取消所有 run 并关闭常驻 MCP 会话
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional, Tuple

import httpx

from pane_agent.config.loader import AgentRuntimeConfig, load_config
from pane_agent.core.contracts import (
    AgentPaneContext,
    PaneCommandDispatcher,
    RunKey,
    RuntimeUpdate,
    SecretLookup,
)
from pane_agent.core.coordinator import AGENT_DISABLED_MESSAGE, LoopFactory, RunCoordinator, write_agent_message
from pane_agent.core.registry import RunRegistry
from pane_agent.llm.anthropic_messages import AnthropicMessagesLoop
from pane_agent.llm.loop import ProviderConversationLoop
from pane_agent.llm.openai_chat import OpenAIChatLoop
from pane_agent.llm.protocol import Provider
from pane_agent.mcp.client import McpSessionPool
from pane_agent.state.store import ConversationStore, JsonlConversationStore
from pane_agent.tools.catalog import ToolCatalogBuilder

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[RuntimeUpdate], None]

_HANDLER_SEPARATORS = re.compile(r"[,;\s]+")


def env_secret_lookup(name: str) -> Optional[str]:
    """
    从环境变量读取 secret。

    变量名：secret 名转大写，非字母数字字符替换为 `_`
    （`agent.openai.apiKey` → `AGENT_OPENAI_APIKEY`）。
    """

    if not name or not name.strip():
        return None
    env_name = re.sub(r"[^A-Za-z0-9]", "_", name.strip()).upper()
    value = os.environ.get(env_name)
    return value if value and value.strip() else None


def get_handlers(cfg: AgentRuntimeConfig) -> List[str]:
    """handler 列表：handler、agent_name、additional_handlers（统一以 `/` 开头，大小写不敏感去重）。"""

    handlers: List[str] = []

    def _add(value: Optional[str]) -> None:
        if value is None or not value.strip():
            return
        v = value.strip()
        if not v.startswith("/"):
            v = "/" + v
        if all(h.lower() != v.lower() for h in handlers):
            handlers.append(v)

    _add(cfg.handler)
    _add(cfg.agent_name)
    for part in _HANDLER_SEPARATORS.split(cfg.additional_handlers or ""):
        _add(part)

    if not handlers:
        handlers.append("/agent")
    return handlers


def parse_handler_command(raw_command: Optional[str], cfg: AgentRuntimeConfig) -> Optional[Tuple[str, str]]:
    """
    识别 pane 输入是否为 agent 命令。

    返回：
    - (prompt, handler_token)：匹配时（prompt 可能为空）
    - None：不是 agent 命令

    匹配规则：
    - 首个 token 与任一 handler 大小写不敏感相等
    - 或去掉尾部 `:`/`,` 后等于 `name` / `/name` / `@name`（name 为 agent_name）
    """

    if raw_command is None or not raw_command.strip():
        return None

    trimmed = raw_command.strip()
    token, _, remainder = trimmed.partition(" ")

    matched = any(h.lower() == token.lower() for h in get_handlers(cfg))
    if not matched:
        normalized = token.rstrip(":,").lower()
        agent_name = (cfg.agent_name or "").strip().lower()
        if agent_name:
            matched = normalized in (agent_name, "/" + agent_name, "@" + agent_name)

    if not matched:
        return None
    return remainder.strip(), token


class AgentRuntimeService:
    """
    Pane Agent 运行时门面。

    参数：
    - cfg：运行时配置（缺省时 `load_config()`）
    - store：会话存储（缺省为 `state.store_dir` 下的 JSONL 存储）
    - dispatcher：宿主 pane 命令分发器（平台工具使用；None 时工具返回 handler unavailable）
    - secret_lookup：secret 查询（缺省读环境变量）
    - http_transport：模型与 web_search 共用的 httpx transport（测试注入 `httpx.MockTransport`）
    - loop_factory：覆盖 provider loop 的创建（测试注入 fake loop）
    """

    def __init__(
        self,
        cfg: Optional[AgentRuntimeConfig] = None,
        *,
        store: Optional[ConversationStore] = None,
        dispatcher: Optional[PaneCommandDispatcher] = None,
        secret_lookup: SecretLookup = env_secret_lookup,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        loop_factory: Optional[LoopFactory] = None,
    ) -> None:
        self._cfg = cfg if cfg is not None else load_config()
        self._store = store if store is not None else JsonlConversationStore(Path(self._cfg.state.store_dir).expanduser())
        self._secret_lookup = secret_lookup
        self._http_transport = http_transport
        self._registry = RunRegistry()
        self._mcp_pool = McpSessionPool(self._cfg.mcp) if self._cfg.mcp.session_mode == "pooled" else None
        self._subscribers: List[UpdateCallback] = []
        self._queues: List["asyncio.Queue[Optional[RuntimeUpdate]]"] = []

        catalog_builder = ToolCatalogBuilder(
            self._cfg,
            dispatcher=dispatcher,
            secret_lookup=secret_lookup,
            http_client_factory=lambda: httpx.AsyncClient(timeout=httpx.Timeout(180.0), transport=self._http_transport),
            mcp_pool=self._mcp_pool,
        )
        self._coordinator = RunCoordinator(
            self._cfg,
            store=self._store,
            registry=self._registry,
            catalog_builder=catalog_builder,
            loop_factory=loop_factory or self._create_loop,
            sink=self._publish,
        )

    @property
    def config(self) -> AgentRuntimeConfig:
        return self._cfg

    @property
    def store(self) -> ConversationStore:
        return self._store

    def _create_loop(self, provider: Provider) -> ProviderConversationLoop:
        def _client(timeout_sec: float) -> httpx.AsyncClient:
            return httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec), transport=self._http_transport)

        if provider is Provider.ANTHROPIC:
            return AnthropicMessagesLoop(
                self._cfg.anthropic,
                secret_lookup=self._secret_lookup,
                enable_streaming=self._cfg.enable_streaming,
                client_factory=_client,
            )
        return OpenAIChatLoop(
            self._cfg.openai,
            secret_lookup=self._secret_lookup,
            enable_streaming=self._cfg.enable_streaming,
            client_factory=_client,
        )

    # ---- prompts ----

    def try_handle_pane_command(self, raw_command: str, pane_context: AgentPaneContext) -> bool:
        """
        处理 pane 中输入的一行命令。

        返回：
        - False：不是 agent 命令（宿主应按普通 shell 输入处理）
        - True：已处理（包括 agent 未启用、用法提示）
        """

        parsed = parse_handler_command(raw_command, self._cfg)
        if parsed is None:
            return False
        prompt, token = parsed

        if not self._cfg.enabled:
            write_agent_message(pane_context, self._cfg.agent_name, AGENT_DISABLED_MESSAGE)
            return True
        if not prompt:
            write_agent_message(pane_context, self._cfg.agent_name, f"Usage: {token} <prompt>")
            return True

        return self._coordinator.submit(pane_context, prompt, echo_to_pane=True)

    def send_chat_prompt(
        self, prompt: str, pane_context: AgentPaneContext, thread_id: Optional[str] = None
    ) -> bool:
        """从聊天面板提交 prompt（不回显到 pane）。"""

        return self._coordinator.submit(pane_context, prompt, thread_id)

    # ---- active thread ----

    def get_active_thread_id(self, workspace_id: str, surface_id: str, pane_id: str) -> Optional[str]:
        return self._registry.get_active_thread(RunKey(workspace_id, surface_id, pane_id))

    def set_active_thread_id(self, workspace_id: str, surface_id: str, pane_id: str, thread_id: Optional[str]) -> None:
        """设置 pane 的活跃线程；空白 id 清除。"""

        self._registry.set_active_thread(RunKey(workspace_id, surface_id, pane_id), thread_id)

    # ---- updates ----

    def subscribe(self, callback: UpdateCallback) -> UpdateCallback:
        """注册事件回调（返回 callback 以便之后 unsubscribe）。"""

        self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: UpdateCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def iter_updates(self) -> AsyncIterator[RuntimeUpdate]:
        """
        以 async 迭代器消费事件。

        说明：
        - 从第一次 `__anext__` 开始接收事件
        - `shutdown()` 后迭代结束
        """

        queue: "asyncio.Queue[Optional[RuntimeUpdate]]" = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                update = await queue.get()
                if update is None:
                    return
                yield update
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def _publish(self, update: RuntimeUpdate) -> None:
        for callback in list(self._subscribers):
            try:
                callback(update)
            except Exception:
                logger.exception("runtime update subscriber failed (type=%s)", update.type.value)
        for queue in list(self._queues):
            queue.put_nowait(update)

    # ---- lifecycle ----

    async def wait_idle(self) -> None:
        """等待所有 run 结束。"""

        await self._coordinator.wait_idle()

    async def shutdown(self) -> None:
        """取消所有 run，等待其结束，关闭常驻 MCP 会话并结束所有事件迭代器。"""

        self._coordinator.cancel_all()
        await self._coordinator.wait_idle()
        if self._mcp_pool is not None:
            await self._mcp_pool.close()
        for queue in list(self._queues):
            queue.put_nowait(None)
