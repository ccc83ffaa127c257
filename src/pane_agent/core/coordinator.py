"""
RunCoordinator：pane 级 run 的准入、线程解析、steering 与生命周期。

流程（submit）：
1. agent 未启用 → 状态事件，返回 False
2. prompt 去空白；为空则无副作用地返回 True
3. 解析线程：显式 id（存在时）→ 该 pane 的活跃线程（会话记忆开启且仍存在）→ 新建线程
4. 先把 user 消息落盘并发出 thread_changed / user_message
5. 同一线程已有未取消的 run → 进入 steering 队列；否则取消旧 run 并启动新 run
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set

from pane_agent.config.loader import AgentRuntimeConfig
from pane_agent.core.context import ConversationContextManager, PreparedContext, estimate_tokens
from pane_agent.core.contracts import AgentPaneContext, RuntimeUpdate, RuntimeUpdateType
from pane_agent.core.registry import RunHandle, RunRegistry
from pane_agent.core.run_errors import RunErrorKind, classify_run_exception
from pane_agent.core.utils import now_rfc3339
from pane_agent.llm.anthropic_messages import DEFAULT_ANTHROPIC_MODEL
from pane_agent.llm.loop import NO_TEXT_RESPONSE, ProviderConversationLoop
from pane_agent.llm.openai_chat import DEFAULT_OPENAI_MODEL
from pane_agent.llm.protocol import LoopResult, Provider
from pane_agent.prompts.system import build_system_prompt
from pane_agent.state.models import ConversationMessage
from pane_agent.state.store import ConversationStore
from pane_agent.tools.catalog import ToolCatalogBuilder

logger = logging.getLogger(__name__)

AGENT_DISABLED_MESSAGE = "Agent is disabled in Settings -> Agent."

UpdateSink = Callable[[RuntimeUpdate], None]
LoopFactory = Callable[[Provider], ProviderConversationLoop]


def resolve_model(cfg: AgentRuntimeConfig) -> str:
    """当前 provider 的模型名（未配置时取 provider 默认）。"""

    if Provider.parse(cfg.active_provider) is Provider.ANTHROPIC:
        return cfg.anthropic.model.strip() or DEFAULT_ANTHROPIC_MODEL
    return cfg.openai.model.strip() or DEFAULT_OPENAI_MODEL


def write_agent_message(pane_context: AgentPaneContext, agent_name: Optional[str], message: Optional[str]) -> None:
    """
    把 agent 文本以 shell 注释的形式回显到 pane。

    说明：
    - 每行输出 `\\r\\n# [agent] line\\r\\n`；空行输出 `# [agent]`
    - 空白消息不输出
    """

    if message is None or not message.strip():
        return
    tag = (agent_name or "").strip() or "agent"
    for raw in message.replace("\r", "").split("\n"):
        line = raw.rstrip()
        text = f"# [{tag}] {line}" if line.strip() else f"# [{tag}]"
        pane_context.write_to_pane("\r\n" + text + "\r\n")


@dataclass
class AgentRunResult:
    """run_agent 的结果：loop 输出 + 本次上下文指标。"""

    loop: LoopResult
    context: PreparedContext


class RunCoordinator:
    """
    pane 级 run 协调器。

    参数：
    - cfg：运行时配置快照
    - store：会话存储
    - registry：run 状态表（run 句柄 / 活跃线程 / steering 队列）
    - catalog_builder：每次 run 构建工具目录
    - loop_factory：按 provider 创建会话循环
    - sink：事件输出（调用方订阅）

    约束：
    - `submit` 必须在事件循环线程中调用（run 以 asyncio task 启动）
    """

    def __init__(
        self,
        cfg: AgentRuntimeConfig,
        *,
        store: ConversationStore,
        registry: RunRegistry,
        catalog_builder: ToolCatalogBuilder,
        loop_factory: LoopFactory,
        sink: UpdateSink,
    ) -> None:
        self._cfg = cfg
        self._store = store
        self._registry = registry
        self._catalog_builder = catalog_builder
        self._loop_factory = loop_factory
        self._sink = sink
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def cfg(self) -> AgentRuntimeConfig:
        return self._cfg

    def _emit(self, pane_context: AgentPaneContext, update_type: RuntimeUpdateType, **fields: Any) -> None:
        update = RuntimeUpdate(
            type=update_type,
            workspace_id=pane_context.workspace_id,
            surface_id=pane_context.surface_id,
            pane_id=pane_context.pane_id,
            **fields,
        )
        self._sink(update)

    def resolve_thread_id(self, pane_context: AgentPaneContext, explicit_thread_id: Optional[str] = None) -> str:
        """按优先级解析线程 id；都不可用时新建线程。"""

        if explicit_thread_id and explicit_thread_id.strip():
            existing = self._store.get_thread(explicit_thread_id.strip())
            if existing is not None:
                return existing.id

        if self._cfg.enable_conversation_memory:
            active = self._registry.get_active_thread(pane_context.run_key)
            if active:
                existing = self._store.get_thread(active)
                if existing is not None:
                    return existing.id

        created = self._store.create_thread(
            pane_context.workspace_id, pane_context.surface_id, pane_context.pane_id, self._cfg.agent_name
        )
        return created.id

    def submit(
        self,
        pane_context: AgentPaneContext,
        prompt: str,
        explicit_thread_id: Optional[str] = None,
        *,
        echo_to_pane: bool = False,
    ) -> bool:
        """
        提交一个 prompt。

        返回：
        - False：agent 未启用
        - True：已接受（空 prompt、steering 入队或新 run 启动）
        """

        cfg = self._cfg
        if not cfg.enabled:
            write_agent_message(pane_context, cfg.agent_name, AGENT_DISABLED_MESSAGE)
            self._emit(pane_context, RuntimeUpdateType.STATUS, message=AGENT_DISABLED_MESSAGE)
            return False

        text = (prompt or "").strip()
        if not text:
            return True

        key = pane_context.run_key
        thread_id = self.resolve_thread_id(pane_context, explicit_thread_id)

        current = self._registry.get_run(key)
        can_steer = (
            current is not None
            and current.accepting_steering
            and self._registry.get_active_thread(key) == thread_id
        )

        user_message = self._store.append_message(
            ConversationMessage(
                thread_id=thread_id,
                role="user",
                content=text,
                provider=(cfg.active_provider or "openai").strip().lower(),
                model=resolve_model(cfg),
                total_tokens=estimate_tokens(text),
                created_at=now_rfc3339(),
            )
        )
        self._emit(pane_context, RuntimeUpdateType.THREAD_CHANGED, thread_id=thread_id, agent_name=cfg.agent_name)
        self._emit(pane_context, RuntimeUpdateType.USER_MESSAGE, thread_id=thread_id, message=text)

        if can_steer:
            self._registry.enqueue_steering(key, text)
            self._emit(pane_context, RuntimeUpdateType.STATUS, thread_id=thread_id, message="Steering message received")
            return True

        self._registry.set_active_thread(key, thread_id)
        handle = RunHandle(thread_id=thread_id)
        previous = self._registry.replace_run(key, handle)
        if previous is not None:
            previous.cancel()

        task = asyncio.get_running_loop().create_task(
            self._run(pane_context, handle, text, thread_id, user_message.id, echo_to_pane)
        )
        handle.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(
        self,
        pane_context: AgentPaneContext,
        handle: RunHandle,
        prompt: str,
        thread_id: str,
        user_message_id: str,
        echo_to_pane: bool,
    ) -> None:
        agent_name = self._cfg.agent_name
        buffer: List[str] = []

        def _echo(message: str) -> None:
            if echo_to_pane:
                write_agent_message(pane_context, agent_name, message)

        def _on_delta(delta: str) -> None:
            if not delta:
                return
            buffer.append(delta)
            self._emit(pane_context, RuntimeUpdateType.ASSISTANT_DELTA, thread_id=thread_id, message=delta)

        try:
            self._emit(pane_context, RuntimeUpdateType.STATUS, thread_id=thread_id, message="Thinking...")
            _echo("Thinking...")

            result = await self.run_agent(pane_context, prompt, thread_id, user_message_id, _on_delta)
            loop_result = result.loop

            final_text = "".join(buffer) if buffer else loop_result.text
            if not buffer and loop_result.text.strip():
                self._emit(pane_context, RuntimeUpdateType.ASSISTANT_DELTA, thread_id=thread_id, message=loop_result.text)
                final_text = loop_result.text
            final_text = (final_text or "").strip() or NO_TEXT_RESPONSE

            usage = loop_result.usage
            stored = self._store.append_message(
                ConversationMessage(
                    thread_id=thread_id,
                    role="assistant",
                    content=final_text,
                    provider=loop_result.provider,
                    model=loop_result.model,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    total_tokens=usage.total_tokens if usage.total_tokens > 0 else usage.input_tokens + usage.output_tokens,
                    created_at=now_rfc3339(),
                )
            )
            ctx = result.context
            self._emit(
                pane_context,
                RuntimeUpdateType.ASSISTANT_COMPLETED,
                thread_id=thread_id,
                message=stored.content,
                provider=stored.provider,
                model=stored.model,
                input_tokens=stored.input_tokens,
                output_tokens=stored.output_tokens,
                total_tokens=stored.total_tokens,
                estimated_context_tokens=ctx.estimated_tokens,
                context_budget_tokens=ctx.budget_tokens,
                context_needs_compaction=ctx.needs_compaction,
                compaction_applied=ctx.compaction_applied,
                created_at=stored.created_at,
            )
            _echo(final_text)
        except asyncio.CancelledError:
            logger.debug("run canceled: %s thread=%s", pane_context.run_key, thread_id)
            self._emit(pane_context, RuntimeUpdateType.STATUS, thread_id=thread_id, message="canceled.")
            _echo("canceled.")
            raise
        except Exception as exc:
            error = classify_run_exception(exc)
            if error.error_kind is RunErrorKind.UNKNOWN:
                logger.exception("run failed: %s thread=%s", pane_context.run_key, thread_id)
            else:
                logger.warning("run failed (%s): %s", error.error_kind.value, error.message)
            self._emit(
                pane_context,
                RuntimeUpdateType.ERROR,
                thread_id=thread_id,
                message=error.message,
                error_kind=error.error_kind.value,
                retryable=error.retryable,
            )
            _echo(f"error: {error.message}")
        finally:
            self._registry.release_run(pane_context.run_key, handle)

    async def run_agent(
        self,
        pane_context: AgentPaneContext,
        prompt: str,
        thread_id: str,
        user_message_id: Optional[str],
        on_delta: Callable[[str], None],
    ) -> AgentRunResult:
        """工具目录 → system prompt → 上下文准备（发出 context_metrics）→ 按 provider 分派。"""

        cfg = self._cfg
        tools = await self._catalog_builder.build(pane_context)
        system_prompt = build_system_prompt(cfg, pane_context, [t.name for t in tools])

        context_manager = ConversationContextManager(
            self._store, cfg.context, memory_enabled=cfg.enable_conversation_memory
        )
        prepared = context_manager.prepare(thread_id, prompt, system_prompt, exclude_message_id=user_message_id)
        self._emit(
            pane_context,
            RuntimeUpdateType.CONTEXT_METRICS,
            thread_id=thread_id,
            estimated_context_tokens=prepared.estimated_tokens,
            context_budget_tokens=prepared.budget_tokens,
            context_needs_compaction=prepared.needs_compaction,
            compaction_applied=prepared.compaction_applied,
        )

        key = pane_context.run_key
        loop = self._loop_factory(Provider.parse(cfg.active_provider))
        loop_result = await loop.run(
            user_prompt=prompt,
            system_prompt=system_prompt,
            history=prepared.history,
            tools=tools,
            pane_context=pane_context,
            drain_steering=lambda: self._registry.drain_steering(key),
            on_delta=on_delta,
            on_status=lambda message: self._emit(
                pane_context, RuntimeUpdateType.STATUS, thread_id=thread_id, message=message
            ),
        )
        return AgentRunResult(loop=loop_result, context=prepared)

    async def wait_idle(self) -> None:
        """等待所有已启动的 run task 结束（包括已被取消的旧 run）。"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        self._registry.cancel_all()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
