from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

from pane_agent import AgentRuntimeService, RuntimeUpdate, RuntimeUpdateType
from pane_agent.config.loader import AgentRuntimeConfig
from pane_agent.core.contracts import AgentPaneContext
from pane_agent.core.service import env_secret_lookup, get_handlers, parse_handler_command
from pane_agent.llm.fake import FakeConversationLoop, FakeModelCall
from pane_agent.tools.protocol import ToolCall

from conftest import PaneRecorder

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"


def _service(cfg: AgentRuntimeConfig, *loops: FakeConversationLoop) -> AgentRuntimeService:
    pending = list(loops)
    return AgentRuntimeService(cfg, loop_factory=lambda _provider: pending.pop(0))


def test_get_handlers_normalizes_and_dedupes(make_config: Callable[..., AgentRuntimeConfig]) -> None:
    cfg = make_config({"handler": "agent", "agent_name": "Helper", "additional_handlers": "/AGENT, ai;  bot"})

    assert get_handlers(cfg) == ["/agent", "/Helper", "/ai", "/bot"]
    assert get_handlers(make_config({"handler": " ", "agent_name": "", "additional_handlers": ""})) == ["/agent"]


def test_parse_handler_command(make_config: Callable[..., AgentRuntimeConfig]) -> None:
    cfg = make_config({"agent_name": "helper", "additional_handlers": "ai"})

    assert parse_handler_command("/agent fix the build", cfg) == ("fix the build", "/agent")
    assert parse_handler_command("  /AI   explain  ", cfg) == ("explain", "/AI")
    assert parse_handler_command("helper: run tests", cfg) == ("run tests", "helper:")
    assert parse_handler_command("@helper, go", cfg) == ("go", "@helper,")
    assert parse_handler_command("/agent", cfg) == ("", "/agent")
    assert parse_handler_command("ls -la", cfg) is None
    assert parse_handler_command("/agents do", cfg) is None
    assert parse_handler_command("   ", cfg) is None
    assert parse_handler_command(None, cfg) is None


def test_env_secret_lookup(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("AGENT_OPENAI_APIKEY", "sk-env")
    monkeypatch.setenv("AGENT_EMPTY", "  ")

    assert env_secret_lookup("agent.openai.apiKey") == "sk-env"
    assert env_secret_lookup("agent.empty") is None
    assert env_secret_lookup("agent.missing.key") is None
    assert env_secret_lookup("") is None


def test_non_command_is_not_handled(make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext) -> None:
    service = _service(make_config())

    assert service.try_handle_pane_command("git status", pane) is False


def test_disabled_agent_handles_command_with_message(
    make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext, recorder: PaneRecorder
) -> None:
    service = _service(make_config({"enabled": False}))

    assert service.try_handle_pane_command("/agent hi", pane) is True
    assert recorder.writes == ["\r\n# [assistant] Agent is disabled in Settings -> Agent.\r\n"]


def test_empty_prompt_prints_usage(
    make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext, recorder: PaneRecorder
) -> None:
    service = _service(make_config())

    assert service.try_handle_pane_command("/Agent   ", pane) is True
    assert recorder.writes == ["\r\n# [assistant] Usage: /Agent <prompt>\r\n"]


def test_pane_command_runs_and_echoes(
    make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext, recorder: PaneRecorder
) -> None:
    service = _service(make_config(), FakeConversationLoop([FakeModelCall(text="Build fixed.")]))
    updates: List[RuntimeUpdate] = []
    service.subscribe(updates.append)

    active: List[str] = []

    async def _main() -> bool:
        handled = service.try_handle_pane_command("/agent fix the build", pane)
        await service.wait_idle()
        active.append(service.get_active_thread_id("ws1", "s1", "p1") or "")
        await service.shutdown()
        return handled

    assert asyncio.run(_main()) is True
    assert recorder.text == "\r\n# [assistant] Thinking...\r\n\r\n# [assistant] Build fixed.\r\n"
    assert updates[1].message == "fix the build"
    assert updates[-1].type is RuntimeUpdateType.ASSISTANT_COMPLETED
    assert active == [updates[0].thread_id]


def test_shutdown_clears_active_threads(
    make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext
) -> None:
    service = _service(make_config(), FakeConversationLoop([FakeModelCall(text="ok")]))

    async def _main() -> None:
        service.send_chat_prompt("hello", pane)
        await service.wait_idle()
        assert service.get_active_thread_id("ws1", "s1", "p1") is not None
        await service.shutdown()

    asyncio.run(_main())

    assert service.get_active_thread_id("ws1", "s1", "p1") is None


def test_chat_prompt_does_not_echo(
    make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext, recorder: PaneRecorder
) -> None:
    service = _service(make_config(), FakeConversationLoop([FakeModelCall(text="ok")]))

    async def _main() -> None:
        assert service.send_chat_prompt("hello", pane) is True
        await service.wait_idle()

    asyncio.run(_main())

    assert recorder.writes == []
    threads = service.store.list_threads()  # type: ignore[attr-defined]
    assert len(threads) == 1
    assert threads[0].message_count == 2


def test_active_thread_can_be_set_and_cleared(make_config: Callable[..., AgentRuntimeConfig]) -> None:
    service = _service(make_config())

    service.set_active_thread_id("w", "s", "p", "thread-1")
    assert service.get_active_thread_id("w", "s", "p") == "thread-1"
    service.set_active_thread_id("w", "s", "p", "")
    assert service.get_active_thread_id("w", "s", "p") is None


def test_iter_updates_ends_on_shutdown(make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext) -> None:
    service = _service(make_config(), FakeConversationLoop([FakeModelCall(text="streamed")]))

    async def _main() -> List[RuntimeUpdateType]:
        seen: List[RuntimeUpdateType] = []

        async def _consume() -> None:
            async for update in service.iter_updates():
                seen.append(update.type)

        consumer = asyncio.ensure_future(_consume())
        await asyncio.sleep(0)
        service.send_chat_prompt("hi", pane)
        await service.wait_idle()
        await service.shutdown()
        await asyncio.wait_for(consumer, timeout=5)
        return seen

    seen = asyncio.run(_main())

    assert seen[0] is RuntimeUpdateType.THREAD_CHANGED
    assert seen[-1] is RuntimeUpdateType.ASSISTANT_COMPLETED


def test_failing_subscriber_is_logged_and_isolated(
    make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext, caplog: pytest.LogCaptureFixture
) -> None:
    service = _service(
        make_config(),
        FakeConversationLoop([FakeModelCall(text="ok")]),
        FakeConversationLoop([FakeModelCall(text="again")]),
    )
    received: List[RuntimeUpdate] = []

    def _broken(_update: RuntimeUpdate) -> None:
        raise RuntimeError("subscriber bug")

    service.subscribe(_broken)
    callback = service.subscribe(received.append)

    async def _prompt(text: str) -> None:
        service.send_chat_prompt(text, pane)
        await service.wait_idle()

    with caplog.at_level(logging.ERROR, logger="pane_agent.core.service"):
        asyncio.run(_prompt("hi"))

    assert received[-1].type is RuntimeUpdateType.ASSISTANT_COMPLETED
    assert "runtime update subscriber failed" in caplog.text

    service.unsubscribe(callback)
    count = len(received)
    asyncio.run(_prompt("hi again"))
    assert len(received) == count


def test_default_loop_uses_http_transport(make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext) -> None:
    requests: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "from the model"}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            },
        )

    cfg = make_config({"enable_streaming": False, "openai": {"base_url": "https://llm.example/v1", "model": "m1"}})
    service = AgentRuntimeService(
        cfg,
        secret_lookup=lambda name: "sk-x" if name == "agent.openai.apiKey" else None,
        http_transport=httpx.MockTransport(_handler),
    )
    updates: List[RuntimeUpdate] = []
    service.subscribe(updates.append)

    async def _main() -> None:
        service.send_chat_prompt("hello", pane)
        await service.wait_idle()
        await service.shutdown()

    asyncio.run(_main())

    assert str(requests[0].url) == "https://llm.example/v1/chat/completions"
    assert json.loads(requests[0].content)["model"] == "m1"
    completed = [u for u in updates if u.type is RuntimeUpdateType.ASSISTANT_COMPLETED]
    assert [(u.message, u.model, u.total_tokens) for u in completed] == [("from the model", "m1", 15)]


def test_pooled_mcp_session_is_reused_and_closed(
    make_config: Callable[..., AgentRuntimeConfig], pane: AgentPaneContext
) -> None:
    cfg = make_config(
        {
            "mcp": {
                "session_mode": "pooled",
                "read_timeout_sec": 10,
                "servers": [{"name": "fake", "command": sys.executable, "arguments": f'"{FAKE_SERVER}"'}],
            }
        }
    )
    loop = FakeConversationLoop(
        [
            FakeModelCall(tool_calls=[ToolCall(call_id="a", name="mcp_fake_echo", raw_arguments='{"text": "one"}')]),
            FakeModelCall(tool_calls=[ToolCall(call_id="b", name="mcp_fake_echo", raw_arguments='{"text": "two"}')]),
            FakeModelCall(text="done"),
        ]
    )
    service = _service(cfg, loop)

    async def _main() -> None:
        service.send_chat_prompt("use the tool", pane)
        await service.wait_idle()
        await service.shutdown()

    asyncio.run(_main())

    first = loop.requests[1][-1]["content"].splitlines()
    second = loop.requests[2][-1]["content"].splitlines()
    assert first[0] == "echo: one"
    assert second[0] == "echo: two"
    assert first[-1] == second[-1]
