from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from pane_agent.config.loader import ProviderEndpointConfig
from pane_agent.core.contracts import AgentPaneContext
from pane_agent.core.errors import ConfigError, LlmTransportError
from pane_agent.llm.loop import MAX_TOOL_ITERATIONS, NO_TEXT_RESPONSE, TOO_MANY_ITERATIONS
from pane_agent.llm.openai_chat import OpenAIChatLoop, parse_chat_completion
from pane_agent.llm.protocol import LoopResult
from pane_agent.state.models import ConversationMessage
from pane_agent.tools.protocol import ToolDescriptor, object_schema

from conftest import make_pane


def _sse(*chunks: Dict[str, Any]) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _text_chunk(text: str) -> Dict[str, Any]:
    return {"choices": [{"delta": {"content": text}}]}


def _event_stream(body: bytes) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)


async def _echo(args: Dict[str, Any], pane: AgentPaneContext) -> str:
    return f"echoed {args.get('text')}"


ECHO_TOOL = ToolDescriptor(
    name="echo",
    description="Echo text.",
    parameters=object_schema({"text": {"type": "string"}}, required=["text"]),
    handler=_echo,
)


class _Harness:
    def __init__(self, responses: List[Callable[[], httpx.Response]], *, streaming: bool = True, key: Optional[str] = "sk-test") -> None:
        self.requests: List[httpx.Request] = []
        self._responses = list(responses)

        def _handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self._responses.pop(0)()

        transport = httpx.MockTransport(_handler)
        self.loop = OpenAIChatLoop(
            ProviderEndpointConfig(base_url="api.example.com/v1/", model="gpt-test", api_key_secret="agent.openai.apiKey"),
            secret_lookup=lambda _name: key,
            enable_streaming=streaming,
            client_factory=lambda timeout: httpx.AsyncClient(transport=transport, timeout=timeout),
        )
        self.deltas: List[str] = []
        self.statuses: List[str] = []

    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    def run(
        self,
        prompt: str = "hi",
        *,
        tools: Optional[List[ToolDescriptor]] = None,
        history: Optional[List[ConversationMessage]] = None,
        steering: Optional[List[List[str]]] = None,
    ) -> LoopResult:
        pending = list(steering or [])

        def _drain() -> List[str]:
            return pending.pop(0) if pending else []

        return asyncio.run(
            self.loop.run(
                user_prompt=prompt,
                system_prompt="sys",
                history=history or [],
                tools=tools or [],
                pane_context=make_pane(),
                drain_steering=_drain,
                on_delta=self.deltas.append,
                on_status=self.statuses.append,
            )
        )


def test_streaming_tool_round_then_text() -> None:
    tool_chunk = {
        "choices": [
            {
                "delta": {
                    "tool_calls": [
                        {"index": 0, "id": "call_1", "function": {"name": "echo", "arguments": '{"text": "hi"}'}}
                    ]
                }
            }
        ]
    }
    usage_chunk = {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12}}
    harness = _Harness(
        [
            lambda: _event_stream(_sse(tool_chunk, usage_chunk)),
            lambda: _event_stream(_sse(_text_chunk("Hello"), _text_chunk(" world"), usage_chunk)),
        ]
    )

    result = harness.run(tools=[ECHO_TOOL])

    assert result.text == "Hello world"
    assert result.provider == "openai"
    assert result.model == "gpt-test"
    assert (result.usage.input_tokens, result.usage.output_tokens, result.usage.total_tokens) == (20, 4, 24)
    assert harness.deltas == ["Hello", " world"]

    assert str(harness.requests[0].url) == "https://api.example.com/v1/chat/completions"
    assert harness.requests[0].headers["authorization"] == "Bearer sk-test"
    first, second = harness.bodies()
    assert first["stream"] is True
    assert first["stream_options"] == {"include_usage": True}
    assert first["tool_choice"] == "auto"
    assert first["tools"][0]["function"]["name"] == "echo"
    assert second["messages"][-2]["tool_calls"][0]["id"] == "call_1"
    assert second["messages"][-2]["content"] is None
    assert second["messages"][-1] == {"role": "tool", "tool_call_id": "call_1", "content": "echoed hi"}


def test_history_maps_roles_and_skips_tool_entries() -> None:
    harness = _Harness([lambda: _event_stream(_sse(_text_chunk("ok")))])
    history = [
        ConversationMessage(thread_id="t", role="user", content="earlier"),
        ConversationMessage(thread_id="t", role="tool", content="tool output"),
        ConversationMessage(thread_id="t", role="Assistant", content="reply"),
    ]

    harness.run("now", history=history)

    body = harness.bodies()[0]
    assert body["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "earlier"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "now"},
    ]
    assert "tools" not in body
    assert "tool_choice" not in body


def test_non_streaming_emits_single_delta() -> None:
    completion = {
        "choices": [{"message": {"role": "assistant", "content": "Full answer"}}],
        "usage": {"prompt_tokens": 5, "completion_tokens": 3},
    }
    harness = _Harness([lambda: httpx.Response(200, json=completion)], streaming=False)

    result = harness.run()

    assert result.text == "Full answer"
    assert harness.deltas == ["Full answer"]
    assert result.usage.total_tokens == 8
    assert "stream" not in harness.bodies()[0]


def test_streaming_request_with_json_response_falls_back() -> None:
    completion = {"choices": [{"message": {"content": [{"type": "text", "text": "from json"}]}}]}
    harness = _Harness([lambda: httpx.Response(200, json=completion)])

    result = harness.run()

    assert result.text == "from json"
    assert harness.deltas == ["from json"]


def test_empty_text_reports_placeholder() -> None:
    harness = _Harness([lambda: _event_stream(_sse())])

    result = harness.run()

    assert result.text == NO_TEXT_RESPONSE
    assert harness.deltas == []


def test_steering_after_final_text_continues_loop() -> None:
    harness = _Harness(
        [
            lambda: _event_stream(_sse(_text_chunk("first answer"))),
            lambda: _event_stream(_sse(_text_chunk("second answer"))),
        ]
    )

    result = harness.run(steering=[[], ["also check tests"]])

    assert result.text == "second answer"
    assert harness.statuses == ["Applied steering message"]
    second = harness.bodies()[1]["messages"]
    assert second[-2] == {"role": "assistant", "content": "first answer"}
    assert second[-1] == {"role": "user", "content": "also check tests"}


def test_http_error_raises_transport_error() -> None:
    harness = _Harness([lambda: httpx.Response(401, text="invalid key")])

    with pytest.raises(LlmTransportError) as excinfo:
        harness.run()

    assert excinfo.value.status_code == 401
    assert "Model request failed (401): invalid key" in str(excinfo.value)


def test_non_json_body_without_streaming_raises() -> None:
    harness = _Harness([lambda: httpx.Response(200, text="<html>")], streaming=False)

    with pytest.raises(LlmTransportError, match="Unexpected model response"):
        harness.run()


def test_missing_api_key_raises_config_error_without_request() -> None:
    harness = _Harness([], key=None)

    with pytest.raises(ConfigError, match="OpenAI-compatible API key is not set"):
        harness.run()
    assert harness.requests == []


def test_tool_loop_stops_after_iteration_cap() -> None:
    tool_chunk = {
        "choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c", "function": {"name": "echo", "arguments": "{}"}}]}}]
    }
    harness = _Harness([lambda: _event_stream(_sse(tool_chunk)) for _ in range(MAX_TOOL_ITERATIONS)])

    result = harness.run(tools=[ECHO_TOOL])

    assert result.text == TOO_MANY_ITERATIONS
    assert len(harness.requests) == MAX_TOOL_ITERATIONS


def test_parse_chat_completion_rejects_non_object() -> None:
    with pytest.raises(ValueError):
        parse_chat_completion("[]")
