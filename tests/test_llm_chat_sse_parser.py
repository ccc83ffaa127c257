from __future__ import annotations

import json

from pane_agent.llm.chat_sse import ChatCompletionsSseParser, sse_data_payload
from pane_agent.llm.protocol import Provider, TokenUsage, extract_usage


def _chunk(delta: dict, **extra: object) -> str:
    return json.dumps({"choices": [{"delta": delta}], **extra})


def test_text_deltas_and_done() -> None:
    parser = ChatCompletionsSseParser()

    events = parser.feed_data(_chunk({"content": "Hel"})) + parser.feed_data(_chunk({"content": "lo"}))
    done = parser.feed_data("[DONE]")

    assert [e.text for e in events] == ["Hel", "lo"]
    assert [e.type for e in done] == ["completed"]
    assert parser.completed is True


def test_tool_call_fragments_accumulate_by_index() -> None:
    parser = ChatCompletionsSseParser()
    parser.feed_data(_chunk({"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "b", "arguments": ""}}]}))
    parser.feed_data(_chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "a", "arguments": '{"x"'}}]}))
    parser.feed_data(_chunk({"tool_calls": [{"index": 0, "function": {"arguments": ": 1}"}}]}))

    calls = parser.finish_tool_calls()

    assert [(c.call_id, c.name, c.raw_arguments) for c in calls] == [("call_a", "a", '{"x": 1}'), ("call_b", "b", "{}")]
    assert parser.finish_tool_calls() == []


def test_nameless_tool_call_is_dropped_and_missing_id_generated() -> None:
    parser = ChatCompletionsSseParser()
    parser.feed_data(_chunk({"tool_calls": [{"index": 0, "function": {"arguments": "{}"}}]}))
    parser.feed_data(_chunk({"tool_calls": [{"index": 1, "function": {"name": "named"}}]}))

    calls = parser.finish_tool_calls()

    assert len(calls) == 1
    assert calls[0].name == "named"
    assert calls[0].call_id


def test_usage_and_junk_lines() -> None:
    parser = ChatCompletionsSseParser()

    assert parser.feed_data("not json") == []
    assert parser.feed_data("[1, 2]") == []
    assert parser.feed_data("   ") == []
    events = parser.feed_data(json.dumps({"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 4}}))

    assert [e.type for e in events] == ["usage"]
    assert events[0].usage == TokenUsage(3, 4, 7)


def test_sse_data_payload() -> None:
    assert sse_data_payload("data: {}") == "{}"
    assert sse_data_payload("DATA:[DONE]") == "[DONE]"
    assert sse_data_payload("event: ping") is None
    assert sse_data_payload("") is None


def test_extract_usage_rules() -> None:
    assert extract_usage({"usage": {"input_tokens": 5, "output_tokens": 2}}) == TokenUsage(5, 2, 7)
    assert extract_usage({"usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 9}}) == TokenUsage(1, 1, 9)
    assert extract_usage({"usage": {"prompt_tokens": 0}}) is None
    assert extract_usage({"usage": {"prompt_tokens": True}}) is None
    assert extract_usage({}) is None


def test_provider_parse_falls_back_to_openai() -> None:
    assert Provider.parse(" Anthropic ") is Provider.ANTHROPIC
    assert Provider.parse("gemini") is Provider.OPENAI
    assert Provider.parse(None) is Provider.OPENAI
