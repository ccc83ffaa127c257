from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import List

import pytest

from pane_agent.config.loader import McpConfig, McpServerConfig
from pane_agent.mcp.client import McpServerClient, McpSessionPool, parse_tools_list, render_call_result
from pane_agent.mcp.errors import McpProtocolError, McpTransportError
from pane_agent.mcp.session import McpProcessSession

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"


def _server(name: str = "fake") -> McpServerConfig:
    return McpServerConfig(name=name, command=sys.executable, arguments=f'"{FAKE_SERVER}"')


def _pid(text: str) -> str:
    return text.splitlines()[-1]


def test_list_tools_per_call() -> None:
    tools = asyncio.run(McpServerClient(_server(), McpConfig(read_timeout_sec=10)).list_tools())

    assert [t.name for t in tools] == ["echo", "fail"]
    assert tools[0].input_schema["properties"]["text"]["type"] == "string"
    assert tools[1].input_schema == {"type": "object", "properties": {}, "additionalProperties": True}


def test_call_tool_per_call_spawns_fresh_process() -> None:
    client = McpServerClient(_server(), McpConfig(read_timeout_sec=10))

    async def _main() -> tuple:
        return await client.call_tool("echo", {"text": "hi"}), await client.call_tool("echo", {"text": "again"})

    first, second = asyncio.run(_main())

    assert first.splitlines()[0] == "echo: hi"
    assert second.splitlines()[0] == "echo: again"
    assert _pid(first) != _pid(second)


def test_pooled_session_reuses_process_and_renders_errors() -> None:
    cfg = McpConfig(read_timeout_sec=10, session_mode="pooled")

    async def _main() -> tuple:
        pool = McpSessionPool(cfg)
        client = McpServerClient(_server(), cfg, pool=pool)
        try:
            first = await client.call_tool("echo", {"text": "a"})
            failed = await client.call_tool("fail", {})
            second = await client.call_tool("echo", {"text": "b"})
        finally:
            await pool.close()
        return first, failed, second

    first, failed, second = asyncio.run(_main())

    assert _pid(first) == _pid(second)
    assert json.loads(failed) == {"code": -32000, "message": "tool failed on purpose"}


def test_pooled_call_is_not_resent_after_read_timeout(tmp_path: Path) -> None:
    log = tmp_path / "calls.log"
    cfg = McpConfig(read_timeout_sec=1, session_mode="pooled")

    async def _main() -> tuple:
        pool = McpSessionPool(cfg)
        client = McpServerClient(_server(), cfg, pool=pool)
        try:
            with pytest.raises(McpTransportError, match="did not respond") as excinfo:
                await client.call_tool("slow", {"log": str(log), "seconds": 5})
            after = await client.call_tool("echo", {"text": "after"})
        finally:
            await pool.close()
        return excinfo.value, after

    error, after = asyncio.run(_main())

    assert error.request_sent is True
    assert log.read_text(encoding="utf-8").splitlines() == ["call"]
    assert after.splitlines()[0] == "echo: after"


def test_pooled_retry_happens_only_before_request_is_sent() -> None:
    cfg = McpConfig(read_timeout_sec=10, session_mode="pooled")
    seen: List[McpProcessSession] = []

    async def _fails_before_write(session: McpProcessSession) -> str:
        seen.append(session)
        if len(seen) == 1:
            raise McpTransportError("MCP stream closed.")
        return "ok"

    async def _fails_after_write(session: McpProcessSession) -> str:
        seen.append(session)
        raise McpTransportError("MCP stream closed.", request_sent=True)

    async def _main() -> str:
        pool = McpSessionPool(cfg)
        try:
            result = await pool.run(_server(), _fails_before_write)
            with pytest.raises(McpTransportError):
                await pool.run(_server(), _fails_after_write)
        finally:
            await pool.close()
        return result

    assert asyncio.run(_main()) == "ok"
    assert len(seen) == 3
    assert seen[0] is not seen[1]


def test_missing_executable_is_a_transport_error() -> None:
    server = McpServerConfig(name="missing", command="/nonexistent/mcp-server-binary")

    with pytest.raises(McpTransportError):
        asyncio.run(McpServerClient(server, McpConfig()).list_tools())


def test_unresponsive_server_times_out() -> None:
    server = McpServerConfig(name="slow", command=sys.executable, arguments='-c "import time; time.sleep(30)"')

    with pytest.raises(McpTransportError, match="did not respond"):
        asyncio.run(McpServerClient(server, McpConfig(read_timeout_sec=0.5)).list_tools())


def test_parse_tools_list_shapes() -> None:
    response = {
        "result": {
            "tools": [
                {"name": "a", "input_schema": {"type": "object"}},
                {"name": "  "},
                "junk",
                {"name": "b", "description": 3, "inputSchema": "bad"},
            ]
        }
    }

    tools = parse_tools_list(response)

    assert [t.name for t in tools] == ["a", "b"]
    assert tools[0].input_schema == {"type": "object"}
    assert tools[1].description == ""
    assert tools[1].input_schema["type"] == "object"
    assert parse_tools_list({"result": {}}) == []
    with pytest.raises(McpProtocolError):
        parse_tools_list({"error": {"code": -1, "message": "boom"}})


def test_render_call_result_shapes() -> None:
    blocks = {"result": {"content": [{"type": "text", "text": "one"}, {"type": "image", "data": "x"}]}}

    assert render_call_result(blocks) == 'one\n{"type": "image", "data": "x"}'
    assert render_call_result({"result": {"ok": True}}) == '{"ok": true}'
    assert render_call_result({"id": 1}) == '{"id": 1}'
