"""
MCP server 客户端（tools/list、tools/call）。

会话模式：
- per_call（默认）：每次逻辑调用（一次 list、一次 call）启动独立进程并在结束时销毁；
- pooled：`McpSessionPool` 为每个 server 维持一个常驻会话，同一 server 的请求串行；
  传输失败时销毁会话；请求帧尚未写出时重启并重试一次，已写出的请求不重发。
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

from pane_agent.config.loader import McpConfig, McpServerConfig
from pane_agent.mcp.errors import McpProtocolError, McpTransportError
from pane_agent.mcp.session import McpProcessSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_INPUT_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}, "additionalProperties": True}


@dataclass(frozen=True)
class McpToolDescriptor:
    """MCP server 暴露的单个工具。"""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_INPUT_SCHEMA))


def _json_text(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)


def parse_tools_list(response: Mapping[str, Any]) -> List[McpToolDescriptor]:
    """
    解析 `tools/list` 响应帧。

    规则：
    - `error` → McpProtocolError
    - 缺少 `result.tools` 数组 → 空列表
    - schema 字段接受 `inputSchema` 或 `input_schema`，缺省为开放 object schema
    """

    error = response.get("error")
    if isinstance(error, dict):
        raise McpProtocolError(int(error.get("code") or 0), str(error.get("message") or ""), error.get("data"))

    result = response.get("result")
    tools = result.get("tools") if isinstance(result, dict) else None
    if not isinstance(tools, list):
        return []

    out: List[McpToolDescriptor] = []
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        name = tool.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        description = tool.get("description")
        if "inputSchema" in tool:
            schema = tool["inputSchema"]
        elif "input_schema" in tool:
            schema = tool["input_schema"]
        else:
            schema = dict(DEFAULT_INPUT_SCHEMA)
        out.append(
            McpToolDescriptor(
                name=name,
                description=description if isinstance(description, str) else "",
                input_schema=schema if isinstance(schema, dict) else dict(DEFAULT_INPUT_SCHEMA),
            )
        )
    return out


def render_call_result(response: Mapping[str, Any]) -> str:
    """
    把 `tools/call` 响应帧渲染为文本。

    规则：
    - 有 `error` 节点：返回其 JSON 文本（交给模型自行处理）
    - `result.content` 数组：text block 原样、其它 block 以 JSON 原文，按行拼接
    - 其它形状：返回 result（或整个响应）的 JSON 文本
    """

    if "error" in response:
        return _json_text(response["error"])
    if "result" not in response:
        return _json_text(dict(response))

    result = response["result"]
    content = result.get("content") if isinstance(result, dict) else None
    if isinstance(content, list):
        lines: List[str] = []
        for block in content:
            if isinstance(block, dict) and str(block.get("type") or "").lower() == "text":
                text = block.get("text")
                lines.append(text if isinstance(text, str) else "")
            else:
                lines.append(_json_text(block))
        return "\n".join(lines).strip()
    return _json_text(result)


class McpSessionPool:
    """
    常驻会话池（每个 server 一个会话）。

    约束：
    - 同一 server 的操作用 asyncio.Lock 串行（单个 in-flight 请求）
    - 传输失败：关闭会话；仅当请求帧尚未写出（启动、握手、写入失败）时重启并重试一次
    - 请求已写出后的失败（读超时、流关闭）直接向上抛出，不重发
    """

    def __init__(self, cfg: McpConfig) -> None:
        self._cfg = cfg
        self._sessions: Dict[str, McpProcessSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _new_session(self, server: McpServerConfig) -> McpProcessSession:
        return McpProcessSession(
            server,
            read_timeout_sec=self._cfg.read_timeout_sec,
            client_name=self._cfg.client_name,
            client_version=self._cfg.client_version,
        )

    async def _ensure(self, server: McpServerConfig) -> McpProcessSession:
        session = self._sessions.get(server.name)
        if session is None or not session.is_alive:
            if session is not None:
                await session.close()
            session = self._new_session(server)
            self._sessions[server.name] = session
            await session.initialize()
        return session

    async def _drop(self, name: str) -> None:
        session = self._sessions.pop(name, None)
        if session is not None:
            await session.close()

    async def run(self, server: McpServerConfig, op: Callable[[McpProcessSession], Awaitable[T]]) -> T:
        lock = self._locks.setdefault(server.name, asyncio.Lock())
        async with lock:
            session: Optional[McpProcessSession] = None
            try:
                session = await self._ensure(server)
                return await op(session)
            except McpTransportError as e:
                await self._drop(server.name)
                if session is not None and e.request_sent:
                    # server 可能已经执行了该请求（例如有副作用的 tools/call），不重发
                    logger.warning("MCP server '%s' failed after request was sent: %s", server.name, e)
                    raise
                logger.info("restarting MCP session for '%s' after transport error: %s", server.name, e)
            except asyncio.CancelledError:
                # 响应可能只读了一半；丢弃会话，下一次调用重新握手。
                await self._drop(server.name)
                raise
            return await op(await self._ensure(server))

    async def close(self) -> None:
        """关闭所有常驻会话。"""

        names = list(self._sessions)
        for name in names:
            await self._drop(name)


class McpServerClient:
    """
    单个 MCP server 的客户端。

    参数：
    - server：server 配置
    - cfg：MCP 全局配置（读超时、clientInfo）
    - pool：传入时使用常驻会话；否则每次调用独立进程
    """

    def __init__(self, server: McpServerConfig, cfg: McpConfig, *, pool: Optional[McpSessionPool] = None) -> None:
        self._server = server
        self._cfg = cfg
        self._pool = pool

    async def _run(self, op: Callable[[McpProcessSession], Awaitable[T]]) -> T:
        if self._pool is not None:
            return await self._pool.run(self._server, op)
        session = McpProcessSession(
            self._server,
            read_timeout_sec=self._cfg.read_timeout_sec,
            client_name=self._cfg.client_name,
            client_version=self._cfg.client_version,
        )
        async with session:
            await session.initialize()
            return await op(session)

    async def list_tools(self) -> List[McpToolDescriptor]:
        """执行 `tools/list`。"""

        async def _op(session: McpProcessSession) -> List[McpToolDescriptor]:
            return parse_tools_list(await session.request("tools/list", {}))

        return await self._run(_op)

    async def call_tool(self, tool_name: str, arguments: Optional[Mapping[str, Any]] = None) -> str:
        """执行 `tools/call` 并返回渲染后的文本。"""

        async def _op(session: McpProcessSession) -> str:
            response = await session.request("tools/call", {"name": tool_name, "arguments": dict(arguments or {})})
            return render_call_result(response)

        return await self._run(_op)
