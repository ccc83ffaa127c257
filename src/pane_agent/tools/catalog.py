"""
ToolCatalogBuilder：为一次 run 构建工具目录。

目录顺序（固定）：
1. cmux 平台工具
2. `bash_run`（启用时）
3. `web_search`（启用时）
4. `custom_<slug>` 模板工具
5. `mcp_<server>_<tool>`：每个启用的 MCP server 做一次 tools/list；
   失败的 server 变成一个 `mcp_<server>_error` 工具，其它 server 不受影响

名称唯一性：大小写不敏感；重复名称的后来者被丢弃（记录 warning）。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from pane_agent.config.loader import AgentRuntimeConfig, McpServerConfig
from pane_agent.core.contracts import AgentPaneContext, PaneCommandDispatcher, SecretLookup
from pane_agent.core.utils import slugify
from pane_agent.mcp.client import McpServerClient, McpSessionPool, McpToolDescriptor
from pane_agent.tools.builtin.platform import build_platform_tools
from pane_agent.tools.builtin.shell import build_bash_tool, build_custom_tools
from pane_agent.tools.builtin.web_search import HttpClientFactory, build_web_search_tool
from pane_agent.tools.protocol import ToolDescriptor, object_schema

logger = logging.getLogger(__name__)


def _default_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(180.0))


class ToolCatalogBuilder:
    """
    工具目录构建器（每次 run 调用一次 `build`）。

    参数：
    - cfg：运行时配置快照
    - dispatcher：宿主 pane 命令分发器（可为 None）
    - secret_lookup：secret 查询（web_search 的 API key）
    - http_client_factory：web_search 使用的 httpx 客户端工厂
    - mcp_pool：常驻会话池（`mcp.session_mode: pooled` 时由调用方传入）
    """

    def __init__(
        self,
        cfg: AgentRuntimeConfig,
        *,
        dispatcher: Optional[PaneCommandDispatcher] = None,
        secret_lookup: SecretLookup = lambda _name: None,
        http_client_factory: HttpClientFactory = _default_http_client,
        mcp_pool: Optional[McpSessionPool] = None,
    ) -> None:
        self._cfg = cfg
        self._dispatcher = dispatcher
        self._secret_lookup = secret_lookup
        self._http_client_factory = http_client_factory
        self._mcp_pool = mcp_pool

    async def build(self, pane_context: AgentPaneContext) -> List[ToolDescriptor]:
        """构建目录；MCP 初始化失败被隔离为错误工具，取消照常传播。"""

        tools_cfg = self._cfg.tools
        catalog: List[ToolDescriptor] = []
        seen: Dict[str, str] = {}

        def _add(tool: ToolDescriptor) -> None:
            key = tool.name.lower()
            if key in seen:
                logger.warning("duplicate tool name %r ignored (already registered as %r)", tool.name, seen[key])
                return
            seen[key] = tool.name
            catalog.append(tool)

        for tool in build_platform_tools(self._cfg.submit, self._dispatcher):
            _add(tool)
        if tools_cfg.bash.enabled:
            _add(build_bash_tool(tools_cfg.bash))
        if tools_cfg.web_search.enabled:
            _add(
                build_web_search_tool(
                    tools_cfg.web_search,
                    secret_lookup=self._secret_lookup,
                    client_factory=self._http_client_factory,
                )
            )
        for tool in build_custom_tools(tools_cfg.custom, tools_cfg.bash):
            _add(tool)

        for server in self._cfg.mcp.servers:
            if not server.enabled or not server.name.strip() or not server.command.strip():
                continue
            for tool in await self._build_mcp_tools(server):
                _add(tool)

        return catalog

    def _mcp_client(self, server: McpServerConfig) -> McpServerClient:
        pool = self._mcp_pool if self._cfg.mcp.session_mode == "pooled" else None
        return McpServerClient(server, self._cfg.mcp, pool=pool)

    async def _build_mcp_tools(self, server: McpServerConfig) -> List[ToolDescriptor]:
        server_slug = slugify(server.name)
        try:
            listed = await self._mcp_client(server).list_tools()
        except Exception as e:
            logger.warning("MCP server '%s' failed to initialize: %s", server.name, e)
            message = f"MCP init error for '{server.name}': {e}"

            async def _error(_args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
                return message

            return [
                ToolDescriptor(
                    name=f"mcp_{server_slug}_error",
                    description=f"MCP server '{server.name}' failed to initialize.",
                    parameters=object_schema(),
                    handler=_error,
                )
            ]

        return [self._mcp_tool(server, server_slug, tool) for tool in listed]

    def _mcp_tool(self, server: McpServerConfig, server_slug: str, tool: McpToolDescriptor) -> ToolDescriptor:
        async def _call(args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
            return await self._mcp_client(server).call_tool(tool.name, args)

        return ToolDescriptor(
            name=f"mcp_{server_slug}_{slugify(tool.name)}",
            description=tool.description.strip() or f"MCP tool '{tool.name}' from server '{server.name}'.",
            parameters=tool.input_schema,
            handler=_call,
        )
