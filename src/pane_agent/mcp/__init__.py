"""MCP（Model Context Protocol）stdio 客户端：分帧、进程会话、工具列表/调用。"""

from __future__ import annotations

from pane_agent.mcp.client import McpServerClient, McpSessionPool, McpToolDescriptor
from pane_agent.mcp.errors import McpProtocolError, McpTransportError

__all__ = ["McpProtocolError", "McpServerClient", "McpSessionPool", "McpToolDescriptor", "McpTransportError"]
