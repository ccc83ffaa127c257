"""MCP 客户端异常类型。"""

from __future__ import annotations

from typing import Any


class McpTransportError(Exception):
    """
    传输层失败（进程无法启动、流关闭、帧读取超时、帧头非法）。

    字段：
    - request_sent：请求帧已完整写出后才失败（server 可能已经执行该请求）
    """

    def __init__(self, message: str, *, request_sent: bool = False) -> None:
        super().__init__(message)
        self.request_sent = request_sent


class McpProtocolError(Exception):
    """MCP server 返回了 JSON-RPC error，或响应体不是合法 JSON object。"""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.error_message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")
