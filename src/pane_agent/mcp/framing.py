"""
MCP stdio 帧编解码（Content-Length 头 + UTF-8 JSON body）。

帧格式：
    Content-Length: <n>\\r\\n
    \\r\\n
    <n 字节 UTF-8 body>

说明：
- 这是 HTTP 头风格的最小分帧，不是“按行分隔的 JSON”；body 内可以包含换行。
- 头部按行读取直到空行；头名大小写不敏感；未知头忽略。
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Mapping

from pane_agent.mcp.errors import McpProtocolError, McpTransportError

MAX_FRAME_SIZE = 10 * 1024 * 1024
_CONTENT_LENGTH = "content-length:"


def encode_frame(body: bytes) -> bytes:
    """为 body 加上 `Content-Length` 头。"""

    return f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body


def encode_message(payload: Mapping[str, Any]) -> bytes:
    """把 JSON-RPC 消息序列化为完整帧。"""

    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return encode_frame(body)


async def read_frame(reader: asyncio.StreamReader) -> bytes:
    """
    从流中读取一帧，返回 body 原始字节。

    异常：
    - McpTransportError：流在帧开始前/读取中关闭；缺少 Content-Length；长度超过上限
    """

    content_length: int | None = None
    saw_header = False
    while True:
        line = await reader.readline()
        if not line:
            raise McpTransportError("MCP stream closed.")
        if not line.endswith(b"\n") and not saw_header:
            raise McpTransportError("MCP stream closed.")
        text = line.decode("ascii", errors="replace").strip("\r\n")
        if not text:
            if saw_header:
                break
            # 帧之间多余的空行
            continue
        saw_header = True
        if text.lower().startswith(_CONTENT_LENGTH):
            try:
                content_length = int(text[len(_CONTENT_LENGTH):].strip())
            except ValueError:
                content_length = None

    if content_length is None or content_length < 0:
        raise McpTransportError("Invalid MCP frame: missing Content-Length.")
    if content_length > MAX_FRAME_SIZE:
        raise McpTransportError(f"MCP frame too large: {content_length} bytes (max {MAX_FRAME_SIZE})")

    try:
        return await reader.readexactly(content_length)
    except asyncio.IncompleteReadError as e:
        raise McpTransportError("MCP stream closed while reading frame.") from e


def decode_message(body: bytes) -> Dict[str, Any]:
    """
    把帧 body 解析为 JSON object。

    异常：
    - McpProtocolError：body 不是合法 UTF-8 JSON object（code 取 JSON-RPC parse error -32700）
    """

    try:
        obj = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise McpProtocolError(-32700, f"invalid JSON frame: {e}") from e
    if not isinstance(obj, dict):
        raise McpProtocolError(-32700, "JSON-RPC frame must be an object")
    return obj
