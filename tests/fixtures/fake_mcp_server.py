"""
测试用 MCP server（Content-Length 分帧的 JSON-RPC over stdio）。

行为：
- initialize：返回 serverInfo；在响应前先发一条无关通知（验证客户端跳过不匹配帧）
- tools/list：返回 `echo` 与 `fail` 两个工具
- tools/call：`echo` 回显 arguments.text 并附带本进程 pid；`fail` 返回 JSON-RPC error；
  `slow`（不在 tools/list 中）向 arguments.log 追加一行后睡眠 arguments.seconds 秒
"""

from __future__ import annotations

import json
import os
import sys
import time


def _read_frame(stream):  # type: ignore[no-untyped-def]
    length = None
    while True:
        line = stream.readline()
        if not line:
            return None
        text = line.decode("ascii").strip()
        if not text:
            if length is None:
                continue
            break
        name, _, value = text.partition(":")
        if name.strip().lower() == "content-length":
            length = int(value.strip())
    return json.loads(stream.read(length).decode("utf-8"))


def _write_frame(stream, payload) -> None:  # type: ignore[no-untyped-def]
    body = json.dumps(payload).encode("utf-8")
    stream.write(f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body)
    stream.flush()


def _handle(message):  # type: ignore[no-untyped-def]
    method = message.get("method")
    params = message.get("params") or {}
    if method == "initialize":
        return {"protocolVersion": params.get("protocolVersion"), "serverInfo": {"name": "fake", "version": "1"}}
    if method == "tools/list":
        return {
            "tools": [
                {
                    "name": "echo",
                    "description": "Echo text back.",
                    "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
                },
                {"name": "fail", "description": "Always fails."},
            ]
        }
    if method == "tools/call":
        if params.get("name") == "fail":
            raise ValueError("tool failed on purpose")
        if params.get("name") == "slow":
            arguments = params.get("arguments") or {}
            with open(arguments["log"], "a", encoding="utf-8") as fh:
                fh.write("call\n")
            time.sleep(float(arguments.get("seconds", 5)))
            return {"content": [{"type": "text", "text": "slow done"}]}
        text = (params.get("arguments") or {}).get("text", "")
        return {"content": [{"type": "text", "text": f"echo: {text}"}, {"type": "text", "text": f"pid={os.getpid()}"}]}
    raise KeyError(method)


def main() -> int:
    stdin = sys.stdin.buffer
    stdout = sys.stdout.buffer
    while True:
        message = _read_frame(stdin)
        if message is None:
            return 0
        if "id" not in message:
            continue
        if message.get("method") == "initialize":
            _write_frame(stdout, {"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})
        try:
            result = _handle(message)
        except KeyError as e:
            _write_frame(
                stdout, {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": f"unknown {e}"}}
            )
            continue
        except ValueError as e:
            _write_frame(stdout, {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32000, "message": str(e)}})
            continue
        _write_frame(stdout, {"jsonrpc": "2.0", "id": message["id"], "result": result})


if __name__ == "__main__":
    raise SystemExit(main())
