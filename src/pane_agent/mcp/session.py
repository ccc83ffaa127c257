"""
MCP 进程会话（JSON-RPC 2.0 over stdio）。

生命周期：
- `start()`：启动 server 子进程（新进程组，便于整体终止）
- `initialize()`：发送 `initialize`，等待响应，再发送 `notifications/initialized`
- `request()`：递增整数 id；读取帧直到 id 匹配（通知/乱序帧被跳过）
- `close()`：关闭 stdin、终止进程组并回收子进程

超时：
- 每次读帧受 `read_timeout_sec` 约束；超时抛 `McpTransportError`（不会无限挂起）。
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pane_agent.config.loader import McpServerConfig
from pane_agent.mcp.errors import McpProtocolError, McpTransportError
from pane_agent.mcp.framing import decode_message, encode_message, read_frame

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"

# 传给 MCP server 子进程的安全环境变量白名单（其余只来自 server.env 显式声明）。
_SAFE_ENV_VARS = {
    "PATH", "HOME", "USER", "LOGNAME", "SHELL", "TERM",
    "LANG", "LC_ALL", "LC_CTYPE", "TZ",
    "TMPDIR", "TEMP", "TMP",
    "SYSTEMROOT", "COMSPEC", "APPDATA", "LOCALAPPDATA", "USERPROFILE",
    "NODE_PATH", "NODE_ENV", "PYTHONPATH",
    "XDG_CONFIG_HOME", "XDG_DATA_HOME",
}


def create_safe_env(custom_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """构造子进程环境：安全白名单 + 配置显式声明的变量（避免泄漏 API key 等）。"""

    safe = {k: v for k, v in os.environ.items() if k in _SAFE_ENV_VARS and v}
    if custom_env:
        safe.update({str(k): str(v) for k, v in custom_env.items()})
    return safe


def split_args(args: Optional[str]) -> List[str]:
    """
    按空白切分参数字符串；单/双引号包裹的片段保留内部空白（引号本身去掉）。

    示例：
    - `-y "@scope/server name" --flag` → `["-y", "@scope/server name", "--flag"]`
    """

    if not args or not args.strip():
        return []

    out: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    for ch in args:
        if quote is not None:
            if ch == quote:
                quote = None
                continue
            current.append(ch)
            continue
        if ch in ("'", '"'):
            quote = ch
            continue
        if ch.isspace():
            if current:
                out.append("".join(current))
                current = []
            continue
        current.append(ch)
    if current:
        out.append("".join(current))
    return out


class McpProcessSession:
    """
    单个 MCP server 子进程上的 JSON-RPC 会话。

    参数：
    - server：server 配置（command/arguments/working_directory/env）
    - read_timeout_sec：单帧读取超时
    - client_name/client_version：`initialize.clientInfo`
    """

    def __init__(
        self,
        server: McpServerConfig,
        *,
        read_timeout_sec: float = 60.0,
        client_name: str = "cmux",
        client_version: str = "0.1.0",
    ) -> None:
        self._server = server
        self._read_timeout_sec = float(read_timeout_sec)
        self._client_name = client_name
        self._client_version = client_version
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._next_id = 0
        self._initialized = False

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        """启动子进程；可执行文件不存在或无法启动时抛 McpTransportError。"""

        if self._proc is not None:
            return

        cwd: Optional[str] = None
        wd = (self._server.working_directory or "").strip()
        if wd and Path(wd).is_dir():
            cwd = wd

        kwargs: Dict[str, Any] = {}
        if os.name != "nt":
            kwargs["start_new_session"] = True

        try:
            self._proc = await asyncio.create_subprocess_exec(
                self._server.command,
                *split_args(self._server.arguments),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                env=create_safe_env(self._server.env),
                **kwargs,
            )
        except OSError as e:
            raise McpTransportError(f"Failed to start MCP server process: {self._server.command}: {e}") from e

    async def initialize(self) -> Dict[str, Any]:
        """执行握手；重复调用为 no-op。返回 initialize 的 result（可能为空 dict）。"""

        if self._initialized:
            return {}
        await self.start()
        response = await self.request(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": self._client_name, "version": self._client_version},
            },
        )
        error = response.get("error")
        if isinstance(error, dict):
            raise McpProtocolError(int(error.get("code") or 0), str(error.get("message") or ""), error.get("data"))
        await self.notify("notifications/initialized", {})
        self._initialized = True
        result = response.get("result")
        return result if isinstance(result, dict) else {}

    async def request(self, method: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        发送请求并返回 id 匹配的完整响应帧（包含 `result` 或 `error`）。

        说明：
        - 不匹配的帧（通知、其它 id 的响应）直接跳过；
        - 每次读帧都有超时；超时/流关闭抛 McpTransportError。
        - 请求帧写出之后的传输失败带 `request_sent=True`（调用方不得盲目重发）。
        """

        self._next_id += 1
        request_id = self._next_id
        await self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": dict(params or {})})

        try:
            while True:
                frame = await self._read()
                frame_id = frame.get("id")
                if isinstance(frame_id, int) and not isinstance(frame_id, bool) and frame_id == request_id:
                    return frame
        except McpTransportError as e:
            raise McpTransportError(str(e), request_sent=True) from e

    async def notify(self, method: str, params: Optional[Mapping[str, Any]] = None) -> None:
        """发送通知（无 id，不等待响应）。"""

        await self._write({"jsonrpc": "2.0", "method": method, "params": dict(params or {})})

    async def _write(self, payload: Mapping[str, Any]) -> None:
        proc = self._require_proc()
        assert proc.stdin is not None
        try:
            proc.stdin.write(encode_message(payload))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise McpTransportError("MCP stream closed.") from e

    async def _read(self) -> Dict[str, Any]:
        proc = self._require_proc()
        assert proc.stdout is not None
        try:
            body = await asyncio.wait_for(read_frame(proc.stdout), timeout=self._read_timeout_sec)
        except asyncio.TimeoutError as e:
            raise McpTransportError(
                f"MCP server '{self._server.name}' did not respond within {self._read_timeout_sec:g}s."
            ) from e
        return decode_message(body)

    def _require_proc(self) -> asyncio.subprocess.Process:
        if self._proc is None:
            raise McpTransportError("MCP session is not started.")
        return self._proc

    async def close(self) -> None:
        """关闭流并终止进程（含其进程组）；多次调用安全。"""

        proc = self._proc
        if proc is None:
            return
        self._proc = None
        self._initialized = False

        if proc.stdin is not None:
            try:
                proc.stdin.close()
            except (OSError, RuntimeError):
                pass

        if proc.returncode is None:
            try:
                if os.name != "nt":
                    os.killpg(proc.pid, signal.SIGKILL)
                else:
                    proc.kill()
            except ProcessLookupError:
                pass
            except OSError:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("MCP server '%s' (pid=%s) did not exit after kill", self._server.name, proc.pid)

    async def __aenter__(self) -> "McpProcessSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
