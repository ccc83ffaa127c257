"""
Run 失败错误类型化（RunErrorKind / RunError）。

说明：
- run 任务的边界处把“除取消以外”的所有异常统一转换为 `RunError`，再生成 error 事件；
- 取消（`asyncio.CancelledError`）不经过这里，单独报告为 `canceled.` 状态。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

import httpx

from pane_agent.core.errors import ConfigError, FrameworkError, LlmTransportError
from pane_agent.mcp.errors import McpProtocolError, McpTransportError


class RunErrorKind(str, Enum):
    """error 事件的稳定错误分类（机器可消费）。"""

    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    HTTP_ERROR = "http_error"

    CONFIG_ERROR = "config_error"
    LLM_ERROR = "llm_error"
    MCP_ERROR = "mcp_error"

    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RunError:
    """
    RunError：结构化运行错误。

    字段：
    - error_kind：稳定分类
    - message：可读错误消息（必须避免 secrets）
    - retryable：是否建议上层重试（运行时自身从不自动重试）
    - details：可选；结构化上下文（必须可 JSON 序列化）
    """

    error_kind: RunErrorKind
    message: str
    retryable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """转换为 payload dict（稳定字段名）。"""

        out: Dict[str, Any] = {
            "error_kind": str(self.error_kind.value),
            "message": str(self.message or ""),
            "retryable": bool(self.retryable),
        }
        if self.details:
            out["details"] = dict(self.details)
        return out


def sanitize_error(msg: str) -> str:
    """从错误消息里移除凭据（URL 内联账号密码、Bearer token、常见 key=value 形式）。"""

    msg = re.sub(r"(https?://)([^:/\s]+):([^@\s]+)@", r"\1***:***@", msg)
    msg = re.sub(r"Bearer\s+[A-Za-z0-9_\-\.]{8,}", "Bearer [redacted]", msg, flags=re.IGNORECASE)
    msg = re.sub(
        r"(api[_-]?key|token|password|secret|authorization)([\"'\s]*[:=][\"'\s]*)[^\s\"',}]+",
        r"\1\2[redacted]",
        msg,
        flags=re.IGNORECASE,
    )
    return msg


def _status_kind(code: int) -> tuple[RunErrorKind, bool]:
    """把 HTTP 状态码映射为 (kind, retryable)。"""

    if code in (401, 403):
        return RunErrorKind.AUTH_ERROR, False
    if code == 429:
        return RunErrorKind.RATE_LIMITED, True
    if 500 <= code <= 599:
        return RunErrorKind.SERVER_ERROR, True
    return RunErrorKind.HTTP_ERROR, False


def classify_run_exception(exc: BaseException) -> RunError:
    """
    将运行时异常映射为结构化 RunError。

    约束：
    - 不得包含 secrets（message 经过 `sanitize_error`）
    - message 必须尽量简洁可读
    """

    message = sanitize_error(str(exc) or exc.__class__.__name__)

    if isinstance(exc, ConfigError):
        return RunError(error_kind=RunErrorKind.CONFIG_ERROR, message=message, details={"code": exc.code})

    if isinstance(exc, FrameworkError):
        return RunError(
            error_kind=RunErrorKind.CONFIG_ERROR,
            message=message,
            details={"code": exc.code, "framework_details": dict(exc.details)},
        )

    if isinstance(exc, LlmTransportError):
        if exc.status_code is None:
            return RunError(error_kind=RunErrorKind.LLM_ERROR, message=message)
        kind, retryable = _status_kind(int(exc.status_code))
        return RunError(error_kind=kind, message=message, retryable=retryable, details={"status_code": exc.status_code})

    if isinstance(exc, httpx.TimeoutException):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=message, retryable=True, details={"kind": "timeout"})

    if isinstance(exc, httpx.RequestError):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=message, retryable=True, details={"kind": "request_error"})

    if isinstance(exc, (McpTransportError, McpProtocolError)):
        return RunError(error_kind=RunErrorKind.MCP_ERROR, message=message)

    if isinstance(exc, (json.JSONDecodeError, ValueError)):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=message)

    return RunError(error_kind=RunErrorKind.UNKNOWN, message=message, details={"exception_type": type(exc).__name__})

