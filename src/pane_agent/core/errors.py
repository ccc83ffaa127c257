"""
运行时内部错误分类（异常类型）。

说明：
- 异常仅用于模块间传递“错误层级”语义；对外统一转换为 `RuntimeUpdate(type=error)`。
- 取消信号使用 `asyncio.CancelledError`，不在此层级内（必须始终向上传播）。
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PaneAgentError(Exception):
    """运行时错误基类（不建议直接抛出）。"""


class FrameworkError(PaneAgentError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息（会直接出现在 error 事件里）
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回消息本身（error 事件直接展示给用户）。"""

        return self.message


class ConfigError(FrameworkError):
    """配置错误（缺少 API key、agent 未启用等）；run 不会到达模型调用。"""

    def __init__(self, message: str, *, code: str = "CONFIG_ERROR", details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details or {})


class LlmTransportError(PaneAgentError):
    """
    模型请求的传输层错误（非 2xx、响应不是合法 JSON 等）。

    字段：
    - status_code：HTTP 状态码（非 HTTP 错误时为 None）
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StateError(PaneAgentError):
    """会话存储读写错误（索引损坏、JSONL 追加失败等）。"""
