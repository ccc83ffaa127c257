"""核心层（契约 / 错误 / run 协调 / 上下文管理 / façade）。"""

from __future__ import annotations

__all__ = [
    "contracts",
    "context",
    "coordinator",
    "errors",
    "registry",
    "run_errors",
    "service",
]
