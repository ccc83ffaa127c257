"""
LLM 层通用类型：Provider、token 用量、单轮模型输出、run 结果。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Mapping, Optional

from pane_agent.tools.protocol import ToolCall


class Provider(str, Enum):
    """模型 provider（封闭集合）。"""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Provider":
        """大小写/空白不敏感；未知值回退为 openai。"""

        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.OPENAI


@dataclass
class TokenUsage:
    """token 用量（跨轮累加）。"""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: Optional["TokenUsage"]) -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens


def _int_field(usage: Mapping[str, Any], key: str) -> Optional[int]:
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def extract_usage(root: Any) -> Optional[TokenUsage]:
    """
    从响应（或 SSE chunk）的 `usage` 节点提取用量。

    规则：
    - 先读 `prompt_tokens/completion_tokens/total_tokens`，再由 `input_tokens/output_tokens` 覆盖
    - total ≤ 0 时取 max(0,in) + max(0,out)
    - 三者都不为正时返回 None
    """

    if not isinstance(root, Mapping):
        return None
    usage = root.get("usage")
    if not isinstance(usage, Mapping):
        return None

    input_tokens = _int_field(usage, "prompt_tokens") or 0
    output_tokens = _int_field(usage, "completion_tokens") or 0
    total_tokens = _int_field(usage, "total_tokens") or 0

    override_in = _int_field(usage, "input_tokens")
    if override_in is not None:
        input_tokens = override_in
    override_out = _int_field(usage, "output_tokens")
    if override_out is not None:
        output_tokens = override_out

    if total_tokens <= 0:
        total_tokens = max(0, input_tokens) + max(0, output_tokens)

    if input_tokens <= 0 and output_tokens <= 0 and total_tokens <= 0:
        return None
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total_tokens)


@dataclass
class ModelTurn:
    """
    一次模型调用的结果。

    字段：
    - text：assistant 文本
    - tool_calls：请求的工具调用（按模型给出的顺序）
    - usage：本次调用用量（无则为 None）
    - streamed：文本是否已经以增量形式转发给调用方
    - raw_assistant_content：provider 原生 assistant 内容（Anthropic 的 content blocks）
    """

    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    streamed: bool = False
    raw_assistant_content: Any = None


@dataclass
class LoopResult:
    """一次 run 的最终结果（provider/model + 累计用量）。"""

    text: str
    provider: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
