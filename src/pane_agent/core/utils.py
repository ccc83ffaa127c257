"""共享工具函数（消除跨模块重复）。"""
from __future__ import annotations

from datetime import datetime, timezone


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（固定微秒精度，以 Z 结尾；可按字典序排序）。"""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def truncate(text: str | None, max_length: int) -> str:
    """超过 `max_length` 时截断并追加 `...`；None 视为空串。"""

    s = text or ""
    if len(s) <= max_length:
        return s
    return s[:max_length] + "..."


def flatten_line(text: str | None) -> str:
    """去掉 `\\r`，把换行压成空格并 strip（用于摘要/预览）。"""

    return (text or "").replace("\r", "").replace("\n", " ").strip()


def slugify(value: str | None) -> str:
    """
    把任意名称转换为工具名片段。

    规则：
    - 小写；非字母数字字符替换为 `_`
    - 连续 `__` 折叠为单个 `_`，并去掉首尾 `_`
    - 空白输入返回 `tool`
    """

    if not value or not value.strip():
        return "tool"
    slug = "".join(ch if ch.isalnum() else "_" for ch in value.strip().lower())
    while "__" in slug:
        slug = slug.replace("__", "_")
    return slug.strip("_")


def ensure_absolute_base(value: str | None, fallback: str) -> str:
    """补全 URL scheme（缺省 https）并去掉尾部 `/`；空白值使用 fallback。"""

    candidate = value.strip() if value and value.strip() else fallback
    if not candidate.lower().startswith(("http://", "https://")):
        candidate = "https://" + candidate
    return candidate.rstrip("/")
