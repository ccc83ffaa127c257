"""
工具参数读取（宽松语义）。

模型给出的参数类型并不总是与 schema 一致，这里的读取规则是：
- `get_str`：字符串原样返回；其它 JSON 值返回其 JSON 文本（例如 `3` → `"3"`）
- `get_int`：整数，或可解析为整数的字符串；bool 不算整数
- `get_bool`：bool，或 `"true"/"false"` 字符串（大小写不敏感）
缺少参数或不可转换时返回 None。
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

WORKSPACE_KEYS = ("workspaceId", "workspaceName", "workspaceIndex")
SURFACE_KEYS = ("surfaceId", "surfaceName", "surfaceIndex")
PANE_KEYS = ("paneId", "paneName", "paneIndex")
TARGET_SELECTOR_KEYS = WORKSPACE_KEYS + SURFACE_KEYS + PANE_KEYS

TARGET_SELECTOR_PROPERTIES: Dict[str, Any] = {
    "workspaceId": {"type": "string"},
    "workspaceName": {"type": "string"},
    "workspaceIndex": {"type": "integer"},
    "surfaceId": {"type": "string"},
    "surfaceName": {"type": "string"},
    "surfaceIndex": {"type": "integer"},
    "paneId": {"type": "string"},
    "paneName": {"type": "string"},
    "paneIndex": {"type": "integer"},
}


def get_str(args: Mapping[str, Any], name: str) -> Optional[str]:
    if name not in args:
        return None
    value = args[name]
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def get_int(args: Mapping[str, Any], name: str) -> Optional[int]:
    value = args.get(name)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def get_bool(args: Mapping[str, Any], name: str) -> Optional[bool]:
    value = args.get(name)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


def has_any_target_selector(args: Mapping[str, Any]) -> bool:
    """参数中是否出现任一 workspace/surface/pane 选择器（值是否为空不影响判断）。"""

    return any(key in args for key in TARGET_SELECTOR_KEYS)


def build_target_selector_payload(args: Mapping[str, Any]) -> Dict[str, str]:
    """
    把选择器参数转换为 pane 命令参数。

    规则：
    - `*Id`/`*Name`：非空白字符串才复制
    - `*Index`：可解析为整数才复制（十进制文本）
    """

    payload: Dict[str, str] = {}
    for key in TARGET_SELECTOR_KEYS:
        if key.endswith("Index"):
            index = get_int(args, key)
            if index is not None:
                payload[key] = str(index)
            continue
        text = get_str(args, key)
        if text is not None and text.strip():
            payload[key] = text
    return payload
