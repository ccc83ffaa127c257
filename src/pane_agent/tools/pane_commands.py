"""
pane 命令分发（面向宿主的命令管道）。

说明：
- 宿主未挂载分发器时，所有 pane 命令返回 `{"error": "cmux command handler unavailable"}`，
  模型能看到并自行调整，而不是让 run 失败。
- `PANE.READ` 的响应约定为 JSON `{"ok": true, "text": "..."}`。
"""

from __future__ import annotations

import asyncio
import json
from typing import Dict, Optional

from pane_agent.core.contracts import PaneCommandDispatcher

HANDLER_UNAVAILABLE = json.dumps({"error": "cmux command handler unavailable"})


async def execute_pane_command(
    dispatcher: Optional[PaneCommandDispatcher],
    command: str,
    args: Optional[Dict[str, str]] = None,
) -> str:
    """把命令交给分发器执行，返回其文本响应。"""

    # 让已请求的取消在进入宿主代码前生效
    await asyncio.sleep(0)
    if dispatcher is None:
        return HANDLER_UNAVAILABLE
    return await dispatcher(command, dict(args or {}))


def extract_pane_read_text(response: Optional[str]) -> Optional[str]:
    """
    从 `PANE.READ` 响应中提取文本。

    返回：
    - `ok` 为 true 且存在 `text` 时返回文本（null 视为空串）；其它情况返回 None
    """

    if not response or not response.strip():
        return None
    try:
        obj = json.loads(response)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict) or obj.get("ok") is not True or "text" not in obj:
        return None
    text = obj["text"]
    if text is None:
        return ""
    return text if isinstance(text, str) else json.dumps(text, ensure_ascii=False)
