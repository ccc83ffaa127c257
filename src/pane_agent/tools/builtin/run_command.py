"""
内置工具：cmux_pane_run_command（写入命令 → 提交 → 读取尾部确认）。

流程（submit=true）：
1. 读取目标 pane 尾部作为基线
2. 匹配提交 profile（可覆盖提交键序列、等待时长、重复次数）
3. 依次尝试候选提交键（每个键可重复 N 次）：首次尝试携带命令文本，之后只发送提交键；
   等待后重新读取尾部，与基线比较（去掉 `\\r`、去掉尾部空白）；有变化即接受并停止
4. 输出 `writeResult` / `submitTrace` / `paneTail` 段落

提交键：
- `enter` → `\\r`，`linefeed`（`lf`/`ctrl+j`）→ `\\n`，`crlf` → `\\r\\n`，`none` → 空串
- `auto`：按配置的回退顺序尝试（回退关闭时只用 `enter`）
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pane_agent.config.loader import SubmitConfig, SubmitProfileConfig
from pane_agent.core.contracts import AgentPaneContext, PaneCommandDispatcher
from pane_agent.tools.args import (
    TARGET_SELECTOR_PROPERTIES,
    build_target_selector_payload,
    clamp,
    get_bool,
    get_int,
    get_str,
)
from pane_agent.tools.pane_commands import execute_pane_command, extract_pane_read_text
from pane_agent.tools.protocol import ToolDescriptor, object_schema

SleepFn = Callable[[float], Awaitable[Any]]

DEFAULT_ATTEMPT_ORDER = ("enter", "linefeed", "crlf")
_KEY_ALIASES = {"lf": "linefeed", "ctrl+j": "linefeed", "cr": "enter", "ctrl+m": "enter"}
_KNOWN_KEYS = {"enter", "linefeed", "crlf", "lf", "cr", "ctrl+j", "ctrl+m"}
_SPLIT_RE = re.compile(r"[,; \t\r\n]+")


def submit_key_to_sequence(submit_key: Optional[str]) -> str:
    """提交键 → 写入 pane 的字节序列；未知键按 `enter` 处理。"""

    key = (submit_key or "auto").strip().lower()
    if key in ("linefeed", "lf", "ctrl+j"):
        return "\n"
    if key == "crlf":
        return "\r\n"
    if key == "none":
        return ""
    return "\r"


def parse_submit_key_sequence(value: Optional[str], *, keep_duplicates: bool) -> List[str]:
    """解析 `enter,linefeed` 形式的键序列（别名归一，未知项忽略）。"""

    out: List[str] = []
    if not value or not value.strip():
        return out
    for part in _SPLIT_RE.split(value):
        key = part.strip().lower()
        if key not in _KNOWN_KEYS:
            continue
        key = _KEY_ALIASES.get(key, key)
        if keep_duplicates or key not in out:
            out.append(key)
    return out


def get_submit_attempt_order(submit_key: Optional[str], cfg: SubmitConfig) -> List[str]:
    """返回本次提交要依次尝试的键。"""

    key = (submit_key or "auto").strip().lower()
    if key not in ("auto", ""):
        return [key]
    if not cfg.enable_fallback:
        return ["enter"]
    parsed = parse_submit_key_sequence(cfg.fallback_order, keep_duplicates=False)
    return parsed or list(DEFAULT_ATTEMPT_ORDER)


def matches_pattern(pattern: Optional[str], value: Optional[str]) -> bool:
    """
    profile 模式匹配。

    规则：
    - 空模式 → 匹配
    - 空值 → 不匹配
    - 含 `*`/`?`：通配符整串匹配；否则子串匹配（均大小写不敏感）
    """

    p = (pattern or "").strip()
    if not p:
        return True
    v = value or ""
    if not v.strip():
        return False
    if "*" in p or "?" in p:
        regex = "^" + re.escape(p).replace(r"\*", ".*").replace(r"\?", ".") + "$"
        return re.match(regex, v, re.IGNORECASE | re.DOTALL) is not None
    return p.lower() in v.lower()


def _select_first(payload: Dict[str, str], keys: List[str]) -> str:
    for key in keys:
        value = payload.get(key)
        if value and value.strip():
            return value.strip()
    return ""


def resolve_submit_profile(
    cfg: SubmitConfig,
    selector_payload: Dict[str, str],
    command: str,
    pane_tail: str,
    submit_key: Optional[str],
) -> Optional[SubmitProfileConfig]:
    """按声明顺序返回第一个匹配的启用 profile；未开启 profiles 时返回 None。"""

    if not cfg.enable_target_profiles or not cfg.profiles:
        return None

    auto_submit = (submit_key or "auto").strip().lower() in ("auto", "")
    workspace = _select_first(selector_payload, ["workspaceName", "workspaceId"])
    surface = _select_first(selector_payload, ["surfaceName", "surfaceId"])
    pane = _select_first(selector_payload, ["paneName", "paneId"])

    for profile in cfg.profiles:
        if not profile.enabled:
            continue
        if profile.auto_only and not auto_submit:
            continue
        if (
            matches_pattern(profile.workspace_pattern, workspace)
            and matches_pattern(profile.surface_pattern, surface)
            and matches_pattern(profile.pane_pattern, pane)
            and matches_pattern(profile.command_pattern, command)
            and matches_pattern(profile.tail_pattern, pane_tail)
        ):
            return profile
    return None


def normalize_pane_tail(text: Optional[str]) -> str:
    return (text or "").replace("\r", "").rstrip()


def has_meaningful_tail_change(before: Optional[str], after: Optional[str]) -> bool:
    return normalize_pane_tail(before) != normalize_pane_tail(after)


def resolve_submit_key(args: Dict[str, Any], cfg: SubmitConfig) -> str:
    """`submitKey` 参数（非空白）优先，否则使用配置的默认键；统一小写。"""

    requested = get_str(args, "submitKey")
    if requested is not None and requested.strip():
        return requested.strip().lower()
    return (cfg.default_key or "auto").strip().lower()


RUN_COMMAND_SCHEMA = object_schema(
    {
        "command": {"type": "string"},
        "submit": {"type": "boolean"},
        "submitKey": {"type": "string"},
        "readTail": {"type": "boolean"},
        "waitMs": {"type": "integer"},
        "tailLines": {"type": "integer"},
        "maxChars": {"type": "integer"},
        **TARGET_SELECTOR_PROPERTIES,
    },
    required=["command"],
)


def build_run_command_tool(
    cfg: SubmitConfig,
    dispatcher: Optional[PaneCommandDispatcher],
    *,
    sleep: SleepFn = asyncio.sleep,
) -> ToolDescriptor:
    """
    构造 `cmux_pane_run_command` 工具。

    参数：
    - cfg：提交策略配置（默认键、回退顺序、profiles）
    - dispatcher：pane 命令分发器（None 时所有 pane 命令返回 handler unavailable）
    - sleep：等待函数（测试可替换为不等待的实现）
    """

    async def _pane(command: str, payload: Dict[str, str]) -> str:
        return await execute_pane_command(dispatcher, command, payload)

    async def _handler(args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
        raw_command = get_str(args, "command")
        if raw_command is None:
            return "Missing required argument: command"
        command = raw_command.rstrip("\r\n")
        if not command.strip():
            return "Missing required argument: command"

        submit_arg = get_bool(args, "submit")
        submit = True if submit_arg is None else submit_arg
        submit_key = resolve_submit_key(args, cfg)
        selectors = build_target_selector_payload(args)
        attempt_order = get_submit_attempt_order(submit_key, cfg) if submit else []

        if not submit:
            write_result = await _pane(
                "PANE.WRITE", {**selectors, "text": command, "submit": "false", "submitKey": submit_key}
            )
        else:
            write_result = "submit pending"

        read_tail_arg = get_bool(args, "readTail")
        read_tail = True if read_tail_arg is None else read_tail_arg
        if not submit and not read_tail:
            return write_result

        wait_ms = clamp(cfg.fallback_wait_ms, 0, 5000)
        wait_override = get_int(args, "waitMs")
        if wait_override is not None:
            wait_ms = clamp(wait_override, 0, 5000)
        tail_lines = get_int(args, "tailLines")
        max_chars = get_int(args, "maxChars")
        read_payload = {
            **selectors,
            "lines": str(clamp(tail_lines, 1, 5000) if tail_lines is not None else 80),
            "maxChars": str(clamp(max_chars, 512, 200_000) if max_chars is not None else 20_000),
        }

        trace: List[str] = []
        if submit:
            before_text = extract_pane_read_text(await _pane("PANE.READ", read_payload)) or ""

            profile = resolve_submit_profile(cfg, selectors, command, before_text, submit_key)
            repeat_count = 1
            repeat_delay_ms = 0
            if profile is not None:
                profile_order = parse_submit_key_sequence(profile.submit_order, keep_duplicates=True)
                if profile_order:
                    attempt_order = profile_order
                if wait_override is None and profile.wait_ms >= 0:
                    wait_ms = clamp(profile.wait_ms, 0, 5000)
                repeat_count = clamp(profile.repeat_count, 1, 8)
                repeat_delay_ms = clamp(profile.delay_ms, 0, 3000)
                trace.append(f"profile: {profile.name}")
                trace.append(f"profileOrder: {','.join(attempt_order)}")

            accepted = False
            for i, candidate in enumerate(attempt_order):
                if accepted:
                    break
                for repeat in range(repeat_count):
                    first_attempt = i == 0 and repeat == 0
                    result = await _pane(
                        "PANE.WRITE",
                        {
                            **selectors,
                            "text": command if first_attempt else "",
                            "submit": "true",
                            "submitKey": candidate,
                        },
                    )
                    if first_attempt:
                        write_result = result
                    trace.append(f"{candidate}[{repeat + 1}/{repeat_count}]: {result}")

                    if wait_ms > 0:
                        await sleep(wait_ms / 1000.0)

                    after_text = extract_pane_read_text(await _pane("PANE.READ", read_payload))
                    if after_text is not None:
                        if has_meaningful_tail_change(before_text, after_text):
                            trace.append(f"acceptedKey: {candidate} (try {repeat + 1})")
                            accepted = True
                            break
                        trace.append(f"noMeaningfulChange: {candidate} (try {repeat + 1})")
                        before_text = after_text

                    if repeat + 1 < repeat_count and repeat_delay_ms > 0:
                        await sleep(repeat_delay_ms / 1000.0)

        sections = [f"writeResult:\n{write_result}"]
        if trace:
            sections.append("submitTrace:\n" + "\n".join(trace))
        if not read_tail:
            return write_result if not trace else "\n\n".join(sections)

        sections.append(f"paneTail:\n{await _pane('PANE.READ', read_payload)}")
        return "\n\n".join(sections)

    return ToolDescriptor(
        name="cmux_pane_run_command",
        description="Run a shell command in a target pane and optionally read tail output for confirmation.",
        parameters=RUN_COMMAND_SCHEMA,
        handler=_handler,
    )
