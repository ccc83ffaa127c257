"""
内置工具：cmux 平台工具（workspace/surface/pane 操作、通知、项目脚手架）。

说明：
- 除 `cmux_scaffold_agents_files` 与无选择器的 `cmux_pane_write` 外，所有工具都只是把参数
  转换为 pane 命令交给宿主分发器，响应文本原样返回给模型。
- 工具声明顺序固定（构成工具目录的前缀）。
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pane_agent.config.loader import SubmitConfig
from pane_agent.core.contracts import AgentPaneContext, PaneCommandDispatcher
from pane_agent.prompts.system import resolve_project_root
from pane_agent.tools.args import (
    TARGET_SELECTOR_PROPERTIES,
    build_target_selector_payload,
    clamp,
    get_bool,
    get_int,
    get_str,
    has_any_target_selector,
)
from pane_agent.tools.builtin.run_command import build_run_command_tool, resolve_submit_key, submit_key_to_sequence
from pane_agent.tools.pane_commands import execute_pane_command
from pane_agent.tools.protocol import ToolDescriptor, object_schema

AGENTS_TEMPLATE = """# AGENTS.md

## Team Instructions
- Keep responses concise and action-oriented.
- Prefer deterministic commands and verify outcomes.

## Skills
- Place skills under `skills/<skill-name>/SKILL.md`."""

SAMPLE_SKILL_TEMPLATE = """# Sample Skill

Use this template to define a project skill.
Describe:
1. When to use it.
2. Required inputs.
3. Steps and expected output."""

_EMPTY_SCHEMA = object_schema()
_SELECTOR_SCHEMA = object_schema(TARGET_SELECTOR_PROPERTIES)


def scaffold_agents_files(root_path: str, *, overwrite: bool = False) -> Dict[str, Any]:
    """
    在 `root_path` 下写入 `agents.md` 与 `skills/sample/SKILL.md` 模板。

    约束：
    - 已存在的文件只有在 overwrite=True 时才覆盖
    """

    root = Path(root_path)
    root.mkdir(parents=True, exist_ok=True)
    agents_path = root / "agents.md"
    skills_root = root / "skills"
    sample_dir = skills_root / "sample"
    sample_path = sample_dir / "SKILL.md"

    if overwrite or not agents_path.exists():
        agents_path.write_text(AGENTS_TEMPLATE, encoding="utf-8")
    sample_dir.mkdir(parents=True, exist_ok=True)
    if overwrite or not sample_path.exists():
        sample_path.write_text(SAMPLE_SKILL_TEMPLATE, encoding="utf-8")

    return {
        "ok": True,
        "rootPath": str(root),
        "agentsPath": str(agents_path),
        "skillsRoot": str(skills_root),
        "sampleSkillPath": str(sample_path),
    }


def _copy_strings(args: Dict[str, Any], *names: str) -> Dict[str, str]:
    payload: Dict[str, str] = {}
    for name in names:
        value = get_str(args, name)
        if value is not None:
            payload[name] = value
    return payload


def build_platform_tools(submit_cfg: SubmitConfig, dispatcher: Optional[PaneCommandDispatcher]) -> List[ToolDescriptor]:
    """
    构造 cmux 平台工具列表。

    参数：
    - submit_cfg：提交策略（`cmux_pane_write` 的默认提交键、`cmux_pane_run_command` 的回退）
    - dispatcher：宿主 pane 命令分发器（可为 None）
    """

    def _forward(command: str):  # type: ignore[no-untyped-def]
        async def _handler(_args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
            return await execute_pane_command(dispatcher, command, {})

        return _handler

    def _forward_selectors(command: str):  # type: ignore[no-untyped-def]
        async def _handler(args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
            return await execute_pane_command(dispatcher, command, build_target_selector_payload(args))

        return _handler

    async def _scaffold(args: Dict[str, Any], ctx: AgentPaneContext) -> str:
        requested = get_str(args, "rootPath")
        root = requested.strip() if requested and requested.strip() else resolve_project_root(ctx.working_directory)
        if not root or not root.strip():
            return "Unable to resolve project root path."
        result = scaffold_agents_files(root, overwrite=get_bool(args, "overwrite") is True)
        return json.dumps(result, ensure_ascii=False)

    async def _workspace_create(args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
        return await execute_pane_command(dispatcher, "WORKSPACE.CREATE", _copy_strings(args, "name"))

    async def _workspace_select(args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
        payload: Dict[str, str] = {}
        index = get_int(args, "index")
        if index is not None:
            payload["index"] = str(index)
        payload.update(_copy_strings(args, "id", "name"))
        return await execute_pane_command(dispatcher, "WORKSPACE.SELECT", payload)

    async def _notify(args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
        return await execute_pane_command(dispatcher, "NOTIFY", _copy_strings(args, "title", "subtitle", "body"))

    async def _read_tail(args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
        payload = build_target_selector_payload(args)
        lines = get_int(args, "lines")
        if lines is not None:
            payload["lines"] = str(clamp(lines, 1, 5000))
        max_chars = get_int(args, "maxChars")
        if max_chars is not None:
            payload["maxChars"] = str(clamp(max_chars, 512, 200_000))
        return await execute_pane_command(dispatcher, "PANE.READ", payload)

    async def _pane_write(args: Dict[str, Any], ctx: AgentPaneContext) -> str:
        text = get_str(args, "text")
        if text is None:
            return "Missing required argument: text"
        submit = get_bool(args, "submit") is True
        submit_key = resolve_submit_key(args, submit_cfg)

        if not has_any_target_selector(args):
            # 未指定目标：写入当前 pane
            ctx.write_to_pane(text)
            if submit:
                ctx.write_to_pane(submit_key_to_sequence(submit_key))
            return "ok"

        payload = build_target_selector_payload(args)
        payload["text"] = text
        payload["submit"] = "true" if submit else "false"
        payload["submitKey"] = submit_key
        return await execute_pane_command(dispatcher, "PANE.WRITE", payload)

    return [
        ToolDescriptor(
            "cmux_status",
            "Get cmux runtime status (version, workspace counts, selected workspace).",
            _EMPTY_SCHEMA,
            _forward("STATUS"),
        ),
        ToolDescriptor(
            "cmux_scaffold_agents_files",
            "Create AGENTS.md and skills/ scaffold in project root (or provided rootPath).",
            object_schema({"rootPath": {"type": "string"}, "overwrite": {"type": "boolean"}}),
            _scaffold,
        ),
        ToolDescriptor("cmux_workspace_list", "List all workspaces.", _EMPTY_SCHEMA, _forward("WORKSPACE.LIST")),
        ToolDescriptor(
            "cmux_workspace_create",
            "Create a workspace. Optional name.",
            object_schema({"name": {"type": "string"}}),
            _workspace_create,
        ),
        ToolDescriptor(
            "cmux_workspace_select",
            "Select a workspace by index, id, or name.",
            object_schema({"index": {"type": "integer"}, "id": {"type": "string"}, "name": {"type": "string"}}),
            _workspace_select,
        ),
        ToolDescriptor(
            "cmux_surface_create",
            "Create a new surface/tab in selected workspace.",
            _EMPTY_SCHEMA,
            _forward("SURFACE.CREATE"),
        ),
        ToolDescriptor(
            "cmux_surface_select",
            "Select a surface/tab by index, id, or name. Optional workspace selectors supported.",
            _SELECTOR_SCHEMA,
            _forward_selectors("SURFACE.SELECT"),
        ),
        ToolDescriptor(
            "cmux_split_right", "Split focused pane vertically (left/right).", _EMPTY_SCHEMA, _forward("SPLIT.RIGHT")
        ),
        ToolDescriptor(
            "cmux_split_down", "Split focused pane horizontally (top/down).", _EMPTY_SCHEMA, _forward("SPLIT.DOWN")
        ),
        ToolDescriptor(
            "cmux_notify",
            "Send a cmux notification.",
            object_schema(
                {"title": {"type": "string"}, "subtitle": {"type": "string"}, "body": {"type": "string"}},
                required=["body"],
            ),
            _notify,
        ),
        ToolDescriptor(
            "cmux_pane_list",
            "List panes for a surface/workspace. Useful before targeting paneIndex/paneName.",
            _SELECTOR_SCHEMA,
            _forward_selectors("PANE.LIST"),
        ),
        ToolDescriptor(
            "cmux_pane_focus",
            "Focus/select a target pane by paneIndex/paneId/paneName (with optional workspace/surface selectors).",
            _SELECTOR_SCHEMA,
            _forward_selectors("PANE.FOCUS"),
        ),
        ToolDescriptor(
            "cmux_pane_read_tail",
            "Read recent output from a pane (tail view). Use this to verify what happened in another pane.",
            object_schema({"lines": {"type": "integer"}, "maxChars": {"type": "integer"}, **TARGET_SELECTOR_PROPERTIES}),
            _read_tail,
        ),
        ToolDescriptor(
            "cmux_pane_write",
            "Write text into a pane input stream. Use submit=true to press Enter and run the command.",
            object_schema(
                {
                    "text": {"type": "string"},
                    "submit": {"type": "boolean"},
                    "submitKey": {"type": "string"},
                    **TARGET_SELECTOR_PROPERTIES,
                },
                required=["text"],
            ),
            _pane_write,
        ),
        build_run_command_tool(submit_cfg, dispatcher),
    ]
