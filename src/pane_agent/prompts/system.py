"""
系统提示词组装（配置提示词 + 当前 pane 上下文 + 工具列表 + 项目说明文件）。

项目上下文发现：
- 项目根目录：从工作目录向上查找第一个包含 `.git` 目录的祖先；找不到时就是工作目录本身
- AGENTS.md：优先使用配置的路径（相对路径基于项目根）；否则在开启自动发现时，
  从项目根向上查找最近的 `agents.md` / `AGENTS.md`
- skills：配置的目录或 `<项目根>/skills` 下的 `SKILL.md`（最多 64 个）
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

from pane_agent.config.loader import AgentRuntimeConfig
from pane_agent.core.contracts import AgentPaneContext
from pane_agent.core.utils import truncate

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a pragmatic engineering assistant running inside cmux. Keep responses concise and action-oriented."
)
AGENTS_FILE_CANDIDATES = ("agents.md", "AGENTS.md")
MAX_AGENTS_CHARS = 12_000
MAX_SKILL_FILES = 64


def resolve_project_root(working_directory: Optional[str]) -> str:
    """返回工作目录所属的项目根（见模块说明）；未知工作目录时返回进程 cwd。"""

    if not working_directory or not working_directory.strip():
        return os.getcwd()
    start = Path(working_directory)
    if not start.is_dir():
        return working_directory
    for candidate in (start, *start.parents):
        if (candidate / ".git").is_dir():
            return str(candidate)
    return working_directory


def _resolve_configured_path(configured: str, project_root: Optional[str]) -> Optional[Path]:
    if not configured or not configured.strip():
        return None
    path = Path(configured.strip())
    if path.is_absolute() or not project_root:
        return path
    return Path(project_root) / path


def find_closest_file(start_directory: str, candidates: Sequence[str] = AGENTS_FILE_CANDIDATES) -> Optional[Path]:
    """从 `start_directory` 向上逐级查找第一个存在的候选文件。"""

    start = Path(start_directory)
    for directory in (start, *start.parents):
        for name in candidates:
            path = directory / name
            if path.is_file():
                return path
    return None


def build_workspace_agent_context(cfg: AgentRuntimeConfig, working_directory: Optional[str]) -> str:
    """
    生成“项目说明 + 本地 skills”段落；没有可用内容时返回空串。

    说明：
    - 读取失败（权限、编码等）只记录 debug 日志，不影响 run
    """

    prompts = cfg.prompts
    try:
        project_root = resolve_project_root(working_directory)
        agents_path = _resolve_configured_path(prompts.agent_instructions_path, project_root)
        if agents_path is None and prompts.auto_discover_agent_files and project_root:
            agents_path = find_closest_file(project_root)

        lines: List[str] = []
        if agents_path is not None and agents_path.is_file():
            content = truncate(agents_path.read_text(encoding="utf-8"), MAX_AGENTS_CHARS)
            lines.append(f"Project instructions file detected: {agents_path}")
            if content.strip():
                lines.append("AGENTS.md content:")
                lines.append(content)

        skills_root = _resolve_configured_path(prompts.skills_root_path, project_root)
        if skills_root is None and prompts.auto_discover_agent_files and project_root:
            skills_root = Path(project_root) / "skills"

        if skills_root is not None and skills_root.is_dir():
            skill_files = sorted(skills_root.rglob("SKILL.md"))[:MAX_SKILL_FILES]
            if skill_files:
                base = Path(project_root) if project_root else skills_root.parent
                lines.append("Local skills discovered:")
                for path in skill_files:
                    lines.append(f"- {os.path.relpath(path, base)}")

        return "\n".join(lines).strip()
    except (OSError, UnicodeDecodeError):
        logger.debug("workspace agent context discovery failed", exc_info=True)
        return ""


def build_system_prompt(cfg: AgentRuntimeConfig, pane_context: AgentPaneContext, tool_names: Sequence[str]) -> str:
    """
    组装一次 run 的系统提示词。

    参数：
    - cfg：运行时配置（system_prompt / prompts 段）
    - pane_context：当前 pane
    - tool_names：本次 run 的工具名（按字典序列出）
    """

    user_prompt = cfg.system_prompt.strip() if cfg.system_prompt and cfg.system_prompt.strip() else DEFAULT_SYSTEM_PROMPT
    tool_summary = ", ".join(sorted(tool_names)) if tool_names else "No tools are currently available."
    workspace_context = build_workspace_agent_context(cfg, pane_context.working_directory)

    return "\n".join(
        [
            user_prompt,
            "Current context:",
            f"- workspaceId: {pane_context.workspace_id}",
            f"- surfaceId: {pane_context.surface_id}",
            f"- paneId: {pane_context.pane_id}",
            f"- workingDirectory: {pane_context.working_directory or '(unknown)'}",
            "Use tools whenever they can produce reliable results.",
            "When using shell commands, prefer short and safe commands.",
            "Use cmux_pane_list before targeting non-focused panes.",
            "For pane targeting selectors, paneIndex/surfaceIndex/workspaceIndex are 1-based.",
            "For pane write/run, you can set submitKey: auto|enter|linefeed|crlf.",
            "Available tools:",
            tool_summary,
            workspace_context,
        ]
    )
