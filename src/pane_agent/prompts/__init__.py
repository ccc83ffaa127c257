"""系统提示词组装与项目上下文发现。"""

from __future__ import annotations

from pane_agent.prompts.system import build_system_prompt, resolve_project_root

__all__ = ["build_system_prompt", "resolve_project_root"]
