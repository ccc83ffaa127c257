from __future__ import annotations

from pathlib import Path
from typing import Callable

from pane_agent.config.loader import AgentRuntimeConfig
from pane_agent.prompts.system import (
    DEFAULT_SYSTEM_PROMPT,
    build_system_prompt,
    build_workspace_agent_context,
    find_closest_file,
    resolve_project_root,
)

from conftest import make_pane


def _project(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    (root / "pkg" / "sub").mkdir(parents=True)
    return root


def test_prompt_lists_context_and_sorted_tools(make_config: Callable[..., AgentRuntimeConfig]) -> None:
    cfg = make_config({"system_prompt": "  Be brief.  "})
    pane = make_pane(workspace_id="w", surface_id="s", pane_id="p", working_directory=None)

    prompt = build_system_prompt(cfg, pane, ["zeta", "alpha"])
    lines = prompt.split("\n")

    assert lines[0] == "Be brief."
    assert "- workspaceId: w" in lines
    assert "- workingDirectory: (unknown)" in lines
    assert lines[lines.index("Available tools:") + 1] == "alpha, zeta"


def test_blank_prompt_and_no_tools(make_config: Callable[..., AgentRuntimeConfig], tmp_path: Path) -> None:
    cfg = make_config({"system_prompt": "   "})

    prompt = build_system_prompt(cfg, make_pane(working_directory=str(tmp_path)), [])

    assert prompt.startswith(DEFAULT_SYSTEM_PROMPT + "\n")
    assert "No tools are currently available." in prompt


def test_project_root_walks_up_to_git(tmp_path: Path) -> None:
    root = _project(tmp_path)

    assert resolve_project_root(str(root / "pkg" / "sub")) == str(root)
    assert resolve_project_root(str(tmp_path)) == str(tmp_path)
    assert resolve_project_root(str(tmp_path / "missing")) == str(tmp_path / "missing")


def test_auto_discovery_reads_agents_file_and_skills(make_config: Callable[..., AgentRuntimeConfig], tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "agents.md").write_text("Use ruff.", encoding="utf-8")
    skill = root / "skills" / "deploy" / "SKILL.md"
    skill.parent.mkdir(parents=True)
    skill.write_text("# Deploy", encoding="utf-8")
    cfg = make_config({"prompts": {"auto_discover_agent_files": True}})

    context = build_workspace_agent_context(cfg, str(root / "pkg"))

    assert context.split("\n") == [
        f"Project instructions file detected: {root / 'agents.md'}",
        "AGENTS.md content:",
        "Use ruff.",
        "Local skills discovered:",
        f"- {Path('skills') / 'deploy' / 'SKILL.md'}",
    ]


def test_configured_relative_paths_and_disabled_discovery(
    make_config: Callable[..., AgentRuntimeConfig], tmp_path: Path
) -> None:
    root = _project(tmp_path)
    (root / "docs").mkdir()
    (root / "docs" / "guide.md").write_text("Guide text", encoding="utf-8")
    (root / "AGENTS.md").write_text("ignored", encoding="utf-8")

    configured = make_config({"prompts": {"agent_instructions_path": "docs/guide.md"}})
    assert "Guide text" in build_workspace_agent_context(configured, str(root))

    disabled = make_config()
    assert build_workspace_agent_context(disabled, str(root)) == ""


def test_find_closest_file(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "agents.md").write_text("x", encoding="utf-8")

    found = find_closest_file(str(root / "pkg" / "sub"))

    assert found is not None
    assert found.parent == root
