from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from pane_agent.config.loader import AgentRuntimeConfig, load_config_dicts
from pane_agent.core.contracts import AgentPaneContext


class PaneRecorder:
    """收集写入 pane 的原始文本。"""

    def __init__(self) -> None:
        self.writes: List[str] = []

    def __call__(self, text: str) -> None:
        self.writes.append(text)

    @property
    def text(self) -> str:
        return "".join(self.writes)


def make_pane(
    *,
    workspace_id: str = "ws1",
    surface_id: str = "s1",
    pane_id: str = "p1",
    working_directory: Optional[str] = None,
    recorder: Optional[PaneRecorder] = None,
) -> AgentPaneContext:
    return AgentPaneContext(
        workspace_id=workspace_id,
        surface_id=surface_id,
        pane_id=pane_id,
        write_to_pane=recorder if recorder is not None else PaneRecorder(),
        working_directory=working_directory,
    )


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AgentRuntimeConfig]:
    """构造测试配置：store 落在 tmp_path；关闭 AGENTS.md 自动发现；可用 overlay 覆盖。"""

    def _make(overlay: Optional[Dict[str, Any]] = None) -> AgentRuntimeConfig:
        base: Dict[str, Any] = {
            "enabled": True,
            "state": {"store_dir": str(tmp_path / "store")},
            "prompts": {"auto_discover_agent_files": False},
            "tools": {"bash": {"enabled": False}},
        }
        return load_config_dicts([base, overlay or {}])

    return _make


@pytest.fixture
def recorder() -> PaneRecorder:
    return PaneRecorder()


@pytest.fixture
def pane(tmp_path: Path, recorder: PaneRecorder) -> AgentPaneContext:
    return make_pane(working_directory=str(tmp_path), recorder=recorder)


@pytest.fixture
def pane_factory(tmp_path: Path) -> Callable[..., AgentPaneContext]:
    def _make(**kwargs: Any) -> AgentPaneContext:
        kwargs.setdefault("working_directory", str(tmp_path))
        return make_pane(**kwargs)

    return _make
