"""配置（默认 YAML + overlays + pydantic 校验）。"""

from __future__ import annotations

from pane_agent.config.loader import AgentRuntimeConfig, load_config, load_config_dicts

__all__ = ["AgentRuntimeConfig", "load_config", "load_config_dicts"]
