"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；未知字段允许保留（避免默认配置新增字段导致加载失败）。
- 数值范围（例如 budget/threshold）在使用处 clamp，而不是在加载时拒绝：
  pane 侧的设置界面可能写入越界值，运行时仍应可用。
"""

from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from pane_agent.config.defaults import load_default_config_dict

CONFIG_ENV_VAR = "PANE_AGENT_CONFIG"


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ProviderEndpointConfig(BaseModel):
    """模型 provider 连接配置（OpenAI-compatible / Anthropic 共用形状）。"""

    model_config = ConfigDict(extra="allow")

    base_url: str
    model: str
    api_key_secret: str
    timeout_sec: float = Field(default=180, gt=0)


class BashToolConfig(BaseModel):
    """`bash_run` 工具配置。"""

    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    timeout_seconds: int = 120
    shell: str = "/bin/sh"


class WebSearchConfig(BaseModel):
    """`web_search`（Exa）工具配置。"""

    model_config = ConfigDict(extra="allow")

    enabled: bool = False
    base_url: str = "https://api.exa.ai"
    api_key_secret: str = "agent.exa.apiKey"


class CustomToolConfig(BaseModel):
    """
    用户自定义 shell 模板工具。

    说明：
    - `command_template` 支持 `{{cwd}}` 与 `{{<参数名>}}` 占位符（大小写不敏感）。
    - name 或 template 为空的条目在构建工具目录时被跳过。
    """

    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    name: str = ""
    description: str = ""
    command_template: str = ""


class ToolsConfig(BaseModel):
    """工具开关与参数。"""

    model_config = ConfigDict(extra="allow")

    bash: BashToolConfig = Field(default_factory=BashToolConfig)
    web_search: WebSearchConfig = Field(default_factory=WebSearchConfig)
    custom: List[CustomToolConfig] = Field(default_factory=list)


class McpServerConfig(BaseModel):
    """
    单个 MCP server（stdio）配置。

    字段：
    - command：可执行文件
    - arguments：参数字符串（按空白切分，支持单/双引号包裹）
    - working_directory：可选；不存在的目录会被忽略
    - env：额外传给子进程的环境变量（子进程只继承安全白名单 + 此处显式声明的变量）
    """

    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    name: str = ""
    command: str = ""
    arguments: str = ""
    working_directory: str = ""
    env: Dict[str, str] = Field(default_factory=dict)


class McpConfig(BaseModel):
    """MCP 客户端配置。"""

    model_config = ConfigDict(extra="allow")

    servers: List[McpServerConfig] = Field(default_factory=list)
    read_timeout_sec: float = Field(default=60, gt=0)
    session_mode: str = "per_call"  # per_call | pooled
    client_name: str = "cmux"
    client_version: str = "0.1.0"


class SubmitProfileConfig(BaseModel):
    """
    提交键 profile：按 workspace/surface/pane/command/tail 模式匹配，覆盖提交键序列。

    匹配规则：
    - 空模式匹配任意值
    - 含 `*`/`?` 的模式按通配符整串匹配（大小写不敏感）
    - 其它模式按子串匹配（大小写不敏感）
    """

    model_config = ConfigDict(extra="allow")

    name: str = ""
    enabled: bool = True
    auto_only: bool = True
    workspace_pattern: str = ""
    surface_pattern: str = ""
    pane_pattern: str = ""
    command_pattern: str = ""
    tail_pattern: str = ""
    submit_order: str = ""
    wait_ms: int = -1
    repeat_count: int = 1
    delay_ms: int = 0


class SubmitConfig(BaseModel):
    """pane 写入后“提交”（回车）的策略。"""

    model_config = ConfigDict(extra="allow")

    default_key: str = "auto"
    enable_fallback: bool = True
    fallback_wait_ms: int = 350
    fallback_order: str = "enter,linefeed"
    enable_target_profiles: bool = False
    profiles: List[SubmitProfileConfig] = Field(default_factory=list)


class ContextConfig(BaseModel):
    """对话上下文预算与自动压缩。"""

    model_config = ConfigDict(extra="allow")

    auto_compact: bool = True
    max_messages: int = 60
    budget_tokens: int = 24000
    compact_threshold_percent: int = 85
    keep_recent_on_compaction: int = 20


class PromptsConfig(BaseModel):
    """系统提示词的项目上下文发现（AGENTS.md / skills）。"""

    model_config = ConfigDict(extra="allow")

    auto_discover_agent_files: bool = True
    agent_instructions_path: str = ""
    skills_root_path: str = ""


class StateConfig(BaseModel):
    """会话存储位置。"""

    model_config = ConfigDict(extra="allow")

    store_dir: str = ".pane_agent/conversations"


class AgentRuntimeConfig(BaseModel):
    """运行时总配置（加载后只读使用；每次 run 开始时读取一次快照）。"""

    model_config = ConfigDict(extra="allow")

    enabled: bool = False
    agent_name: str = "assistant"
    handler: str = "/agent"
    additional_handlers: str = ""
    system_prompt: str = ""
    active_provider: str = "openai"
    enable_conversation_memory: bool = True
    enable_streaming: bool = True

    openai: ProviderEndpointConfig
    anthropic: ProviderEndpointConfig
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    mcp: McpConfig = Field(default_factory=McpConfig)
    submit: SubmitConfig = Field(default_factory=SubmitConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    prompts: PromptsConfig = Field(default_factory=PromptsConfig)
    state: StateConfig = Field(default_factory=StateConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取单个 YAML 文件；空文件视为空 dict，根节点必须为 mapping。"""

    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return obj


def _env_overlay_paths(env: Optional[Mapping[str, str]] = None) -> List[Path]:
    """解析 `PANE_AGENT_CONFIG`（`os.pathsep` 分隔的路径列表）。"""

    raw = (env if env is not None else os.environ).get(CONFIG_ENV_VAR, "")
    return [Path(p) for p in raw.split(os.pathsep) if p.strip()]


def load_config_dicts(config_dicts: Iterable[Dict[str, Any]], *, include_defaults: bool = True) -> AgentRuntimeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `AgentRuntimeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - include_defaults：是否以内置 default.yaml 作为最底层
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return AgentRuntimeConfig.model_validate(merged)


def load_config(config_paths: Iterable[Path] = (), *, use_env: bool = True) -> AgentRuntimeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `AgentRuntimeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - use_env：为 True 时在最后追加 `PANE_AGENT_CONFIG` 指定的 overlays
    """

    paths = [Path(p) for p in config_paths]
    if use_env:
        paths.extend(_env_overlay_paths())
    return load_config_dicts([_load_yaml_file(p) for p in paths])
