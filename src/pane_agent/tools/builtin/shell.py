"""
内置工具：bash_run 与 custom_* 模板工具（本地 shell 执行）。

执行语义：
- 以 `<shell> -c <command>` 启动子进程，子进程成为新的进程组 leader（POSIX）
- 超时（clamp 到 1..1800 秒）：SIGTERM → (grace) → SIGKILL 整个进程组，结果标记 timed_out
- run 被取消：同样终止进程组，然后继续传播 CancelledError
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from pane_agent.config.loader import BashToolConfig, CustomToolConfig
from pane_agent.core.contracts import AgentPaneContext
from pane_agent.core.utils import slugify, truncate
from pane_agent.tools.args import clamp, get_int, get_str
from pane_agent.tools.protocol import ToolDescriptor, object_schema

DEFAULT_TIMEOUT_SECONDS = 120
TERMINATE_GRACE_SEC = 0.2


class ShellCommandResult(BaseModel):
    """
    shell 执行结果。

    字段：
    - exit_code：进程退出码；超时为 -1
    - stdout/stderr：完整输出（UTF-8，非法字节替换）
    - timed_out：是否因超时被终止
    """

    model_config = ConfigDict(extra="forbid")

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace")


async def _terminate_process_group(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM → (grace) → SIGKILL；POSIX 下作用于整个进程组。"""

    if proc.returncode is not None:
        return

    def _signal(hard: bool) -> None:
        try:
            if os.name != "nt":
                os.killpg(proc.pid, signal.SIGKILL if hard else signal.SIGTERM)
            elif hard:
                proc.kill()
            else:
                proc.terminate()
        except ProcessLookupError:
            pass

    _signal(False)
    try:
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SEC)
        return
    except asyncio.TimeoutError:
        pass
    _signal(True)
    await proc.wait()


async def run_shell_command(
    command: str,
    *,
    shell: str = "/bin/sh",
    working_directory: Optional[str] = None,
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
) -> ShellCommandResult:
    """
    执行一条 shell 命令字符串并捕获输出。

    参数：
    - command：命令文本
    - shell：shell 可执行文件
    - working_directory：工作目录（不存在时使用进程 cwd）
    - timeout_seconds：超时秒数（clamp 到 1..1800）
    """

    cwd = working_directory if working_directory and Path(working_directory).is_dir() else None
    kwargs: Dict[str, Any] = {}
    if os.name != "nt":
        kwargs["start_new_session"] = True

    try:
        proc = await asyncio.create_subprocess_exec(
            shell,
            "-c",
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            **kwargs,
        )
    except OSError as e:
        return ShellCommandResult(exit_code=-1, stderr=f"Failed to start process: {e}")

    communicate = asyncio.ensure_future(proc.communicate())
    try:
        stdout, stderr = await asyncio.wait_for(
            asyncio.shield(communicate), timeout=clamp(int(timeout_seconds), 1, 1800)
        )
    except asyncio.TimeoutError:
        await _terminate_process_group(proc)
        stdout, stderr = await communicate
        return ShellCommandResult(exit_code=-1, stdout=_decode(stdout), stderr=_decode(stderr), timed_out=True)
    except asyncio.CancelledError:
        await _terminate_process_group(proc)
        communicate.cancel()
        raise

    exit_code = proc.returncode if proc.returncode is not None else -1
    return ShellCommandResult(exit_code=exit_code, stdout=_decode(stdout), stderr=_decode(stderr))


def format_bash_result(result: ShellCommandResult) -> str:
    lines = [f"exitCode: {result.exit_code}"]
    if result.stdout.strip():
        lines += ["stdout:", truncate(result.stdout, 8000)]
    if result.stderr.strip():
        lines += ["stderr:", truncate(result.stderr, 8000)]
    if result.timed_out:
        lines.append("timedOut: true")
    return "\n".join(lines).strip()


def format_custom_result(result: ShellCommandResult) -> str:
    lines = [f"exitCode: {result.exit_code}"]
    if result.stdout.strip():
        lines.append(truncate(result.stdout, 8000))
    if result.stderr.strip():
        lines += ["stderr:", truncate(result.stderr, 4000)]
    return "\n".join(lines).strip()


def _replace_ignore_case(text: str, token: str, value: str) -> str:
    lowered_token = token.lower()
    out: List[str] = []
    i = 0
    while True:
        j = text.lower().find(lowered_token, i)
        if j < 0:
            out.append(text[i:])
            return "".join(out)
        out.append(text[i:j])
        out.append(value)
        i = j + len(token)


def render_command_template(template: str, args: Dict[str, Any], cwd: Optional[str]) -> str:
    """
    渲染自定义工具模板。

    规则：
    - `{{cwd}}` → pane 工作目录（未知时为空串）
    - `{{<参数名>}}` → 参数值（字符串原样，其它 JSON 值取 JSON 文本）
    - 占位符匹配大小写不敏感；参数值不做 shell 转义
    """

    rendered = _replace_ignore_case(template, "{{cwd}}", cwd or "")
    for name in args:
        rendered = _replace_ignore_case(rendered, "{{" + name + "}}", get_str(args, name) or "")
    return rendered


def _effective_timeout(cfg: BashToolConfig) -> int:
    return cfg.timeout_seconds if cfg.timeout_seconds > 0 else DEFAULT_TIMEOUT_SECONDS


def build_bash_tool(cfg: BashToolConfig) -> ToolDescriptor:
    """构造 `bash_run`。"""

    async def _handler(args: Dict[str, Any], ctx: AgentPaneContext) -> str:
        command = get_str(args, "command")
        if command is None:
            return "Missing required argument: command"
        timeout = _effective_timeout(cfg)
        requested = get_int(args, "timeoutSeconds")
        if requested is not None:
            timeout = clamp(requested, 1, 1800)
        result = await run_shell_command(
            command, shell=cfg.shell, working_directory=ctx.working_directory, timeout_seconds=timeout
        )
        return format_bash_result(result)

    return ToolDescriptor(
        name="bash_run",
        description="Execute a shell command and return stdout/stderr.",
        parameters=object_schema(
            {"command": {"type": "string"}, "timeoutSeconds": {"type": "integer"}}, required=["command"]
        ),
        handler=_handler,
    )


def build_custom_tools(custom_tools: List[CustomToolConfig], bash_cfg: BashToolConfig) -> List[ToolDescriptor]:
    """构造 `custom_<slug>` 模板工具；禁用、无名称或无模板的条目被跳过。"""

    out: List[ToolDescriptor] = []
    for custom in custom_tools:
        if not custom.enabled or not custom.name.strip() or not custom.command_template.strip():
            continue

        def _make_handler(tool_cfg: CustomToolConfig):  # type: ignore[no-untyped-def]
            async def _handler(args: Dict[str, Any], ctx: AgentPaneContext) -> str:
                rendered = render_command_template(tool_cfg.command_template, args, ctx.working_directory)
                result = await run_shell_command(
                    rendered,
                    shell=bash_cfg.shell,
                    working_directory=ctx.working_directory,
                    timeout_seconds=_effective_timeout(bash_cfg),
                )
                return format_custom_result(result)

            return _handler

        out.append(
            ToolDescriptor(
                name=f"custom_{slugify(custom.name)}",
                description=custom.description.strip() or f"Run custom tool '{custom.name}'.",
                parameters=object_schema(additional={"type": "string"}),
                handler=_make_handler(custom),
            )
        )
    return out
