"""
Pane Agent CLI（run / threads / mcp-tools）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 最后一行输出机器可读 JSON；失败时也输出 JSON

退出码：
- 0：成功
- 2：配置错误（YAML/校验失败、agent 未启用、未知 MCP server）
- 20：run 失败或被取消
- 21：MCP server 调用失败
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from pydantic import ValidationError

from pane_agent.config.loader import AgentRuntimeConfig, load_config
from pane_agent.core.contracts import AgentPaneContext, RuntimeUpdate, RuntimeUpdateType
from pane_agent.core.run_errors import sanitize_error
from pane_agent.core.service import AgentRuntimeService, get_handlers
from pane_agent.mcp.client import McpServerClient
from pane_agent.state.store import JsonlConversationStore


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _load_cli_config(raw_paths: List[str]) -> AgentRuntimeConfig:
    return load_config([Path(p).expanduser() for p in raw_paths])


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pane-agent", description="Pane agent runtime CLI")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING).")
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    run_p = root_sub.add_parser("run", help="Run one prompt in a headless pane")
    _add_common_flags(run_p)
    run_p.add_argument("--thread-id", default=None, help="Continue an existing conversation thread.")
    run_p.add_argument("--cwd", default=None, help="Working directory reported for the pane (default: cwd).")
    run_p.add_argument("--force-enable", action="store_true", help="Run even if `enabled: false` in config.")
    run_p.add_argument("--echo", action="store_true", help="Submit as a pane command and echo pane output to stderr (ignores --thread-id).")
    run_p.add_argument("--events", action="store_true", help="Write every runtime update to stderr as a JSON line.")
    run_p.add_argument("prompt", nargs="+", help="Prompt text.")

    threads_p = root_sub.add_parser("threads", help="List stored conversation threads")
    _add_common_flags(threads_p)
    threads_p.add_argument("--workspace-id", default="", help="Filter by workspace id.")
    threads_p.add_argument("--limit", type=int, default=50, help="Max threads to list (>=1).")

    mcp_p = root_sub.add_parser("mcp-tools", help="List tools of a configured MCP server")
    _add_common_flags(mcp_p)
    mcp_p.add_argument("--server", required=True, help="MCP server name (as configured under mcp.servers).")

    return parser


async def _run_prompt(cfg: AgentRuntimeConfig, args: argparse.Namespace) -> Dict[str, Any]:
    updates: List[RuntimeUpdate] = []
    pane = AgentPaneContext(
        workspace_id="cli",
        surface_id="cli",
        pane_id="cli",
        write_to_pane=(lambda text: sys.stderr.write(text)) if args.echo else (lambda _text: None),
        working_directory=str(Path(args.cwd or os.getcwd()).resolve()),
    )

    def _collect(update: RuntimeUpdate) -> None:
        updates.append(update)
        if args.events:
            sys.stderr.write(update.to_json() + "\n")

    service = AgentRuntimeService(cfg)
    service.subscribe(_collect)
    try:
        prompt = " ".join(args.prompt)
        if args.echo:
            service.try_handle_pane_command(f"{get_handlers(cfg)[0]} {prompt}", pane)
        else:
            service.send_chat_prompt(prompt, pane, args.thread_id)
        await service.wait_idle()
    finally:
        await service.shutdown()

    thread_id = next((u.thread_id for u in updates if u.type is RuntimeUpdateType.THREAD_CHANGED), "")
    completed = [u for u in updates if u.type is RuntimeUpdateType.ASSISTANT_COMPLETED]
    errors = [u for u in updates if u.type is RuntimeUpdateType.ERROR]
    if completed:
        done = completed[-1]
        return {
            "status": "completed",
            "thread_id": thread_id,
            "text": done.message,
            "provider": done.provider,
            "model": done.model,
            "usage": {
                "input_tokens": done.input_tokens,
                "output_tokens": done.output_tokens,
                "total_tokens": done.total_tokens,
            },
            "context": {
                "estimated_tokens": done.estimated_context_tokens,
                "budget_tokens": done.context_budget_tokens,
                "compaction_applied": done.compaction_applied,
            },
        }
    if errors:
        failed = errors[-1]
        return {
            "status": "error",
            "thread_id": thread_id,
            "error": failed.message,
            "error_kind": failed.error_kind,
            "retryable": failed.retryable,
        }
    return {"status": "canceled", "thread_id": thread_id}


def _cmd_run(cfg: AgentRuntimeConfig, args: argparse.Namespace) -> int:
    if args.force_enable and not cfg.enabled:
        cfg = cfg.model_copy(update={"enabled": True})
    if not cfg.enabled:
        _dump_json_to_stdout(
            {"status": "disabled", "error": "Agent is disabled in Settings -> Agent."}, pretty=args.pretty
        )
        return 2

    payload = asyncio.run(_run_prompt(cfg, args))
    _dump_json_to_stdout(payload, pretty=args.pretty)
    return 0 if payload["status"] == "completed" else 20


def _cmd_threads(cfg: AgentRuntimeConfig, args: argparse.Namespace) -> int:
    store = JsonlConversationStore(Path(cfg.state.store_dir).expanduser())
    threads = store.list_threads(workspace_id=args.workspace_id, max_entries=max(1, args.limit))
    _dump_json_to_stdout({"threads": [t.model_dump() for t in threads]}, pretty=args.pretty)
    return 0


def _cmd_mcp_tools(cfg: AgentRuntimeConfig, args: argparse.Namespace) -> int:
    server = next((s for s in cfg.mcp.servers if s.name.strip().lower() == args.server.strip().lower()), None)
    if server is None:
        _dump_json_to_stdout({"server": args.server, "error": "MCP server is not configured."}, pretty=args.pretty)
        return 2

    try:
        tools = asyncio.run(McpServerClient(server, cfg.mcp).list_tools())
    except Exception as e:
        _dump_json_to_stdout({"server": server.name, "error": sanitize_error(str(e))}, pretty=args.pretty)
        return 21

    _dump_json_to_stdout(
        {
            "server": server.name,
            "tools": [{"name": t.name, "description": t.description, "input_schema": t.input_schema} for t in tools],
        },
        pretty=args.pretty,
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI 入口；返回进程退出码。"""

    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=str(args.log_level).upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        cfg = _load_cli_config(args.config)
    except (OSError, ValueError, yaml.YAMLError, ValidationError) as e:
        _dump_json_to_stdout({"error": f"invalid config: {e}"}, pretty=getattr(args, "pretty", False))
        return 2

    if args.command == "run":
        return _cmd_run(cfg, args)
    if args.command == "threads":
        return _cmd_threads(cfg, args)
    return _cmd_mcp_tools(cfg, args)


if __name__ == "__main__":
    raise SystemExit(main())
