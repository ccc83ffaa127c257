"""
内置工具：web_search（Exa 搜索 API）。

请求：`POST {base}/search`，body `{query, numResults}`，同时携带 `x-api-key` 与 Bearer 头。
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List

import httpx

from pane_agent.config.loader import WebSearchConfig
from pane_agent.core.contracts import AgentPaneContext, SecretLookup
from pane_agent.core.utils import ensure_absolute_base, truncate
from pane_agent.tools.args import clamp, get_int, get_str
from pane_agent.tools.protocol import ToolDescriptor, object_schema

HttpClientFactory = Callable[[], httpx.AsyncClient]

DEFAULT_EXA_BASE_URL = "https://api.exa.ai"


def format_exa_results(body: str) -> str:
    """
    把 Exa 响应渲染为编号列表。

    说明：
    - 响应没有 `results` 数组时原样返回（截断到 2000 字符）
    """

    obj = json.loads(body)
    results = obj.get("results") if isinstance(obj, dict) else None
    if not isinstance(results, list):
        return truncate(body, 2000)

    lines: List[str] = []
    for i, item in enumerate(results, start=1):
        item = item if isinstance(item, dict) else {}
        title = item.get("title") if "title" in item else "(no title)"
        url = item.get("url") or ""
        text = item.get("text") or ""
        lines.append(f"{i}. {title if title is not None else ''}")
        if isinstance(url, str) and url.strip():
            lines.append(f"   {url}")
        if isinstance(text, str) and text.strip():
            lines.append(f"   {truncate(text, 240)}")
    return "\n".join(lines).strip()


async def search_exa(
    cfg: WebSearchConfig,
    query: str,
    num_results: int,
    *,
    secret_lookup: SecretLookup,
    client_factory: HttpClientFactory,
) -> str:
    """执行一次 Exa 搜索并返回文本结果（非 2xx 以文本形式返回，不抛异常）。"""

    api_key = secret_lookup(cfg.api_key_secret)
    if not api_key or not api_key.strip():
        return "Exa API key is not configured in Settings -> Agent."

    url = ensure_absolute_base(cfg.base_url, DEFAULT_EXA_BASE_URL) + "/search"
    headers = {"x-api-key": api_key, "Authorization": f"Bearer {api_key}"}
    async with client_factory() as client:
        resp = await client.post(url, json={"query": query, "numResults": num_results}, headers=headers)
        body = resp.text
    if not resp.is_success:
        return f"Exa search failed ({resp.status_code}): {truncate(body, 500)}"
    return format_exa_results(body)


def build_web_search_tool(
    cfg: WebSearchConfig,
    *,
    secret_lookup: SecretLookup,
    client_factory: HttpClientFactory,
) -> ToolDescriptor:
    """构造 `web_search`。"""

    async def _handler(args: Dict[str, Any], _ctx: AgentPaneContext) -> str:
        query = get_str(args, "query")
        if query is None:
            return "Missing required argument: query"
        requested = get_int(args, "numResults")
        num_results = clamp(requested, 1, 20) if requested is not None else 5
        return await search_exa(
            cfg, query, num_results, secret_lookup=secret_lookup, client_factory=client_factory
        )

    return ToolDescriptor(
        name="web_search",
        description="Search the web via Exa and return top results.",
        parameters=object_schema(
            {"query": {"type": "string"}, "numResults": {"type": "integer"}}, required=["query"]
        ),
        handler=_handler,
    )
