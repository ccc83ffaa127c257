from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

from pane_agent.config.loader import SubmitConfig, SubmitProfileConfig
from pane_agent.tools.builtin.run_command import (
    build_run_command_tool,
    get_submit_attempt_order,
    has_meaningful_tail_change,
    matches_pattern,
    parse_submit_key_sequence,
    submit_key_to_sequence,
)
from pane_agent.tools.pane_commands import HANDLER_UNAVAILABLE, extract_pane_read_text

from conftest import make_pane


class FakePaneHost:
    """模拟宿主：只有指定提交键会让 pane 尾部发生变化。"""

    def __init__(self, effective_key: str = "linefeed") -> None:
        self.tail = "$ "
        self.effective_key = effective_key
        self.calls: List[Tuple[str, Dict[str, str]]] = []

    async def __call__(self, command: str, args: Dict[str, str]) -> str:
        self.calls.append((command, dict(args)))
        if command == "PANE.READ":
            return json.dumps({"ok": True, "text": self.tail})
        if command == "PANE.WRITE":
            if args.get("submit") == "true" and args.get("submitKey") == self.effective_key:
                self.tail += "\r\nran  "
            return "OK"
        return "unsupported"

    def writes(self) -> List[Dict[str, str]]:
        return [args for command, args in self.calls if command == "PANE.WRITE"]


def _run(host: Optional[FakePaneHost], args: Dict[str, Any], cfg: Optional[SubmitConfig] = None) -> Tuple[str, List[float]]:
    sleeps: List[float] = []

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    tool = build_run_command_tool(cfg or SubmitConfig(), host, sleep=_sleep)
    return asyncio.run(tool.handler(args, make_pane())), sleeps


def test_auto_submit_falls_back_to_linefeed() -> None:
    host = FakePaneHost("linefeed")

    output, sleeps = _run(host, {"command": "make test\n", "paneIndex": 2})

    assert [(w["text"], w["submitKey"]) for w in host.writes()] == [("make test", "enter"), ("", "linefeed")]
    assert all(w["paneIndex"] == "2" for w in host.writes())
    assert sleeps == [0.35, 0.35]
    assert output.startswith("writeResult:\nOK\n\nsubmitTrace:\n")
    assert "noMeaningfulChange: enter (try 1)" in output
    assert "acceptedKey: linefeed (try 1)" in output
    assert output.split("\n\n")[-1].startswith("paneTail:\n")


def test_first_key_accepted_stops_attempts() -> None:
    host = FakePaneHost("enter")

    output, _ = _run(host, {"command": "ls", "waitMs": 0})

    assert [w["submitKey"] for w in host.writes()] == ["enter"]
    assert "acceptedKey: enter (try 1)" in output


def test_explicit_submit_key_skips_fallback() -> None:
    host = FakePaneHost("crlf")

    output, sleeps = _run(host, {"command": "ls", "submitKey": "CRLF", "waitMs": 10})

    assert [w["submitKey"] for w in host.writes()] == ["crlf"]
    assert sleeps == [0.01]
    assert "acceptedKey: crlf (try 1)" in output


def test_write_only_without_submit_or_tail() -> None:
    host = FakePaneHost()

    output, sleeps = _run(host, {"command": "draft", "submit": False, "readTail": "false"})

    assert output == "OK"
    assert host.writes() == [{"text": "draft", "submit": "false", "submitKey": "auto"}]
    assert sleeps == []


def test_matching_profile_overrides_order_and_repeats() -> None:
    cfg = SubmitConfig(
        enable_target_profiles=True,
        profiles=[
            SubmitProfileConfig(name="other", command_pattern="cargo"),
            SubmitProfileConfig(name="npm", command_pattern="npm *", submit_order="crlf", wait_ms=0, repeat_count=2),
        ],
    )
    host = FakePaneHost("none")

    output, sleeps = _run(host, {"command": "npm test"}, cfg)

    assert [(w["text"], w["submitKey"]) for w in host.writes()] == [("npm test", "crlf"), ("", "crlf")]
    assert sleeps == []
    assert "profile: npm" in output
    assert "profileOrder: crlf" in output
    assert "crlf[2/2]: OK" in output
    assert "noMeaningfulChange: crlf (try 2)" in output


def test_missing_dispatcher_reports_handler_unavailable() -> None:
    output, _ = _run(None, {"command": "ls", "waitMs": 0})

    assert f"writeResult:\n{HANDLER_UNAVAILABLE}" in output
    assert "acceptedKey" not in output
    assert output.endswith(f"paneTail:\n{HANDLER_UNAVAILABLE}")


def test_blank_command_is_rejected() -> None:
    output, _ = _run(FakePaneHost(), {"command": "\n"})

    assert output == "Missing required argument: command"


def test_submit_key_helpers() -> None:
    assert submit_key_to_sequence("enter") == "\r"
    assert submit_key_to_sequence("Ctrl+J") == "\n"
    assert submit_key_to_sequence("crlf") == "\r\n"
    assert submit_key_to_sequence("none") == ""
    assert submit_key_to_sequence("bogus") == "\r"
    assert parse_submit_key_sequence("lf; enter, bogus, lf", keep_duplicates=False) == ["linefeed", "enter"]
    assert parse_submit_key_sequence("cr cr", keep_duplicates=True) == ["enter", "enter"]
    assert get_submit_attempt_order("auto", SubmitConfig(enable_fallback=False)) == ["enter"]
    assert get_submit_attempt_order("auto", SubmitConfig(fallback_order="bogus")) == ["enter", "linefeed", "crlf"]
    assert get_submit_attempt_order("linefeed", SubmitConfig()) == ["linefeed"]


def test_pattern_and_tail_helpers() -> None:
    assert matches_pattern("", "anything") is True
    assert matches_pattern("x", "") is False
    assert matches_pattern("NPM", "run npm test") is True
    assert matches_pattern("npm*", "run npm test") is False
    assert matches_pattern("*npm?test", "run npm test") is True
    assert has_meaningful_tail_change("a\r\n  ", "a\n") is False
    assert has_meaningful_tail_change("a", "a\nb") is True


def test_extract_pane_read_text() -> None:
    assert extract_pane_read_text('{"ok": true, "text": "tail"}') == "tail"
    assert extract_pane_read_text('{"ok": true, "text": null}') == ""
    assert extract_pane_read_text('{"ok": false, "text": "x"}') is None
    assert extract_pane_read_text("not json") is None
    assert extract_pane_read_text(None) is None
