from __future__ import annotations

import asyncio

import pytest

from pane_agent.mcp.errors import McpProtocolError, McpTransportError
from pane_agent.mcp.framing import MAX_FRAME_SIZE, decode_message, encode_frame, encode_message, read_frame
from pane_agent.mcp.session import split_args


def _read_all(data: bytes, count: int) -> list:
    async def _main() -> list:
        reader = asyncio.StreamReader()
        reader.feed_data(data)
        reader.feed_eof()
        return [await read_frame(reader) for _ in range(count)]

    return asyncio.run(_main())


def test_encode_frame_header_uses_byte_length() -> None:
    body = "héllo".encode("utf-8")

    assert encode_frame(body) == b"Content-Length: 6\r\n\r\n" + body
    assert encode_frame(b"") == b"Content-Length: 0\r\n\r\n"


def test_frames_round_trip_through_stream() -> None:
    messages = [
        {"jsonrpc": "2.0", "id": 1, "method": "ping"},
        {"jsonrpc": "2.0", "id": 2, "result": {"text": "多字节 ✓\nline two"}},
    ]
    data = b"".join(encode_message(m) for m in messages) + encode_frame(b"")

    bodies = _read_all(data, 3)

    assert [decode_message(b) for b in bodies[:2]] == messages
    assert bodies[2] == b""


def test_header_name_is_case_insensitive_and_unknown_headers_ignored() -> None:
    data = b"content-length: 2\r\nContent-Type: application/json\r\n\r\n{}"

    assert _read_all(data, 1) == [b"{}"]


def test_missing_content_length_is_rejected() -> None:
    with pytest.raises(McpTransportError, match="missing Content-Length"):
        _read_all(b"Content-Type: application/json\r\n\r\n{}", 1)


def test_oversized_frame_is_rejected() -> None:
    with pytest.raises(McpTransportError, match="too large"):
        _read_all(f"Content-Length: {MAX_FRAME_SIZE + 1}\r\n\r\n".encode("ascii"), 1)


def test_closed_stream_raises_transport_error() -> None:
    with pytest.raises(McpTransportError, match="closed"):
        _read_all(b"", 1)
    with pytest.raises(McpTransportError, match="closed while reading"):
        _read_all(b"Content-Length: 10\r\n\r\n{}", 1)


def test_decode_rejects_non_object_and_invalid_json() -> None:
    with pytest.raises(McpProtocolError) as excinfo:
        decode_message(b"[1, 2]")
    assert excinfo.value.code == -32700
    with pytest.raises(McpProtocolError):
        decode_message(b"{nope")


def test_split_args_keeps_quoted_segments() -> None:
    assert split_args('-y "@scope/server name" --flag') == ["-y", "@scope/server name", "--flag"]
    assert split_args("a  'b c'  d") == ["a", "b c", "d"]
    assert split_args("   ") == []
    assert split_args(None) == []
