"""Tests for reading MCP events from SSE streams."""

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx_sse import EventSource

from owl_mcp.shared.sse import compliant_aiter_sse, read_endpoint_event, read_first_json_message

pytestmark = pytest.mark.anyio


def create_mock_event_source(data_chunks: list[bytes]) -> EventSource:
    """Create a mock EventSource that yields the given data chunks."""
    event_source = MagicMock(spec=EventSource)
    response = AsyncMock()
    event_source.response = response

    async def mock_aiter_bytes() -> AsyncIterator[bytes]:
        for chunk in data_chunks:
            yield chunk

    response.aiter_bytes = mock_aiter_bytes
    return event_source


async def test_compliant_aiter_sse_handles_unicode_line_separators():
    test_data = [
        b"event: message\n",
        b'data: {"text":"Hello',
        b"\xe2\x80\xa8",  # UTF-8 encoding of U+2028
        b'World"}\n',
        b"\n",
    ]

    events = [event async for event in compliant_aiter_sse(create_mock_event_source(test_data))]

    assert len(events) == 1
    assert events[0].event == "message"
    assert events[0].data == '{"text":"Hello\u2028World"}'


async def test_compliant_aiter_sse_handles_crlf_and_split_chunks():
    test_data = [b"event: endpo", b"int\r\ndata: /messages\r", b"\n\r\n"]

    events = [event async for event in compliant_aiter_sse(create_mock_event_source(test_data))]

    assert [(e.event, e.data) for e in events] == [("endpoint", "/messages")]


async def test_compliant_aiter_sse_handles_bare_cr_line_endings():
    test_data = [b"event: endpoint\rdata: /messages\r", b"\revent: message\rdata: {}\r\r"]

    events = [event async for event in compliant_aiter_sse(create_mock_event_source(test_data))]

    assert [(e.event, e.data) for e in events] == [("endpoint", "/messages"), ("message", "{}")]


async def test_read_endpoint_event_over_bare_cr_stream():
    event_source = create_mock_event_source([b"event: endpoint\rdata: /messages?session_id=abc\r\r"])

    endpoint = await read_endpoint_event(event_source, "https://mcp.example.com/sse")

    assert endpoint == "https://mcp.example.com/messages?session_id=abc"


async def test_read_endpoint_event_resolves_relative_url():
    event_source = create_mock_event_source([b"event: endpoint\ndata: /messages?session_id=abc\n\n"])

    endpoint = await read_endpoint_event(event_source, "https://mcp.example.com/sse")

    assert endpoint == "https://mcp.example.com/messages?session_id=abc"


async def test_read_endpoint_event_rejects_other_origin():
    event_source = create_mock_event_source([b"event: endpoint\ndata: https://evil.example.net/messages\n\n"])

    assert await read_endpoint_event(event_source, "https://mcp.example.com/sse") is None


async def test_read_endpoint_event_requires_endpoint_first():
    event_source = create_mock_event_source(
        [b"event: message\ndata: {}\n\n", b"event: endpoint\ndata: /messages\n\n"]
    )

    assert await read_endpoint_event(event_source, "https://mcp.example.com/sse") is None


async def test_read_endpoint_event_on_empty_stream():
    assert await read_endpoint_event(create_mock_event_source([]), "https://mcp.example.com/sse") is None


async def test_read_first_json_message_skips_other_events():
    event_source = create_mock_event_source(
        [
            b"event: ping\ndata: keepalive\n\n",
            b'event: message\ndata: {"jsonrpc":"2.0","id":1,"result":{}}\n\n',
        ]
    )

    message = await read_first_json_message(event_source)

    assert message == {"jsonrpc": "2.0", "id": 1, "result": {}}
