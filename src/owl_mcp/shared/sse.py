import json
import logging
import re
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urljoin, urlparse

from httpx_sse import EventSource, ServerSentEvent
from httpx_sse._decoders import SSEDecoder

logger = logging.getLogger(__name__)

# CRLF, LF or CR end a line; U+2028/U+2029 do not
# https://html.spec.whatwg.org/multipage/server-sent-events.html#parsing-an-event-stream
_LINE_END = re.compile(rb"\r\n|\r|\n")


def _split_line(buffer: bytes) -> tuple[bytes, bytes] | None:
    match = _LINE_END.search(buffer)
    if match is None:
        return None
    # a CR at the end of the buffer may be the first half of a CRLF split across chunks
    if match.group() == b"\r" and match.end() == len(buffer):
        return None
    return buffer[: match.start()], buffer[match.end() :]


async def compliant_aiter_sse(event_source: EventSource) -> AsyncIterator[ServerSentEvent]:
    """
    Safely iterate over SSE events, working around httpx issue where U+2028 and U+2029
    are incorrectly treated as newlines, breaking SSE stream parsing.

    This function replaces event_source.aiter_sse() to handle these Unicode characters
    correctly by processing the raw byte stream and only splitting on CRLF, LF or CR.

    Args:
        event_source: The EventSource to iterate over

    Yields:
        ServerSentEvent objects parsed from the stream
    """
    decoder = SSEDecoder()
    buffer = b""

    async for chunk in event_source.response.aiter_bytes():
        buffer += chunk
        while (split := _split_line(buffer)) is not None:
            line_bytes, buffer = split
            sse = decoder.decode(line_bytes.decode("utf-8", errors="replace"))
            if sse is not None:
                yield sse

    # Process any remaining data in buffer; the stream has ended, so a trailing CR ends a line
    *lines, rest = _LINE_END.split(buffer)
    if rest:
        lines.append(rest)
    for line_bytes in lines:
        sse = decoder.decode(line_bytes.decode("utf-8", errors="replace"))
        if sse is not None:
            yield sse


async def read_endpoint_event(event_source: EventSource, url: str) -> str | None:
    """
    Wait for the ``endpoint`` event an MCP SSE server sends first.

    Returns the absolute message endpoint URL, or None when the first event is
    something else or the endpoint points at a different origin.
    """
    async for sse in compliant_aiter_sse(event_source):
        logger.debug(f"Received SSE event: {sse.event}")
        if sse.event != "endpoint":
            return None

        endpoint_url = urljoin(url, sse.data)
        url_parsed = urlparse(url)
        endpoint_parsed = urlparse(endpoint_url)
        if url_parsed.netloc != endpoint_parsed.netloc or url_parsed.scheme != endpoint_parsed.scheme:
            logger.warning(f"Endpoint origin does not match connection origin: {endpoint_url}")
            return None
        return endpoint_url
    return None


async def read_first_json_message(event_source: EventSource) -> Any:
    """Decode the data of the first ``message`` event as JSON."""
    async for sse in compliant_aiter_sse(event_source):
        if sse.event == "message" and sse.data:
            return json.loads(sse.data)
    return None
