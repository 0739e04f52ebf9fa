from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

import httpx

from llm_gateway.streaming import DONE_EVENT, relay_stream
from llm_gateway.types import StreamHandle


class _Upstream:
    def __init__(self, chunks: list[bytes], error: Exception | None = None) -> None:
        self._chunks = chunks
        self._error = error
        self.closed = False

    async def iterate(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def close(self) -> None:
        self.closed = True


def _relay(upstream: _Upstream, events: list[dict[str, Any]] | None = None) -> bytes:
    handle = StreamHandle(
        chunks=upstream.iterate(),
        close=upstream.close,
        target_model="x/a",
        provider="openrouter",
    )

    async def collect() -> bytes:
        parts = []
        async for part in relay_stream(
            handle,
            request_id="req-1",
            event_hook=events.append if events is not None else None,
        ):
            parts.append(part)
        return b"".join(parts)

    return asyncio.run(collect())


def _data_lines(body: bytes) -> list[str]:
    return [
        line[len("data: ") :]
        for line in body.decode("utf-8").split("\n")
        if line.startswith("data: ")
    ]


def test_chunks_are_forwarded_in_order_and_done_is_kept_once() -> None:
    upstream = _Upstream(
        [b'data: {"n":1}\n\n', b'data: {"n":2}\n\n', b"data: [DONE]\n\n"]
    )
    body = _relay(upstream)
    assert body == b'data: {"n":1}\n\ndata: {"n":2}\n\ndata: [DONE]\n\n'
    assert upstream.closed is True


def test_done_marker_split_across_chunks_is_not_duplicated() -> None:
    upstream = _Upstream([b'data: {"n":1}\n\ndata: [DO', b"NE]\n\n"])
    body = _relay(upstream)
    assert body.count(b"[DONE]") == 1


def test_done_text_inside_delta_content_is_not_the_sentinel() -> None:
    chunk = (
        b'data: {"choices":[{"delta":{"content":'
        b'"SSE ends with data: [DONE]"}}]}\n\n'
    )

    body = _relay(_Upstream([chunk]))

    assert body == chunk + DONE_EVENT
    assert _data_lines(body).count("[DONE]") == 1


def test_failure_after_done_text_in_content_still_reports_error() -> None:
    chunk = b'data: {"choices":[{"delta":{"content":"data: [DONE]"}}]}\n\n'
    upstream = _Upstream([chunk], error=httpx.ReadError("connection reset"))

    body = _relay(upstream)

    lines = _data_lines(body)
    assert body.startswith(chunk)
    assert body.count(b'"error"') == 1
    assert lines.count("[DONE]") == 1
    assert lines[-1] == "[DONE]"


def test_unterminated_done_line_is_closed_without_a_second_sentinel() -> None:
    body = _relay(_Upstream([b'data: {"n":1}\n\n', b"data: [DONE]"]))
    assert body == b'data: {"n":1}\n\ndata: [DONE]\n\n'


def test_missing_done_is_appended() -> None:
    body = _relay(_Upstream([b'data: {"n":1}\n\n']))
    assert body.endswith(DONE_EVENT)
    assert body.count(b"[DONE]") == 1


def test_mid_stream_failure_emits_one_error_event_then_done() -> None:
    events: list[dict[str, Any]] = []
    upstream = _Upstream(
        [b'data: {"n":1}\n\n', b'data: {"n":2'],
        error=httpx.ReadError("connection reset"),
    )

    body = _relay(upstream, events)

    lines = _data_lines(body)
    assert lines[0] == '{"n":1}'
    errors = [json.loads(line) for line in lines if line.startswith('{"error"')]
    assert len(errors) == 1
    assert errors[0]["error"]["type"] == "network_error"
    assert lines[-1] == "[DONE]"
    assert body.count(b"[DONE]") == 1
    assert upstream.closed is True
    assert [event["event"] for event in events] == ["stream_error"]
    assert events[0]["bytes_forwarded"] == len(b'data: {"n":1}\n\ndata: {"n":2')


def test_failure_after_done_is_not_reported_in_band() -> None:
    upstream = _Upstream([b"data: [DONE]\n\n"], error=httpx.ReadError("late"))
    body = _relay(upstream)
    assert body == b"data: [DONE]\n\n"
    assert upstream.closed is True


def test_handle_is_closed_when_consumer_stops_early() -> None:
    upstream = _Upstream([b'data: {"n":1}\n\n', b'data: {"n":2}\n\n'])
    handle = StreamHandle(
        chunks=upstream.iterate(),
        close=upstream.close,
        target_model="x/a",
        provider="openrouter",
    )

    async def consume_one() -> None:
        stream = relay_stream(handle)
        await stream.__anext__()
        await stream.aclose()

    asyncio.run(consume_one())
    assert upstream.closed is True
