from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Callable

from llm_gateway.errors import GatewayError, classify_exception
from llm_gateway.types import StreamHandle

logger = logging.getLogger("uvicorn.error")

DONE_MARKER = b"data: [DONE]"
DONE_EVENT = DONE_MARKER + b"\n\n"
_DONE_LINES = frozenset({DONE_MARKER, b"data:[DONE]"})
# A partial line longer than this cannot be the sentinel.
_PENDING_LIMIT = len(DONE_MARKER) + 2


def _is_done_line(line: bytes) -> bool:
    return line.rstrip(b"\r") in _DONE_LINES


def sse_error_event(error: GatewayError) -> bytes:
    payload = json.dumps(error.to_payload(), ensure_ascii=False, separators=(",", ":"))
    return f"data: {payload}\n\n".encode("utf-8")


async def relay_stream(
    handle: StreamHandle,
    *,
    request_id: str = "",
    event_hook: Callable[[dict[str, Any]], None] | None = None,
) -> AsyncIterator[bytes]:
    """Forward upstream SSE bytes as they arrive.

    Ends with exactly one ``data: [DONE]`` sentinel. A failure after the
    first byte is reported in-band and never retried.
    """
    saw_done = False
    ends_cleanly = True
    pending = b""
    forwarded = 0
    try:
        try:
            async for chunk in handle.chunks:
                if not chunk:
                    continue
                lines = (pending + chunk).split(b"\n")
                pending = lines.pop()[:_PENDING_LIMIT]
                if not saw_done and any(_is_done_line(line) for line in lines):
                    saw_done = True
                ends_cleanly = chunk.endswith(b"\n\n")
                forwarded += len(chunk)
                yield chunk
        except Exception as exc:
            error = classify_exception(exc)
            logger.warning(
                (
                    "stream_relay_error request_id=%s model=%s provider=%s "
                    "bytes=%d error_type=%s error=%s"
                ),
                request_id,
                handle.target_model,
                handle.provider,
                forwarded,
                error.error_type,
                error.message,
            )
            if event_hook is not None:
                try:
                    event_hook(
                        {
                            "event": "stream_error",
                            "request_id": request_id,
                            "model": handle.target_model,
                            "provider": handle.provider,
                            "bytes_forwarded": forwarded,
                            "error_type": error.error_type,
                            "error_code": error.code,
                        }
                    )
                except Exception as hook_exc:
                    logger.debug("stream_event_hook_failed error=%s", hook_exc)
            if saw_done or _is_done_line(pending):
                return
            if not ends_cleanly:
                yield b"\n\n"
            yield sse_error_event(error)
            yield DONE_EVENT
            return

        if not ends_cleanly:
            yield b"\n\n"
        if not saw_done and not _is_done_line(pending):
            yield DONE_EVENT
    finally:
        await handle.close()
