"""Server-Sent Events (SSE) relay for streaming responses."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Optional

import httpx

from models import RequestContext

log = logging.getLogger("gemini_proxy")

SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}

_EOF = object()


def sse_event(event: str, data: Any) -> bytes:
    """Encode one named event; `data` is sent verbatim when already a string."""
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event}\ndata: {data}\n\n".encode("utf-8")


async def iter_lines(source: AsyncIterator[bytes]) -> AsyncGenerator[str, None]:
    """
    Split a byte stream into non-empty, trimmed lines.

    Decoding is incremental so multi-byte characters split across reads stay
    intact. A trailing line without a newline is flushed at EOF.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for raw in source:
        buffer += decoder.decode(raw)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            line = line.strip()
            if line:
                yield line
    buffer += decoder.decode(b"", final=True)
    tail = buffer.strip()
    if tail:
        yield tail


async def _read_next(it: AsyncIterator[str]) -> Any:
    try:
        return await it.__anext__()
    except StopAsyncIteration:
        return _EOF


class StreamRelay:
    """Relay upstream output as meta → chunk*/ping* → end events."""

    def __init__(self, ping_interval_s: float = 5.0) -> None:
        self._ping_interval_s = ping_interval_s

    async def relay(
        self,
        source: AsyncIterator[bytes],
        *,
        ctx: RequestContext,
        model_id: str,
        lang: str,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> AsyncGenerator[bytes, None]:
        """
        Pending reads are never cancelled on a heartbeat: while one read is
        outstanding, each silent interval yields a ping and the same read keeps
        waiting.
        """
        lines = iter_lines(source)
        pending: Optional[asyncio.Task] = None
        failed: Optional[BaseException] = None
        count = 0
        try:
            yield sse_event("meta", {"requestId": ctx.request_id, "model": model_id, "lang": lang})
            while True:
                pending = asyncio.create_task(_read_next(lines))
                while True:
                    done, _ = await asyncio.wait({pending}, timeout=self._ping_interval_s)
                    if done:
                        break
                    yield sse_event("ping", {})
                line = pending.result()
                pending = None
                if line is _EOF:
                    break
                count += 1
                yield sse_event("chunk", line)
        except (httpx.HTTPError, httpx.StreamError) as e:
            failed = e
            log.warning(
                "Upstream stream ended with error req_id=%s model=%s err=%r",
                ctx.request_id,
                model_id,
                e,
            )
        finally:
            if pending is not None and not pending.done():
                pending.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await pending
            with contextlib.suppress(Exception):
                await lines.aclose()
            if on_close is not None:
                with contextlib.suppress(Exception):
                    await on_close()

        if failed is not None:
            yield sse_event("error", {"requestId": ctx.request_id, "message": f"{type(failed).__name__}: {failed}"})
        log.info("Stream finished req_id=%s model=%s chunks=%d ms=%d", ctx.request_id, model_id, count, ctx.elapsed_ms())
        yield sse_event("end", {"model": model_id, "took_ms": ctx.elapsed_ms()})
