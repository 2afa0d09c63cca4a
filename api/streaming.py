# api/streaming.py
"""Server-Sent Events response over a ChunkChannel."""

import logging
import time
from typing import AsyncIterator, Optional

from fastapi import Request
from fastapi.responses import StreamingResponse

from core import metrics
from core.channel import ChunkChannel
from core.chunks import encode_frame

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def channel_events(
    request: Request, channel: ChunkChannel, request_id: Optional[str] = None
) -> AsyncIterator[str]:
    """
    Yield one SSE frame per chunk until the terminal chunk has been sent.

    A client disconnect ends the stream like a completion: stop pumping and
    close the channel, which cancels the producer and the provider call.
    """
    start = time.monotonic()
    status = "success"
    metrics.record_stream_start()
    try:
        async for chunk in channel:
            # Stop if client disconnected
            if await request.is_disconnected():
                status = "disconnected"
                logger.info("Client disconnected mid-stream", extra={"request_id": request_id})
                break
            if chunk.is_error:
                status = "error"
                logger.error("Stream ended with error", extra={
                    "request_id": request_id,
                    "error": chunk.error_message,
                    "error_kind": chunk.error_kind.value if chunk.error_kind else None,
                })
            yield encode_frame(chunk)
    finally:
        await channel.aclose()
        metrics.record_chat_request("stream", status)
        metrics.record_stream_end(status, time.monotonic() - start)


def sse_response(
    request: Request, channel: ChunkChannel, request_id: Optional[str] = None
) -> StreamingResponse:
    headers = dict(SSE_HEADERS)
    if request_id:
        headers["X-Request-ID"] = request_id
    return StreamingResponse(
        channel_events(request, channel, request_id),
        media_type="text/event-stream",
        headers=headers,
    )
