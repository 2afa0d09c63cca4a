# core/channel.py
"""
Bounded producer/consumer channel for streamed answers.

A producer coroutine runs in its own task and pushes StreamChunks with
`send()`; the consumer iterates the channel. The channel owns the terminal
invariant: exactly one terminal chunk reaches the consumer and nothing follows
it. Closing the channel from the consumer side (client went away) cancels the
producer task.

Usage:
    channel = ChunkChannel(maxsize=32)
    channel.start(producer)          # producer(channel) -> awaitable; lazy=True defers to first read
    async for chunk in channel:
        ...
    await channel.aclose()
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from core.chunks import StreamChunk
from core.error_taxonomy import classify

logger = logging.getLogger(__name__)

Producer = Callable[["ChunkChannel"], Awaitable[None]]


class ChannelClosed(Exception):
    """Raised to a producer that sends after the stream has terminated."""
    pass


class ChunkChannel:
    def __init__(
        self,
        maxsize: int = 32,
        *,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._timeout = timeout
        self._request_id = request_id
        self._task: Optional[asyncio.Task] = None
        self._producer: Optional[Producer] = None
        self._terminated = False   # producer side: terminal chunk queued
        self._finished = False     # consumer side: terminal chunk delivered
        self._sent = 0

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def sent(self) -> int:
        """Number of chunks accepted from the producer so far."""
        return self._sent

    @property
    def started(self) -> bool:
        return self._task is not None

    def start(self, producer: Producer, *, lazy: bool = False) -> "ChunkChannel":
        """
        Run `producer` in a task. With `lazy=True` the task is only created on
        the first read, so a channel nobody iterates never spawns one.
        """
        if self._task is not None or self._producer is not None:
            raise RuntimeError("channel already started")
        if lazy:
            self._producer = producer
        else:
            self._task = asyncio.create_task(self._run(producer))
        return self

    async def send(self, chunk: StreamChunk) -> None:
        if self._terminated:
            raise ChannelClosed("stream already terminated")
        await self._queue.put(chunk)
        self._sent += 1
        if chunk.is_terminal:
            self._terminated = True

    async def _run(self, producer: Producer) -> None:
        try:
            if self._timeout is not None:
                await asyncio.wait_for(producer(self), timeout=self._timeout)
            else:
                await producer(self)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.error("Stream deadline exceeded", extra={
                "request_id": self._request_id,
                "timeout_sec": self._timeout,
            })
            await self._terminate(StreamChunk.error(
                f"Request timed out after {self._timeout:g}s",
            ))
            return
        except Exception as e:
            logger.exception("Stream producer failed", extra={"request_id": self._request_id})
            await self._terminate(StreamChunk.error(str(e) or "Stream error", classify(e).kind))
            return

        if not self._terminated:
            logger.warning("Stream producer ended without a terminal chunk", extra={
                "request_id": self._request_id,
            })
            await self._terminate(StreamChunk.error("Stream ended unexpectedly"))

    async def _terminate(self, chunk: StreamChunk) -> None:
        if not self._terminated:
            await self.send(chunk)

    # ---- consumer side ----

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamChunk:
        if self._finished:
            raise StopAsyncIteration
        if self._task is None and self._producer is not None:
            self._task = asyncio.create_task(self._run(self._producer))
            self._producer = None
        chunk = await self._queue.get()
        if chunk.is_terminal:
            self._finished = True
        return chunk

    async def aclose(self) -> None:
        """Stop the producer (if still running) and drop queued chunks."""
        self._finished = True
        self._producer = None
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        while not self._queue.empty():
            self._queue.get_nowait()
