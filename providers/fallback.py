# providers/fallback.py
"""
Primary -> secondary provider orchestration.

Every call starts on the primary. Only a quota failure moves the call to the
secondary; rate-limit, transient and fatal errors end the call as they are.
There is no third hop: a secondary failure is final.

For streams the switch can happen mid-answer. The producer task relays the
primary's chunks into a ChunkChannel; when the primary reports a quota error
(raised, or as an error chunk) the error is swallowed and the secondary's
chunks are relayed into the same channel, so the consumer sees one stream with
one terminal chunk.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

from core import metrics
from core.channel import ChunkChannel
from core.chunks import StreamChunk
from core.error_taxonomy import ClassifiedError, ErrorKind, classify
from core.exceptions import ProviderError
from providers.base import HistoryInput, LLMProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderSelection(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class FallbackOrchestrator:
    """
    Compose a primary and an optional secondary provider.

    With no secondary the orchestrator is a thin pass-through that still
    enforces the deadline and the single-terminal stream contract.

    :param channel_size: bound of the stream hand-off queue.
    :param timeout: end-to-end deadline for one call (seconds), None to disable.
    """

    def __init__(
        self,
        primary: LLMProvider,
        secondary: Optional[LLMProvider] = None,
        *,
        channel_size: int = 32,
        timeout: Optional[float] = None,
    ):
        self.primary = primary
        self.secondary = secondary
        self.channel_size = channel_size
        self.timeout = timeout
        self._last_selection: Optional[ProviderSelection] = None

    @property
    def last_selection(self) -> Optional[ProviderSelection]:
        """Adapter that served the most recently completed call (monitoring only)."""
        return self._last_selection

    @property
    def provider_names(self) -> List[str]:
        names = [self.primary.name]
        if self.secondary is not None:
            names.append(self.secondary.name)
        return names

    def _record(self, selection: ProviderSelection, provider: LLMProvider, operation: str) -> None:
        self._last_selection = selection
        metrics.record_selection(selection.value)
        logger.info("LLM call served", extra={
            "operation": operation,
            "selection": selection.value,
            "provider": provider.name,
        })

    # ------------------------------------------------------------------
    # Single-shot calls
    # ------------------------------------------------------------------

    async def generate(
        self, prompt: str, history: HistoryInput = None, *, request_id: Optional[str] = None
    ) -> str:
        return await self._with_deadline(
            self._single_shot("generate", lambda p: p.generate(prompt, history), request_id),
            request_id,
        )

    async def rank(self, prompt: str, *, request_id: Optional[str] = None) -> str:
        return await self._with_deadline(
            self._single_shot("rank", lambda p: p.rank(prompt), request_id),
            request_id,
        )

    async def _with_deadline(self, coro: Awaitable[T], request_id: Optional[str]) -> T:
        if self.timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("LLM call deadline exceeded", extra={
                "request_id": request_id,
                "timeout_sec": self.timeout,
            })
            raise ProviderError(
                f"Request timed out after {self.timeout:g}s", kind=ErrorKind.TRANSIENT,
            )

    async def _single_shot(
        self,
        operation: str,
        call: Callable[[LLMProvider], Awaitable[T]],
        request_id: Optional[str],
    ) -> T:
        start = time.monotonic()
        try:
            result = await call(self.primary)
        except Exception as e:
            failure = classify(e)
            if not failure.is_quota or self.secondary is None:
                logger.error("LLM provider failure", extra={
                    "request_id": request_id,
                    "operation": operation,
                    "provider": self.primary.name,
                    "error_kind": failure.kind.value,
                    "error": failure.message,
                })
                raise

            logger.warning("Primary provider quota exceeded, switching to fallback", extra={
                "request_id": request_id,
                "operation": operation,
                "primary": self.primary.name,
                "secondary": self.secondary.name,
            })
            metrics.record_fallback(operation, "single_shot")
            try:
                result = await call(self.secondary)
            except Exception as fallback_error:
                logger.error("Fallback provider also failed", extra={
                    "request_id": request_id,
                    "operation": operation,
                    "provider": self.secondary.name,
                    "error": str(fallback_error),
                })
                raise
            self._record(ProviderSelection.SECONDARY, self.secondary, operation)
            return result

        logger.debug("Primary provider succeeded", extra={
            "request_id": request_id,
            "latency_sec": round(time.monotonic() - start, 3),
        })
        self._record(ProviderSelection.PRIMARY, self.primary, operation)
        return result

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def open_stream(
        self,
        prompt: str,
        history: HistoryInput = None,
        *,
        request_id: Optional[str] = None,
        lazy: bool = False,
    ) -> ChunkChannel:
        """
        Produce the answer in a background task and return the channel to
        consume. With `lazy=True` no provider is contacted until the channel is
        first read. The caller must `aclose()` the channel when done.
        """
        channel = ChunkChannel(self.channel_size, timeout=self.timeout, request_id=request_id)

        async def producer(ch: ChunkChannel) -> None:
            await self._pump(ch, prompt, history, request_id)

        return channel.start(producer, lazy=lazy)

    async def stream(
        self, prompt: str, history: HistoryInput = None, *, request_id: Optional[str] = None
    ) -> AsyncIterator[StreamChunk]:
        """Iterate an answer stream; the channel is closed on exit."""
        channel = self.open_stream(prompt, history, request_id=request_id)
        try:
            async for chunk in channel:
                yield chunk
        finally:
            await channel.aclose()

    async def _pump(
        self,
        channel: ChunkChannel,
        prompt: str,
        history: HistoryInput,
        request_id: Optional[str],
    ) -> None:
        failure = await self._relay(
            self.primary,
            ProviderSelection.PRIMARY,
            channel,
            prompt,
            history,
            request_id,
            can_fall_back=self.secondary is not None,
        )
        if failure is None:
            return

        stage = "mid_stream" if channel.sent else "before_stream"
        logger.warning("Primary provider quota exceeded in stream, switching to fallback", extra={
            "request_id": request_id,
            "stage": stage,
            "chunks_sent": channel.sent,
            "error": failure.message,
        })
        metrics.record_fallback("stream", stage)
        await self._relay(
            self.secondary,
            ProviderSelection.SECONDARY,
            channel,
            prompt,
            history,
            request_id,
            can_fall_back=False,
        )

    async def _relay(
        self,
        provider: LLMProvider,
        selection: ProviderSelection,
        channel: ChunkChannel,
        prompt: str,
        history: HistoryInput,
        request_id: Optional[str],
        *,
        can_fall_back: bool,
    ) -> Optional[ClassifiedError]:
        """
        Copy one provider's stream into the channel.

        Returns the quota failure that should trigger the fallback, or None
        once a terminal chunk has been forwarded (or the provider stopped).
        """
        stream = provider.generate_stream(prompt, history)
        try:
            async for chunk in stream:
                if chunk.is_error:
                    failure = classify(chunk)
                    if can_fall_back and failure.is_quota:
                        return failure
                await channel.send(chunk)
                if chunk.is_terminal:
                    self._record(selection, provider, "stream")
                    return None
        except Exception as e:
            failure = classify(e)
            if can_fall_back and failure.is_quota:
                return failure
            logger.error("Stream generation failed", extra={
                "request_id": request_id,
                "provider": provider.name,
                "error_kind": failure.kind.value,
                "error": failure.message,
            })
            await channel.send(StreamChunk.error(failure.message or "Generation failed", failure.kind))
            self._record(selection, provider, "stream")
            return None
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()
        return None

    async def aclose(self) -> None:
        await self.primary.aclose()
        if self.secondary is not None:
            await self.secondary.aclose()
