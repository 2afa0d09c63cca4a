# client/transport.py
"""
HTTP transport for the chat API with retry.

Only failures classified as transient (network errors, 5xx) are retried, with
exponential backoff: the delay before retry k (0-indexed) is
initial_delay * 2**k. Quota, rate-limit (429) and validation errors surface
immediately.

Streaming calls are retried only until the first chunk has been yielded; a
failure after that is reported as an error chunk, never replayed.
"""

import asyncio
import dataclasses
import logging
from typing import Any, AsyncIterator, Iterable, List, Mapping, Optional, Union

import httpx

from api.schemas import ChatRequest, ChatResponse, RankedResult, SearchCandidate, SearchRankResponse
from client.identity import get_client_id
from client.rate_limiter import ClientRateLimiter
from core import metrics
from core.chunks import FRAME_TERMINATOR, StreamChunk, decode_frame
from core.error_taxonomy import ErrorKind, classify
from core.exceptions import ChatAPIError
from core.http_client import get_client
from core.request_context import get_request_id
from core.retry import RetryConfig, backoff_delay, default_retry_filter, notify_retry, retry_async

logger = logging.getLogger(__name__)

CLIENT_ID_HEADER = "X-Client-ID"

RequestInput = Union[ChatRequest, Mapping[str, Any]]


class ChatClient:
    """
    :param base_url: root URL of the chat service.
    :param client: httpx.AsyncClient to use; the shared per-loop client
                   from core.http_client when omitted.
    :param client_id: value for X-Client-ID; the process client id by default.
    :param retry: retry policy (max_retries, initial_delay, on_retry hook).
    :param rate_limiter: optional ClientRateLimiter; one slot per logical call.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        client: Optional[httpx.AsyncClient] = None,
        client_id: Optional[str] = None,
        retry: Optional[RetryConfig] = None,
        rate_limiter: Optional[ClientRateLimiter] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.client_id = client_id
        self.retry = retry or RetryConfig()
        self.rate_limiter = rate_limiter

    @property
    def _http(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else get_client()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _headers(self) -> dict:
        return {CLIENT_ID_HEADER: self.client_id or get_client_id()}

    @staticmethod
    def _payload(request: RequestInput, stream: bool) -> dict:
        if not isinstance(request, ChatRequest):
            request = ChatRequest.model_validate(request)
        payload = request.model_dump(by_alias=True, exclude_none=True)
        payload["stream"] = stream
        return payload

    def _retry_config(self, operation: str) -> RetryConfig:
        user_hook = self.retry.on_retry

        def on_retry(attempt: int, delay: float, exc: Exception) -> None:
            metrics.record_client_retry(operation)
            if user_hook is not None:
                user_hook(attempt, delay, exc)

        return dataclasses.replace(self.retry, on_retry=on_retry)

    @staticmethod
    async def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        await response.aread()
        error = None
        message = None
        try:
            body = response.json()
            if isinstance(body, dict):
                error = body.get("error")
                message = body.get("message")
        except ValueError:
            pass
        raise ChatAPIError(
            message or f"HTTP {response.status_code}",
            status_code=response.status_code,
            error=error or response.reason_phrase,
        )

    async def _acquire(self) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

    def _release(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.release()

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def send(self, request: RequestInput) -> ChatResponse:
        """Single-shot chat call. Raises the last error once retries are spent."""
        payload = self._payload(request, stream=False)

        async def attempt() -> ChatResponse:
            response = await self._http.post(
                self._url("/api/chat"), json=payload, headers=self._headers()
            )
            await self._raise_for_status(response)
            return ChatResponse.model_validate(response.json())

        await self._acquire()
        try:
            return await retry_async(
                attempt, config=self._retry_config("chat"), request_id=get_request_id()
            )
        finally:
            self._release()

    async def send_stream(self, request: RequestInput) -> AsyncIterator[StreamChunk]:
        """
        Streaming chat call. Yields chunks as they arrive and always ends with
        exactly one terminal chunk (done or error).
        """
        payload = self._payload(request, stream=True)
        config = self._retry_config("chat_stream")
        retry_filter = config.retry_filter or default_retry_filter

        await self._acquire()
        try:
            attempt = 0
            while True:
                yielded = False
                try:
                    async with self._http.stream(
                        "POST", self._url("/api/chat"), json=payload, headers=self._headers()
                    ) as response:
                        await self._raise_for_status(response)
                        async for chunk in self._iter_chunks(response):
                            yielded = True
                            yield chunk
                            if chunk.is_terminal:
                                return
                    logger.warning("Stream closed without a terminal chunk")
                    yield StreamChunk.error("Stream ended unexpectedly", ErrorKind.TRANSIENT)
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    exc = e

                if yielded or attempt >= config.max_retries or not retry_filter(exc):
                    failure = classify(exc)
                    logger.warning("Chat stream failed", extra={
                        "attempts": attempt + 1,
                        "error_kind": failure.kind.value,
                        "error_message": failure.message,
                        "mid_stream": yielded,
                    })
                    yield StreamChunk.error(failure.message or "Failed to send message", failure.kind)
                    return

                delay = backoff_delay(config, attempt)
                notify_retry(config, attempt + 1, delay, exc)
                logger.warning("Retrying chat stream after failure", extra={
                    "event": "retry_attempt",
                    "attempt": attempt + 1,
                    "delay": round(delay, 3),
                    "error_type": type(exc).__name__,
                })
                await asyncio.sleep(delay)
                attempt += 1
        finally:
            self._release()

    @staticmethod
    async def _iter_chunks(response: httpx.Response) -> AsyncIterator[StreamChunk]:
        # Frames end at a blank line only; line splitting would also break on
        # U+2028, U+2029 and U+0085 inside the JSON body
        buffer = ""
        async for text in response.aiter_text():
            buffer += text
            *frames, buffer = buffer.split(FRAME_TERMINATOR)
            for frame in frames:
                chunk = decode_frame(frame) if frame.strip() else None
                if chunk is not None:
                    yield chunk
        if buffer.strip():
            chunk = decode_frame(buffer)
            if chunk is not None:
                yield chunk

    # ------------------------------------------------------------------
    # Search ranking
    # ------------------------------------------------------------------

    async def rank_search_results(
        self, query: str, candidates: Iterable[Union[SearchCandidate, Mapping[str, Any]]]
    ) -> List[RankedResult]:
        payload = {
            "query": query,
            "candidates": [
                (c if isinstance(c, SearchCandidate) else SearchCandidate.model_validate(c))
                .model_dump(by_alias=True)
                for c in candidates
            ],
        }

        async def attempt() -> List[RankedResult]:
            response = await self._http.post(
                self._url("/api/search-rank"), json=payload, headers=self._headers()
            )
            await self._raise_for_status(response)
            return SearchRankResponse.model_validate(response.json()).ranked_results

        await self._acquire()
        try:
            return await retry_async(
                attempt, config=self._retry_config("search_rank"), request_id=get_request_id()
            )
        finally:
            self._release()

    async def aclose(self) -> None:
        """Close an injected client. The shared client is closed via core.http_client."""
        if self._client is not None:
            await self._client.aclose()
