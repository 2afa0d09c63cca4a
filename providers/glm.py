# providers/glm.py
"""
Zhipu GLM adapter (secondary provider).

GLM exposes an OpenAI-compatible chat/completions endpoint, so the adapter
talks to it through the `openai` SDK pointed at GLM_BASE_URL.

Quota signals:
    - HTTP 429
    - error code 1113 ("Insufficient balance or no resource package")
    - quota / balance wording in the error message
"""

import asyncio
import logging
import time
from typing import AsyncIterator, List, Optional

from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI

from core import metrics
from core.chunks import StreamChunk
from core.error_taxonomy import QUOTA_ERROR_CODES, ErrorKind, classify
from core.exceptions import ConfigError, ProviderError, QuotaExceededError
from core.request_context import get_request_id
from providers.base import HistoryInput, LLMProvider, done_chunk_for, normalize_history
from providers.prompts import PAGE_AWARE_CHAT_PROMPT, SEARCH_RANK_PROMPT

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.z.ai/api/coding/paas/v4"
DEFAULT_MODEL = "glm-4.5"


def _error_detail(exc: APIError) -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict) and inner.get("message"):
            return str(inner["message"])
    return exc.message or str(exc)


def _error_code(exc: APIError) -> Optional[str]:
    code = getattr(exc, "code", None)
    if code is None:
        body = getattr(exc, "body", None)
        if isinstance(body, dict):
            inner = body.get("error", body)
            if isinstance(inner, dict):
                code = inner.get("code")
    return None if code is None else str(code)


class GLMProvider(LLMProvider):
    name = "glm"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        chat_model: str = DEFAULT_MODEL,
        search_model: str = DEFAULT_MODEL,
        chat_temperature: float = 0.7,
        search_temperature: float = 0.3,
        client=None,
    ):
        if client is None:
            if not api_key:
                raise ConfigError("GLM_API_KEY environment variable is not set")
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                # Retries belong to the caller's policy, not the SDK's
                max_retries=0,
                default_headers={"Accept-Language": "en-US,en"},
            )
        self._client = client
        self.chat_model = chat_model
        self.search_model = search_model
        self.chat_temperature = chat_temperature
        self.search_temperature = search_temperature

    # ---- history ----

    @staticmethod
    def convert_history(history: HistoryInput) -> List[dict]:
        return [{"role": m.role, "content": m.content} for m in normalize_history(history)]

    def _messages(self, prompt: str, history: HistoryInput) -> List[dict]:
        messages = self.convert_history(history)
        messages.insert(0, {"role": "system", "content": PAGE_AWARE_CHAT_PROMPT})
        messages.append({"role": "user", "content": prompt})
        return messages

    # ---- error translation ----

    def _translate(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc

        if isinstance(exc, APIStatusError):
            detail = _error_detail(exc)
            code = _error_code(exc)
            if exc.status_code == 429 or code in QUOTA_ERROR_CODES or classify(detail).is_quota:
                return QuotaExceededError(
                    f"GLM quota exceeded: {detail}",
                    provider=self.name, status_code=exc.status_code, code=code,
                )
            kind = ErrorKind.TRANSIENT if exc.status_code >= 500 else ErrorKind.FATAL
            return ProviderError(
                f"GLM API error: {exc.status_code} {detail}",
                kind=kind, provider=self.name, status_code=exc.status_code, code=code,
            )

        # Includes APITimeoutError
        if isinstance(exc, APIConnectionError):
            return ProviderError(
                f"GLM network error: {exc}", kind=ErrorKind.TRANSIENT, provider=self.name,
            )

        if isinstance(exc, APIError):
            detail = _error_detail(exc)
            code = _error_code(exc)
            if code in QUOTA_ERROR_CODES or classify(detail).is_quota:
                return QuotaExceededError(f"GLM quota exceeded: {detail}", provider=self.name, code=code)
            return ProviderError(detail, kind=classify(detail).kind, provider=self.name, code=code)

        classified = classify(exc)
        if classified.is_quota:
            return QuotaExceededError(f"GLM quota exceeded: {classified.message}", provider=self.name)
        return ProviderError(classified.message, kind=classified.kind, provider=self.name)

    def _fail(self, operation: str, exc: Exception) -> ProviderError:
        error = self._translate(exc)
        metrics.record_provider_call(self.name, operation, "error")
        logger.warning("GLM call failed", extra={
            "provider": self.name,
            "operation": operation,
            "error_kind": error.kind.value,
            "error": str(error),
            "request_id": get_request_id(),
        })
        return error

    @staticmethod
    def _content_of(response) -> Optional[str]:
        choices = getattr(response, "choices", None)
        if not choices:
            return None
        message = getattr(choices[0], "message", None)
        return getattr(message, "content", None)

    # ---- contract ----

    async def generate(self, prompt: str, history: HistoryInput = None) -> str:
        start = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=self.chat_model,
                messages=self._messages(prompt, history),
                temperature=self.chat_temperature,
            )
        except Exception as e:
            raise self._fail("generate", e) from e

        content = self._content_of(response)
        if not content:
            raise ProviderError("No content in GLM response", provider=self.name)

        metrics.record_provider_call(self.name, "generate", "success")
        metrics.LLM_LATENCY.labels(provider=self.name).observe(time.monotonic() - start)
        return content

    async def generate_stream(self, prompt: str, history: HistoryInput = None) -> AsyncIterator[StreamChunk]:
        try:
            stream = await self._client.chat.completions.create(
                model=self.chat_model,
                messages=self._messages(prompt, history),
                temperature=self.chat_temperature,
                stream=True,
            )
        except Exception as e:
            raise self._fail("stream", e) from e

        parts: List[str] = []
        try:
            async for event in stream:
                if not event.choices:
                    continue
                choice = event.choices[0]
                delta = getattr(choice.delta, "content", None) if choice.delta else None
                if delta:
                    parts.append(delta)
                    yield StreamChunk.content(delta)
                if choice.finish_reason:
                    break
        except Exception as e:
            error = self._fail("stream", e)
            yield StreamChunk.error(str(error), error.kind)
            return
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                maybe = close()
                if asyncio.iscoroutine(maybe):
                    await maybe

        metrics.record_provider_call(self.name, "stream", "success")
        yield done_chunk_for(parts)

    async def rank(self, prompt: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.search_model,
                messages=[
                    {"role": "system", "content": SEARCH_RANK_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.search_temperature,
            )
        except Exception as e:
            raise self._fail("rank", e) from e

        content = self._content_of(response)
        if not content:
            raise ProviderError("No content in GLM response", provider=self.name)
        metrics.record_provider_call(self.name, "rank", "success")
        return content
