# providers/gemini.py
"""
Google Gemini adapter (primary provider), built on the google-genai SDK.

Gemini reports exhausted free-tier quota as HTTP 429 / RESOURCE_EXHAUSTED, so
both are treated as quota failures here and drive the fallback to GLM.
"""

import logging
import time
from typing import AsyncIterator, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from core import metrics
from core.chunks import StreamChunk
from core.error_taxonomy import ErrorKind, classify
from core.exceptions import ConfigError, ProviderError, QuotaExceededError
from core.request_context import get_request_id
from providers.base import HistoryInput, LLMProvider, done_chunk_for, normalize_history
from providers.prompts import PAGE_AWARE_CHAT_PROMPT, SEARCH_RANK_PROMPT

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"


class GeminiProvider(LLMProvider):
    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        chat_model: str = DEFAULT_MODEL,
        search_model: str = DEFAULT_MODEL,
        chat_temperature: Optional[float] = None,
        search_temperature: Optional[float] = None,
        client=None,
    ):
        if client is None:
            if not api_key:
                raise ConfigError("GEMINI_API_KEY environment variable is not set")
            client = genai.Client(api_key=api_key)
        self._client = client
        self.chat_model = chat_model
        self.search_model = search_model
        self._chat_config = genai_types.GenerateContentConfig(
            system_instruction=PAGE_AWARE_CHAT_PROMPT,
            temperature=chat_temperature,
        )
        self._search_config = genai_types.GenerateContentConfig(
            system_instruction=SEARCH_RANK_PROMPT,
            temperature=search_temperature,
        )

    # ---- history ----

    @staticmethod
    def convert_history(history: HistoryInput) -> List[dict]:
        """Gemini names the assistant role "model"."""
        return [
            {
                "role": "user" if msg.role == "user" else "model",
                "parts": [{"text": msg.content}],
            }
            for msg in normalize_history(history)
        ]

    def _contents(self, prompt: str, history: HistoryInput) -> List[dict]:
        return self.convert_history(history) + [{"role": "user", "parts": [{"text": prompt}]}]

    # ---- error translation ----

    def _translate(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc

        if isinstance(exc, genai_errors.APIError):
            detail = exc.message or str(exc)
            if exc.code == 429 or exc.status == "RESOURCE_EXHAUSTED":
                return QuotaExceededError(
                    f"Gemini quota exceeded: {detail}",
                    provider=self.name, status_code=exc.code, code=exc.status,
                )
            kind = ErrorKind.TRANSIENT if exc.code and exc.code >= 500 else ErrorKind.FATAL
            return ProviderError(
                f"Gemini API error: {detail}",
                kind=kind, provider=self.name, status_code=exc.code, code=exc.status,
            )

        if isinstance(exc, (httpx.TransportError, TimeoutError)):
            return ProviderError(
                f"Gemini network error: {exc}", kind=ErrorKind.TRANSIENT, provider=self.name,
            )

        classified = classify(exc)
        if classified.is_quota:
            return QuotaExceededError(
                f"Gemini quota exceeded: {classified.message}", provider=self.name,
            )
        return ProviderError(classified.message, kind=classified.kind, provider=self.name)

    def _fail(self, operation: str, exc: Exception) -> ProviderError:
        error = self._translate(exc)
        metrics.record_provider_call(self.name, operation, "error")
        logger.warning("Gemini call failed", extra={
            "provider": self.name,
            "operation": operation,
            "error_kind": error.kind.value,
            "error": str(error),
            "request_id": get_request_id(),
        })
        return error

    # ---- contract ----

    async def generate(self, prompt: str, history: HistoryInput = None) -> str:
        start = time.monotonic()
        try:
            response = await self._client.aio.models.generate_content(
                model=self.chat_model,
                contents=self._contents(prompt, history),
                config=self._chat_config,
            )
        except Exception as e:
            raise self._fail("generate", e) from e

        text = response.text
        if not text:
            raise ProviderError("No content in Gemini response", provider=self.name)

        metrics.record_provider_call(self.name, "generate", "success")
        metrics.LLM_LATENCY.labels(provider=self.name).observe(time.monotonic() - start)
        return text

    async def generate_stream(self, prompt: str, history: HistoryInput = None) -> AsyncIterator[StreamChunk]:
        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=self.chat_model,
                contents=self._contents(prompt, history),
                config=self._chat_config,
            )
        except Exception as e:
            raise self._fail("stream", e) from e

        parts: List[str] = []
        try:
            async for chunk in stream:
                text = chunk.text
                if text:
                    parts.append(text)
                    yield StreamChunk.content(text)
        except Exception as e:
            error = self._fail("stream", e)
            yield StreamChunk.error(str(error), error.kind)
            return

        metrics.record_provider_call(self.name, "stream", "success")
        yield done_chunk_for(parts)

    async def rank(self, prompt: str) -> str:
        try:
            response = await self._client.aio.models.generate_content(
                model=self.search_model,
                contents=prompt,
                config=self._search_config,
            )
        except Exception as e:
            raise self._fail("rank", e) from e

        text = response.text
        if not text:
            raise ProviderError("No content in Gemini response", provider=self.name)
        metrics.record_provider_call(self.name, "rank", "success")
        return text

    async def aclose(self) -> None:
        aio = getattr(self._client, "aio", None)
        close = getattr(aio, "aclose", None)
        if callable(close):
            try:
                await close()
            except Exception:
                logger.exception("provider_client_close_failed", extra={"provider": self.name})
        else:
            await super().aclose()
