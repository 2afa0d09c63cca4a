# tests/conftest.py
import asyncio
from typing import List, Optional, Sequence, Union

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from core.chunks import StreamChunk
from core.config import Settings
from core.rate_limit import RateLimitStore, SlidingWindowRateLimiter
from providers.base import LLMProvider, done_chunk_for
from providers.fallback import FallbackOrchestrator


class FakeProvider(LLMProvider):
    """
    Scripted provider. `chunks` may mix plain strings (content) and
    StreamChunks (sent as-is; a terminal one ends the stream).
    """

    def __init__(
        self,
        name: str = "fake",
        *,
        answer: str = "fake-llm-response",
        chunks: Optional[Sequence[Union[str, StreamChunk]]] = None,
        open_error: Optional[Exception] = None,
        generate_error: Optional[Exception] = None,
        rank_reply: str = "[]",
        delay: float = 0.0,
    ):
        self.name = name
        self.answer = answer
        self.chunks = list(chunks) if chunks is not None else ["fake", "-stream"]
        self.open_error = open_error
        self.generate_error = generate_error
        self.rank_reply = rank_reply
        self.delay = delay
        self.calls: List[tuple] = []
        self.closed = False

    async def generate(self, prompt, history=None):
        self.calls.append(("generate", prompt, history))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.generate_error is not None:
            raise self.generate_error
        return self.answer

    async def generate_stream(self, prompt, history=None):
        self.calls.append(("stream", prompt, history))
        if self.open_error is not None:
            raise self.open_error
        parts = []
        for item in self.chunks:
            await asyncio.sleep(self.delay)
            if isinstance(item, StreamChunk):
                yield item
                if item.is_terminal:
                    return
                continue
            parts.append(item)
            yield StreamChunk.content(item)
        yield done_chunk_for(parts)

    async def rank(self, prompt):
        self.calls.append(("rank", prompt))
        if self.generate_error is not None:
            raise self.generate_error
        return self.rank_reply

    async def aclose(self):
        self.closed = True


@pytest.fixture
def settings():
    return Settings(
        provider_mode="fallback",
        gemini_api_key="test-gemini-key",
        glm_api_key="test-glm-key",
        request_timeout_seconds=5.0,
    )


@pytest.fixture
def primary():
    return FakeProvider("gemini", answer="On page 3, the contract ends in June.")


@pytest.fixture
def secondary():
    return FakeProvider("glm", answer="GLM answer citing page 7.")


@pytest.fixture
def orchestrator(primary, secondary):
    return FallbackOrchestrator(primary, secondary, timeout=5.0)


@pytest.fixture
def rate_limiter():
    return SlidingWindowRateLimiter(RateLimitStore(), max_requests=10, window_seconds=60.0)


@pytest.fixture
def app(settings, orchestrator, rate_limiter):
    return create_app(settings=settings, orchestrator=orchestrator, rate_limiter=rate_limiter)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def chat_payload():
    return {
        "message": "When does the contract end?",
        "pageContext": "[Page 3]\nThe contract ends in June.",
    }
