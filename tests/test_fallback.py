import asyncio

import pytest

from conftest import FakeProvider
from core.chunks import ChunkKind, StreamChunk
from core.error_taxonomy import ErrorKind
from core.exceptions import ProviderError, QuotaExceededError, RateLimitError
from providers.fallback import FallbackOrchestrator, ProviderSelection


async def _collect(orchestrator, prompt="question"):
    return [chunk async for chunk in orchestrator.stream(prompt)]


def _texts(chunks):
    return "".join(c.text for c in chunks if c.kind is ChunkKind.CONTENT)


# ----------------------------------------------------------------------
# Single-shot
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_uses_primary_when_it_succeeds(primary, secondary):
    orchestrator = FallbackOrchestrator(primary, secondary)

    answer = await orchestrator.generate("q")

    assert answer == primary.answer
    assert secondary.calls == []
    assert orchestrator.last_selection is ProviderSelection.PRIMARY


@pytest.mark.asyncio
async def test_generate_falls_back_on_quota(secondary):
    primary = FakeProvider("gemini", generate_error=QuotaExceededError("Gemini quota exceeded"))
    orchestrator = FallbackOrchestrator(primary, secondary)

    answer = await orchestrator.generate("q", [{"role": "user", "content": "hi"}])

    assert answer == secondary.answer
    assert secondary.calls[0][1] == "q"
    assert orchestrator.last_selection is ProviderSelection.SECONDARY


@pytest.mark.asyncio
async def test_generate_falls_back_on_unstructured_quota_text(secondary):
    primary = FakeProvider("gemini", generate_error=Exception("Insufficient balance or no resource package"))
    orchestrator = FallbackOrchestrator(primary, secondary)

    assert await orchestrator.generate("q") == secondary.answer


@pytest.mark.parametrize("error", [
    RateLimitError("slow down"),
    ProviderError("upstream 503", kind=ErrorKind.TRANSIENT),
    ProviderError("invalid api key", kind=ErrorKind.FATAL),
])
@pytest.mark.asyncio
async def test_generate_does_not_fall_back_on_other_errors(error, secondary):
    primary = FakeProvider("gemini", generate_error=error)
    orchestrator = FallbackOrchestrator(primary, secondary)

    with pytest.raises(type(error)):
        await orchestrator.generate("q")

    assert secondary.calls == []


@pytest.mark.asyncio
async def test_secondary_failure_is_final():
    primary = FakeProvider("gemini", generate_error=QuotaExceededError("quota"))
    secondary = FakeProvider("glm", generate_error=QuotaExceededError("GLM quota exceeded"))
    orchestrator = FallbackOrchestrator(primary, secondary)

    with pytest.raises(QuotaExceededError, match="GLM"):
        await orchestrator.generate("q")


@pytest.mark.asyncio
async def test_single_provider_mode_surfaces_quota():
    primary = FakeProvider("glm", generate_error=QuotaExceededError("quota"))
    orchestrator = FallbackOrchestrator(primary)

    with pytest.raises(QuotaExceededError):
        await orchestrator.generate("q")


@pytest.mark.asyncio
async def test_rank_falls_back_on_quota():
    primary = FakeProvider("gemini", generate_error=QuotaExceededError("quota"))
    secondary = FakeProvider("glm", rank_reply='[{"index": 1, "relevanceScore": 90}]')
    orchestrator = FallbackOrchestrator(primary, secondary)

    assert await orchestrator.rank("q") == secondary.rank_reply


@pytest.mark.asyncio
async def test_generate_deadline_is_transient_error():
    slow = FakeProvider("gemini", delay=1.0)
    orchestrator = FallbackOrchestrator(slow, timeout=0.05)

    with pytest.raises(ProviderError, match="timed out") as exc_info:
        await orchestrator.generate("q")

    assert exc_info.value.kind is ErrorKind.TRANSIENT


# ----------------------------------------------------------------------
# Streaming
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_from_primary(secondary):
    primary = FakeProvider("gemini", chunks=["See page 2", " and page 2."])
    orchestrator = FallbackOrchestrator(primary, secondary)

    chunks = await _collect(orchestrator)

    assert _texts(chunks) == "See page 2 and page 2."
    assert chunks[-1].kind is ChunkKind.DONE
    assert chunks[-1].references == [2]
    assert secondary.calls == []
    assert orchestrator.last_selection is ProviderSelection.PRIMARY


@pytest.mark.asyncio
async def test_quota_error_chunk_mid_stream_splices_secondary():
    primary = FakeProvider("gemini", chunks=[
        "Partial ",
        StreamChunk.error("Gemini quota exceeded", ErrorKind.QUOTA_EXCEEDED),
    ])
    secondary = FakeProvider("glm", chunks=["answer from page 4"])
    orchestrator = FallbackOrchestrator(primary, secondary)

    chunks = await _collect(orchestrator)

    assert _texts(chunks) == "Partial answer from page 4"
    assert not any(c.is_error for c in chunks)
    assert sum(c.is_terminal for c in chunks) == 1
    assert chunks[-1].references == [4]
    assert orchestrator.last_selection is ProviderSelection.SECONDARY


@pytest.mark.asyncio
async def test_quota_raised_before_first_chunk_switches_without_prefix():
    primary = FakeProvider("gemini", open_error=QuotaExceededError("RESOURCE_EXHAUSTED"))
    secondary = FakeProvider("glm", chunks=["from glm"])
    orchestrator = FallbackOrchestrator(primary, secondary)

    chunks = await _collect(orchestrator)

    assert _texts(chunks) == "from glm"
    assert chunks[-1].kind is ChunkKind.DONE


@pytest.mark.asyncio
async def test_non_quota_error_chunk_is_forwarded(secondary):
    primary = FakeProvider("gemini", chunks=[
        "Partial",
        StreamChunk.error("connection reset", ErrorKind.TRANSIENT),
    ])
    orchestrator = FallbackOrchestrator(primary, secondary)

    chunks = await _collect(orchestrator)

    assert chunks[-1].is_error
    assert chunks[-1].error_kind is ErrorKind.TRANSIENT
    assert secondary.calls == []


@pytest.mark.asyncio
async def test_non_quota_open_error_becomes_error_chunk(secondary):
    primary = FakeProvider("gemini", open_error=ProviderError("invalid api key"))
    orchestrator = FallbackOrchestrator(primary, secondary)

    chunks = await _collect(orchestrator)

    assert len(chunks) == 1
    assert chunks[0].is_error
    assert chunks[0].error_kind is ErrorKind.FATAL
    assert secondary.calls == []


@pytest.mark.asyncio
async def test_secondary_quota_mid_stream_is_final():
    primary = FakeProvider("gemini", open_error=QuotaExceededError("quota"))
    secondary = FakeProvider("glm", chunks=[
        "x",
        StreamChunk.error("GLM quota exceeded", ErrorKind.QUOTA_EXCEEDED),
    ])
    orchestrator = FallbackOrchestrator(primary, secondary)

    chunks = await _collect(orchestrator)

    assert chunks[-1].is_error
    assert chunks[-1].error_kind is ErrorKind.QUOTA_EXCEEDED
    assert sum(c.is_terminal for c in chunks) == 1


@pytest.mark.asyncio
async def test_stream_deadline_ends_with_error_chunk():
    slow = FakeProvider("gemini", chunks=["a", "b"], delay=1.0)
    orchestrator = FallbackOrchestrator(slow, timeout=0.05)

    chunks = await _collect(orchestrator)

    assert chunks[-1].is_error
    assert "timed out" in chunks[-1].error_message


@pytest.mark.asyncio
async def test_closing_the_stream_stops_the_provider():
    primary = FakeProvider("gemini", chunks=["a"] * 100, delay=0.01)
    orchestrator = FallbackOrchestrator(primary)

    channel = orchestrator.open_stream("q")
    first = await channel.__anext__()
    await channel.aclose()
    await asyncio.sleep(0.05)

    assert first.text == "a"
    assert channel.sent < 100


@pytest.mark.asyncio
async def test_lazy_stream_unread_never_contacts_provider():
    primary = FakeProvider("gemini", chunks=["a"])
    orchestrator = FallbackOrchestrator(primary)

    channel = orchestrator.open_stream("q", lazy=True)
    await asyncio.sleep(0.01)
    await channel.aclose()

    assert primary.calls == []
    assert orchestrator.last_selection is None


@pytest.mark.asyncio
async def test_aclose_closes_both_providers(primary, secondary):
    orchestrator = FallbackOrchestrator(primary, secondary)

    await orchestrator.aclose()

    assert primary.closed and secondary.closed
