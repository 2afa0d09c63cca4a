import json

from core.chunks import (
    ChunkKind,
    StreamChunk,
    decode_frame,
    decode_payload,
    dedupe_references,
    encode_frame,
    extract_page_references,
)
from core.error_taxonomy import ErrorKind


def test_encode_frame_is_sse_data_line():
    frame = encode_frame(StreamChunk.content("Hello"))

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "content", "data": "Hello"}


def test_text_with_newlines_survives_one_frame():
    text = "line one\n\nline two\r\n\"quoted\""
    frame = encode_frame(StreamChunk.content(text))

    # Only the frame terminator may contain a blank line
    assert frame.count("\n\n") == 1
    assert decode_frame(frame).text == text


def test_done_frame_carries_page_references():
    frame = encode_frame(StreamChunk.done([3, 5]))
    chunk = decode_frame(frame)

    assert chunk.kind is ChunkKind.DONE
    assert chunk.references == [3, 5]
    assert chunk.is_terminal


def test_error_frame_carries_kind():
    frame = encode_frame(StreamChunk.error("quota exceeded", ErrorKind.QUOTA_EXCEEDED))
    body = json.loads(frame[len("data: "):])

    assert body == {"type": "error", "error": "quota exceeded", "errorKind": "quota_exceeded"}
    assert decode_frame(frame).error_kind is ErrorKind.QUOTA_EXCEEDED


def test_malformed_frames_are_dropped():
    assert decode_frame("data: {not json") is None
    assert decode_frame("event: ping") is None
    assert decode_frame('data: {"type": "unknown"}') is None
    assert decode_frame("") is None


def test_decode_payload_skips_garbage_and_stops_at_terminal():
    payload = (
        encode_frame(StreamChunk.content("A"))
        + "data: {broken\n\n"
        + encode_frame(StreamChunk.content("B"))
        + encode_frame(StreamChunk.done([1]))
        + encode_frame(StreamChunk.content("after terminal"))
    )

    chunks = decode_payload(payload)

    assert [c.text for c in chunks[:-1]] == ["A", "B"]
    assert chunks[-1].kind is ChunkKind.DONE
    assert len(chunks) == 3


def test_dedupe_references_keeps_first_seen_positive_pages():
    assert dedupe_references([3, 1, 3, 0, -2, 1, 7]) == [3, 1, 7]


def test_extract_page_references_is_case_insensitive():
    text = "See Page 4 and page 2. As noted on PAGE 4, page 10 too."

    assert extract_page_references(text) == [4, 2, 10]


def test_done_chunk_normalises_references():
    assert StreamChunk.done([2, 2, 5]).references == [2, 5]
    assert StreamChunk.done([]).references is None
    assert "pageReferences" not in StreamChunk.done().to_wire()


def test_page_reference_chunk_is_not_terminal():
    chunk = StreamChunk.page_reference([6, 6, 2])

    assert chunk.references == [6, 2]
    assert not chunk.is_terminal
    assert decode_frame(encode_frame(chunk)).kind is ChunkKind.PAGE_REFERENCE
