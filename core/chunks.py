# core/chunks.py
"""
Stream chunk model and its Server-Sent Events frame codec.

Wire frame:  data: {"type": "content", "data": "..."}\\n\\n

The frame body is JSON, so chunk text may contain newlines or any other
character without breaking frame boundaries. Every frame is parseable on its
own; the decoder keeps no state between frames.
"""

import json
import logging
import re
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.error_taxonomy import ErrorKind

logger = logging.getLogger(__name__)

FRAME_PREFIX = "data:"
FRAME_TERMINATOR = "\n\n"

_PAGE_REF_RE = re.compile(r"page\s+(\d+)", re.IGNORECASE)


class ChunkKind(str, Enum):
    CONTENT = "content"
    PAGE_REFERENCE = "pageReference"
    ERROR = "error"
    DONE = "done"


TERMINAL_KINDS = frozenset({ChunkKind.DONE, ChunkKind.ERROR})


class StreamChunk(BaseModel):
    """One unit of a streamed answer."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: ChunkKind = Field(alias="type")
    text: Optional[str] = Field(default=None, alias="data")
    references: Optional[List[int]] = Field(default=None, alias="pageReferences")
    error_message: Optional[str] = Field(default=None, alias="error")
    error_kind: Optional[ErrorKind] = Field(default=None, alias="errorKind")

    @field_validator("references")
    @classmethod
    def _distinct_positive(cls, v):
        if v is None:
            return v
        return dedupe_references(v) or None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    @property
    def is_error(self) -> bool:
        return self.kind is ChunkKind.ERROR

    # ---- constructors ----

    @classmethod
    def content(cls, text: str) -> "StreamChunk":
        return cls(kind=ChunkKind.CONTENT, text=text)

    @classmethod
    def page_reference(cls, references: Iterable[int]) -> "StreamChunk":
        return cls(kind=ChunkKind.PAGE_REFERENCE, references=list(references))

    @classmethod
    def done(cls, references: Optional[Iterable[int]] = None) -> "StreamChunk":
        refs = list(references) if references else None
        return cls(kind=ChunkKind.DONE, references=refs or None)

    @classmethod
    def error(cls, message: str, kind: Optional[ErrorKind] = None) -> "StreamChunk":
        return cls(kind=ChunkKind.ERROR, error_message=message, error_kind=kind)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ----------------------------------------------------------------------
# Page references
# ----------------------------------------------------------------------

def dedupe_references(pages: Iterable[int]) -> List[int]:
    """Keep positive page numbers once each, in first-seen order."""
    seen: List[int] = []
    for page in pages:
        if isinstance(page, bool) or not isinstance(page, int) or page <= 0:
            continue
        if page not in seen:
            seen.append(page)
    return seen


def extract_page_references(text: str) -> List[int]:
    """Find "page N" mentions in answer text."""
    return dedupe_references(int(m.group(1)) for m in _PAGE_REF_RE.finditer(text or ""))


# ----------------------------------------------------------------------
# Frame codec
# ----------------------------------------------------------------------

def encode_frame(chunk: StreamChunk) -> str:
    body = json.dumps(chunk.to_wire(), ensure_ascii=False, separators=(",", ":"))
    return f"{FRAME_PREFIX} {body}{FRAME_TERMINATOR}"


def decode_frame(frame: str) -> Optional[StreamChunk]:
    """
    Decode one frame. Returns None for anything that is not a well-formed
    data frame; callers skip such frames and keep reading.
    """
    line = frame.strip()
    if not line.startswith(FRAME_PREFIX):
        return None
    body = line[len(FRAME_PREFIX):].strip()
    try:
        return StreamChunk.model_validate(json.loads(body))
    except (ValueError, ValidationError):
        logger.debug("Dropping malformed stream frame", extra={"frame": frame[:200]})
        return None


def iter_frames(payload: str) -> Iterable[str]:
    """Split a buffered SSE payload into frames."""
    for part in payload.split(FRAME_TERMINATOR):
        if part.strip():
            yield part


def decode_payload(payload: str) -> List[StreamChunk]:
    """
    Decode a whole buffered payload, stopping after the first terminal chunk.
    Malformed frames are skipped.
    """
    chunks: List[StreamChunk] = []
    for frame in iter_frames(payload):
        chunk = decode_frame(frame)
        if chunk is None:
            continue
        chunks.append(chunk)
        if chunk.is_terminal:
            break
    return chunks
