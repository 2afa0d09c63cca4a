# providers/base.py
"""
Uniform contract every LLM backend adapter implements.

Adapters:
    - translate backend failures into ProviderError (with an ErrorKind) where
      they are first caught
    - convert the user/assistant history vocabulary into the backend's roles
    - hold no per-conversation state, only the backend client handle
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Iterable, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict

from core.chunks import StreamChunk, extract_page_references

logger = logging.getLogger(__name__)


class ConversationMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str


HistoryInput = Optional[Sequence[Union[ConversationMessage, Mapping]]]


def normalize_history(history: HistoryInput) -> List[ConversationMessage]:
    """Accept models or plain dicts; return validated messages in order."""
    if not history:
        return []
    return [
        m if isinstance(m, ConversationMessage) else ConversationMessage.model_validate(m)
        for m in history
    ]


def done_chunk_for(parts: Iterable[str]) -> StreamChunk:
    """Terminal chunk carrying the page references found in the full answer."""
    return StreamChunk.done(extract_page_references("".join(parts)))


class LLMProvider(ABC):
    """Abstract interface for LLM backends."""

    name: str = "provider"

    @abstractmethod
    async def generate(self, prompt: str, history: HistoryInput = None) -> str:
        """Complete answer in one call. Raises ProviderError on failure."""

    @abstractmethod
    def generate_stream(self, prompt: str, history: HistoryInput = None) -> AsyncIterator[StreamChunk]:
        """
        Stream an answer: content chunks followed by exactly one terminal chunk.

        Failures while opening the stream are raised. Failures after that are
        delivered as an error chunk.
        """

    @abstractmethod
    async def rank(self, prompt: str) -> str:
        """Search-ranking completion (expected to contain a JSON array)."""

    async def aclose(self) -> None:
        """Release the backend client, if it has anything to release."""
        client = getattr(self, "_client", None)
        close = getattr(client, "aclose", None) or getattr(client, "close", None)
        if not callable(close):
            return
        try:
            maybe = close()
            if asyncio.iscoroutine(maybe):
                await maybe
            logger.info("Provider client closed", extra={"provider": self.name})
        except Exception:
            logger.exception("provider_client_close_failed", extra={"provider": self.name})
