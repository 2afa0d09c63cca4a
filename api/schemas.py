# api/schemas.py
"""Request / response bodies of the chat API (camelCase on the wire)."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from providers.base import ConversationMessage


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatRequest(_CamelModel):
    # message / pageContext are checked by the route so that a missing field
    # gets the same 400 body as an empty one
    message: Optional[str] = None
    page_context: Optional[str] = Field(default=None, alias="pageContext")
    conversation_history: Optional[List[ConversationMessage]] = Field(
        default=None, alias="conversationHistory"
    )
    stream: bool = False


class ChatResponse(_CamelModel):
    response: str
    page_references: Optional[List[int]] = Field(default=None, alias="pageReferences")


class SearchCandidate(_CamelModel):
    page_number: int = Field(alias="pageNumber")
    snippet: str


class SearchRankRequest(_CamelModel):
    query: Optional[str] = None
    candidates: Optional[List[SearchCandidate]] = None


class RankedResult(_CamelModel):
    page_number: int = Field(alias="pageNumber")
    snippet: str
    relevance_score: float = Field(alias="relevanceScore")


class SearchRankResponse(_CamelModel):
    ranked_results: List[RankedResult] = Field(alias="rankedResults")


class ApiError(_CamelModel):
    error: str
    message: str
    status_code: int = Field(alias="statusCode")
