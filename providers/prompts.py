# providers/prompts.py
"""System prompts and prompt formatting for page-aware chat and search ranking."""

import re
from typing import Iterable, Mapping

MAX_CONTEXT_CHARS = 32000
MAX_SNIPPET_CHARS = 500

_PAGE_MARKER_RE = re.compile(r"\[Page (\d+)\]")

PAGE_AWARE_CHAT_PROMPT = """You are an intelligent PDF assistant. The user has uploaded a PDF document and you receive its FULL text content. Your job is to help them understand it and answer questions.

RULES (follow in this exact order):
1. CAREFULLY READ ALL of the provided document content before answering. The answer is very likely somewhere in the text, so look across ALL pages, not just the page the user is viewing.
2. When you find relevant information in the document:
   - Base your answer on it and cite page numbers: "According to page 5..."
   - Quote or paraphrase the relevant sections from the document
3. If after carefully reading the entire document you are certain the topic is NOT covered:
   - Briefly note this, then answer fully using your general knowledge
   - Never stop at just saying the document lacks the information
4. Always answer the user's question completely
5. Be concise but thorough. Use bullet/numbered lists for clarity
6. The document may be in any language. Answer in the same language the user writes in"""

SEARCH_RANK_PROMPT = """You are a search relevance expert. Given a user's search query and a list of text snippets from a PDF document, rank the snippets by relevance to the query.

IMPORTANT RULES:
1. Consider semantic meaning, not just keyword matching.
2. Rank snippets that directly answer or relate to the query higher.
3. Return results as a JSON array with relevance scores from 0-100.
4. Be objective and consistent in your rankings."""


def current_page_from_context(page_context: str) -> int:
    """First `[Page N]` marker in the context, or 1."""
    match = _PAGE_MARKER_RE.search(page_context or "")
    return int(match.group(1)) if match else 1


def format_user_message(user_query: str, page_context: str, current_page: int) -> str:
    if len(page_context) > MAX_CONTEXT_CHARS:
        page_context = page_context[:MAX_CONTEXT_CHARS] + "\n... [document truncated due to length]"

    return (
        f"[User is currently viewing Page {current_page}]\n\n"
        f"DOCUMENT CONTENT:\n{page_context}\n\n"
        f"QUESTION: {user_query}"
    )


def format_search_rank_request(query: str, candidates: Iterable[Mapping]) -> str:
    formatted = "\n\n".join(
        f'[{i}] Page {c["pageNumber"]}:\n"{str(c["snippet"])[:MAX_SNIPPET_CHARS]}..."'
        for i, c in enumerate(candidates, start=1)
    )
    return (
        f'SEARCH QUERY: "{query}"\n\n'
        f"CANDIDATE SNIPPETS:\n{formatted}\n\n"
        "Rank these snippets by relevance to the search query. "
        'Return as JSON array: [{ "index": number, "pageNumber": number, "relevanceScore": number }]'
    )
