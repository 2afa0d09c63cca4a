# api/ranking.py
"""Turn the model's search-ranking reply into ordered results."""

import json
import logging
import re
from typing import List, Sequence

from api.schemas import RankedResult, SearchCandidate

logger = logging.getLogger(__name__)

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

DEFAULT_SCORE = 50


def default_ranking(candidates: Sequence[SearchCandidate]) -> List[RankedResult]:
    """Candidates in their original order with scores 100, 90, 80, ..."""
    return [
        RankedResult(
            page_number=c.page_number,
            snippet=c.snippet,
            relevance_score=max(0, 100 - i * 10),
        )
        for i, c in enumerate(candidates)
    ]


def parse_ranked_results(reply: str, candidates: Sequence[SearchCandidate]) -> List[RankedResult]:
    """
    Parse `[{"index": n, "pageNumber": p, "relevanceScore": s}, ...]` out of the
    reply (`index` is 1-based into `candidates`) and sort by score, highest
    first. Anything unparseable falls back to `default_ranking`.
    """
    match = _JSON_ARRAY_RE.search(reply or "")
    if not match:
        logger.warning("No JSON array in ranking reply, using default order")
        return default_ranking(candidates)

    try:
        items = json.loads(match.group(0))
        results = []
        for item in items:
            index = item.get("index")
            candidate = None
            if isinstance(index, int) and 1 <= index <= len(candidates):
                candidate = candidates[index - 1]
            elif candidates:
                candidate = candidates[0]
            results.append(RankedResult(
                page_number=item.get("pageNumber") or (candidate.page_number if candidate else 0),
                snippet=candidate.snippet if candidate else "",
                relevance_score=item.get("relevanceScore") or DEFAULT_SCORE,
            ))
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning("Unparseable ranking reply, using default order", extra={"error": str(e)})
        return default_ranking(candidates)

    results.sort(key=lambda r: r.relevance_score, reverse=True)
    return results
