from fastapi.testclient import TestClient

from api.app import create_app
from api.ranking import default_ranking, parse_ranked_results
from api.schemas import SearchCandidate
from conftest import FakeProvider
from providers.fallback import FallbackOrchestrator

CANDIDATES = [
    {"pageNumber": 1, "snippet": "Introduction to the agreement"},
    {"pageNumber": 4, "snippet": "Either party may terminate with notice"},
    {"pageNumber": 9, "snippet": "Signatures"},
]


def _models():
    return [SearchCandidate.model_validate(c) for c in CANDIDATES]


def test_parse_sorts_by_score():
    reply = """Here is the ranking:
    [{"index": 1, "pageNumber": 1, "relevanceScore": 20},
     {"index": 2, "pageNumber": 4, "relevanceScore": 95},
     {"index": 3, "pageNumber": 9, "relevanceScore": 5}]"""

    results = parse_ranked_results(reply, _models())

    assert [r.page_number for r in results] == [4, 1, 9]
    assert results[0].snippet == "Either party may terminate with notice"
    assert results[0].relevance_score == 95


def test_parse_fills_missing_fields_from_candidate():
    results = parse_ranked_results('[{"index": 3}]', _models())

    assert results[0].page_number == 9
    assert results[0].relevance_score == 50


def test_unparseable_reply_keeps_original_order():
    for reply in ("I cannot rank these.", "[not json]"):
        results = parse_ranked_results(reply, _models())

        assert [r.page_number for r in results] == [1, 4, 9]
        assert [r.relevance_score for r in results] == [100, 90, 80]


def test_default_ranking_never_goes_negative():
    candidates = [SearchCandidate(page_number=i, snippet="x") for i in range(1, 13)]

    assert default_ranking(candidates)[-1].relevance_score == 0


def _client(settings, rate_limiter, provider):
    app = create_app(
        settings=settings, orchestrator=FallbackOrchestrator(provider), rate_limiter=rate_limiter,
    )
    return TestClient(app)


def test_search_rank_endpoint(settings, rate_limiter):
    provider = FakeProvider("gemini", rank_reply='[{"index": 2, "pageNumber": 4, "relevanceScore": 88}]')

    with _client(settings, rate_limiter, provider) as c:
        response = c.post("/api/search-rank", json={"query": "termination", "candidates": CANDIDATES})

    assert response.status_code == 200
    assert response.json() == {"rankedResults": [
        {"pageNumber": 4, "snippet": "Either party may terminate with notice", "relevanceScore": 88},
    ]}
    prompt = provider.calls[0][1]
    assert 'SEARCH QUERY: "termination"' in prompt
    assert "[2] Page 4:" in prompt


def test_search_rank_requires_query_and_candidates(client):
    missing_query = client.post("/api/search-rank", json={"candidates": CANDIDATES})
    no_candidates = client.post("/api/search-rank", json={"query": "x", "candidates": []})

    assert missing_query.status_code == 400
    assert missing_query.json()["message"] == "Query is required"
    assert no_candidates.status_code == 400
    assert no_candidates.json()["message"] == "Candidates array is required"


def test_search_rank_provider_failure_is_500(settings, rate_limiter):
    provider = FakeProvider("gemini", generate_error=Exception("boom"))

    with _client(settings, rate_limiter, provider) as c:
        response = c.post("/api/search-rank", json={"query": "x", "candidates": CANDIDATES})

    assert response.status_code == 500
    assert response.json()["message"] == "boom"
