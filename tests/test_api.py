from fastapi.testclient import TestClient

from api.app import create_app
from conftest import FakeProvider
from core.exceptions import ProviderError, QuotaExceededError
from core.rate_limit import RateLimitStore, SlidingWindowRateLimiter
from providers.fallback import FallbackOrchestrator


def test_chat_returns_answer_with_page_references(client, chat_payload, primary):
    response = client.post("/api/chat", json=chat_payload)

    assert response.status_code == 200
    assert response.json() == {
        "response": "On page 3, the contract ends in June.",
        "pageReferences": [3],
    }
    assert response.headers["X-Request-ID"]
    # The prompt carries the document and the page being viewed
    prompt = primary.calls[0][1]
    assert "[User is currently viewing Page 3]" in prompt
    assert "QUESTION: When does the contract end?" in prompt


def test_chat_without_references_omits_field(settings, rate_limiter):
    orchestrator = FallbackOrchestrator(FakeProvider("gemini", answer="No citations here."))
    app = create_app(settings=settings, orchestrator=orchestrator, rate_limiter=rate_limiter)

    with TestClient(app) as c:
        response = c.post("/api/chat", json={"message": "hi", "pageContext": "text"})

    assert response.json() == {"response": "No citations here."}


def test_chat_passes_history(client, chat_payload, primary):
    history = [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
    ]
    client.post("/api/chat", json={**chat_payload, "conversationHistory": history})

    passed = primary.calls[0][2]
    assert [m.role for m in passed] == ["user", "assistant"]


def test_chat_falls_back_on_quota(settings, rate_limiter, chat_payload):
    primary = FakeProvider("gemini", generate_error=QuotaExceededError("quota"))
    secondary = FakeProvider("glm", answer="GLM answer, see page 8.")
    app = create_app(
        settings=settings,
        orchestrator=FallbackOrchestrator(primary, secondary),
        rate_limiter=rate_limiter,
    )

    with TestClient(app) as c:
        response = c.post("/api/chat", json=chat_payload)
        health = c.get("/health").json()

    assert response.status_code == 200
    assert response.json()["pageReferences"] == [8]
    assert health["lastSelection"] == "secondary"


def test_missing_message_is_400(client):
    response = client.post("/api/chat", json={"pageContext": "text"})

    assert response.status_code == 400
    assert response.json() == {
        "error": "Bad Request",
        "message": "Message is required",
        "statusCode": 400,
    }


def test_missing_page_context_is_400(client, primary):
    response = client.post("/api/chat", json={"message": "hi", "pageContext": ""})

    assert response.status_code == 400
    assert response.json()["message"] == "Page context is required"
    assert primary.calls == []


def test_invalid_history_role_is_400(client, chat_payload):
    payload = {**chat_payload, "conversationHistory": [{"role": "system", "content": "x"}]}

    response = client.post("/api/chat", json=payload)

    assert response.status_code == 400
    assert response.json()["statusCode"] == 400


def test_provider_failure_is_500(settings, rate_limiter, chat_payload):
    primary = FakeProvider("gemini", generate_error=ProviderError("Gemini API error: API key not valid"))
    app = create_app(
        settings=settings, orchestrator=FallbackOrchestrator(primary), rate_limiter=rate_limiter,
    )

    with TestClient(app) as c:
        response = c.post("/api/chat", json=chat_payload)

    assert response.status_code == 500
    assert response.json() == {
        "error": "Internal Server Error",
        "message": "Gemini API error: API key not valid",
        "statusCode": 500,
    }


def test_timeout_is_500(settings, rate_limiter, chat_payload):
    slow = FakeProvider("gemini", delay=1.0)
    app = create_app(
        settings=settings,
        orchestrator=FallbackOrchestrator(slow, timeout=0.05),
        rate_limiter=rate_limiter,
    )

    with TestClient(app) as c:
        response = c.post("/api/chat", json=chat_payload)

    assert response.status_code == 500
    assert "timed out" in response.json()["message"]


def test_rate_limit_rejects_eleventh_request_before_provider(client, chat_payload, primary):
    headers = {"X-Client-ID": "client_1_abc"}
    statuses = [client.post("/api/chat", json=chat_payload, headers=headers).status_code for _ in range(11)]

    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429
    assert len(primary.calls) == 10

    rejected = client.post("/api/chat", json=chat_payload, headers=headers)
    assert rejected.json() == {
        "error": "Too Many Requests",
        "message": "Rate limit exceeded. Please wait before sending more requests.",
        "statusCode": 429,
    }

    # A different client has its own window
    other = client.post("/api/chat", json=chat_payload, headers={"X-Client-ID": "client_2_def"})
    assert other.status_code == 200


def test_rate_limit_applies_before_validation(settings, orchestrator, primary):
    limiter = SlidingWindowRateLimiter(RateLimitStore(), max_requests=1)
    app = create_app(settings=settings, orchestrator=orchestrator, rate_limiter=limiter)

    with TestClient(app) as c:
        assert c.post("/api/chat", json={"message": ""}).status_code == 400
        assert c.post("/api/chat", json={"message": ""}).status_code == 429

    assert primary.calls == []


def test_malformed_bodies_count_against_the_window(settings, orchestrator, primary):
    limiter = SlidingWindowRateLimiter(RateLimitStore(), max_requests=2)
    app = create_app(settings=settings, orchestrator=orchestrator, rate_limiter=limiter)
    headers = {"X-Client-ID": "client_1_abc"}

    with TestClient(app) as c:
        wrong_types = c.post("/api/chat", json={"message": ["not", "a", "string"]}, headers=headers)
        not_json = c.post(
            "/api/chat", content=b"{oops", headers={**headers, "Content-Type": "application/json"},
        )
        rejected = c.post("/api/chat", json={"message": ["again"]}, headers=headers)

    assert wrong_types.status_code == 400
    assert wrong_types.json()["message"].startswith("Invalid request: message")
    assert not_json.status_code == 400
    assert rejected.status_code == 429
    assert limiter.remaining("client_1_abc") == 0
    assert primary.calls == []


def test_anonymous_clients_share_a_window(settings, orchestrator, chat_payload):
    limiter = SlidingWindowRateLimiter(RateLimitStore(), max_requests=2)
    app = create_app(settings=settings, orchestrator=orchestrator, rate_limiter=limiter)

    with TestClient(app) as c:
        statuses = [c.post("/api/chat", json=chat_payload).status_code for _ in range(3)]

    assert statuses == [200, 200, 429]


def test_shutdown_closes_providers(app, primary, secondary):
    with TestClient(app):
        pass

    assert primary.closed and secondary.closed
