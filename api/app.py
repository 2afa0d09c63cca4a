# api/app.py
# NOTE:
# Providers are built once in the lifespan from AI_PROVIDER; a missing API key
# fails startup instead of the first request.
# NOTE:
# POST /api/chat answers with one JSON body by default and with a Server-Sent
# Events stream when the body carries "stream": true. Rate limiting runs before
# validation and before any provider is contacted.

import logging
from contextlib import asynccontextmanager
from typing import Optional, Tuple, Type, TypeVar

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.ranking import parse_ranked_results
from api.schemas import ApiError, ChatRequest, ChatResponse, SearchRankRequest, SearchRankResponse
from api.streaming import sse_response
from core import metrics
from core.chunks import extract_page_references
from core.config import Settings
from core.error_taxonomy import classify
from core.health import full_health_check
from core.logging_config import setup_logging
from core.rate_limit import RateLimitStore, SlidingWindowRateLimiter
from core.request_context import new_request_id, set_request_id
from providers.factory import build_orchestrator
from providers.fallback import FallbackOrchestrator
from providers.prompts import current_page_from_context, format_search_rank_request, format_user_message

logger = logging.getLogger(__name__)

CLIENT_ID_HEADER = "X-Client-ID"

BodyT = TypeVar("BodyT", bound=BaseModel)

_REASONS = {
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    429: "Too Many Requests",
    500: "Internal Server Error",
}


def error_response(status_code: int, message: str) -> JSONResponse:
    """Render an error as {error, message, statusCode}."""
    body = ApiError(error=_REASONS.get(status_code, "Error"), message=message, status_code=status_code)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


def validation_message(errors) -> str:
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return f"Invalid request: {location} {first.get('msg', '')}".strip()


async def parse_body(request: Request, model: Type[BodyT]) -> Tuple[Optional[BodyT], Optional[JSONResponse]]:
    """
    Read and validate the JSON body after admission, so malformed bodies count
    against the client's window like any other request.
    """
    try:
        payload = await request.json()
    except ValueError:
        return None, error_response(400, "Invalid request: body must be JSON")
    try:
        return model.model_validate(payload), None
    except ValidationError as e:
        errors = e.errors(include_url=False)
        logger.warning("Request validation failed", extra={"errors": errors})
        return None, error_response(400, validation_message(errors))


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[FallbackOrchestrator] = None,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
) -> FastAPI:
    """
    Build the application. Anything not injected is created at startup from
    the environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: configure structured JSON logging
        cfg = settings or Settings.from_env()
        setup_logging(cfg.log_level)

        app.state.settings = cfg
        app.state.orchestrator = orchestrator or build_orchestrator(cfg)
        app.state.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            RateLimitStore(),
            max_requests=cfg.rate_limit_max_requests,
            window_seconds=cfg.rate_limit_window_seconds,
            compaction_threshold=cfg.rate_limit_compaction_keys,
        )
        logger.info("Chat service started", extra={"mode": cfg.provider_mode})

        yield

        # Shutdown: release provider clients
        try:
            await app.state.orchestrator.aclose()
        except Exception:
            logger.exception("provider_close_failed_during_lifespan_shutdown")

    app = FastAPI(title="Document Chat API", lifespan=lifespan)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Generate a unique request ID and store it in the context."""
        request_id = new_request_id()
        set_request_id(request_id)
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    def _admit(request: Request) -> Optional[JSONResponse]:
        client_id = request.headers.get(CLIENT_ID_HEADER)
        if request.app.state.rate_limiter.admit(client_id):
            return None
        return error_response(429, "Rate limit exceeded. Please wait before sending more requests.")

    @app.post("/api/chat")
    async def chat(request: Request):
        """
        Answer a question about the document.
        - `stream=false` (default): a single JSON response.
        - `stream=true`: a Server-Sent Events stream of chunks.
        """
        request_id = request.state.request_id

        rejected = _admit(request)
        if rejected is not None:
            metrics.record_chat_request("unknown", "rejected")
            return rejected

        req, invalid = await parse_body(request, ChatRequest)
        if invalid is not None:
            metrics.record_chat_request("unknown", "invalid")
            return invalid

        mode = "stream" if req.stream else "buffered"
        if not req.message:
            metrics.record_chat_request(mode, "invalid")
            return error_response(400, "Message is required")
        if not req.page_context:
            metrics.record_chat_request(mode, "invalid")
            return error_response(400, "Page context is required")

        prompt = format_user_message(
            req.message, req.page_context, current_page_from_context(req.page_context)
        )
        history = req.conversation_history or []
        orchestrator = request.app.state.orchestrator

        if req.stream:
            # The producer starts when the response body is first iterated
            channel = orchestrator.open_stream(prompt, history, request_id=request_id, lazy=True)
            return sse_response(request, channel, request_id)

        try:
            answer = await orchestrator.generate(prompt, history, request_id=request_id)
        except Exception as e:
            metrics.record_chat_request(mode, "error")
            logger.exception("Unexpected error in /api/chat", extra={
                "request_id": request_id,
                "error_kind": classify(e).kind.value,
            })
            return error_response(500, str(e) or "Unknown error")

        metrics.record_chat_request(mode, "success")
        body = ChatResponse(
            response=answer,
            page_references=extract_page_references(answer) or None,
        )
        return body.model_dump(by_alias=True, exclude_none=True)

    @app.post("/api/search-rank")
    async def search_rank(request: Request):
        """Rank candidate snippets for a search query."""
        request_id = request.state.request_id

        rejected = _admit(request)
        if rejected is not None:
            metrics.SEARCH_RANK_REQUESTS.labels(status="rejected").inc()
            return rejected

        req, invalid = await parse_body(request, SearchRankRequest)
        if invalid is not None:
            metrics.SEARCH_RANK_REQUESTS.labels(status="invalid").inc()
            return invalid

        if not req.query:
            metrics.SEARCH_RANK_REQUESTS.labels(status="invalid").inc()
            return error_response(400, "Query is required")
        if not req.candidates:
            metrics.SEARCH_RANK_REQUESTS.labels(status="invalid").inc()
            return error_response(400, "Candidates array is required")

        prompt = format_search_rank_request(
            req.query, [c.model_dump(by_alias=True) for c in req.candidates]
        )
        try:
            reply = await request.app.state.orchestrator.rank(prompt, request_id=request_id)
        except Exception as e:
            metrics.SEARCH_RANK_REQUESTS.labels(status="error").inc()
            logger.exception("Unexpected error in /api/search-rank", extra={
                "request_id": request_id,
                "error_kind": classify(e).kind.value,
            })
            return error_response(500, str(e) or "Unknown error")

        metrics.SEARCH_RANK_REQUESTS.labels(status="success").inc()
        body = SearchRankResponse(ranked_results=parse_ranked_results(reply, req.candidates))
        return body.model_dump(by_alias=True)

    @app.get("/health/live")
    async def liveness():
        """Kubernetes liveness probe."""
        return {"status": "alive"}

    @app.get("/health")
    async def health(request: Request):
        """Configured mode, provider chain and last selection."""
        return await full_health_check(
            getattr(request.app.state, "orchestrator", None),
            getattr(request.app.state, "settings", None),
        )

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
