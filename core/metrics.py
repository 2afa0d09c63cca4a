# core/metrics.py

import logging
from prometheus_client import Counter, Histogram, Gauge

logger = logging.getLogger(__name__)

# ----------------------------
# Request Counters
# ----------------------------

CHAT_REQUESTS = Counter(
    "chat_requests_total",
    "Total chat API requests",
    ["mode", "status"]  # mode: stream, buffered, unknown (rejected before parsing); status: success, error, rejected, invalid, disconnected
)

SEARCH_RANK_REQUESTS = Counter(
    "search_rank_requests_total",
    "Total search ranking requests",
    ["status"]
)

PROVIDER_CALLS = Counter(
    "llm_provider_calls_total",
    "Calls made to each LLM provider",
    ["provider", "operation", "status"]
)

# ----------------------------
# Fallback / Selection
# ----------------------------

PROVIDER_FALLBACKS = Counter(
    "llm_provider_fallbacks_total",
    "Times the orchestrator switched from primary to secondary",
    ["operation", "stage"]  # stage: before_stream, mid_stream, single_shot
)

PROVIDER_SELECTION = Gauge(
    "llm_provider_selection",
    "Adapter that served the most recently completed call (0=primary,1=secondary)"
)

# ----------------------------
# Rate Limiting
# ----------------------------

RATE_LIMIT_REJECTIONS = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by a rate limiter",
    ["side"]  # server, client
)

CLIENT_RETRIES = Counter(
    "client_retries_total",
    "Client transport retries",
    ["operation"]
)

# ----------------------------
# Stream Metrics
# ----------------------------

STREAM_REQUESTS = Counter(
    "stream_requests_total",
    "Total streaming requests",
    ["status"]  # status: started, success, error, disconnected
)

STREAM_LATENCY = Histogram(
    "stream_latency_seconds",
    "End-to-end streaming latency (seconds)"
)

LLM_LATENCY = Histogram(
    "llm_request_latency_seconds",
    "Single-shot LLM request latency",
    ["provider"]
)


# ----------------------------
# Helper Functions
# ----------------------------

def record_provider_call(provider: str, operation: str, status: str) -> None:
    PROVIDER_CALLS.labels(provider=provider, operation=operation, status=status).inc()


def record_fallback(operation: str, stage: str) -> None:
    PROVIDER_FALLBACKS.labels(operation=operation, stage=stage).inc()


def record_selection(selection: str) -> None:
    PROVIDER_SELECTION.set(1 if selection == "secondary" else 0)


def record_rate_limit_rejection(side: str) -> None:
    RATE_LIMIT_REJECTIONS.labels(side=side).inc()


def record_client_retry(operation: str) -> None:
    CLIENT_RETRIES.labels(operation=operation).inc()


def record_chat_request(mode: str, status: str) -> None:
    CHAT_REQUESTS.labels(mode=mode, status=status).inc()


def record_stream_start() -> None:
    """Record the start of a streaming request."""
    STREAM_REQUESTS.labels(status="started").inc()


def record_stream_end(status: str, duration_sec: float) -> None:
    """Record how a stream ended (success, error, disconnected) and its duration."""
    STREAM_REQUESTS.labels(status=status).inc()
    STREAM_LATENCY.observe(duration_sec)
