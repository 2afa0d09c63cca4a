# core/error_taxonomy.py
"""
Failure classification shared by the fallback orchestrator (should we switch
providers?) and the client transport (should we retry?).

classify() is a pure function: it only reads the error it is given.

Priority:
    1. explicit marker (an ErrorKind carried by the error, or an exception
       class named QuotaExceededError / RateLimitError)
    2. quota-like message text or a known provider quota code
    3. status 429
    4. network failures and 5xx
    5. everything else is fatal
"""

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx


class ErrorKind(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    status_code: Optional[int] = None

    @property
    def is_quota(self) -> bool:
        return self.kind is ErrorKind.QUOTA_EXCEEDED

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


# GLM 1113 = "Insufficient balance or no resource package"
QUOTA_ERROR_CODES = frozenset({"1113"})

_QUOTA_PATTERNS = (
    "quota",
    "rate limit",
    "429",
    "too many requests",
    "insufficient balance",
    "resource package",
    "resource_exhausted",
    "rpd",
)

_NETWORK_PATTERNS = (
    "network",
    "connection",
    "connect error",
    "timed out",
    "timeout",
    "econnreset",
    "econnrefused",
    "fetch failed",
)

_QUOTA_CODE_IN_TEXT = re.compile(r"\b(" + "|".join(sorted(QUOTA_ERROR_CODES)) + r")\b")
_SERVER_STATUS_IN_TEXT = re.compile(r"\b5\d\d\b")

_MARKER_NAMES = {
    "quotaexceedederror": ErrorKind.QUOTA_EXCEEDED,
    "ratelimiterror": ErrorKind.RATE_LIMITED,
}

_TRANSIENT_TYPES = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


def _field(error: Any, *names: str) -> Any:
    for name in names:
        value = error.get(name) if isinstance(error, dict) else getattr(error, name, None)
        if value is not None:
            return value
    return None


def _status_of(error: Any) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, httpx.Response):
        return error.status_code
    # `code` is last: some SDKs put the HTTP status there, others a provider code
    for name in ("status_code", "statusCode", "status", "code"):
        value = _field(error, name)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def _message_of(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, httpx.Response):
        try:
            return f"HTTP {error.status_code}: {error.text}"
        except httpx.ResponseNotRead:
            return f"HTTP {error.status_code}"
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or "")
    # Error chunks keep their text in `error_message`
    chunk_message = getattr(error, "error_message", None)
    if chunk_message:
        return str(chunk_message)
    return str(error) or type(error).__name__


def _explicit_kind(error: Any) -> Optional[ErrorKind]:
    if isinstance(error, dict):
        candidates = (error.get("errorKind"), error.get("kind"))
    else:
        candidates = (getattr(error, "error_kind", None), getattr(error, "kind", None))
    for value in candidates:
        if isinstance(value, ErrorKind):
            return value
        if isinstance(value, str):
            try:
                return ErrorKind(value)
            except ValueError:
                continue

    if isinstance(error, BaseException):
        for cls in type(error).__mro__:
            marker = _MARKER_NAMES.get(cls.__name__.lower())
            if marker is not None:
                return marker
    return None


def _has_quota_signal(message: str, error: Any) -> bool:
    lowered = message.lower()
    if any(p in lowered for p in _QUOTA_PATTERNS):
        return True
    code = _field(error, "code")
    if code is not None and str(code) in QUOTA_ERROR_CODES:
        return True
    return bool(_QUOTA_CODE_IN_TEXT.search(lowered))


def _is_network_failure(message: str, error: Any, status: Optional[int]) -> bool:
    if isinstance(error, _TRANSIENT_TYPES):
        return True
    if status is not None:
        return 500 <= status < 600
    lowered = message.lower()
    if any(p in lowered for p in _NETWORK_PATTERNS):
        return True
    return bool(_SERVER_STATUS_IN_TEXT.search(lowered))


def classify(error: Any) -> ClassifiedError:
    """
    Classify an exception, an error StreamChunk, an httpx.Response or a plain
    error payload dict into one of the four ErrorKinds.
    """
    message = _message_of(error)
    status = _status_of(error)

    kind = _explicit_kind(error)
    if kind is None:
        if _has_quota_signal(message, error):
            kind = ErrorKind.QUOTA_EXCEEDED
        elif status == 429:
            kind = ErrorKind.RATE_LIMITED
        elif _is_network_failure(message, error, status):
            kind = ErrorKind.TRANSIENT
        else:
            kind = ErrorKind.FATAL

    return ClassifiedError(kind=kind, message=message, status_code=status)


def is_quota_exceeded(error: Any) -> bool:
    return classify(error).is_quota


def is_transient(error: Any) -> bool:
    return classify(error).is_transient
