"""
Centralized exception definitions for the document chat service.

Provider adapters translate raw backend failures into ProviderError at the
point where they are first caught, attaching an ErrorKind so that callers can
match on the kind instead of parsing messages.
"""

from typing import Optional, Union

from core.error_taxonomy import ErrorKind


# ============================================================
# Base Exceptions
# ============================================================

class DocChatError(Exception):
    """
    Root base exception for the entire application.
    All custom exceptions should inherit from this.
    """
    pass


class ConfigError(DocChatError):
    """
    Raised at startup when the environment does not describe a usable
    provider setup (unknown mode, missing API key).
    """
    pass


# ============================================================
# Provider Errors
# ============================================================

class ProviderError(DocChatError):
    """
    Failure reported by an LLM provider adapter.

    `kind` is the structured classification decided by the adapter;
    `code` keeps the backend's own error code (e.g. GLM "1113").
    """

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[Union[str, int]] = None,
    ):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.provider = provider
        self.status_code = status_code
        self.code = code


class QuotaExceededError(ProviderError):
    """The provider's usage allowance is exhausted."""
    kind = ErrorKind.QUOTA_EXCEEDED


class RateLimitError(ProviderError):
    """The provider (or our own server) asked us to slow down."""
    kind = ErrorKind.RATE_LIMITED


# ============================================================
# Client Side
# ============================================================

class ChatAPIError(DocChatError):
    """
    Non-2xx response from the chat service as seen by the client transport.
    Carries the HTTP status and the `error` field of the response body.
    """

    def __init__(self, message: str, *, status_code: int, error: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error = error

    @property
    def kind(self) -> Optional[ErrorKind]:
        # Admission rejection from the server is an explicit marker
        if self.status_code == 429:
            return ErrorKind.RATE_LIMITED
        return None
