# core/request_context.py
import uuid
from contextvars import ContextVar
from typing import Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def new_request_id() -> str:
    return str(uuid.uuid4())


def set_request_id(request_id: Optional[str]) -> None:
    """Bind the correlation id to the current task context."""
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()
