# client/identity.py
"""Process-wide client id sent in the X-Client-ID header for server-side rate limiting."""

import random
import string
import time
from typing import Optional

_ALPHABET = string.ascii_lowercase + string.digits

_client_id: Optional[str] = None


def _generate() -> str:
    suffix = "".join(random.choices(_ALPHABET, k=7))
    return f"client_{int(time.time() * 1000)}_{suffix}"


def get_client_id() -> str:
    """Return this process's client id, generating it on first use."""
    global _client_id
    if _client_id is None:
        _client_id = _generate()
    return _client_id


def reset_client_id() -> None:
    global _client_id
    _client_id = None
