# core/http_client.py
import asyncio
from typing import Optional
from weakref import WeakKeyDictionary

import httpx

# AsyncClient instances must not cross event loops
_clients: WeakKeyDictionary = WeakKeyDictionary()

# Read timeout bounds the gap between two streamed chunks, not the whole answer
DEFAULT_TIMEOUT = httpx.Timeout(connect=5.0, read=120.0, write=10.0, pool=5.0)

DEFAULT_HEADERS = {
    "User-Agent": "doc-chat-client/0.1",
    "Accept": "application/json, text/event-stream",
}


def get_client(timeout: Optional[httpx.Timeout] = None) -> httpx.AsyncClient:
    """
    Shared AsyncClient for the current event loop, recreated after close.
    `timeout` only applies when a new client has to be built.
    """
    loop = asyncio.get_running_loop()

    client = _clients.get(loop)
    if client is not None and not client.is_closed:
        return client

    client = httpx.AsyncClient(
        timeout=timeout or DEFAULT_TIMEOUT,
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        headers=DEFAULT_HEADERS,
        follow_redirects=True,
    )
    _clients[loop] = client
    return client


async def close_client():
    """Close every shared client. Call when the application is done with the chat client."""
    for client in list(_clients.values()):
        if not client.is_closed:
            await client.aclose()

    _clients.clear()
