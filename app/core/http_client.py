"""
Shared HTTP client for provider APIs.

Provides a singleton httpx.AsyncClient for connection pooling. Every provider
call goes through it, so every call carries the same bounded timeout.
"""
import asyncio
from typing import Optional
from contextlib import asynccontextmanager

import httpx
from app.core.config import settings
from app.core.logging_config import log_info

_client: Optional[httpx.AsyncClient] = None
_client_lock: Optional[asyncio.Lock] = None


def _get_lock() -> asyncio.Lock:
    """Get or create the client lock."""
    global _client_lock
    if _client_lock is None:
        _client_lock = asyncio.Lock()
    return _client_lock


def build_timeout() -> httpx.Timeout:
    """Per-request timeout for outbound provider calls."""
    total = settings.integration_http_timeout_seconds
    return httpx.Timeout(total, connect=min(5.0, total))


async def get_http_client() -> httpx.AsyncClient:
    """
    Get the shared AsyncClient instance.

    Creates a new instance if one doesn't exist or is closed. Cleanup is
    handled by the app lifespan (close_http_client).
    """
    global _client
    if _client is None or _client.is_closed:
        async with _get_lock():
            if _client is None or _client.is_closed:
                _client = httpx.AsyncClient(timeout=build_timeout())
                log_info("HTTP client created", timeout=settings.integration_http_timeout_seconds)
    return _client


async def close_http_client():
    """Close the shared client if it exists."""
    global _client
    async with _get_lock():
        if _client and not _client.is_closed:
            await _client.aclose()
            _client = None
            log_info("HTTP client closed")


def reset_http_client():
    """Forget the client and its lock (each Celery task runs its own event loop)."""
    global _client, _client_lock
    _client = None
    _client_lock = None


@asynccontextmanager
async def http_client_context():
    """
    Context manager that yields the shared client.
    Does NOT close the client on exit (it's shared).
    """
    client = await get_http_client()
    yield client
