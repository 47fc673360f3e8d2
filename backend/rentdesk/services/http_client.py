"""
Pooled httpx.AsyncClient for payment provider calls, owned by the app lifespan.
Per-request timeouts are set by the gateway; the client timeout is only the upper bound.
"""
from __future__ import annotations

import httpx

from rentdesk.config import settings

_http_client: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized; ensure app lifespan has run init_http_client().")
    return _http_client


def init_http_client(timeout: float = 30.0, max_connections: int = 20) -> httpx.AsyncClient:
    """Create the shared client once. Repeated calls return the existing one."""
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections // 2),
            headers={"User-Agent": f"rentdesk-billing/{settings.app_version}", "Accept": "application/json"},
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    client, _http_client = _http_client, None
    if client is not None:
        await client.aclose()
