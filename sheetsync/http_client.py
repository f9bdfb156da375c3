"""Shared HTTP client — connection pooling for all outbound requests.

One module-level httpx.AsyncClient used by the token refresher, the
extraction client and the Sheets connector. Every request carries a
finite timeout so a stuck upstream cannot stall a tenant's queue.

Per-request timeout overrides via http.get(url, timeout=15).

Usage:
    from sheetsync.http_client import http
    resp = await http.post(url, json=payload, timeout=15)
"""

import httpx

from .config import settings

_LIMITS = httpx.Limits(
    max_connections=50,
    max_keepalive_connections=20,
    keepalive_expiry=30,
)

http = httpx.AsyncClient(
    timeout=settings.http_timeout_seconds,
    limits=_LIMITS,
    follow_redirects=False,
)


async def close_clients():
    """Shut down the shared client. Call from app lifespan shutdown."""
    try:
        await http.aclose()
    except RuntimeError:
        pass
