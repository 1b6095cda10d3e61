"""Pooled httpx client shared by every passthrough call.

Upstream providers sit behind TLS, so a fresh client per request would pay a
handshake each time. One client is opened when the server starts and closed on
shutdown; code running outside the server gets one lazily from `get_client()`.
"""

from logging import getLogger

import httpx

logger = getLogger(__name__)

USER_AGENT = "llm-doctor/0.1"

DEFAULT_LIMITS = httpx.Limits(
    max_connections=100,
    max_keepalive_connections=20,
    keepalive_expiry=30.0,
)

_upstream: httpx.AsyncClient | None = None


def init_client(limits: httpx.Limits = DEFAULT_LIMITS, http2: bool = True) -> httpx.AsyncClient:
    """Open the shared upstream client; a second call returns the open one."""
    global _upstream
    if _upstream is None:
        # per-call timeouts come from the passthrough config
        _upstream = httpx.AsyncClient(
            limits=limits, http2=http2, headers={"User-Agent": USER_AGENT}
        )
        logger.debug("Opened upstream client (http2=%s)", http2)
    return _upstream


def get_client() -> httpx.AsyncClient:
    return _upstream if _upstream is not None else init_client()


async def close_client() -> None:
    global _upstream
    client, _upstream = _upstream, None
    if client is not None:
        await client.aclose()
        logger.debug("Closed upstream client")
