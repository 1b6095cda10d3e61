"""Access log and latency histogram for every HTTP request."""

import logging
import time

from litestar.middleware import AbstractMiddleware
from litestar.types import ASGIApp, Message, Receive, Scope, Send

from application.metrics import http_request_duration_seconds

logger = logging.getLogger(__name__)

# polled by dashboards and scrapers, only worth seeing at DEBUG
QUIET_PATHS = frozenset({"/health", "/metrics"})


class RequestLoggingMiddleware(AbstractMiddleware):
    """Logs `METHOD PATH - STATUS - N.NNms` once the response has been fully sent."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "UNKNOWN")
        status: int | None = None
        started = time.perf_counter()

        async def capture_status(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message.get("status")
            await send(message)

        try:
            await self.app(scope, receive, capture_status)
        finally:
            # for streams this covers the whole body, not just the first byte
            elapsed = time.perf_counter() - started
            http_request_duration_seconds.labels(method=method, endpoint=path).observe(elapsed)
            level = logging.DEBUG if path in QUIET_PATHS else logging.INFO
            logger.log(
                level, "%s %s - %s - %.2fms", method, path, status or "UNKNOWN", elapsed * 1000
            )
