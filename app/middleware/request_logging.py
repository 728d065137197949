"""
Request logging middleware with per-request trace ids.
"""
import time
import uuid
import logging
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Sync endpoints can legitimately take a while; flag only the really slow ones
SLOW_REQUEST_MS = 10_000


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a trace id to every request and logs method, path, status and latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        trace_id = request.headers.get("X-Trace-ID") or str(uuid.uuid4())
        request.state.trace_id = trace_id
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as exc:
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.error(
                f"[{trace_id}] {request.method} {request.url.path} -> EXCEPTION after {latency_ms}ms: {exc}",
                exc_info=True
            )
            raise

        latency_ms = int((time.monotonic() - started) * 1000)
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400 or latency_ms >= SLOW_REQUEST_MS:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, f"[{trace_id}] {request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)")

        response.headers["X-Trace-ID"] = trace_id
        return response
