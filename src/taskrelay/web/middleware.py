"""Request logging middleware for taskrelay.

Every request is logged with its method, path, status and duration, under a
correlation ID taken from the ``X-Correlation-ID`` header or generated. The
ID is echoed back on the response and is bound into every log line emitted
while the request is handled, including those of the lifecycle engine.

Example:
    >>> from fastapi import FastAPI
    >>> from taskrelay.web.middleware import RequestLoggingMiddleware
    >>>
    >>> app = FastAPI()
    >>> app.add_middleware(RequestLoggingMiddleware)
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware

from taskrelay.logging import clear_actor_context, get_logger, set_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# Probed constantly by orchestrators; logged at debug only
QUIET_PATHS = frozenset({"/health/", "/health/ready"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each HTTP request with timing and a correlation ID."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)

        path = request.url.path
        log = logger.debug if path in QUIET_PATHS else logger.info
        start_time = time.perf_counter()

        log(
            "request_started",
            method=request.method,
            path=path,
            query=str(request.url.query) if request.url.query else None,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                duration_ms=round(duration_ms, 2),
                error=str(exc),
                exc_info=True,
            )
            raise
        else:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log(
                "request_completed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            set_correlation_id(None)
            clear_actor_context()
