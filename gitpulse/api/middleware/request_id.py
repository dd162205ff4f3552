"""Request ID middleware — binds X-Request-ID (and caller) to structlog contextvars."""

from __future__ import annotations

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

log = structlog.get_logger("gitpulse.api")


def _is_valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
        return True
    except (ValueError, AttributeError):
        return False


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request_id to every request; echo it back in the response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        raw_id = request.headers.get("x-request-id", "")
        request_id = raw_id if _is_valid_uuid(raw_id) else str(uuid.uuid4())

        bound = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        }
        user_id = request.headers.get("x-user-id")
        if user_id:
            bound["user_id"] = user_id
        tokens = structlog.contextvars.bind_contextvars(**bound)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            log.info(
                "request.completed",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start) * 1000, 1),
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            log.exception(
                "request.failed", duration_ms=round((time.perf_counter() - start) * 1000, 1)
            )
            raise
        finally:
            structlog.contextvars.reset_contextvars(**tokens)
