import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from localmarket.core.logging_config import request_id_ctx_var

logger = logging.getLogger("localmarket.request")

_MAX_INCOMING_ID = 64


def _incoming_request_id(request: Request) -> str | None:
    value = (request.headers.get("x-request-id") or "").strip()
    if not value or len(value) > _MAX_INCOMING_ID or not value.isprintable():
        return None
    return value


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id (reusing a sane inbound X-Request-ID) and log its outcome."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = _incoming_request_id(request) or uuid.uuid4().hex
        token = request_id_ctx_var.set(request_id)
        request.state.request_id = request_id
        started = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            if response is not None:
                response.headers["X-Request-ID"] = request_id
                level = logging.WARNING if response.status_code >= 500 else logging.INFO
                logger.log(
                    level,
                    "request",
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": response.status_code,
                        "duration_ms": duration_ms,
                    },
                )
            else:
                logger.error("request_failed", extra={"method": request.method, "path": request.url.path})
            request_id_ctx_var.reset(token)
