"""Middleware: trace id and access log for API and webhook calls."""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from salon_notify.backend.middleware.trace_id import HEADER, ensure_trace_id

logger = logging.getLogger("uvicorn.error")

_LOGGED_PREFIXES = ("/v1/",)


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        trace_id = ensure_trace_id(request.scope)
        request.state.trace_id = trace_id
        start = time.perf_counter()
        response = await call_next(request)
        response.headers[HEADER] = trace_id
        path = request.url.path
        if path.startswith(_LOGGED_PREFIXES):
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.info(
                "api_request trace_id=%s method=%s path=%s status=%s latency_ms=%s",
                trace_id, request.method, path, response.status_code, latency_ms,
            )
        return response
