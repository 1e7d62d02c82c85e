"""FastAPI entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from salon_notify.backend.middleware.request_log import RequestLogMiddleware
from salon_notify.backend.middleware.trace_id import HEADER, ensure_trace_id
from salon_notify.backend.routers import admin_auth, admin_budget, admin_consent, admin_dlq, health
from salon_notify.backend.routers import admin_notifications, admin_retry_config, admin_webhooks
from salon_notify.backend.routers import unsubscribe, webhooks
from salon_notify.backend.services.errors import NotificationError
from salon_notify.backend.utils.api_errors import error_envelope

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield


app = FastAPI(
    title="Salon Notify",
    description="Appointment notification delivery: queue, consent, budget, dead letters, provider webhooks",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLogMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["System"])
app.include_router(admin_auth.router, prefix="/v1/admin/auth", tags=["Admin Auth"])
app.include_router(admin_notifications.router, prefix="/v1/admin/notifications", tags=["Admin Notifications"])
app.include_router(admin_dlq.router, prefix="/v1/admin/dlq", tags=["Admin Dead Letters"])
app.include_router(admin_retry_config.router, prefix="/v1/admin/retry-config", tags=["Admin Retry Config"])
app.include_router(admin_budget.router, prefix="/v1/admin/budget", tags=["Admin Budget"])
app.include_router(admin_budget.settings_router, prefix="/v1/admin/settings", tags=["Admin Settings"])
app.include_router(admin_consent.router, prefix="/v1/admin/consent", tags=["Admin Consent"])
app.include_router(admin_webhooks.router, prefix="/v1/admin/webhooks", tags=["Admin Webhooks"])
app.include_router(webhooks.router, prefix="/v1/webhooks", tags=["Webhooks"])
app.include_router(unsubscribe.router, prefix="/v1", tags=["Unsubscribe"])


def _error_response(request: Request, status_code: int, code: str, message: str, detail: str | None = None):
    trace_id = ensure_trace_id(request.scope)
    resp = JSONResponse(
        content=error_envelope(code=code, message=message, trace_id=trace_id, detail=detail),
        status_code=status_code,
    )
    resp.headers[HEADER] = trace_id
    return resp


@app.exception_handler(NotificationError)
async def notification_error_handler(request: Request, exc: NotificationError):
    return _error_response(request, exc.status_code, exc.code, str(exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else (str(exc.detail) if exc.detail else "Request error")
    resp = _error_response(request, exc.status_code, "http_error", detail)
    for k, v in (exc.headers or {}).items():
        resp.headers[k] = v
    return resp


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg") or "Invalid request")
    return _error_response(request, 422, "validation_error", message)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Never return HTML; always the JSON envelope with trace_id."""
    trace_id = ensure_trace_id(request.scope)
    logger.exception("Unhandled exception trace_id=%s path=%s", trace_id, request.url.path)
    detail_safe = str(exc)[:200].replace("'", "")
    return _error_response(request, 500, "internal_error", "Internal server error", detail_safe)
