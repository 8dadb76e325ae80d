# bothost/transport/middleware.py
"""
HTTP middleware for the management API.

Order (outermost first): request id → request logging → error handling.
Requests addressed to one bot (``/bots/{bot_id}/...``) carry that bot id in
their log records and in ``request.state.bot_id``.
"""
import re
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from bothost.infra.logging_config import get_logger, LogContext
from bothost.infra.metrics import AppMetrics

logger = get_logger(__name__)

_BOT_PATH_RE = re.compile(r"^/bots/([^/]+)")
_COMMAND_PATH_RE = re.compile(r"^(/bots/[^/]+/commands)/[^/]+")
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Polled by health checks and metric scrapers; logged at DEBUG only
QUIET_PATHS = frozenset(["/health", "/metrics"])


def bot_id_from_path(path: str) -> Optional[str]:
    match = _BOT_PATH_RE.match(path)
    return match.group(1) if match else None


def route_label(path: str) -> str:
    """``/bots/bot_1a2b/commands/echo`` → ``/bots/{bot_id}/commands/{name}``."""
    path = _COMMAND_PATH_RE.sub(r"\1/{name}", path)
    return _BOT_PATH_RE.sub("/bots/{bot_id}", path)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id (client-supplied if sane) and its target bot."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", "")
        if not _REQUEST_ID_RE.match(request_id):
            request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        request.state.bot_id = bot_id_from_path(request.url.path)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line and one ``http_requests_total`` sample per request."""

    def __init__(self, app: ASGIApp, enabled: bool = True, record_metrics: bool = True):
        super().__init__(app)
        self.enabled = enabled
        self.record_metrics = record_metrics

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        path = request.url.path
        log_ctx = LogContext(
            logger,
            bot_id=getattr(request.state, "bot_id", None),
            request_id=getattr(request.state, "request_id", None),
        )
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.monotonic() - started) * 1000
            log_ctx.error(
                f"{request.method} {path} failed: {exc.__class__.__name__} after {duration_ms:.1f}ms",
                exc_info=True,
            )
            raise

        duration_ms = (time.monotonic() - started) * 1000
        if self.record_metrics:
            AppMetrics.http_request(request.method, response.status_code, route_label(path))

        log = log_ctx.debug if path in QUIET_PATHS else log_ctx.info
        log(
            f"{request.method} {path} → {response.status_code} ({duration_ms:.1f}ms)",
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turn an unhandled exception into the API's error shape with status 500."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", None)
            LogContext(
                logger,
                bot_id=getattr(request.state, "bot_id", None),
                request_id=request_id,
            ).error(f"Unhandled exception: {exc.__class__.__name__}: {exc}", exc_info=True)

            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Internal server error", "request_id": request_id},
            )
