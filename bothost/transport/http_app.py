# bothost/transport/http_app.py
"""
Management HTTP API for the bot supervisor.

Routes are thin: parse request → call AdminApplicationService →
map AdminError → return JSON.  The API is unauthenticated; keep it on a
private network.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError

from bothost.config import settings
from bothost.admin.errors import AdminError
from bothost.admin.models import CreateBotRequest, SaveCommandRequest, SetCommandRequest
from bothost.admin.service import get_admin_service
from bothost.infra.http_client import close_all_sessions
from bothost.infra.logging_config import setup_logging, get_logger
from bothost.infra.metrics import get_metrics_collector
from bothost.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info("------------------------------------")
    logger.info(f"⚡ BotHost starting: env={settings.app_env}, data_dir={settings.data_dir}")

    svc = get_admin_service()
    await svc.startup()

    logger.info("Application startup complete")
    logger.info("------------------------------------")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    # Persisted statuses are kept so running bots come back on next start
    await svc.shutdown()
    await close_all_sessions()

    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="BotHost",
    description="Hosts many Telegram bots with runtime-defined commands",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type"],
)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(
    RequestLoggingMiddleware,
    enabled=settings.enable_request_logging,
    record_metrics=settings.enable_metrics,
)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are client errors (400), not 422s."""
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": "Invalid request body"},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "Internal server error" if settings.is_production else str(exc)},
    )


def _parse(model, payload: dict):
    try:
        return model(**payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Basic health check."""
    return {"status": "healthy"}


@app.get("/metrics")
def metrics():
    """In-process counters and histograms."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


# ============================================================================
# BOTS
# ============================================================================

@app.get("/bots")
async def list_bots():
    """List all bots (id, name, status; never credentials)."""
    svc = get_admin_service()
    bots = await svc.list_bots()
    return {"bots": [b.model_dump() for b in bots]}


@app.post("/bots", status_code=201)
async def create_bot(payload: dict):
    """Verify the token with Telegram and register a stopped bot."""
    req = _parse(CreateBotRequest, payload)

    svc = get_admin_service()
    try:
        result = await svc.create_bot(req)
    except AdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(exclude_none=True)


@app.get("/bots/{bot_id}")
async def get_bot(bot_id: str):
    svc = get_admin_service()
    try:
        info = await svc.get_bot(bot_id)
    except AdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return info.model_dump()


@app.delete("/bots/{bot_id}")
async def delete_bot(bot_id: str):
    """Stop (if running) and remove a bot and its commands."""
    svc = get_admin_service()
    try:
        result = await svc.delete_bot(bot_id)
    except AdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(exclude_none=True)


@app.post("/bots/{bot_id}/start")
async def start_bot(bot_id: str):
    """Start a bot.  A session that cannot be opened yields ok=false, status=stopped."""
    svc = get_admin_service()
    try:
        result = await svc.start_bot(bot_id)
    except AdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(exclude_none=True)


@app.post("/bots/{bot_id}/stop")
async def stop_bot(bot_id: str):
    svc = get_admin_service()
    try:
        result = await svc.stop_bot(bot_id)
    except AdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(exclude_none=True)


@app.post("/bots/{bot_id}/toggle")
async def toggle_bot(bot_id: str):
    """Start a stopped bot or stop a running one."""
    svc = get_admin_service()
    try:
        result = await svc.toggle_bot(bot_id)
    except AdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(exclude_none=True)


# ============================================================================
# COMMANDS
# ============================================================================

@app.get("/bots/{bot_id}/commands")
async def list_commands(bot_id: str):
    """Command table (empty for unknown bots)."""
    svc = get_admin_service()
    table = await svc.list_commands(bot_id)
    return table.model_dump()


@app.post("/bots/{bot_id}/commands")
async def save_command(bot_id: str, payload: dict):
    """Insert or overwrite a command named in the body."""
    req = _parse(SaveCommandRequest, payload)

    svc = get_admin_service()
    try:
        result = await svc.set_command(bot_id, req.name, req)
    except AdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(exclude_none=True)


@app.put("/bots/{bot_id}/commands/{name}")
async def set_command(bot_id: str, name: str, payload: dict):
    """Insert or overwrite a command; a running bot is restarted to apply it."""
    req = _parse(SetCommandRequest, payload)

    svc = get_admin_service()
    try:
        result = await svc.set_command(bot_id, name, req)
    except AdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(exclude_none=True)


@app.delete("/bots/{bot_id}/commands/{name}")
async def remove_command(bot_id: str, name: str):
    svc = get_admin_service()
    try:
        result = await svc.remove_command(bot_id, name)
    except AdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(exclude_none=True)


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    """
    Catch-all route for undefined endpoints.
    Returns generic 404 without revealing information.
    """
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "bothost.transport.http_app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=False,  # RequestLoggingMiddleware logs requests
        server_header=False,
    )
